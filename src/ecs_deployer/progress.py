"""Machine-parseable progress output: one JSON object per line on stdout."""
import json
import threading
import time
from typing import Any, Dict

import click


class JsonLinesEmitter:
    """Progress callback that writes each event as a JSON line."""

    def __init__(self, err: bool = False):
        self.err = err
        self._lock = threading.Lock()

    def __call__(self, event: Dict[str, Any]) -> None:
        record = {'ts': round(time.time(), 3)}
        record.update(event)
        line = json.dumps(record, default=str, sort_keys=False)
        with self._lock:
            click.echo(line, err=self.err)
