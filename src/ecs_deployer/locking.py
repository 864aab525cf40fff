"""Run-level lock keyed by cluster name."""
import json
import logging
import os
import socket
import threading
import time
from pathlib import Path
from typing import Any, Dict, Optional

from ecs_deployer.errors import LockHeldError

logger = logging.getLogger(__name__)


class ClusterLock:
    """Serialize runs against one cluster, within this process and across processes.

    Usage:
        with ClusterLock(settings.state_dir, "prod-cluster"):
            ...
    """
    _registry: Dict[str, threading.Lock] = {}
    _registry_guard = threading.Lock()

    def __init__(self, state_dir: str, cluster: str, stale_after: float = 3600, clock=time.time):
        self.cluster = cluster
        self.path = Path(state_dir) / f"{cluster}.lock"
        self._key = str(self.path.absolute())
        self.stale_after = stale_after
        self.clock = clock
        self._held = False

    @classmethod
    def _thread_lock(cls, key: str) -> threading.Lock:
        with cls._registry_guard:
            if key not in cls._registry:
                cls._registry[key] = threading.Lock()
            return cls._registry[key]

    def holder(self) -> Optional[Dict[str, Any]]:
        """Contents of the lock file, or None when unlocked."""
        try:
            with open(self.path, 'r') as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError):
            return {}

    def _is_stale(self, holder: Dict[str, Any]) -> bool:
        acquired_at = holder.get('acquired_at')
        if acquired_at is None:
            try:
                acquired_at = self.path.stat().st_mtime
            except FileNotFoundError:
                return True
        return self.clock() - acquired_at > self.stale_after

    def _create_lock_file(self) -> bool:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, 'w') as f:
            json.dump({
                'cluster': self.cluster,
                'pid': os.getpid(),
                'host': socket.gethostname(),
                'acquired_at': self.clock(),
            }, f)
        return True

    def acquire(self) -> None:
        thread_lock = self._thread_lock(self._key)
        if not thread_lock.acquire(blocking=False):
            raise LockHeldError(self.cluster, {'pid': os.getpid(), 'in_process': True})

        try:
            if not self._create_lock_file():
                holder = self.holder() or {}
                if not self._is_stale(holder):
                    raise LockHeldError(self.cluster, holder)
                logger.warning(f"Replacing stale lock for cluster {self.cluster}: {holder}")
                self.path.unlink(missing_ok=True)
                if not self._create_lock_file():
                    raise LockHeldError(self.cluster, self.holder() or {})
        except BaseException:
            thread_lock.release()
            raise

        self._held = True
        logger.debug(f"Acquired lock for cluster {self.cluster}")

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        try:
            self.path.unlink(missing_ok=True)
        finally:
            self._thread_lock(self._key).release()
        logger.debug(f"Released lock for cluster {self.cluster}")

    def __enter__(self) -> "ClusterLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
