import threading

import pytest

from ecs_deployer.errors import ConvergenceTimeout, TransientCloudError
from ecs_deployer.status_reporter import ReportOutcome, ServiceHealth, StatusReporter
from tests.fixtures.fake_cloud import healthy, rolling


class ScriptedHealth:
    """Returns readings in order, repeating the last one."""

    def __init__(self, *readings):
        self.readings = list(readings)
        self.calls = 0

    def describe_service_health(self, cluster, service):
        self.calls += 1
        reading = self.readings.pop(0) if len(self.readings) > 1 else self.readings[0]
        if isinstance(reading, Exception):
            raise reading
        return reading


def make_reporter(provider, clock, **kwargs):
    options = dict(poll_interval=10.0, flap_threshold=3)
    options.update(kwargs)
    return StatusReporter(provider, clock=clock, sleep=clock.sleep, **options)


class TestServiceHealth:

    def test_converged_when_counts_match_and_targets_healthy(self):
        assert healthy().converged

    def test_not_converged_while_rolling(self):
        assert not rolling().converged

    def test_unhealthy_targets_block_convergence(self):
        assert not healthy(unhealthy_targets=1).converged

    def test_missing_service_never_converges(self):
        assert not ServiceHealth(found=False).converged

    def test_without_target_group_only_counts_matter(self):
        assert healthy(healthy_targets=None).converged

    def test_scaled_to_zero(self):
        assert healthy(desired=0).converged


def test_succeeds_once_desired_count_is_reached(fake_clock):
    provider = ScriptedHealth(rolling(running=0), rolling(running=1), healthy())
    reporter = make_reporter(provider, fake_clock)

    report = reporter.wait_for_convergence("lamp-cluster", "lamp-web", timeout=120)

    assert report.outcome == ReportOutcome.SUCCEEDED
    assert report.polls == 3
    assert report.elapsed == 20.0
    assert fake_clock.sleeps == [10.0, 10.0]


def test_times_out_exactly_at_deadline(fake_clock):
    provider = ScriptedHealth(rolling(running=1))
    reporter = make_reporter(provider, fake_clock)
    start = fake_clock.now

    report = reporter.wait_for_convergence("lamp-cluster", "lamp-web", timeout=25)

    assert report.outcome == ReportOutcome.TIMED_OUT
    assert fake_clock.now == start + 25
    assert report.elapsed == 25
    assert fake_clock.sleeps == [10.0, 10.0, 5.0]
    # the last reading is taken at the deadline itself
    assert report.polls == 4


def test_converging_on_the_deadline_poll_succeeds(fake_clock):
    provider = ScriptedHealth(rolling(), rolling(), rolling(), healthy())
    reporter = make_reporter(provider, fake_clock)

    report = reporter.wait_for_convergence("lamp-cluster", "lamp-web", timeout=25)

    assert report.outcome == ReportOutcome.SUCCEEDED
    assert report.elapsed == 25


def test_timeout_reports_observed_counts(fake_clock):
    reporter = make_reporter(ScriptedHealth(rolling(desired=3, running=1)), fake_clock)

    report = reporter.wait_for_convergence("lamp-cluster", "lamp-web", timeout=5)

    with pytest.raises(ConvergenceTimeout) as excinfo:
        report.raise_for_outcome("lamp-cluster", "lamp-web", 5)
    assert excinfo.value.observed == {"desired": 3, "running": 1, "pending": 2, "healthy_targets": 1}
    assert "running=1" in str(excinfo.value)


def test_flapping_tasks_are_degraded(fake_clock):
    provider = ScriptedHealth(rolling(failed_tasks=1), rolling(failed_tasks=3))
    reporter = make_reporter(provider, fake_clock)

    report = reporter.wait_for_convergence("lamp-cluster", "lamp-web", timeout=600)

    assert report.outcome == ReportOutcome.DEGRADED
    assert report.polls == 2


def test_transient_errors_keep_polling(fake_clock):
    provider = ScriptedHealth(TransientCloudError("Throttling"), healthy())
    reporter = make_reporter(provider, fake_clock)

    report = reporter.wait_for_convergence("lamp-cluster", "lamp-web", timeout=60)

    assert report.outcome == ReportOutcome.SUCCEEDED
    assert provider.calls == 2


def test_poll_events_are_emitted(fake_clock):
    events = []
    reporter = make_reporter(ScriptedHealth(rolling(), healthy()), fake_clock, progress=events.append)

    reporter.wait_for_convergence("lamp-cluster", "lamp-web", timeout=60)

    assert [e["poll"] for e in events] == [1, 2]
    assert events[-1]["converged"] is True


def test_cancel_stops_a_background_wait():
    provider = ScriptedHealth(rolling())
    reporter = StatusReporter(provider, poll_interval=30.0)

    future = reporter.start("lamp-cluster", "lamp-web", timeout=3600)
    reporter.cancel()
    report = future.result(timeout=5)

    assert report.outcome == ReportOutcome.CANCELLED


def test_cancel_from_another_thread_interrupts_the_pause():
    provider = ScriptedHealth(rolling())
    reporter = StatusReporter(provider, poll_interval=30.0)
    timer = threading.Timer(0.1, reporter.cancel)

    timer.start()
    report = reporter.wait_for_convergence("lamp-cluster", "lamp-web", timeout=3600)

    assert report.outcome == ReportOutcome.CANCELLED
    assert report.elapsed < 5


def test_snapshot_returns_single_reading(fake_clock):
    reporter = make_reporter(ScriptedHealth(healthy(desired=3)), fake_clock)

    assert reporter.snapshot("lamp-cluster", "lamp-web").desired == 3
