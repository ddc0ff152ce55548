# Directory: tests/
# Filename: test_progress_poller.py

#############################################################
##
## This test file is designed to systematically cover every function
## in controllers/progress_poller.py.
##
## Run this test with the following command:
## pytest tests/test_progress_poller.py --cov=controllers.progress_poller --cov-report term-missing
##
#############################################################

import pytest
from unittest.mock import MagicMock

from controllers.progress_poller import (
    PollOutcome, ProgressPoller, compute_progress, is_failure_status, judge_completion, timeout_for,
)
from hardware.device_models import BusType, DeviceHandle, DeviceSnapshot, ProbeError, SelfTestEntry, SelfTestKind

DEVICE = DeviceHandle(path="/dev/sda", bus_type=BusType.ATA)


class FakeClock:
    """Monotonic clock that only moves when the poller sleeps."""
    def __init__(self):
        self.now = 1000.0
        self.sleeps = []

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds

    def __call__(self):
        return self.now


def snap(status=0, remaining=None, count=0, latest=None):
    return DeviceSnapshot(captured_at="t", status_code=status, percent_remaining=remaining,
                          self_test_count=count, latest_self_test=latest)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mock_probe():
    return MagicMock()


@pytest.fixture
def poller(mock_probe, clock):
    return ProgressPoller(mock_probe, DEVICE, sleep=clock.sleep, clock=clock)


class TestHelpers:

    def test_progress_from_device(self):
        assert compute_progress(snap(status=249, remaining=90), elapsed_sec=500, estimate_sec=120) == 10

    def test_progress_from_elapsed_time(self):
        assert compute_progress(snap(status=0), elapsed_sec=60, estimate_sec=120) == 50
        assert compute_progress(snap(status=0), elapsed_sec=600, estimate_sec=120) == 100
        assert compute_progress(snap(status=0), elapsed_sec=10, estimate_sec=0) == 100

    @pytest.mark.parametrize("kind, estimate, expected", [
        (SelfTestKind.SHORT, 2, 600),
        (SelfTestKind.SHORT, 10, 1200),
        (SelfTestKind.LONG, 120, 14400),
        (SelfTestKind.LONG, 1, 120),
    ])
    def test_timeout_for(self, kind, estimate, expected):
        assert timeout_for(kind, estimate) == expected

    @pytest.mark.parametrize("status, expected", [
        (0, False), (1, True), (7, True), (8, True), (9, False),
        (0x21, True), (0x80, True), (0x90, False), (249, False), (None, False),
    ])
    def test_is_failure_status(self, status, expected):
        assert is_failure_status(status) is expected

    def test_judge_requires_every_condition(self):
        passed_short = SelfTestEntry(1, True)
        assert judge_completion(snap(0, count=1, latest=passed_short), SelfTestKind.SHORT, 0) == PollOutcome.COMPLETED
        # still running
        assert judge_completion(snap(249, count=1, latest=passed_short), SelfTestKind.SHORT, 0) is None
        # no new entry
        assert judge_completion(snap(0, count=1, latest=passed_short), SelfTestKind.SHORT, 1) is None
        # newest entry is a different kind
        assert judge_completion(snap(0, count=2, latest=passed_short), SelfTestKind.LONG, 1) is None
        # newest entry unknown
        assert judge_completion(snap(0, count=2, latest=None), SelfTestKind.LONG, 1) is None

    def test_judge_failed_entry(self):
        failed_long = SelfTestEntry(2, False, "Completed: read failure")
        assert judge_completion(snap(0, count=3, latest=failed_long), SelfTestKind.LONG, 2) == PollOutcome.FAILED


class TestAwaitCompletion:

    def test_fresh_device_short_test_completes(self, poller, mock_probe, clock):
        # GIVEN: A drive with an empty log that runs and passes a short test.
        mock_probe.snapshot.side_effect = [
            snap(status=249, remaining=90),
            snap(status=241, remaining=10),
            snap(status=0, count=1, latest=SelfTestEntry(1, True, "Completed without error")),
        ]

        # WHEN: The poller waits for it.
        result = poller.await_completion(SelfTestKind.SHORT, estimate_minutes=2, initial_count=0)

        # THEN: It completes on the third short-interval tick.
        assert result.outcome == PollOutcome.COMPLETED
        assert result.elapsed_sec == 30
        assert clock.sleeps == [10, 10, 10]
        assert result.snapshot.self_test_count == 1
        mock_probe.snapshot.assert_called_with(DEVICE, record_output=False)

    def test_failure_status_is_immediate(self, poller, mock_probe):
        # GIVEN: The first snapshot already reports a read failure.
        mock_probe.snapshot.return_value = snap(status=7)

        # WHEN: Polling.
        result = poller.await_completion(SelfTestKind.LONG, estimate_minutes=120, initial_count=0)

        # THEN: FAILED after one tick.
        assert result.outcome == PollOutcome.FAILED
        assert mock_probe.snapshot.call_count == 1
        assert "7" in result.reason

    def test_failed_log_entry(self, poller, mock_probe):
        mock_probe.snapshot.return_value = snap(status=0, count=5, latest=SelfTestEntry(2, False, "Completed: read failure"))
        result = poller.await_completion(SelfTestKind.LONG, estimate_minutes=120, initial_count=4)
        assert result.outcome == PollOutcome.FAILED
        assert "read failure" in result.reason

    def test_short_timeout_uses_floor(self, poller, mock_probe):
        # GIVEN: A short test (estimate 2 min) that never shows up in the log.
        mock_probe.snapshot.return_value = snap(status=0, count=3, latest=SelfTestEntry(1, True))

        # WHEN: Polling.
        result = poller.await_completion(SelfTestKind.SHORT, estimate_minutes=2, initial_count=3)

        # THEN: It times out at 600 s, not at 2 x 2 min.
        assert result.outcome == PollOutcome.TIMED_OUT
        assert result.elapsed_sec == 600
        assert mock_probe.snapshot.call_count == 60

    def test_idle_with_unchanged_count_times_out(self, poller, mock_probe):
        mock_probe.snapshot.return_value = snap(status=0, count=7, latest=SelfTestEntry(2, True))
        result = poller.await_completion(SelfTestKind.LONG, estimate_minutes=1, initial_count=7)
        assert result.outcome == PollOutcome.TIMED_OUT
        assert result.elapsed_sec == 120

    def test_type_mismatch_never_completes(self, poller, mock_probe):
        # GIVEN: The log grew, but by a short test while we wait for a long one.
        mock_probe.snapshot.return_value = snap(status=0, count=2, latest=SelfTestEntry(1, True))

        # WHEN: Polling a long test.
        result = poller.await_completion(SelfTestKind.LONG, estimate_minutes=1, initial_count=1)

        # THEN: Not completed; eventually timed out.
        assert result.outcome == PollOutcome.TIMED_OUT

    def test_probe_error_propagates(self, poller, mock_probe):
        mock_probe.snapshot.side_effect = ProbeError("device vanished")
        with pytest.raises(ProbeError, match="device vanished"):
            poller.await_completion(SelfTestKind.SHORT, estimate_minutes=2, initial_count=0)

    def test_on_snapshot_called_every_tick(self, mock_probe, clock):
        seen = []
        poller = ProgressPoller(mock_probe, DEVICE, on_snapshot=seen.append, sleep=clock.sleep, clock=clock)
        mock_probe.snapshot.side_effect = [snap(status=250, remaining=100), snap(status=0, count=1, latest=SelfTestEntry(2, True))]

        poller.await_completion(SelfTestKind.LONG, estimate_minutes=120, initial_count=0)

        assert [s.status_code for s in seen] == [250, 0]
