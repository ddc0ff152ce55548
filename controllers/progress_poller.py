# Directory: controllers
# Filename: progress_poller.py

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from hardware.device_models import DeviceHandle, DeviceSnapshot, SelfTestKind
from hardware.smartctl_probe import is_in_progress_status
from utils.settings import ACCEPTANCE_SETTINGS

logger = logging.getLogger("AcceptanceTest.Poller")


class PollOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass
class PollResult:
    outcome: PollOutcome
    elapsed_sec: float
    snapshot: Optional[DeviceSnapshot]
    reason: str = ""


def _in_range(value: int, bounds) -> bool:
    low, high = bounds
    return low <= value <= high


def is_failure_status(status_code: Optional[int]) -> bool:
    """
    Failure codes are matched both as smartctl reports them (1-8) and as the
    upper nibble of the raw ATA self-test execution status byte.
    """
    if status_code is None:
        return False
    bounds = ACCEPTANCE_SETTINGS['status_codes']['failure_range']
    return _in_range(status_code, bounds) or _in_range(status_code >> 4, bounds)


def type_code_for(kind: SelfTestKind) -> int:
    return int(ACCEPTANCE_SETTINGS['self_test_type_codes'][kind.value])


def timeout_for(kind: SelfTestKind, estimate_minutes: float) -> float:
    """Seconds after which a self-test of `kind` is considered hung."""
    timeout_cfg = ACCEPTANCE_SETTINGS['timeout']
    scaled = timeout_cfg['multiplier'] * estimate_minutes * 60
    if kind == SelfTestKind.SHORT:
        return max(float(timeout_cfg['short_floor_sec']), scaled)
    return float(scaled)


def compute_progress(snapshot: DeviceSnapshot, elapsed_sec: float, estimate_sec: float) -> int:
    """Device-reported progress while a test runs, otherwise elapsed time against the estimate."""
    if is_in_progress_status(snapshot.status_code) and snapshot.percent_remaining is not None:
        return max(0, min(100, 100 - snapshot.percent_remaining))
    if estimate_sec <= 0:
        return 100
    return max(0, min(100, int(elapsed_sec * 100 / estimate_sec)))


def judge_completion(snapshot: DeviceSnapshot, kind: SelfTestKind, initial_count: int) -> Optional[PollOutcome]:
    """
    COMPLETED only when the device is idle, a new log entry exists, that entry
    is of the requested kind and it passed. A new entry of the right kind that
    did not pass is FAILED. Anything else means keep waiting.
    """
    if snapshot.status_code != ACCEPTANCE_SETTINGS['status_codes']['idle']:
        return None
    if snapshot.self_test_count <= initial_count:
        return None
    latest = snapshot.latest_self_test
    if latest is None or latest.type_code != type_code_for(kind):
        return None
    return PollOutcome.COMPLETED if latest.passed else PollOutcome.FAILED


def _fmt_duration(seconds: float) -> str:
    seconds = int(max(0, seconds))
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    return f"{hours:d}:{minutes:02d}:{secs:02d}"


class ProgressPoller:
    """
    Waits for a running self-test by taking a snapshot every poll interval.

    `sleep` and `clock` are injectable so the loop can be driven by a fake
    clock in tests.
    """

    def __init__(self, probe, device: DeviceHandle,
                 on_snapshot: Optional[Callable[[DeviceSnapshot], None]] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.probe = probe
        self.device = device
        self.on_snapshot = on_snapshot
        self.sleep = sleep
        self.clock = clock

    def interval_for(self, kind: SelfTestKind) -> float:
        return float(ACCEPTANCE_SETTINGS['poll_interval_sec'][kind.value])

    def await_completion(self, kind: SelfTestKind, estimate_minutes: float, initial_count: int) -> PollResult:
        """
        Polls until the self-test completes, fails or times out.

        Args:
            kind: The self-test that was started.
            estimate_minutes: Device estimate for the test duration.
            initial_count: Self-test log entry count before the test started.

        Returns:
            PollResult with the terminal outcome and the last snapshot taken.

        Raises:
            ProbeError: If a snapshot can't be taken.
        """
        interval = self.interval_for(kind)
        estimate_sec = estimate_minutes * 60
        timeout_sec = timeout_for(kind, estimate_minutes)
        logger.info(
            f"Waiting for {kind.value} self-test: estimate {_fmt_duration(estimate_sec)}, "
            f"timeout {_fmt_duration(timeout_sec)}, polling every {interval:g}s."
        )

        start = self.clock()
        snapshot: Optional[DeviceSnapshot] = None
        while True:
            self.sleep(interval)
            snapshot = self.probe.snapshot(self.device, record_output=False)
            if self.on_snapshot:
                self.on_snapshot(snapshot)
            elapsed = self.clock() - start

            progress = compute_progress(snapshot, elapsed, estimate_sec)
            eta = max(0.0, estimate_sec - elapsed)
            logger.info(
                f"{kind.value.capitalize()} self-test progress: {progress}% "
                f"(status {snapshot.status_code}, elapsed {_fmt_duration(elapsed)}, ETA {_fmt_duration(eta)})"
            )

            if is_failure_status(snapshot.status_code):
                return PollResult(PollOutcome.FAILED, elapsed, snapshot,
                                  reason=f"device reported failure status {snapshot.status_code}")

            verdict = judge_completion(snapshot, kind, initial_count)
            if verdict == PollOutcome.COMPLETED:
                logger.info(f"{kind.value.capitalize()} self-test completed without error after {_fmt_duration(elapsed)}.")
                return PollResult(PollOutcome.COMPLETED, elapsed, snapshot)
            if verdict == PollOutcome.FAILED:
                description = snapshot.latest_self_test.description if snapshot.latest_self_test else ""
                return PollResult(PollOutcome.FAILED, elapsed, snapshot,
                                  reason=f"newest self-test log entry did not pass: {description}".rstrip(': '))

            if elapsed >= timeout_sec:
                return PollResult(PollOutcome.TIMED_OUT, elapsed, snapshot,
                                  reason=f"no completion after {_fmt_duration(elapsed)} (limit {_fmt_duration(timeout_sec)})")
