# Directory: controllers
# Filename: acceptance_fsm.py
#!/usr/bin/env python3

import logging
import os
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

# --- FSM Machine Type Selection ---
# Lightweight machine for runtime and tests, GraphMachine for generating diagrams.
DIAGRAM_MODE = os.environ.get('FSM_DIAGRAM_MODE', 'false').lower() == 'true'

if DIAGRAM_MODE:
    from transitions.extensions import GraphMachine as Machine
    print("FSM running in DIAGRAM_MODE with GraphMachine.")
else:
    from transitions import Machine
from transitions import EventData

from controllers.progress_poller import PollOutcome, PollResult, ProgressPoller
from controllers.session_store import (
    SNAPSHOT_FINAL, SNAPSHOT_INITIAL, SNAPSHOT_PROGRESS, Phase, SessionState, SessionStateError, SessionStore,
)
from hardware.badblocks_runner import BadblocksRunner, SurfaceScanResult
from hardware.block_devices import get_sector_sizes
from hardware.device_models import DeviceHandle, DeviceSnapshot, ProbeError, SelfTestKind, timestamp_now
from hardware.smartctl_probe import SmartctlProbe, is_in_progress_status
from utils.attribute_comparator import (
    ComparisonResult, compare_snapshots, format_comparison_table, initial_health_warnings,
)
from utils.audit_log import AuditLog
from utils.settings import ACCEPTANCE_SETTINGS, get_settle_delay_sec

__all__ = [
    'AcceptanceTestError', 'SelfTestFailedError', 'SelfTestTimeoutError', 'SessionStateError',
    'Phase', 'RunPolicy', 'AcceptanceSession', 'SessionReport', 'AcceptanceTestFSM', 'CallableCondition',
]

_SEAGATE_MODEL = re.compile(r'seagate|barracuda', re.IGNORECASE)


# --- Exceptions ---
class AcceptanceTestError(Exception):
    """Base class for fatal acceptance-test outcomes."""
    pass


class SelfTestFailedError(AcceptanceTestError):
    pass


class SelfTestTimeoutError(AcceptanceTestError):
    pass


class CallableCondition:
    """
    A wrapper that makes a callable condition have a readable __name__
    for diagram generation, allowing inline lambda definitions to be labeled.
    """
    def __init__(self, func: Callable[..., bool], name: str):
        self.func = func
        self.__name__ = name

    def __call__(self, *args, **kwargs) -> bool:
        return bool(self.func(*args, **kwargs))

    def __repr__(self) -> str:
        return f"<CallableCondition: {self.__name__}>"


@dataclass(frozen=True)
class RunPolicy:
    """
    How much the operator wants to be asked.

    Attributes:
        auto_confirm: Skip the destructive-action confirmation.
        resume: True resumes an incomplete session, False always starts fresh,
                None asks (or starts fresh when auto_confirm is set).
    """
    auto_confirm: bool = False
    resume: Optional[bool] = None


@dataclass
class AcceptanceSession:
    """Everything one run knows about its device and its progress."""
    state: SessionState
    initial_snapshot: DeviceSnapshot
    resumed: bool = False
    final_snapshot: Optional[DeviceSnapshot] = None
    comparison: Optional[ComparisonResult] = None
    surface_scan: Optional[SurfaceScanResult] = None
    phases_run: List[str] = field(default_factory=list)

    @property
    def device(self) -> DeviceHandle:
        return self.state.device


@dataclass
class SessionReport:
    final_phase: Phase
    session_dir: Optional[str]
    cancelled: bool = False
    resumed: bool = False
    comparison: Optional[ComparisonResult] = None
    surface_scan: Optional[SurfaceScanResult] = None
    phases_run: List[str] = field(default_factory=list)

    @property
    def has_regression(self) -> bool:
        return bool(self.comparison and self.comparison.has_regression)


## --- FSM Class Definition ---
class AcceptanceTestFSM:
    """
    Phase state machine for one destructive acceptance test.

    init -> smart_short_test -> badblocks -> smart_long_test -> compare -> completed

    Every phase persists itself before doing any work, so an interrupted run
    can be resumed from the phase it was in. Each phase's work fires the
    trigger for the next phase when it succeeds; the machine is queued, so
    that trigger runs after the current transition has fully finished.
    Self-test failures and timeouts raise out of the machine and leave the
    persisted phase as the resume point.

    Attributes:
        STATES: All phases, in order.
        logger: A dedicated logger for FSM activities.
        machine: The `transitions` library's `Machine` object that powers the FSM.
        state: The current phase name.
        session: The active AcceptanceSession (None before `run`).
    """

    STATES: List[str] = [phase.value for phase in Phase]

    logger: logging.Logger
    machine: Machine
    state: str
    session: Optional[AcceptanceSession]

    def __init__(self,
                 probe: SmartctlProbe,
                 store: SessionStore,
                 audit: AuditLog,
                 badblocks: Optional[BadblocksRunner] = None,
                 prompt: Callable[[str], str] = input,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic,
                 settle_delay_sec: Optional[float] = None):
        """
        Initializes the AcceptanceTestFSM.

        Args:
            probe: Device Probe Adapter used for every smartctl interaction.
            store: Session State Store rooted at the log directory.
            audit: Audit log sink for this run.
            badblocks: Surface scan runner. Defaults to one sharing the probe's command runner.
            prompt: Reads one line of operator input (`input` by default).
            sleep: Sleep function, shared with the Progress Poller.
            clock: Monotonic clock, shared with the Progress Poller.
            settle_delay_sec: Pause between aborting a self-test and starting another.
        """
        self.logger = logging.getLogger("AcceptanceTest.FSM")
        self.probe = probe
        self.store = store
        self.audit = audit
        self.badblocks = badblocks if badblocks else BadblocksRunner(probe.runner)
        self.prompt = prompt
        self.sleep = sleep
        self.clock = clock
        self.settle_delay_sec = settle_delay_sec if settle_delay_sec is not None else get_settle_delay_sec()
        self.session = None

        transitions = [
            {'trigger': 'begin', 'source': Phase.INIT.value, 'dest': Phase.SMART_SHORT_TEST.value},
            {'trigger': 'short_test_passed', 'source': Phase.SMART_SHORT_TEST.value, 'dest': Phase.BADBLOCKS.value},
            {'trigger': 'surface_scan_finished', 'source': Phase.BADBLOCKS.value, 'dest': Phase.SMART_LONG_TEST.value},
            {'trigger': 'long_test_passed', 'source': Phase.SMART_LONG_TEST.value, 'dest': Phase.COMPARE.value},
            {'trigger': 'comparison_recorded', 'source': Phase.COMPARE.value, 'dest': Phase.COMPLETED.value},
        ]
        # --- Resume Transitions (init -> any non-terminal phase) ---
        for phase in Phase:
            if phase in (Phase.INIT, Phase.COMPLETED):
                continue
            transitions.append({
                'trigger': 'resume', 'source': Phase.INIT.value, 'dest': phase.value,
                'conditions': [CallableCondition(lambda ed, p=phase: ed.kwargs.get('phase') == p, f"phase == {phase.value}")],
            })

        states: List[Dict[str, Any]] = [
            {'name': Phase.INIT.value},
            {'name': Phase.SMART_SHORT_TEST.value, 'on_enter': ['_persist_phase', '_run_short_test_phase']},
            {'name': Phase.BADBLOCKS.value, 'on_enter': ['_persist_phase', '_run_surface_scan_phase']},
            {'name': Phase.SMART_LONG_TEST.value, 'on_enter': ['_persist_phase', '_run_long_test_phase']},
            {'name': Phase.COMPARE.value, 'on_enter': ['_persist_phase', '_run_compare_phase']},
            {'name': Phase.COMPLETED.value, 'on_enter': ['_persist_phase', '_log_completion']},
        ]

        machine_kwargs = {
            'model': self,
            'states': states,
            'transitions': transitions,
            'initial': Phase.INIT.value,
            'send_event': True,
            'queued': True,
            'auto_transitions': False,
        }

        # Conditionally add the diagramming engine parameter
        if DIAGRAM_MODE:
            machine_kwargs['graph_engine'] = 'pygraphviz'

        self.machine = Machine(**machine_kwargs)
        self.transition_config = transitions

        # --- Public functions --- #
        self.begin: Callable
        self.short_test_passed: Callable
        self.surface_scan_finished: Callable
        self.long_test_passed: Callable
        self.comparison_recorded: Callable
        self.resume: Callable

    # --- Top level ---

    def run(self, device_path: str, policy: RunPolicy) -> SessionReport:
        """
        Runs (or resumes) the acceptance test on one device.

        Args:
            device_path: Block device node, e.g. '/dev/sda'.
            policy: Confirmation and resume behaviour.

        Returns:
            SessionReport describing how far the session got.

        Raises:
            ProbeError: The device could not be probed.
            AcceptanceTestError: A self-test failed or timed out.
            SessionStateError: The session record could not be written.
        """
        incomplete = self.store.load_incomplete(device_path)
        resumable = self._choose_resume(incomplete, device_path, policy)

        if resumable is not None:
            self._prepare_resume(resumable)
            phase = resumable.state.phase
            self.audit.decision(f"Resuming session in {resumable.state.session_dir} from phase '{phase.value}'.")
            self.resume(phase=phase)
            if self.state == Phase.INIT.value:
                raise AcceptanceTestError(f"Cannot resume from phase '{phase.value}'.")
        else:
            if not self._prepare_fresh(device_path, policy):
                return SessionReport(final_phase=Phase.INIT, session_dir=self.audit_dir(), cancelled=True)
            self.begin()

        return self._build_report()

    def audit_dir(self) -> Optional[str]:
        return os.path.dirname(self.audit.log_file_path) if self.audit.log_file_path else None

    def _build_report(self) -> SessionReport:
        session = self.session
        assert session is not None
        return SessionReport(
            final_phase=Phase(self.state),
            session_dir=session.state.session_dir,
            resumed=session.resumed,
            comparison=session.comparison,
            surface_scan=session.surface_scan,
            phases_run=list(session.phases_run),
        )

    # --- Resume decision ---

    def _ask_yes_no(self, question: str) -> bool:
        try:
            answer = self.prompt(question)
        except EOFError:
            return False
        return bool(re.match(r'^[Yy]$', answer.strip()))

    def _choose_resume(self, incomplete: Optional[SessionState], device_path: str,
                       policy: RunPolicy) -> Optional[AcceptanceSession]:
        """
        Applies the run policy to an incomplete session record.

        Returns:
            A ready-to-resume AcceptanceSession, or None for a fresh start.
        """
        if incomplete is None:
            return None
        if incomplete.phase == Phase.INIT:
            self.logger.debug(f"Session in {incomplete.session_dir} never left 'init'; starting fresh.")
            return None

        where = f"{incomplete.session_dir} (phase '{incomplete.phase.value}', started {incomplete.started_at})"
        self.logger.info(f"Found incomplete session for {device_path}: {where}")
        if policy.resume is False:
            self.audit.decision("Fresh start requested; incomplete session left untouched.")
            return None
        if policy.resume is None:
            if policy.auto_confirm:
                self.audit.decision("Unattended mode without --resume; starting a fresh session.")
                return None
            if not self._ask_yes_no(f"Resume the incomplete session from '{incomplete.phase.value}'? (y/n): "):
                self.audit.decision("Operator chose a fresh session.")
                return None

        current = self.probe.identify(device_path)
        if current.serial != incomplete.device.serial:
            self.logger.warning(
                f"Serial number changed ({incomplete.device.serial} -> {current.serial}); "
                f"the stored session belongs to a different drive. Starting fresh."
            )
            return None

        initial = self.store.load_snapshot(incomplete.session_dir, SNAPSHOT_INITIAL)
        if initial is None:
            self.logger.warning(f"Initial snapshot missing from {incomplete.session_dir}; cannot resume. Starting fresh.")
            return None
        return AcceptanceSession(state=incomplete, initial_snapshot=initial, resumed=True)

    def _prepare_resume(self, session: AcceptanceSession) -> None:
        self.session = session
        self.audit.attach(os.path.join(session.state.session_dir, ACCEPTANCE_SETTINGS['audit_log_file']))
        self.audit.banner([
            "Block Device Health Check (resumed)",
            f"Device: {session.device.path}  Model: {session.device.model}  Serial: {session.device.serial}",
            f"Resume point: {session.state.phase.value}",
        ])

    # --- Fresh session ---

    def _prepare_fresh(self, device_path: str, policy: RunPolicy) -> bool:
        """
        Identifies the device, opens the session directory and records the
        initial state. Returns False if the operator declined.
        """
        device = self.probe.identify(device_path)
        session_dir = self.store.create_session_dir(device)
        self.audit.attach(os.path.join(session_dir, ACCEPTANCE_SETTINGS['audit_log_file']))
        self.audit.banner([
            "Block Device Health Check",
            f"Device: {device.path}  Bus: {device.bus_type.value}",
            f"Model: {device.model}  Family: {device.model_family or '-'}",
            f"Serial: {device.serial}  Firmware: {device.firmware}",
            f"Session: {session_dir}",
        ])

        self.probe.dump_full_report(device, "Before Test")
        self._ensure_smart_enabled(device)
        initial = self.probe.snapshot(device)
        self.store.save_snapshot(session_dir, SNAPSHOT_INITIAL, initial)

        self._seagate_advisory(device)
        self._initial_health_advisory(initial)

        if not self._confirm_destructive(device, policy):
            self.audit.decision("Test cancelled by user.")
            print("Test cancelled")
            return False

        state = SessionState(device=device, phase=Phase.INIT, session_dir=session_dir, started_at=timestamp_now())
        self.session = AcceptanceSession(state=state, initial_snapshot=initial)
        self.logger.info(f"Test start time: {state.started_at}")
        return True

    def _ensure_smart_enabled(self, device: DeviceHandle) -> None:
        try:
            enabled = self.probe.is_smart_enabled(device)
        except ProbeError as e:
            self.logger.warning(f"Could not read the SMART support state: {e}")
            return
        if enabled is not False:
            return
        self.logger.warning("SMART is disabled. Attempting to enable...")
        try:
            self.probe.enable_smart(device)
            self.audit.decision("SMART enabled on the device.")
        except ProbeError as e:
            self.logger.warning(f"Could not enable SMART: {e}")

    def _seagate_advisory(self, device: DeviceHandle) -> None:
        if not _SEAGATE_MODEL.search(f"{device.model_family} {device.model}"):
            return
        self.logger.warning("Seagate device detected")
        self.logger.info(f"Model Family: {device.model_family or 'unknown'}")
        self.logger.info(f"Firmware Version: {device.firmware or 'unknown'}")
        capacity = f"{device.capacity_bytes} bytes" if device.capacity_bytes else "unknown"
        self.logger.info(f"Capacity: {capacity}")
        self.logger.warning("If counterfeit is suspected, verify firmware on manufacturer's website")

    def _initial_health_advisory(self, snapshot: DeviceSnapshot) -> None:
        self.logger.info("Failure Statistics Check:")
        warnings = initial_health_warnings(snapshot)
        for reading in sorted(snapshot.attributes.values(), key=lambda r: r.attr_id):
            self.logger.debug(f"{reading.name}: {reading.raw_value}")
        for warning in warnings:
            self.logger.warning(f"{warning} (abnormal value detected)")
        if not warnings:
            self.logger.info("No abnormal values in the watched attributes.")

    def _confirm_destructive(self, device: DeviceHandle, policy: RunPolicy) -> bool:
        lines = [
            "CRITICAL WARNING",
            "Running this test will:",
            f"  1. COMPLETELY ERASE all data on {device.path}",
            "  2. Take several hours to over 10 hours",
            "  3. Make the device inaccessible during testing",
            "Test sequence: SMART short test, badblocks full write test, SMART long test",
        ]
        for line in lines:
            self.logger.warning(line)
        if policy.auto_confirm:
            self.audit.decision("Destructive test auto-confirmed (--yes).")
            return True
        if self._ask_yes_no("Continue? (y/n): "):
            self.audit.decision("User confirmed test execution")
            return True
        return False

    # --- State Callbacks ---

    def _persist_phase(self, event_data: EventData) -> None:
        """Records the new phase before any of its work starts."""
        session = self.session
        assert session is not None
        source = event_data.transition.source if event_data.transition else self.state
        session.state.phase = Phase(self.state)
        self.store.save(session.state)
        session.phases_run.append(self.state)
        self.audit.transition(source, self.state, event_data.event.name)

    def _run_short_test_phase(self, event_data: EventData) -> None:
        self._run_self_test(SelfTestKind.SHORT)
        self.short_test_passed()

    def _run_surface_scan_phase(self, event_data: EventData) -> None:
        session = self.session
        assert session is not None
        device = session.device
        physical, logical = get_sector_sizes(self.probe.runner, device.path, ACCEPTANCE_SETTINGS['fallback_sector_size'])
        self.logger.info(f"Sector size: physical {physical}, logical {logical}. Using block size {physical}.")

        result = self.badblocks.run(device.path, physical)
        session.surface_scan = result
        if result.exit_code != 0:
            self.logger.error(f"badblocks exited with code {result.exit_code}. See the audit log for its output.")
        if result.bad_blocks_found:
            self.logger.warning(f"badblocks found {result.bad_blocks_found} bad blocks.")
        elif result.exit_code == 0:
            self.logger.info("badblocks completed: 0 bad blocks found.")
        self.surface_scan_finished()

    def _run_long_test_phase(self, event_data: EventData) -> None:
        self._run_self_test(SelfTestKind.LONG)
        self.long_test_passed()

    def _run_compare_phase(self, event_data: EventData) -> None:
        session = self.session
        assert session is not None
        device = session.device

        self.probe.dump_full_report(device, "After Test")
        final = self.probe.snapshot(device)
        self.store.save_snapshot(session.state.session_dir, SNAPSHOT_FINAL, final)
        session.final_snapshot = final

        result = compare_snapshots(session.initial_snapshot, final)
        session.comparison = result
        self.logger.info("SMART attribute comparison (before -> after):")
        for line in format_comparison_table(result):
            self.logger.info(line)
        if result.has_regression:
            names = ', '.join(row.name for row in result.regressions)
            self.logger.warning(f"Verdict: attributes changed during the test: {names}. Do not accept this drive without review.")
        else:
            self.logger.info("Verdict: no regression in the watched attributes.")
        self.comparison_recorded()

    def _log_completion(self, event_data: EventData) -> None:
        session = self.session
        assert session is not None
        self.logger.info(f"Test end time: {timestamp_now()}")
        self.audit.banner(["All tests completed", f"Log file: {self.audit.log_file_path}"])

    # --- Self-test helpers ---

    def _run_self_test(self, kind: SelfTestKind) -> PollResult:
        """
        Starts a self-test and waits for it.

        Raises:
            SelfTestFailedError: The device reported a failure.
            SelfTestTimeoutError: No completion within the timeout.
            ProbeError: The test could not be started or polled.
        """
        session = self.session
        assert session is not None
        device = session.device

        before = self.probe.snapshot(device)
        if before.self_test_count < session.state.baseline_count:
            self.logger.warning(
                f"Self-test log holds {before.self_test_count} entries, fewer than the {session.state.baseline_count} "
                f"recorded after the last passed test; the log may have been cleared."
            )
        if kind == SelfTestKind.LONG and is_in_progress_status(before.status_code):
            self.logger.warning("A self-test is already running; aborting it before the long test.")
            self._abort_and_settle(device)
            before = self.probe.snapshot(device)

        estimate, before = self._start_self_test(kind, before)

        if estimate is None:
            estimate = before.polling_minutes_short if kind == SelfTestKind.SHORT else before.polling_minutes_extended
        if not estimate:
            estimate = ACCEPTANCE_SETTINGS['default_estimate_min'][kind.value]
            self.logger.info(f"No duration estimate from the device; assuming {estimate} minutes.")

        poller = ProgressPoller(self.probe, device, on_snapshot=self._persist_progress, sleep=self.sleep, clock=self.clock)
        result = poller.await_completion(kind, estimate, before.self_test_count)

        if result.outcome == PollOutcome.COMPLETED:
            self.audit.decision(f"SMART {kind.value} self-test passed.")
            if result.snapshot is not None:
                session.state.baseline_count = result.snapshot.self_test_count
                self.store.save(session.state)
            return result

        self.probe.self_test_log_text(device, f"SMART Self-test Log ({kind.value} test {result.outcome.value})")
        if result.outcome == PollOutcome.FAILED:
            raise SelfTestFailedError(f"SMART {kind.value} self-test failed: {result.reason}")
        raise SelfTestTimeoutError(
            f"SMART {kind.value} self-test timed out: {result.reason}. Check the audit log and the device's self-test log."
        )

    def _start_self_test(self, kind: SelfTestKind, before: DeviceSnapshot) -> Tuple[Optional[int], DeviceSnapshot]:
        """
        Launches the self-test, retrying once after aborting whatever is running.

        Returns:
            The device's duration estimate (if printed) and the snapshot that
            holds the log count to measure completion against.
        """
        session = self.session
        assert session is not None
        device = session.device
        try:
            estimate = self.probe.initiate_self_test(device, kind)
        except ProbeError as e:
            self.logger.warning(f"Starting the {kind.value} self-test failed ({e}); aborting and retrying once.")
            self._abort_and_settle(device)
            # An aborted test adds a log entry; measure against the count after the abort.
            before = self.probe.snapshot(device)
            estimate = self.probe.initiate_self_test(device, kind)
        self.logger.info(f"SMART {kind.value} self-test started on {device.path}.")
        return estimate, before

    def _abort_and_settle(self, device: DeviceHandle) -> None:
        try:
            self.probe.abort_self_test(device)
        except ProbeError as e:
            self.logger.warning(f"Abort request failed: {e}")
        self.sleep(self.settle_delay_sec)

    def _persist_progress(self, snapshot: DeviceSnapshot) -> None:
        session = self.session
        if session is not None:
            self.store.save_snapshot(session.state.session_dir, SNAPSHOT_PROGRESS, snapshot)
