# Directory: /
# Filename: block_health_check.py
#!/usr/bin/env python3

"""
Block Device Health Check.

Destructive acceptance test for a single HDD/SSD: SMART short self-test,
badblocks full write/verify, SMART long self-test, then a before/after
comparison of the health attributes. Every step is recorded in a
per-session audit log, and an interrupted run can be resumed.

Usage:
    sudo bhc                      # pick a device interactively
    sudo bhc -d sda               # test /dev/sda
    sudo bhc -d sda --resume -y   # continue an interrupted session unattended
    bhc --list                    # show candidate devices
"""

import argparse
import logging
import sys
from typing import Callable, List, Optional

from controllers.acceptance_fsm import AcceptanceTestError, AcceptanceTestFSM, RunPolicy, SessionReport
from controllers.preflight import PreconditionError, run_device_checks, run_host_checks
from controllers.session_store import SessionStateError, SessionStore
from hardware.block_devices import normalize_device_path
from hardware.command_runner import CommandRunner
from hardware.device_models import DeviceSummary, ProbeError
from hardware.smartctl_probe import SmartctlProbe
from utils.audit_log import AuditLog
from utils.logging_config import LOG_LEVEL_CONFIG, setup_logging
from utils.settings import get_log_root

logger = logging.getLogger("AcceptanceTest")

EXIT_OK = 0
EXIT_FATAL = 1


def build_argparser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="bhc",
        description="Destructive acceptance test for a block device (SMART short, badblocks, SMART long, compare).",
    )
    ap.add_argument("-d", "--device", help="Device name or path, e.g. 'sda' or '/dev/sda'. Prompts when omitted.")
    ap.add_argument("-y", "--yes", action="store_true",
                    help="Unattended: skip the destructive-action confirmation. Without --resume, starts fresh.")
    resume_group = ap.add_mutually_exclusive_group()
    resume_group.add_argument("--resume", dest="resume", action="store_const", const=True, default=None,
                              help="Resume an incomplete session for this device without asking.")
    resume_group.add_argument("--fresh", dest="resume", action="store_const", const=False,
                              help="Ignore any incomplete session and start a new one.")
    ap.add_argument("--log-dir", help="Session root directory (default: $BHC_LOG_DIR or the configured log root).")
    ap.add_argument("--list", action="store_true", help="List candidate devices and exit.")
    ap.add_argument("-v", "--verbose", action="store_true", help="Debug logging on the console.")
    return ap


def format_device_table(devices: List[DeviceSummary]) -> List[str]:
    lines = [f"{'NAME':<10} {'HCTL':<10} {'SIZE':<8} {'TRAN':<6} {'MODEL':<28} SERIAL"]
    for dev in devices:
        lines.append(f"{dev.name:<10} {dev.hctl:<10} {dev.size:<8} {dev.transport:<6} {dev.model:<28} {dev.serial}")
    return lines


def select_device(probe: SmartctlProbe, prompt: Callable[[str], str] = input) -> str:
    """
    Shows the block device list and asks which one to test.

    Raises:
        PreconditionError: No devices found or no answer given.
    """
    devices = probe.list_devices()
    if not devices:
        raise PreconditionError("No block devices found.")
    print("\n=== Available Block Devices ===\n")
    for line in format_device_table(devices):
        print(line)
    print("")
    try:
        answer = prompt("Enter device name to test (e.g., sda): ").strip()
    except EOFError:
        answer = ""
    if not answer:
        raise PreconditionError("No device selected.")
    return normalize_device_path(answer)


def print_summary(report: SessionReport) -> None:
    print("")
    print("=== Test Completed ===")
    print(f"Final phase: {report.final_phase.value}")
    if report.surface_scan is not None:
        scan = report.surface_scan
        if scan.clean:
            print("badblocks: clean (exit code 0, no bad blocks reported)")
        else:
            found = scan.bad_blocks_found if scan.bad_blocks_found is not None else 'unknown'
            print(f"badblocks: exit code {scan.exit_code}, bad blocks found: {found}")
    if report.comparison is not None:
        verdict = "REGRESSED" if report.has_regression else "no regression"
        print(f"SMART attribute comparison: {verdict}")
    print(f"Session directory: {report.session_dir}")
    print("View detailed test results in the session's bhc.log")


def main(argv: Optional[List[str]] = None) -> int:
    args = build_argparser().parse_args(argv)
    if args.verbose:
        debug_overrides = {name: logging.DEBUG for name in LOG_LEVEL_CONFIG if name not in ("root", "transitions")}
        setup_logging(default_log_level=logging.DEBUG, log_level_overrides=debug_overrides)
    else:
        setup_logging(default_log_level=logging.INFO)

    audit = AuditLog()
    runner = CommandRunner(audit)
    probe = SmartctlProbe(runner)

    try:
        if args.list:
            for line in format_device_table(probe.list_devices()):
                print(line)
            return EXIT_OK

        run_host_checks(runner)
        device_path = normalize_device_path(args.device) if args.device else select_device(probe)
        run_device_checks(runner, device_path)

        store = SessionStore(args.log_dir or get_log_root())
        fsm = AcceptanceTestFSM(probe, store, audit)
        report = fsm.run(device_path, RunPolicy(auto_confirm=args.yes, resume=args.resume))
    except PreconditionError as e:
        logger.error(f"Precondition failed: {e}")
        return EXIT_FATAL
    except ProbeError as e:
        logger.error(f"Device probe failed: {e}")
        return EXIT_FATAL
    except AcceptanceTestError as e:
        logger.error(str(e))
        return EXIT_FATAL
    except SessionStateError as e:
        logger.error(f"Session state error: {e}")
        return EXIT_FATAL
    except KeyboardInterrupt:
        logger.error("Interrupted. The last recorded phase is kept; run again with --resume to continue.")
        return EXIT_FATAL
    finally:
        audit.detach()

    if report.cancelled:
        return EXIT_OK
    print_summary(report)
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
