# Directory: hardware
# Filename: smartctl_probe.py

import json
import logging
import re
from typing import Any, Dict, List, Optional

from hardware import smart_parsers as sp
from hardware.block_devices import list_block_devices
from hardware.command_runner import CommandResult, CommandRunner
from hardware.device_models import (
    BusType, DeviceHandle, DeviceSnapshot, DeviceSummary, ProbeError, SelfTestKind, timestamp_now,
)
from utils.settings import ACCEPTANCE_SETTINGS

logger = logging.getLogger(__name__)

# smartctl exit status bits (see smartctl(8), "RETURN VALUES")
EXIT_COMMAND_LINE = 0x01
EXIT_DEVICE_OPEN = 0x02
EXIT_SMART_COMMAND = 0x04

_PLEASE_WAIT = re.compile(r'Please wait (\d+) minutes')
_CANNOT_START = re.compile(r"Can't start self-test without aborting current test", re.IGNORECASE)


def is_in_progress_status(status_code: Optional[int]) -> bool:
    low, high = ACCEPTANCE_SETTINGS['status_codes']['in_progress_range']
    return status_code is not None and low <= status_code <= high


class SmartctlProbe:
    """
    Device Probe Adapter around smartctl.

    Snapshots prefer `smartctl -x -j`. Any required field the JSON document
    does not carry is filled from the text reports, fetched at most once per
    snapshot and only when needed:

        status code / percent remaining / polling times -> `smartctl -c` + `-l selftest`
        self-test count / newest entry                  -> `smartctl -l selftest`
        attribute table                                 -> `smartctl -A`
    """

    def __init__(self, runner: CommandRunner, smartctl_path: str = "smartctl"):
        self.runner = runner
        self.smartctl = smartctl_path
        self.structured_parser = sp.StructuredSnapshotParser()
        self.text_parser = sp.TextSnapshotParser()

    # --- Low level ---

    def _run(self, args: List[str], device_path: str, title: Optional[str] = None, record_output: bool = True) -> CommandResult:
        result = self.runner.run([self.smartctl, *args, device_path], title=title, record_output=record_output)
        if result.returncode & (EXIT_COMMAND_LINE | EXIT_DEVICE_OPEN):
            raise ProbeError(
                f"smartctl {' '.join(args)} {device_path} failed (exit code {result.returncode}): "
                f"{result.stdout.strip().splitlines()[-1] if result.stdout.strip() else 'no output'}"
            )
        return result

    def _run_json(self, args: List[str], device_path: str, title: Optional[str] = None, record_output: bool = True) -> Dict[str, Any]:
        result = self._run([*args, '-j'], device_path, title=title, record_output=record_output)
        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise ProbeError(f"smartctl returned non-JSON output for {device_path}: {e}") from e
        if not isinstance(data, dict):
            raise ProbeError(f"smartctl returned an unexpected JSON document for {device_path}")
        return data

    # --- Identity ---

    def identify(self, device_path: str) -> DeviceHandle:
        """Reads model, serial, firmware, capacity and bus type once at session start."""
        try:
            data = self._run_json(['-i'], device_path, title="Device Information (JSON)")
        except ProbeError as e:
            logger.warning(f"Structured device info unavailable ({e}); falling back to text.")
            data = {}

        model = data.get('model_name') or data.get('product')
        family = data.get('model_family') or ""
        serial = data.get('serial_number')
        firmware = data.get('firmware_version') or data.get('revision') or ""
        capacity = (data.get('user_capacity') or {}).get('bytes') or data.get('nvme_total_capacity')
        bus_type = sp.detect_bus_type(data) if data else BusType.UNKNOWN

        if not model or not serial or bus_type == BusType.UNKNOWN:
            info_text = self._run(['-i'], device_path, title="Device Information").stdout
            text_fields = sp.parse_identity_text(info_text)
            model = model or text_fields.get('model')
            family = family or text_fields.get('family', "")
            serial = serial or text_fields.get('serial')
            firmware = firmware or text_fields.get('firmware', "")
            if capacity is None and 'capacity' in text_fields:
                capacity = int(text_fields['capacity'].replace(',', ''))
            if bus_type == BusType.UNKNOWN:
                bus_type = sp.detect_bus_type_from_text(info_text)

        return DeviceHandle(
            path=device_path,
            bus_type=bus_type,
            model=(model or "UNKNOWN").strip(),
            serial=(serial or "UNKNOWN").strip(),
            firmware=str(firmware).strip(),
            capacity_bytes=int(capacity) if isinstance(capacity, int) else None,
            model_family=str(family).strip(),
        )

    def is_smart_enabled(self, device: DeviceHandle) -> Optional[bool]:
        """
        Whether SMART is switched on, from the identity page.

        A drive with SMART disabled answers `-x` and `-c` with little more than
        "SMART Disabled", so this has to be asked before the first snapshot.
        None means smartctl did not say.
        """
        try:
            data = self._run_json(['-i'], device.path, title="SMART Support (JSON)")
        except ProbeError as e:
            logger.debug(f"Structured SMART support state unavailable ({e}); falling back to text.")
            data = {}
        support = data.get('smart_support') or {}
        if 'enabled' in support:
            return bool(support['enabled'])
        return sp.parse_smart_support_text(self._run(['-i'], device.path, title="SMART Support").stdout)

    # --- Snapshots ---

    def snapshot(self, device: DeviceHandle, record_output: bool = True) -> DeviceSnapshot:
        """
        Takes a fresh Device Snapshot.

        Args:
            device: The device under test.
            record_output: Write the full structured dump to the audit log.
                           Poll loops pass False and persist the progress
                           snapshot instead; the command line and a one-line
                           summary are still recorded.

        Raises:
            ProbeError: If smartctl can't be run or the device can't be opened,
                        or if neither representation yields a self-test status.
        """
        data = self._run_json(['-x'], device.path, title="SMART Information (JSON)", record_output=record_output)
        fields = self.structured_parser.parse(data)
        text_cache: Dict[str, str] = {}

        def text_report(*args: str) -> str:
            key = ' '.join(args)
            if key not in text_cache:
                text_cache[key] = self._run(list(args), device.path, record_output=record_output).stdout
            return text_cache[key]

        needs_status = sp.STATUS_CODE not in fields
        needs_percent = is_in_progress_status(fields.get(sp.STATUS_CODE)) and sp.PERCENT_REMAINING not in fields
        if needs_status or needs_percent:
            logger.debug(f"Structured self-test status incomplete for {device.path}; parsing text reports.")
            text_fields = self.text_parser.parse_capabilities(text_report('-c') + "\n" + text_report('-l', 'selftest'))
            self._fill_missing(fields, text_fields, (sp.STATUS_CODE, sp.PERCENT_REMAINING, sp.POLLING_SHORT, sp.POLLING_EXTENDED))

        needs_log = sp.SELF_TEST_COUNT not in fields or (
            fields.get(sp.SELF_TEST_COUNT, 0) > 0 and sp.LATEST_SELF_TEST not in fields
        )
        if needs_log:
            logger.debug(f"Structured self-test log incomplete for {device.path}; parsing text log.")
            self._fill_missing(fields, self.text_parser.parse_self_test_log(text_report('-l', 'selftest')),
                               (sp.SELF_TEST_COUNT, sp.LATEST_SELF_TEST))

        if sp.ATTRIBUTES not in fields and device.bus_type != BusType.NVME:
            logger.debug(f"Structured attribute table missing for {device.path}; parsing text attributes.")
            self._fill_missing(fields, self.text_parser.parse_attributes(text_report('-A')), (sp.ATTRIBUTES,))

        status_code = fields.get(sp.STATUS_CODE)
        if status_code is None:
            raise ProbeError(f"Could not determine self-test status for {device.path} from structured or text output.")

        percent_remaining = fields.get(sp.PERCENT_REMAINING)
        if percent_remaining is None and is_in_progress_status(status_code):
            percent_remaining = (status_code & 0x0F) * 10

        snapshot = DeviceSnapshot(
            captured_at=timestamp_now(),
            attributes=fields.get(sp.ATTRIBUTES, {}),
            status_code=status_code,
            percent_remaining=percent_remaining,
            self_test_count=int(fields.get(sp.SELF_TEST_COUNT, 0)),
            latest_self_test=fields.get(sp.LATEST_SELF_TEST),
            polling_minutes_short=fields.get(sp.POLLING_SHORT),
            polling_minutes_extended=fields.get(sp.POLLING_EXTENDED),
            smart_enabled=fields.get(sp.SMART_ENABLED),
            raw=data,
        )
        if not record_output:
            self.runner.audit.raw_line(
                f"[SNAPSHOT] status={snapshot.status_code} remaining={snapshot.percent_remaining} "
                f"count={snapshot.self_test_count} latest={snapshot.latest_self_test}"
            )
        return snapshot

    @staticmethod
    def _fill_missing(fields: Dict[str, Any], fallback: Dict[str, Any], keys) -> None:
        for key in keys:
            if key not in fields and key in fallback:
                fields[key] = fallback[key]

    # --- Self-test control ---

    def initiate_self_test(self, device: DeviceHandle, kind: SelfTestKind) -> Optional[int]:
        """
        Starts a short or long self-test.

        Returns:
            The "Please wait N minutes" estimate if smartctl printed one.

        Raises:
            ProbeError: If the test could not be launched.
        """
        result = self._run(['-t', kind.value], device.path, title=f"SMART {kind.value} self-test start")
        if result.returncode & EXIT_SMART_COMMAND or _CANNOT_START.search(result.stdout):
            raise ProbeError(f"smartctl refused to start a {kind.value} self-test on {device.path} (exit code {result.returncode})")
        match = _PLEASE_WAIT.search(result.stdout)
        return int(match.group(1)) if match else None

    def abort_self_test(self, device: DeviceHandle) -> None:
        result = self._run(['-X'], device.path, title="SMART self-test abort")
        if result.returncode & EXIT_SMART_COMMAND:
            raise ProbeError(f"smartctl could not abort the running self-test on {device.path}")

    def enable_smart(self, device: DeviceHandle) -> None:
        result = self._run(['-s', 'on'], device.path, title="SMART enable")
        if result.returncode & EXIT_SMART_COMMAND:
            raise ProbeError(f"smartctl could not enable SMART on {device.path}")

    # --- Reports ---

    def dump_full_report(self, device: DeviceHandle, stage: str) -> None:
        """Writes the complete text reports into the audit log, one section each."""
        sections = [
            (['-x'], f"Complete SMART Information ({stage})"),
            (['-A'], f"SMART All Attributes ({stage})"),
            (['-c'], "SMART Capabilities"),
            (['-l', 'selftest'], "SMART Self-test Log"),
            (['-l', 'error'], "SMART Error Log"),
        ]
        for args, title in sections:
            self._run(args, device.path, title=title)

    def self_test_log_text(self, device: DeviceHandle, title: str) -> str:
        return self._run(['-l', 'selftest'], device.path, title=title).stdout

    def list_devices(self) -> List[DeviceSummary]:
        return list_block_devices(self.runner)
