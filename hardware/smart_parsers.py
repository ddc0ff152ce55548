# Directory: hardware
# Filename: smart_parsers.py

"""
Two interchangeable ways of turning smartctl output into snapshot fields.

`StructuredSnapshotParser` reads the JSON document produced by
`smartctl -x -j`. `TextSnapshotParser` pattern-matches the classic text
reports (`-A`, `-c`, `-l selftest`). Both return a plain dict holding only
the fields they could actually read; the probe merges them, structured
first, text for whatever is still missing. On real hardware the two
representations are not always in sync, so neither is trusted blindly.
"""

import logging
import re
from typing import Any, Dict, Optional

from hardware.device_models import AttributeReading, BusType, SelfTestEntry

logger = logging.getLogger(__name__)

# Field names shared by both strategies.
ATTRIBUTES = 'attributes'
STATUS_CODE = 'status_code'
PERCENT_REMAINING = 'percent_remaining'
SELF_TEST_COUNT = 'self_test_count'
LATEST_SELF_TEST = 'latest_self_test'
POLLING_SHORT = 'polling_minutes_short'
POLLING_EXTENDED = 'polling_minutes_extended'
SMART_ENABLED = 'smart_enabled'

# NVMe health log fields reported under the ATA ids the comparator watches.
NVME_ATTRIBUTE_MAP = {
    9: ('power_on_hours', 'Power_On_Hours'),
    194: ('temperature', 'Temperature_Celsius'),
}

# Base of the smartctl "in progress" status range; the low nibble carries remaining tenths.
IN_PROGRESS_BASE = 240

SELF_TEST_TYPE_NAMES = {
    'short': 1,
    'extended': 2,
    'conveyance': 3,
    'selective': 4,
}


def _first_int(text: str) -> Optional[int]:
    match = re.match(r'\s*(-?\d+)', text)
    return int(match.group(1)) if match else None


def detect_bus_type(data: Dict[str, Any]) -> BusType:
    """Bus type from the `device` block of a smartctl JSON document."""
    device = data.get('device') or {}
    protocol = str(device.get('protocol', '')).lower()
    dev_type = str(device.get('type', '')).lower()
    if protocol == 'nvme' or dev_type == 'nvme':
        return BusType.NVME
    if protocol == 'ata' or dev_type in ('ata', 'sat'):
        return BusType.ATA
    return BusType.UNKNOWN


def detect_bus_type_from_text(info_text: str) -> BusType:
    """Bus type from `smartctl -i` text, matching on the same markers the operators look for."""
    if re.search(r'NVMe', info_text):
        return BusType.NVME
    if re.search(r'SATA|ATA Version', info_text):
        return BusType.ATA
    return BusType.UNKNOWN


def parse_identity_text(info_text: str) -> Dict[str, str]:
    """Model, model family, serial and firmware from `smartctl -i` text output."""
    fields: Dict[str, str] = {}
    patterns = {
        'model': r'^(?:Device Model|Model Number|Product):\s*(.+)$',
        'family': r'^Model Family:\s*(.+)$',
        'serial': r'^Serial Number:\s*(.+)$',
        'firmware': r'^(?:Firmware Version|Revision):\s*(.+)$',
        'capacity': r'^(?:User Capacity|Total NVM Capacity):\s*([\d,]+) bytes',
    }
    for key, pattern in patterns.items():
        match = re.search(pattern, info_text, re.MULTILINE)
        if match:
            fields[key] = match.group(1).strip()
    return fields


def parse_smart_support_text(info_text: str) -> Optional[bool]:
    """
    SMART enabled state from `smartctl -i` text. The "Available" line that
    precedes it only says whether the device supports SMART at all.
    """
    match = re.search(r'^SMART support is:\s*(Enabled|Disabled)\b', info_text, re.MULTILINE)
    return match.group(1) == "Enabled" if match else None


class StructuredSnapshotParser:
    """Reads snapshot fields from `smartctl -x -j` output."""

    name = "structured"

    def parse(self, data: Dict[str, Any]) -> Dict[str, Any]:
        fields: Dict[str, Any] = {}
        if not isinstance(data, dict):
            return fields

        smart_support = data.get('smart_support') or {}
        if 'enabled' in smart_support:
            fields[SMART_ENABLED] = bool(smart_support['enabled'])

        if 'nvme_self_test_log' in data or 'nvme_smart_health_information_log' in data:
            self._parse_nvme(data, fields)
        else:
            self._parse_ata(data, fields)
        return fields

    def _parse_ata(self, data: Dict[str, Any], fields: Dict[str, Any]) -> None:
        table = (data.get('ata_smart_attributes') or {}).get('table') or []
        attributes: Dict[int, AttributeReading] = {}
        for row in table:
            try:
                attr_id = int(row['id'])
                raw = row.get('raw') or {}
                # raw.value is the packed 48-bit field (temperature packs min/max into it);
                # the leading number of raw.string matches the RAW_VALUE text column.
                raw_value = _first_int(str(raw.get('string', '')))
                if raw_value is None:
                    raw_value = raw.get('value')
                if raw_value is None:
                    continue
                attributes[attr_id] = AttributeReading(attr_id, str(row.get('name', '')), int(raw_value))
            except (KeyError, TypeError, ValueError):
                logger.debug(f"Skipping malformed attribute row: {row}")
        if attributes:
            fields[ATTRIBUTES] = attributes

        self_test = (data.get('ata_smart_data') or {}).get('self_test') or {}
        status = self_test.get('status') or {}
        if isinstance(status.get('value'), int):
            fields[STATUS_CODE] = status['value']
        if isinstance(status.get('remaining_percent'), int):
            fields[PERCENT_REMAINING] = status['remaining_percent']
        polling = self_test.get('polling_minutes') or {}
        if isinstance(polling.get('short'), int):
            fields[POLLING_SHORT] = polling['short']
        if isinstance(polling.get('extended'), int):
            fields[POLLING_EXTENDED] = polling['extended']

        standard_log = (data.get('ata_smart_self_test_log') or {}).get('standard')
        if isinstance(standard_log, dict):
            log_table = standard_log.get('table') or []
            count = standard_log.get('count')
            fields[SELF_TEST_COUNT] = int(count) if isinstance(count, int) else len(log_table)
            if log_table:
                newest = log_table[0]
                type_code = (newest.get('type') or {}).get('value')
                passed = (newest.get('status') or {}).get('passed')
                if isinstance(type_code, int) and isinstance(passed, bool):
                    fields[LATEST_SELF_TEST] = SelfTestEntry(
                        type_code=type_code,
                        passed=passed,
                        description=str((newest.get('status') or {}).get('string', '')),
                    )

    def _parse_nvme(self, data: Dict[str, Any], fields: Dict[str, Any]) -> None:
        health = data.get('nvme_smart_health_information_log') or {}
        attributes: Dict[int, AttributeReading] = {}
        for attr_id, (key, name) in NVME_ATTRIBUTE_MAP.items():
            if isinstance(health.get(key), int):
                attributes[attr_id] = AttributeReading(attr_id, name, health[key])
        if attributes:
            fields[ATTRIBUTES] = attributes

        log = data.get('nvme_self_test_log')
        if not isinstance(log, dict):
            return
        operation = (log.get('current_self_test_operation') or {}).get('value')
        if isinstance(operation, int):
            if operation == 0:
                fields[STATUS_CODE] = 0
            else:
                completion = log.get('current_self_test_completion_percent')
                remaining = 100 - completion if isinstance(completion, int) else None
                fields[STATUS_CODE] = IN_PROGRESS_BASE + ((remaining or 0) // 10)
                if remaining is not None:
                    fields[PERCENT_REMAINING] = remaining

        table = log.get('table') or []
        fields[SELF_TEST_COUNT] = len(table)
        if table:
            newest = table[0]
            type_code = (newest.get('self_test_code') or {}).get('value')
            result = newest.get('self_test_result') or {}
            if isinstance(type_code, int) and isinstance(result.get('value'), int):
                fields[LATEST_SELF_TEST] = SelfTestEntry(
                    type_code=type_code,
                    passed=result['value'] == 0,
                    description=str(result.get('string', '')),
                )


class TextSnapshotParser:
    """Reads snapshot fields from smartctl's human-readable reports."""

    name = "text"

    _EXEC_STATUS = re.compile(r'Self-test execution status:\s*\(\s*(\d+)\)')
    _REMAINING = re.compile(r'(\d+)% of test remaining')
    _POLLING = re.compile(r'(Short|Extended) self-test routine\s*\n\s*recommended polling time:\s*\(\s*(\d+)\)\s*minutes', re.IGNORECASE)
    _NVME_STATUS = re.compile(r'Self-test status:\s*(.*)$', re.MULTILINE)
    _NVME_PROGRESS = re.compile(r'in progress \((\d+)% completed\)')
    _ATA_LOG_ROW = re.compile(r'^#\s*(\d+)\s+(\w+)\s+\w+\s+(.+?)\s+\d+%', re.MULTILINE)
    _NVME_LOG_ROW = re.compile(r'^\s*(\d+)\s+(Short|Extended)\s+(.+?)\s{2,}', re.MULTILINE)

    def parse_attributes(self, text: str) -> Dict[str, Any]:
        """Attribute rows of `smartctl -A`; RAW_VALUE is the tenth column."""
        attributes: Dict[int, AttributeReading] = {}
        for line in text.splitlines():
            parts = line.split()
            if len(parts) < 10 or not parts[0].isdigit():
                continue
            raw_value = _first_int(parts[9])
            if raw_value is None:
                continue
            attr_id = int(parts[0])
            attributes[attr_id] = AttributeReading(attr_id, parts[1], raw_value)
        return {ATTRIBUTES: attributes} if attributes else {}

    def parse_capabilities(self, text: str) -> Dict[str, Any]:
        """Self-test execution status and polling times from `smartctl -c`."""
        fields: Dict[str, Any] = {}
        match = self._EXEC_STATUS.search(text)
        if match:
            fields[STATUS_CODE] = int(match.group(1))
            remaining = self._REMAINING.search(text)
            if remaining:
                fields[PERCENT_REMAINING] = int(remaining.group(1))
        else:
            nvme = self._NVME_STATUS.search(text)
            if nvme:
                progress = self._NVME_PROGRESS.search(nvme.group(1))
                if progress:
                    remaining_pct = 100 - int(progress.group(1))
                    fields[STATUS_CODE] = IN_PROGRESS_BASE + remaining_pct // 10
                    fields[PERCENT_REMAINING] = remaining_pct
                elif 'no self-test in progress' in nvme.group(1).lower():
                    fields[STATUS_CODE] = 0

        for kind, minutes in self._POLLING.findall(text):
            key = POLLING_SHORT if kind.lower() == 'short' else POLLING_EXTENDED
            fields[key] = int(minutes)
        return fields

    def parse_self_test_log(self, text: str) -> Dict[str, Any]:
        """Entry count and newest entry from `smartctl -l selftest`."""
        rows = [(int(num), kind, status.strip()) for num, kind, status in self._ATA_LOG_ROW.findall(text)]
        if not rows:
            rows = [(int(num) + 1, kind, status.strip()) for num, kind, status in self._NVME_LOG_ROW.findall(text)]
        if not rows:
            if re.search(r'No self-tests have been logged', text, re.IGNORECASE):
                return {SELF_TEST_COUNT: 0}
            return {}

        rows.sort(key=lambda row: row[0])
        _, kind, status = rows[0]
        type_code = SELF_TEST_TYPE_NAMES.get(kind.lower(), 0)
        return {
            SELF_TEST_COUNT: len(rows),
            LATEST_SELF_TEST: SelfTestEntry(
                type_code=type_code,
                passed=status.startswith('Completed without error'),
                description=status,
            ),
        }
