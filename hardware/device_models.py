# Directory: hardware
# Filename: device_models.py

import datetime
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, Optional


class ProbeError(Exception):
    """Raised when the diagnostic tool is unreachable, its output can't be parsed, or the device is unavailable."""
    pass


class BusType(str, Enum):
    ATA = "ata"
    NVME = "nvme"
    UNKNOWN = "unknown"


class SelfTestKind(str, Enum):
    SHORT = "short"
    LONG = "long"


@dataclass(frozen=True)
class DeviceHandle:
    """Identity of the device under test. Fixed for the whole session."""
    path: str
    bus_type: BusType = BusType.UNKNOWN
    model: str = "UNKNOWN"
    serial: str = "UNKNOWN"
    firmware: str = ""
    capacity_bytes: Optional[int] = None
    model_family: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['bus_type'] = self.bus_type.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DeviceHandle':
        return cls(
            path=data['path'],
            bus_type=BusType(data.get('bus_type', BusType.UNKNOWN.value)),
            model=data.get('model', "UNKNOWN"),
            serial=data.get('serial', "UNKNOWN"),
            firmware=data.get('firmware', ""),
            capacity_bytes=data.get('capacity_bytes'),
            model_family=data.get('model_family', ""),
        )


@dataclass(frozen=True)
class DeviceSummary:
    """One row of the interactive device list."""
    name: str
    path: str
    model: str = ""
    serial: str = ""
    size: str = ""
    hctl: str = ""
    transport: str = ""


@dataclass(frozen=True)
class AttributeReading:
    attr_id: int
    name: str
    raw_value: int


@dataclass(frozen=True)
class SelfTestEntry:
    """Newest row of the device's self-test log."""
    type_code: int
    passed: bool
    description: str = ""


@dataclass(frozen=True)
class DeviceSnapshot:
    """
    Point-in-time capture of the device's diagnostic state.

    status_code follows the smartctl/ATA convention: 0 idle, low values are
    failure reasons, and the in-progress range carries the remaining tenth in
    its low nibble. percent_remaining is only meaningful while a test runs.
    """
    captured_at: str
    attributes: Dict[int, AttributeReading] = field(default_factory=dict)
    status_code: Optional[int] = None
    percent_remaining: Optional[int] = None
    self_test_count: int = 0
    latest_self_test: Optional[SelfTestEntry] = None
    polling_minutes_short: Optional[int] = None
    polling_minutes_extended: Optional[int] = None
    smart_enabled: Optional[bool] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    def attribute_value(self, attr_id: int) -> Optional[int]:
        reading = self.attributes.get(attr_id)
        return reading.raw_value if reading else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'captured_at': self.captured_at,
            'attributes': {str(a.attr_id): {'name': a.name, 'raw': a.raw_value} for a in self.attributes.values()},
            'self_test': {
                'status_code': self.status_code,
                'percent_remaining': self.percent_remaining,
                'count': self.self_test_count,
                'latest': asdict(self.latest_self_test) if self.latest_self_test else None,
                'polling_minutes': {'short': self.polling_minutes_short, 'extended': self.polling_minutes_extended},
            },
            'smart_enabled': self.smart_enabled,
            'raw': self.raw,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DeviceSnapshot':
        self_test = data.get('self_test') or {}
        latest = self_test.get('latest')
        polling = self_test.get('polling_minutes') or {}
        return cls(
            captured_at=data.get('captured_at', ""),
            attributes={
                int(attr_id): AttributeReading(int(attr_id), entry['name'], int(entry['raw']))
                for attr_id, entry in (data.get('attributes') or {}).items()
            },
            status_code=self_test.get('status_code'),
            percent_remaining=self_test.get('percent_remaining'),
            self_test_count=int(self_test.get('count') or 0),
            latest_self_test=SelfTestEntry(**latest) if latest else None,
            polling_minutes_short=polling.get('short'),
            polling_minutes_extended=polling.get('extended'),
            smart_enabled=data.get('smart_enabled'),
            raw=data.get('raw') or {},
        )


def timestamp_now() -> str:
    return datetime.datetime.now().isoformat(timespec='seconds')
