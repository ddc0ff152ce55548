# Directory: utils
# Filename: attribute_comparator.py

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from hardware.device_models import DeviceSnapshot
from utils.settings import get_expected_increase_attributes, get_watched_attributes

logger = logging.getLogger(__name__)

STABLE_OK = "stable-ok"
EXPECTED_INCREASE = "expected-increase"
REGRESSED = "regressed"


@dataclass(frozen=True)
class ComparisonRow:
    attr_id: int
    name: str
    before: int
    after: int
    classification: str


@dataclass
class ComparisonResult:
    rows: List[ComparisonRow] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)

    @property
    def has_regression(self) -> bool:
        return any(row.classification == REGRESSED for row in self.rows)

    @property
    def regressions(self) -> List[ComparisonRow]:
        return [row for row in self.rows if row.classification == REGRESSED]


def classify(attr_id: int, before: int, after: int, expected_increase: Iterable[int]) -> str:
    # Power-on hours and temperature move on every healthy drive; they are reported, never judged.
    if attr_id in expected_increase:
        return EXPECTED_INCREASE
    return STABLE_OK if before == after else REGRESSED


def compare_snapshots(initial: DeviceSnapshot, final: DeviceSnapshot,
                      watched: Optional[Dict[int, str]] = None,
                      expected_increase: Optional[Iterable[int]] = None) -> ComparisonResult:
    """
    Compares the watched attributes of two snapshots.

    Args:
        initial: Snapshot taken before any test ran.
        final: Snapshot taken after the long self-test.
        watched: {attribute id: display name}. Defaults to the configured watch list.
        expected_increase: Ids that are expected to change. Defaults to configuration.

    Returns:
        ComparisonResult with one row per attribute present in both snapshots.
    """
    watched = watched if watched is not None else get_watched_attributes()
    expected = set(expected_increase if expected_increase is not None else get_expected_increase_attributes())

    result = ComparisonResult()
    for attr_id, name in watched.items():
        before = initial.attribute_value(attr_id)
        after = final.attribute_value(attr_id)
        if before is None or after is None:
            logger.debug(f"Attribute {attr_id} ({name}) missing from a snapshot; skipped.")
            result.skipped.append(attr_id)
            continue
        result.rows.append(ComparisonRow(attr_id, name, before, after, classify(attr_id, before, after, expected)))
    return result


def initial_health_warnings(snapshot: DeviceSnapshot,
                            watched: Optional[Dict[int, str]] = None,
                            expected_increase: Optional[Iterable[int]] = None) -> List[str]:
    """Non-zero watched attributes on a drive that hasn't been tested yet."""
    watched = watched if watched is not None else get_watched_attributes()
    expected = set(expected_increase if expected_increase is not None else get_expected_increase_attributes())
    warnings = []
    for attr_id, name in watched.items():
        if attr_id in expected:
            continue
        value = snapshot.attribute_value(attr_id)
        if value:
            warnings.append(f"Attribute {attr_id} ({name}) is already non-zero: {value}")
    return warnings


def format_comparison_table(result: ComparisonResult) -> List[str]:
    lines = [
        f"{'Attribute':<30} | {'Before':<10} | {'After':<10} | Status",
        f"{'-' * 30}-+-{'-' * 10}-+-{'-' * 10}-+-{'-' * 18}",
    ]
    for row in result.rows:
        lines.append(f"{row.name:<30} | {row.before:<10} | {row.after:<10} | {row.classification}")
    return lines
