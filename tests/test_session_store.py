# Directory: tests/
# Filename: test_session_store.py

#############################################################
##
## This test file is designed to systematically cover every function
## in controllers/session_store.py.
##
## Run this test with the following command:
## pytest tests/test_session_store.py --cov=controllers.session_store --cov-report term-missing
##
#############################################################

import datetime
import json
import os
import pytest
from unittest.mock import patch

from controllers.session_store import (
    SNAPSHOT_INITIAL, SNAPSHOT_PROGRESS, Phase, SessionState, SessionStateError, SessionStore,
)
from hardware.device_models import AttributeReading, BusType, DeviceHandle, DeviceSnapshot, SelfTestEntry

DEVICE = DeviceHandle(path="/dev/sda", bus_type=BusType.ATA, model="ST2000DM008 2FR102", serial="ZFL0ABCD",
                      firmware="0001", capacity_bytes=2000398934016)


@pytest.fixture
def store(tmp_path):
    return SessionStore(str(tmp_path))


def new_state(store, phase=Phase.SMART_SHORT_TEST, started_at="2026-01-01T10:00:00", device=DEVICE, stamp=None):
    session_dir = store.create_session_dir(device, now=stamp or datetime.datetime(2026, 1, 1, 10, 0, 0))
    return SessionState(device=device, phase=phase, session_dir=session_dir, started_at=started_at)


class TestSessionDirectory:

    def test_directory_name(self, store, tmp_path):
        # WHEN: A session directory is created.
        session_dir = store.create_session_dir(DEVICE, now=datetime.datetime(2026, 3, 4, 5, 6, 7))

        # THEN: It is named bus_model_serial_timestamp, with unsafe characters replaced.
        assert os.path.basename(session_dir) == "ata_ST2000DM008_2FR102_ZFL0ABCD_20260304T050607"
        assert os.path.isdir(session_dir)
        assert os.path.dirname(session_dir) == str(tmp_path)

    def test_unwritable_log_root(self, tmp_path):
        # GIVEN: A log root that is a regular file, so nothing can be created beneath it.
        blocker = tmp_path / "not_a_dir"
        blocker.write_text("")
        store = SessionStore(str(blocker))

        # WHEN / THEN: The failure surfaces as a session state error, not a bare OSError.
        with pytest.raises(SessionStateError, match="Could not create session directory"):
            store.create_session_dir(DEVICE, now=datetime.datetime(2026, 1, 1))

    def test_unknown_identity(self, store):
        device = DeviceHandle(path="/dev/sdz", model="  ", serial="a/b")
        session_dir = store.create_session_dir(device, now=datetime.datetime(2026, 1, 1))
        assert os.path.basename(session_dir) == "unknown_UNKNOWN_a_b_20260101T000000"


class TestSaveAndLoad:

    def test_save_round_trip(self, store):
        # GIVEN: A state record.
        state = new_state(store)
        state.baseline_count = 4

        # WHEN: It is saved and loaded back.
        store.save(state)
        loaded = store.load(state.session_dir)

        # THEN: Everything survives and updated_at was stamped.
        assert loaded.device == DEVICE
        assert loaded.phase == Phase.SMART_SHORT_TEST
        assert loaded.baseline_count == 4
        assert loaded.updated_at
        assert not [f for f in os.listdir(state.session_dir) if f.startswith('.tmp_')]

    def test_no_write_after_completed(self, store):
        # GIVEN: A session that reached its terminal phase.
        state = new_state(store, phase=Phase.COMPLETED)
        store.save(state)

        # WHEN / THEN: Any further save is refused and the record is unchanged.
        state.phase = Phase.COMPARE
        with pytest.raises(SessionStateError):
            store.save(state)
        assert store.load(state.session_dir).phase == Phase.COMPLETED

    def test_failed_write_keeps_previous_record(self, store):
        # GIVEN: A saved record.
        state = new_state(store)
        store.save(state)

        # WHEN: The replace step fails midway.
        state.phase = Phase.BADBLOCKS
        with patch('controllers.session_store.os.replace', side_effect=OSError("disk full")):
            with pytest.raises(SessionStateError):
                store.save(state)

        # THEN: The old record is intact and no temp file is left behind.
        assert store.load(state.session_dir).phase == Phase.SMART_SHORT_TEST
        assert not [f for f in os.listdir(state.session_dir) if f.startswith('.tmp_')]


class TestLoadIncomplete:

    def test_returns_most_recent_incomplete(self, store):
        # GIVEN: An older and a newer incomplete session, plus a completed one.
        older = new_state(store, phase=Phase.BADBLOCKS, started_at="2026-01-01T10:00:00",
                          stamp=datetime.datetime(2026, 1, 1, 10))
        newer = new_state(store, phase=Phase.SMART_LONG_TEST, started_at="2026-01-02T10:00:00",
                          stamp=datetime.datetime(2026, 1, 2, 10))
        done = new_state(store, phase=Phase.COMPLETED, started_at="2026-01-03T10:00:00",
                         stamp=datetime.datetime(2026, 1, 3, 10))
        for state in (older, newer, done):
            store.save(state)

        # WHEN / THEN: The newest incomplete session wins.
        found = store.load_incomplete("/dev/sda")
        assert found.session_dir == newer.session_dir
        assert found.phase == Phase.SMART_LONG_TEST

    def test_ignores_other_devices(self, store):
        store.save(new_state(store))
        assert store.load_incomplete("/dev/sdb") is None

    def test_skips_corrupt_records(self, store, tmp_path):
        # GIVEN: One corrupt record and one directory without a record.
        bad_dir = tmp_path / "ata_X_Y_20260101T000000"
        bad_dir.mkdir()
        (bad_dir / "session_state.json").write_text("{not json")
        (tmp_path / "empty_dir").mkdir()
        (tmp_path / "stray_file.txt").write_text("")
        good = new_state(store)
        store.save(good)

        # WHEN / THEN: Only the valid record is considered.
        assert store.load_incomplete("/dev/sda").session_dir == good.session_dir

    def test_missing_log_root(self, tmp_path):
        assert SessionStore(str(tmp_path / "nope")).load_incomplete("/dev/sda") is None


class TestSnapshots:

    def test_snapshot_round_trip(self, store):
        # GIVEN: A snapshot with attributes and a latest self-test entry.
        state = new_state(store)
        snapshot = DeviceSnapshot(
            captured_at="2026-01-01T10:00:00",
            attributes={5: AttributeReading(5, "Reallocated_Sector_Ct", 0), 194: AttributeReading(194, "Temperature_Celsius", 35)},
            status_code=0, self_test_count=3, latest_self_test=SelfTestEntry(1, True, "Completed without error"),
            polling_minutes_short=2, polling_minutes_extended=120, smart_enabled=True, raw={"json_format_version": [1, 0]},
        )

        # WHEN: It is saved and reloaded.
        path = store.save_snapshot(state.session_dir, SNAPSHOT_INITIAL, snapshot)
        loaded = store.load_snapshot(state.session_dir, SNAPSHOT_INITIAL)

        # THEN: The file is the initial snapshot and the value is equal.
        assert os.path.basename(path) == "smart_initial.json"
        assert loaded == snapshot
        assert loaded.raw == snapshot.raw
        with open(path) as f:
            assert json.load(f)['attributes']['5'] == {'name': 'Reallocated_Sector_Ct', 'raw': 0}

    def test_progress_snapshot_overwritten(self, store):
        state = new_state(store)
        store.save_snapshot(state.session_dir, SNAPSHOT_PROGRESS, DeviceSnapshot(captured_at="t1", status_code=249))
        store.save_snapshot(state.session_dir, SNAPSHOT_PROGRESS, DeviceSnapshot(captured_at="t2", status_code=0))
        assert store.load_snapshot(state.session_dir, SNAPSHOT_PROGRESS).captured_at == "t2"

    def test_missing_and_corrupt_snapshot(self, store):
        state = new_state(store)
        assert store.load_snapshot(state.session_dir, SNAPSHOT_INITIAL) is None
        with open(store.snapshot_path(state.session_dir, SNAPSHOT_INITIAL), 'w') as f:
            f.write("[]")
        assert store.load_snapshot(state.session_dir, SNAPSHOT_INITIAL) is None


def test_phase_terminal():
    assert Phase.COMPLETED.is_terminal
    assert not Phase.COMPARE.is_terminal
