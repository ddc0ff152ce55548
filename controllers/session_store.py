# Directory: controllers
# Filename: session_store.py

import datetime
import json
import logging
import os
import re
import tempfile
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from hardware.device_models import DeviceHandle, DeviceSnapshot, timestamp_now
from utils.settings import ACCEPTANCE_SETTINGS

logger = logging.getLogger(__name__)

SNAPSHOT_INITIAL = "smart_initial"
SNAPSHOT_FINAL = "smart_final"
SNAPSHOT_PROGRESS = "smart_progress"


class SessionStateError(Exception):
    """Raised when a session record can't be written, e.g. after it reached `completed`."""
    pass


class Phase(str, Enum):
    INIT = "init"
    SMART_SHORT_TEST = "smart_short_test"
    BADBLOCKS = "badblocks"
    SMART_LONG_TEST = "smart_long_test"
    COMPARE = "compare"
    COMPLETED = "completed"

    @property
    def is_terminal(self) -> bool:
        return self is Phase.COMPLETED


@dataclass
class SessionState:
    device: DeviceHandle
    phase: Phase
    session_dir: str
    started_at: str
    updated_at: str = ""
    baseline_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'device': self.device.to_dict(),
            'phase': self.phase.value,
            'session_dir': self.session_dir,
            'started_at': self.started_at,
            'updated_at': self.updated_at,
            'baseline_count': self.baseline_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SessionState':
        return cls(
            device=DeviceHandle.from_dict(data['device']),
            phase=Phase(data['phase']),
            session_dir=data['session_dir'],
            started_at=data['started_at'],
            updated_at=data.get('updated_at', ""),
            baseline_count=int(data.get('baseline_count', 0)),
        )


def _safe_component(value: str) -> str:
    cleaned = re.sub(r'[^A-Za-z0-9.-]+', '_', value.strip()).strip('_')
    return cleaned or "UNKNOWN"


def _atomic_write_json(path: str, payload: Dict[str, Any]) -> None:
    directory = os.path.dirname(path)
    fd, tmp_path = tempfile.mkstemp(prefix='.tmp_', suffix='.json', dir=directory)
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(payload, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


class SessionStore:
    """
    Durable per-session records under the log root.

    Each session gets its own directory named after the device; the state
    record and the snapshot files inside it are always replaced atomically,
    so an interrupted write leaves the previous version intact.
    """

    def __init__(self, log_root: str, state_file_name: Optional[str] = None):
        self.log_root = log_root
        self.state_file_name = state_file_name or ACCEPTANCE_SETTINGS['session_state_file']

    def create_session_dir(self, device: DeviceHandle, now: Optional[datetime.datetime] = None) -> str:
        stamp = (now or datetime.datetime.now()).strftime('%Y%m%dT%H%M%S')
        name = f"{device.bus_type.value}_{_safe_component(device.model)}_{_safe_component(device.serial)}_{stamp}"
        session_dir = os.path.join(self.log_root, name)
        try:
            os.makedirs(session_dir, exist_ok=True)
        except OSError as e:
            raise SessionStateError(f"Could not create session directory '{session_dir}': {e}") from e
        logger.debug(f"Session directory: {session_dir}")
        return session_dir

    def state_path(self, session_dir: str) -> str:
        return os.path.join(session_dir, self.state_file_name)

    def _read_state(self, path: str) -> Optional[SessionState]:
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return SessionState.from_dict(json.load(f))
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, AttributeError, KeyError, TypeError, ValueError) as e:
            logger.debug(f"Ignoring unreadable session record '{path}': {e}")
            return None

    def save(self, state: SessionState) -> None:
        """
        Persists the state record, stamping `updated_at`.

        Raises:
            SessionStateError: If the record on disk is already `completed`.
        """
        path = self.state_path(state.session_dir)
        existing = self._read_state(path)
        if existing is not None and existing.phase.is_terminal:
            raise SessionStateError(f"Session in '{state.session_dir}' is already completed; refusing to overwrite it.")
        state.updated_at = timestamp_now()
        try:
            _atomic_write_json(path, state.to_dict())
        except OSError as e:
            raise SessionStateError(f"Could not write session state to '{path}': {e}") from e
        logger.debug(f"Persisted phase '{state.phase.value}' to {path}")

    def load(self, session_dir: str) -> Optional[SessionState]:
        return self._read_state(self.state_path(session_dir))

    def list_sessions(self) -> List[SessionState]:
        if not os.path.isdir(self.log_root):
            return []
        sessions = []
        for entry in sorted(os.listdir(self.log_root)):
            session_dir = os.path.join(self.log_root, entry)
            if not os.path.isdir(session_dir):
                continue
            state = self._read_state(self.state_path(session_dir))
            if state is not None:
                sessions.append(state)
        return sessions

    def load_incomplete(self, device_path: str) -> Optional[SessionState]:
        """Most recently started non-completed session for `device_path`, if any."""
        candidates = [
            s for s in self.list_sessions()
            if s.device.path == device_path and not s.phase.is_terminal
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda s: s.started_at)

    # --- Snapshots ---

    def snapshot_path(self, session_dir: str, name: str) -> str:
        return os.path.join(session_dir, f"{name}.json")

    def save_snapshot(self, session_dir: str, name: str, snapshot: DeviceSnapshot) -> str:
        path = self.snapshot_path(session_dir, name)
        try:
            _atomic_write_json(path, snapshot.to_dict())
        except OSError as e:
            raise SessionStateError(f"Could not write snapshot '{path}': {e}") from e
        return path

    def load_snapshot(self, session_dir: str, name: str) -> Optional[DeviceSnapshot]:
        path = self.snapshot_path(session_dir, name)
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return DeviceSnapshot.from_dict(json.load(f))
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Snapshot '{path}' is unreadable: {e}")
            return None
