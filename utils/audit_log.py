# Directory: utils
# Filename: audit_log.py

import logging
import logging.handlers
from typing import List, Optional, Sequence

from utils.logging_config import DEFAULT_LOG_FORMAT, DEFAULT_DATE_FORMAT, attach_file_handler

RAW_LOGGER_NAME = "AcceptanceTest.Raw"
AUDIT_LOGGER_NAME = "AcceptanceTest.Audit"

# Records produced before the session directory exists are held in memory.
_PENDING_CAPACITY = 100000


class AuditLog:
    """
    Append-only, human-readable record of one acceptance-test session.

    Two streams end up in the same file:

    * Every record that reaches the root logger (decisions, commands, state
      transitions, warnings and errors) in the usual timestamped format, so the
      console and the file tell the same story.
    * Raw tool output (smartctl dumps, badblocks progress) through a
      non-propagating logger with a bare '%(message)s' format. That output is
      file-only; echoing multi-page smartctl dumps to the console helps nobody.

    Until `attach()` is called both streams are buffered, so the device
    identification done before the session directory is named still lands in
    the audit log.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger if logger else logging.getLogger(AUDIT_LOGGER_NAME)
        self.log_file_path: Optional[str] = None

        self._raw_logger = logging.getLogger(RAW_LOGGER_NAME)
        self._raw_logger.propagate = False
        self._raw_logger.setLevel(logging.INFO)

        self._handlers: List[logging.Handler] = []
        self._pending_root = logging.handlers.MemoryHandler(_PENDING_CAPACITY, flushLevel=logging.CRITICAL + 1)
        self._pending_raw = logging.handlers.MemoryHandler(_PENDING_CAPACITY, flushLevel=logging.CRITICAL + 1)
        logging.getLogger().addHandler(self._pending_root)
        self._raw_logger.addHandler(self._pending_raw)

    @property
    def attached(self) -> bool:
        return self.log_file_path is not None

    def attach(self, log_file_path: str) -> None:
        """Start writing to `log_file_path` (appending) and flush anything buffered so far."""
        if self.attached:
            self.detach()
        root_logger = logging.getLogger()
        formatter = logging.Formatter(DEFAULT_LOG_FORMAT, datefmt=DEFAULT_DATE_FORMAT)
        file_handler = attach_file_handler(root_logger, formatter, log_file_path, "a", console_ready=True)
        raw_handler = attach_file_handler(self._raw_logger, logging.Formatter('%(message)s'), log_file_path, "a", console_ready=True)

        for pending, target in ((self._pending_root, file_handler), (self._pending_raw, raw_handler)):
            if target is not None:
                pending.setTarget(target)
                pending.flush()
            pending.setTarget(None)
            pending.buffer.clear()
            pending.close()
        root_logger.removeHandler(self._pending_root)
        self._raw_logger.removeHandler(self._pending_raw)

        self._handlers = [h for h in (file_handler, raw_handler) if h is not None]
        self.log_file_path = log_file_path
        self.logger.info(f"Audit log: {log_file_path}")

    def detach(self) -> None:
        root_logger = logging.getLogger()
        for handler in self._handlers:
            root_logger.removeHandler(handler)
            self._raw_logger.removeHandler(handler)
            handler.close()
        self._handlers = []
        for pending in (self._pending_root, self._pending_raw):
            root_logger.removeHandler(pending)
            self._raw_logger.removeHandler(pending)
        self.log_file_path = None

    # --- Record kinds ---

    def command(self, argv: Sequence[str]) -> None:
        self.logger.info(f"[CMD] {' '.join(argv)}")

    def raw_output(self, title: str, text: str) -> None:
        """Write a block of tool output verbatim, under a section heading."""
        self._raw_logger.info(f"\n=== {title} ===\n{text.rstrip()}\n")

    def raw_line(self, line: str) -> None:
        self._raw_logger.info(line.rstrip("\n"))

    def decision(self, message: str) -> None:
        self.logger.info(f"[DECISION] {message}")

    def transition(self, source: str, dest: str, event_name: str) -> None:
        self.logger.info(f"[PHASE] {source} -> {dest} (Event: {event_name})")

    def banner(self, lines: Sequence[str]) -> None:
        self.logger.info("=" * 40)
        for line in lines:
            self.logger.info(line)
        self.logger.info("=" * 40)
