# Directory: utils
# Filename: logging_config.py

import logging
import sys
import os
from typing import Dict, Optional, Union

# Console and audit-log line format (without logger name for cleaner output)
DEFAULT_LOG_FORMAT = '%(asctime)s.%(msecs)03d  %(levelname)-8s  %(message)s'
DEFAULT_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# --- Configuration for Specific Logger Levels ---
# Keys are logger names. 'root' is the default for unlisted loggers.
LOG_LEVEL_CONFIG: Dict[str, Union[int, str]] = {
    "root": logging.INFO,
    "AcceptanceTest": logging.INFO,
    "AcceptanceTest.FSM": logging.INFO,
    "AcceptanceTest.Poller": logging.INFO,
    "hardware": logging.INFO,
    "controllers.session_store": logging.INFO,
    "transitions": logging.WARNING,
}

# The audit log is append-only; a resumed session keeps writing to the same file.
LOG_FILE_MODE = "a"

ENABLE_CONSOLE_LOGGING = True


def _report_setup_problem(message: str, console_ready: bool, exc_info: bool = False) -> None:
    """Route a set-up problem to the root logger if it can reach the console, else to stderr."""
    if console_ready:
        if exc_info:
            logging.getLogger().error(message, exc_info=True)
        else:
            logging.getLogger().warning(message)
    else:
        print(message, file=sys.stderr)


def attach_file_handler(root_logger: logging.Logger, formatter: logging.Formatter,
                         log_file_path: str, log_file_mode: str, console_ready: bool) -> Optional[logging.Handler]:
    try:
        log_dir = os.path.dirname(log_file_path)
        if log_dir and not os.path.exists(log_dir):
            os.makedirs(log_dir)
        file_handler = logging.FileHandler(log_file_path, mode=log_file_mode, encoding='utf-8')
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)
        return file_handler
    except Exception as e:
        _report_setup_problem(f"Error setting up file logging to '{log_file_path}': {e}", console_ready, exc_info=True)
        return None


def _apply_logger_levels(levels: Dict[str, Union[int, str]], console_ready: bool) -> None:
    for logger_name, level in levels.items():
        if logger_name.lower() == "root":
            continue
        numeric_level = getattr(logging, level.upper(), None) if isinstance(level, str) else level
        if not isinstance(numeric_level, int):
            _report_setup_problem(
                f"Warning: Could not set log level for '{logger_name}' to '{level}': Invalid log level",
                console_ready,
            )
            continue
        logging.getLogger(logger_name).setLevel(numeric_level)


def setup_logging(
    default_log_level=None,
    log_format=DEFAULT_LOG_FORMAT,
    date_format=DEFAULT_DATE_FORMAT,
    log_level_overrides=None,
    log_to_console=ENABLE_CONSOLE_LOGGING,
    log_file_path=None,
    log_file_mode=LOG_FILE_MODE
):
    """
    Configures the Python logging system.

    Called once at start-up. The session audit log file is attached later by
    `AuditLog`, once the session directory is known. Handlers left on the
    root logger by an earlier call are replaced.

    Args:
        default_log_level: Root level; falls back to LOG_LEVEL_CONFIG['root'].
        log_level_overrides: Extra {logger name: level} entries (names or ints).
        log_to_console: Echo records to stdout.
        log_file_path: Audit log file, created along with its directory.
        log_file_mode: "a" to append (default) or "w" to truncate.
    """
    effective_root_level = default_log_level if default_log_level is not None else LOG_LEVEL_CONFIG.get("root", logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(effective_root_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(log_format, datefmt=date_format)

    if log_to_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    if log_file_path:
        attach_file_handler(root_logger, formatter, log_file_path, log_file_mode, log_to_console)

    combined_log_levels = LOG_LEVEL_CONFIG.copy()
    if log_level_overrides:
        combined_log_levels.update(log_level_overrides)
    _apply_logger_levels(combined_log_levels, log_to_console)

    file_logging_status = f"'{log_file_path}'" if log_file_path else "Disabled"
    logging.getLogger("LoggingConfig").debug(
        f"Logging configured. Root level: {logging.getLevelName(root_logger.level)}. "
        f"Console: {log_to_console}, File: {file_logging_status}."
    )
