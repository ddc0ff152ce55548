# Directory: tests/
# Filename: test_logging.py

#############################################################
##
## This test file is designed to systematically cover every function
## in utils/logging_config.py.
##
## Run this test with the following command:
## pytest tests/test_logging.py --cov=utils.logging_config --cov-report term-missing
##
#############################################################

import pytest
import logging
import os
from unittest.mock import patch, MagicMock

from utils.logging_config import setup_logging, attach_file_handler, DEFAULT_LOG_FORMAT


@pytest.fixture(autouse=True)
def restore_root_logger():
    """setup_logging replaces root handlers; put the originals back afterwards."""
    root = logging.getLogger()
    saved_handlers = root.handlers[:]
    saved_level = root.level
    yield
    for handler in root.handlers[:]:
        if handler not in saved_handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in saved_handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(saved_level)


class TestLoggingConfig:
    """Tests for the setup_logging function in utils/logging_config.py"""

    def test_setup_logging_file_handler_exception_with_console(self):
        """
        Tests that an error is logged to the console logger if creating the
        file handler fails.
        """
        # GIVEN: We patch getLogger to control the logger instance
        # AND patch FileHandler to raise an exception.
        with patch('utils.logging_config.logging.getLogger') as mock_get_logger, \
             patch('utils.logging_config.os.makedirs'), \
             patch('utils.logging_config.logging.FileHandler', side_effect=OSError("Permission Denied")):

            mock_logger_instance = MagicMock()
            mock_get_logger.return_value = mock_logger_instance

            # WHEN: setup_logging is called with a file path.
            setup_logging(log_file_path="/unwritable/path/test.log")

            # THEN: The logger's error method should have been called.
            mock_logger_instance.error.assert_called_once()
            call_args, call_kwargs = mock_logger_instance.error.call_args
            assert "Error setting up file logging" in call_args[0]
            assert "Permission Denied" in call_args[0]
            assert call_kwargs.get('exc_info') is True

    def test_setup_logging_file_handler_exception_no_console(self, capsys):
        """
        Tests that an error is printed to stderr if creating the file handler
        fails AND console logging is disabled.
        """
        # GIVEN: FileHandler will fail, and console logging is off.
        with patch('utils.logging_config.logging.FileHandler', side_effect=OSError("Permission Denied")), \
             patch('utils.logging_config.os.makedirs'):
            # WHEN: setup_logging is called.
            setup_logging(log_to_console=False, log_file_path="/unwritable/path/test.log")

            # THEN: The error message should be printed to stderr.
            captured = capsys.readouterr()
            assert "Error setting up file logging" in captured.err
            assert "Permission Denied" in captured.err

    def test_setup_logging_invalid_level_with_console(self):
        """
        Tests that a warning is logged if a logger level override is invalid.
        """
        # GIVEN: An invalid log level override and a mocked logger.
        invalid_overrides = {'some_logger': 'NOT_A_LEVEL'}
        with patch('utils.logging_config.logging.getLogger') as mock_get_logger:
            mock_logger_instance = MagicMock()
            mock_get_logger.return_value = mock_logger_instance

            # WHEN: setup_logging is called with the invalid override.
            setup_logging(log_level_overrides=invalid_overrides)

            # THEN: A warning message should have been logged.
            mock_logger_instance.warning.assert_called_once()
            call_args, _ = mock_logger_instance.warning.call_args
            assert "Could not set log level for 'some_logger'" in call_args[0]
            assert "NOT_A_LEVEL" in call_args[0]

    def test_setup_logging_invalid_level_no_console(self, capsys):
        """
        Tests that a warning is printed to stderr for an invalid logger level
        when console logging is disabled.
        """
        # GIVEN: An invalid override and console logging is off.
        invalid_overrides = {'another_logger': None} # None is also invalid

        # WHEN: setup_logging is called.
        setup_logging(log_level_overrides=invalid_overrides, log_to_console=False)

        # THEN: The warning should be printed to stderr.
        captured = capsys.readouterr()
        assert "Could not set log level for 'another_logger'" in captured.err

    def test_setup_logging_creates_directory(self, tmp_path):
        """
        Tests that the audit log's directory is created when it doesn't exist.
        """
        # GIVEN: A log path inside a directory that doesn't exist yet.
        log_file = tmp_path / "sessions" / "ata_MODEL_SERIAL" / "bhc.log"

        # WHEN: setup_logging is called with that path and something is logged.
        setup_logging(log_to_console=False, log_file_path=str(log_file))
        logging.getLogger("AcceptanceTest").info("hello audit")

        # THEN: The directory and file exist and hold the record.
        assert os.path.isdir(log_file.parent)
        assert "hello audit" in log_file.read_text()

    def test_setup_logging_appends_to_existing_log(self, tmp_path):
        """
        Tests that a resumed session keeps the earlier audit log content.
        """
        # GIVEN: An audit log with content from a previous run.
        log_file = tmp_path / "bhc.log"
        log_file.write_text("previous run\n")

        # WHEN: Logging is configured against the same file.
        setup_logging(log_to_console=False, log_file_path=str(log_file))
        logging.getLogger("AcceptanceTest").info("resumed run")

        # THEN: Both runs are in the file, in order.
        content = log_file.read_text()
        assert content.index("previous run") < content.index("resumed run")

    def test_setup_logging_applies_logger_levels(self):
        # GIVEN / WHEN: Default configuration plus one override.
        setup_logging(log_to_console=False, log_level_overrides={'hardware.smartctl_probe': 'DEBUG'})

        # THEN: The transitions library is quietened and the override applied.
        assert logging.getLogger('transitions').level == logging.WARNING
        assert logging.getLogger('hardware.smartctl_probe').level == logging.DEBUG

    def test_setup_logging_replaces_existing_handlers(self):
        # GIVEN: A stray handler on the root logger.
        stray = logging.NullHandler()
        logging.getLogger().addHandler(stray)

        # WHEN: setup_logging runs with console output only.
        setup_logging()

        # THEN: Only the console handler remains.
        handlers = logging.getLogger().handlers
        assert stray not in handlers
        assert len(handlers) == 1
        assert isinstance(handlers[0], logging.StreamHandler)


class TestAttachFileHandler:

    def test_attach_file_handler_returns_handler(self, tmp_path):
        # GIVEN: A dedicated logger and a formatter.
        target = logging.getLogger("test.attach_file_handler")
        formatter = logging.Formatter(DEFAULT_LOG_FORMAT)

        # WHEN: A file handler is attached.
        handler = attach_file_handler(target, formatter, str(tmp_path / "out.log"), "a", console_ready=False)

        # THEN: It is installed on that logger.
        try:
            assert handler in target.handlers
            assert handler.formatter is formatter
        finally:
            target.removeHandler(handler)
            handler.close()

    def test_attach_file_handler_failure_returns_none(self, capsys):
        # GIVEN: FileHandler can't open the file.
        with patch('utils.logging_config.logging.FileHandler', side_effect=PermissionError("denied")), \
             patch('utils.logging_config.os.makedirs'):
            # WHEN: Attaching.
            handler = attach_file_handler(logging.getLogger("test.fail"), logging.Formatter(), "/root/x/bhc.log", "a", console_ready=False)

        # THEN: No handler, and the problem is reported on stderr.
        assert handler is None
        assert "denied" in capsys.readouterr().err
