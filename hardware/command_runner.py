# Directory: hardware
# Filename: command_runner.py

import logging
import subprocess
import sys
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, TYPE_CHECKING

from hardware.device_models import ProbeError

if TYPE_CHECKING: # pragma: no cover
    from utils.audit_log import AuditLog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandResult:
    argv: List[str]
    returncode: int
    stdout: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner:
    """
    Runs the external diagnostic tools.

    Every command line and its complete output is written to the audit log
    before the caller gets to look at it, so the log shows exactly what the
    tool said even when parsing later fails.
    """

    def __init__(self, audit: 'AuditLog'):
        self.audit = audit

    def run(self, argv: Sequence[str], title: Optional[str] = None, record_output: bool = True) -> CommandResult:
        """
        Runs a command to completion, merging stderr into stdout.

        Args:
            argv: The command and its arguments.
            title: Section heading for the raw output in the audit log.
            record_output: Set False for high-frequency polling output that is
                           persisted elsewhere.

        Returns:
            The exit code and combined output. A nonzero exit is not an error
            here; smartctl in particular uses its exit status as a bitmask.

        Raises:
            ProbeError: If the executable cannot be started.
        """
        argv = list(argv)
        self.audit.command(argv)
        try:
            completed = subprocess.run(
                argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding='utf-8',
                errors='replace',
                check=False,
            )
        except FileNotFoundError as e:
            raise ProbeError(f"'{argv[0]}' not found: {e}") from e
        except OSError as e:
            raise ProbeError(f"Could not run '{' '.join(argv)}': {e}") from e

        output = completed.stdout or ""
        if record_output:
            self.audit.raw_output(title or ' '.join(argv), output)
        logger.debug(f"'{' '.join(argv)}' exited with {completed.returncode}")
        return CommandResult(argv=argv, returncode=completed.returncode, stdout=output)

    def stream(self, argv: Sequence[str], on_line: Optional[Callable[[str], None]] = None) -> int:
        """
        Runs a long command, copying each output line to the console and the
        audit log as it arrives.

        Returns:
            The command's exit code.

        Raises:
            ProbeError: If the executable cannot be started.
        """
        argv = list(argv)
        self.audit.command(argv)
        try:
            process = subprocess.Popen(
                argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding='utf-8',
                errors='replace',
            )
        except FileNotFoundError as e:
            raise ProbeError(f"'{argv[0]}' not found: {e}") from e
        except OSError as e:
            raise ProbeError(f"Could not run '{' '.join(argv)}': {e}") from e

        assert process.stdout is not None
        with process.stdout:
            for line in process.stdout:
                sys.stdout.write(line)
                sys.stdout.flush()
                self.audit.raw_line(line)
                if on_line:
                    on_line(line)
        return process.wait()
