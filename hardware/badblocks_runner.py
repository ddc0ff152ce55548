# Directory: hardware
# Filename: badblocks_runner.py

import logging
import re
from dataclasses import dataclass
from typing import List, Optional

from hardware.command_runner import CommandRunner

logger = logging.getLogger(__name__)

_PASS_COMPLETED = re.compile(r'Pass completed,\s*(\d+)\s+bad blocks found', re.IGNORECASE)


@dataclass
class SurfaceScanResult:
    exit_code: int
    bad_blocks_found: Optional[int] = None

    @property
    def clean(self) -> bool:
        return self.exit_code == 0 and not self.bad_blocks_found


class BadblocksRunner:
    """Destructive write/verify pass over the whole device via `badblocks -wsv`."""

    def __init__(self, runner: CommandRunner, badblocks_path: str = "badblocks"):
        self.runner = runner
        self.badblocks = badblocks_path

    def build_command(self, device_path: str, block_size: int) -> List[str]:
        return [self.badblocks, '-b', str(block_size), '-wsv', device_path]

    def run(self, device_path: str, block_size: int) -> SurfaceScanResult:
        """
        Runs the scan, streaming its output to the console and the audit log.

        A nonzero exit code or a nonzero bad block count is reported in the
        result, never raised; the caller decides how loud to be about it.

        Raises:
            ProbeError: If badblocks can't be started.
        """
        found: List[int] = []

        def watch(line: str) -> None:
            match = _PASS_COMPLETED.search(line)
            if match:
                found.append(int(match.group(1)))

        logger.info(f"Starting surface scan of {device_path} with block size {block_size}. This will take hours.")
        exit_code = self.runner.stream(self.build_command(device_path, block_size), on_line=watch)
        result = SurfaceScanResult(exit_code=exit_code, bad_blocks_found=found[-1] if found else None)
        logger.debug(f"Surface scan finished: {result}")
        return result
