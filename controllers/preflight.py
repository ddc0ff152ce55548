# Directory: controllers
# Filename: preflight.py

import logging
import os
import re
import shutil
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from hardware.block_devices import find_mountpoints, is_block_device
from hardware.command_runner import CommandRunner
from hardware.device_models import ProbeError
from utils.settings import ACCEPTANCE_SETTINGS

logger = logging.getLogger(__name__)


class PreconditionError(Exception):
    """Raised when the host or the target device is not fit for a destructive session."""
    pass


def check_root(geteuid: Callable[[], int] = os.geteuid) -> None:
    if geteuid() != 0:
        raise PreconditionError("This tool must be run as root (sudo).")


def check_session_wrapper(environ: Optional[Mapping[str, str]] = None) -> None:
    """Hours-long runs must survive a dropped SSH connection."""
    environ = os.environ if environ is None else environ
    wrappers: Sequence[str] = ACCEPTANCE_SETTINGS['session_wrapper_env']
    if not any(environ.get(name) for name in wrappers):
        raise PreconditionError(
            "Not running inside tmux or screen. Start a tmux/screen session first so the test survives a disconnect."
        )


def missing_commands(required: Optional[Dict[str, str]] = None,
                     which: Callable[[str], Optional[str]] = shutil.which) -> List[Tuple[str, str]]:
    required = required if required is not None else ACCEPTANCE_SETTINGS['required_commands']
    return [(command, package) for command, package in required.items() if which(command) is None]


def install_hint(missing: List[Tuple[str, str]]) -> str:
    packages: List[str] = []
    for _, package in missing:
        if package not in packages:
            packages.append(package)
    return f"apt install {' '.join(packages)}"


def check_commands(required: Optional[Dict[str, str]] = None,
                   which: Callable[[str], Optional[str]] = shutil.which) -> None:
    missing = missing_commands(required, which)
    if missing:
        names = ', '.join(command for command, _ in missing)
        hint = install_hint(missing)
        print(f"Missing required commands: {names}")
        print(f"Install them with: {hint}")
        raise PreconditionError(f"Missing required commands: {names} ({hint})")


def parse_smartctl_version(text: str) -> Optional[Tuple[int, int]]:
    match = re.search(r'smartctl\s+(\d+)\.(\d+)', text)
    return (int(match.group(1)), int(match.group(2))) if match else None


def check_smartctl_version(runner: CommandRunner, smartctl_path: str = "smartctl") -> Tuple[int, int]:
    minimum = tuple(ACCEPTANCE_SETTINGS['minimum_smartctl_version'])
    try:
        result = runner.run([smartctl_path, '--version'], title="smartctl version")
    except ProbeError as e:
        raise PreconditionError(str(e)) from e
    version = parse_smartctl_version(result.stdout)
    if version is None:
        raise PreconditionError("Could not determine the smartctl version.")
    if version < minimum:
        raise PreconditionError(
            f"smartctl {version[0]}.{version[1]} is too old; JSON output needs {minimum[0]}.{minimum[1]} or newer."
        )
    logger.debug(f"smartctl version {version[0]}.{version[1]}")
    return version


def check_block_device(device_path: str) -> None:
    if not is_block_device(device_path):
        raise PreconditionError(f"{device_path} is not a block device.")


def check_not_mounted(runner: CommandRunner, device_path: str) -> None:
    try:
        mounted = find_mountpoints(runner, device_path)
    except ProbeError as e:
        raise PreconditionError(str(e)) from e
    if mounted:
        details = ', '.join(f"{node} on {point}" for node, point in mounted)
        raise PreconditionError(f"{device_path} is in use: {details}. Unmount it before testing.")


def run_host_checks(runner: CommandRunner, environ: Optional[Mapping[str, str]] = None) -> None:
    """Checks that don't depend on the target device, in the order an operator would fix them."""
    check_root()
    check_session_wrapper(environ)
    check_commands()
    check_smartctl_version(runner)


def run_device_checks(runner: CommandRunner, device_path: str) -> None:
    check_block_device(device_path)
    check_not_mounted(runner, device_path)
    logger.info(f"Preflight checks passed for {device_path}.")
