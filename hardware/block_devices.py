# Directory: hardware
# Filename: block_devices.py

import json
import logging
import os
import stat
from typing import List, Tuple

from hardware.command_runner import CommandRunner
from hardware.device_models import DeviceSummary, ProbeError

logger = logging.getLogger(__name__)


def normalize_device_path(name_or_path: str) -> str:
    """'sda' -> '/dev/sda'; absolute paths are returned unchanged."""
    name_or_path = name_or_path.strip()
    if name_or_path.startswith('/'):
        return name_or_path
    return os.path.join('/dev', name_or_path)


def is_block_device(device_path: str) -> bool:
    try:
        return stat.S_ISBLK(os.stat(device_path).st_mode)
    except OSError:
        return False


def list_block_devices(runner: CommandRunner) -> List[DeviceSummary]:
    """Whole disks reported by lsblk, for interactive selection."""
    result = runner.run(
        ['lsblk', '-J', '-d', '-o', 'NAME,PATH,HCTL,MODEL,SERIAL,SIZE,TYPE,TRAN'],
        title="Available Block Devices",
    )
    if not result.ok:
        raise ProbeError(f"lsblk failed with exit code {result.returncode}")
    try:
        devices = json.loads(result.stdout).get('blockdevices', [])
    except (json.JSONDecodeError, AttributeError) as e:
        raise ProbeError(f"Could not parse lsblk output: {e}") from e

    summaries = []
    for dev in devices:
        if dev.get('type') != 'disk':
            continue
        name = dev.get('name') or ""
        summaries.append(DeviceSummary(
            name=name,
            path=dev.get('path') or normalize_device_path(name),
            model=(dev.get('model') or "").strip(),
            serial=(dev.get('serial') or "").strip(),
            size=dev.get('size') or "",
            hctl=dev.get('hctl') or "",
            transport=dev.get('tran') or "",
        ))
    return summaries


def find_mountpoints(runner: CommandRunner, device_path: str) -> List[Tuple[str, str]]:
    """
    (node, mountpoint) pairs for the device and every partition beneath it.

    Raises:
        ProbeError: If lsblk can't inspect the device.
    """
    result = runner.run(['lsblk', '-J', '-o', 'NAME,PATH,MOUNTPOINT', device_path], title=f"Mount check {device_path}")
    if not result.ok:
        raise ProbeError(f"lsblk could not inspect {device_path} (exit code {result.returncode})")
    try:
        tree = json.loads(result.stdout).get('blockdevices', [])
    except (json.JSONDecodeError, AttributeError) as e:
        raise ProbeError(f"Could not parse lsblk output: {e}") from e

    mounted: List[Tuple[str, str]] = []
    pending = list(tree)
    while pending:
        node = pending.pop()
        # lsblk >= 2.37 reports 'mountpoints' (list) next to 'mountpoint'
        points = node.get('mountpoints') or [node.get('mountpoint')]
        for point in points:
            if point:
                mounted.append((node.get('path') or node.get('name', ''), point))
        pending.extend(node.get('children') or [])
    return mounted


def get_sector_sizes(runner: CommandRunner, device_path: str, fallback: int = 512) -> Tuple[int, int]:
    """
    Physical and logical sector size via blockdev; each falls back to
    `fallback` when blockdev can't answer.
    """
    sizes = []
    for flag in ('--getpbsz', '--getss'):
        try:
            result = runner.run(['blockdev', flag, device_path], title=f"blockdev {flag}")
            value = int(result.stdout.strip()) if result.ok else fallback
        except (ProbeError, ValueError) as e:
            logger.warning(f"blockdev {flag} unreadable ({e}); assuming {fallback} bytes.")
            value = fallback
        sizes.append(value if value > 0 else fallback)
    physical, logical = sizes
    return physical, logical
