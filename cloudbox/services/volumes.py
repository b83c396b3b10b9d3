"""
Removable volume discovery.

Lists mounted partitions of removable (or external sd*) disks, skipping any
disk that hosts the running system.
"""
import json
import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


SYSTEM_MOUNTS = {"/", "/boot", "/boot/efi", "/boot/firmware", "/efi", "/home", "/var", "/usr", "/tmp", "[SWAP]"}

# Only consulted by the /proc/mounts fallback
REMOVABLE_MOUNT_ROOTS = ("/media/", "/run/media/", "/mnt/")


@dataclass
class Volume:
    device: str
    mountpoint: Path
    label: str
    model: str
    filesystem: str
    size_bytes: int


def _parse_size(size) -> int:
    """Parse lsblk size ('14.9G', '512M' or raw bytes) to bytes."""
    if size is None:
        return 0
    if isinstance(size, (int, float)):
        return int(size)

    multipliers = {"K": 1024, "M": 1024 ** 2, "G": 1024 ** 3, "T": 1024 ** 4}
    size_str = str(size).upper().strip()
    for suffix, mult in multipliers.items():
        if size_str.endswith(suffix):
            try:
                return int(float(size_str[:-1]) * mult)
            except ValueError:
                return 0
    try:
        return int(size_str)
    except ValueError:
        return 0


def _is_system_mount(mountpoint: Optional[str]) -> bool:
    return bool(mountpoint) and (mountpoint in SYSTEM_MOUNTS or mountpoint.startswith("/snap/"))


def _hosts_system(disk: dict) -> bool:
    if _is_system_mount(disk.get("mountpoint")):
        return True
    return any(_hosts_system(child) for child in disk.get("children") or [])


def parse_lsblk(data: dict) -> list[Volume]:
    """Turn `lsblk -J` output into the list of mounted removable volumes."""
    volumes = []

    for disk in data.get("blockdevices", []):
        name = (disk.get("name") or "").strip()
        if not name or name.startswith("loop"):
            continue

        removable = disk.get("rm") in (True, "1", 1)
        if not removable and not name.startswith("sd"):
            continue
        if _hosts_system(disk):
            continue

        model = (disk.get("model") or "").strip() or name
        # Whole-disk filesystems have no children
        for part in disk.get("children") or [disk]:
            mountpoint = part.get("mountpoint")
            if not mountpoint:
                continue
            volumes.append(Volume(
                device=f"/dev/{part.get('name') or name}",
                mountpoint=Path(mountpoint),
                label=(part.get("label") or "").strip() or part.get("name") or name,
                model=model,
                filesystem=part.get("fstype") or "",
                size_bytes=_parse_size(part.get("size")),
            ))

    return volumes


def _parse_proc_mounts() -> list[Volume]:
    """Fallback: mounted /dev/* filesystems under the usual removable roots."""
    volumes = []
    try:
        with open("/proc/mounts") as f:
            for line in f:
                parts = line.split()
                if len(parts) < 3 or not parts[0].startswith("/dev/"):
                    continue
                device, mountpoint, fstype = parts[0], parts[1], parts[2]
                if not mountpoint.startswith(REMOVABLE_MOUNT_ROOTS):
                    continue
                try:
                    stat = os.statvfs(mountpoint)
                    size_bytes = stat.f_blocks * stat.f_frsize
                except OSError:
                    size_bytes = 0
                volumes.append(Volume(
                    device=device,
                    mountpoint=Path(mountpoint),
                    label=Path(mountpoint).name,
                    model=Path(device).name,
                    filesystem=fstype,
                    size_bytes=size_bytes,
                ))
    except OSError as e:
        logger.error(f"[Volumes] Failed to read /proc/mounts: {e}")
    return volumes


def list_removable_volumes() -> list[Volume]:
    """List mounted removable volumes."""
    try:
        result = subprocess.run(
            ["lsblk", "-J", "-b", "-o", "NAME,SIZE,MODEL,MOUNTPOINT,RM,LABEL,FSTYPE"],
            capture_output=True,
            text=True,
            timeout=5,
        )
        if result.returncode == 0:
            return parse_lsblk(json.loads(result.stdout))
        logger.warning(f"[Volumes] lsblk exited with {result.returncode}: {result.stderr.strip()}")
    except (OSError, subprocess.SubprocessError, json.JSONDecodeError) as e:
        logger.warning(f"[Volumes] lsblk failed, falling back to /proc/mounts: {e}")

    return _parse_proc_mounts()
