"""
Transfer package detection. Read-only: never writes to the scanned volume.
"""
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from ..services.volumes import Volume, list_removable_volumes
from .codec import package_dir, read_manifest
from .errors import PackageNotFoundError
from .types import APPLICATION_ID, MANIFEST_FILE, TransferManifest

logger = logging.getLogger(__name__)


@dataclass
class DetectedPackage:
    device: str
    mountpoint: str
    label: str
    model: str
    size_bytes: int
    manifest: TransferManifest


def detect_transfer_on_device(mountpoint) -> Optional[TransferManifest]:
    """Return the package manifest on `mountpoint`, or None if there is no valid package."""
    if not (package_dir(mountpoint) / MANIFEST_FILE).is_file():
        return None

    try:
        manifest = read_manifest(mountpoint)
    except (OSError, ValueError) as e:
        logger.debug(f"[Transfer] Ignoring invalid manifest on {mountpoint}: {e}")
        return None

    if manifest.application != APPLICATION_ID or not manifest.version:
        logger.debug(f"[Transfer] Manifest on {mountpoint} belongs to {manifest.application!r}")
        return None

    return manifest


def require_package(mountpoint) -> TransferManifest:
    """Like detect_transfer_on_device, but raises PackageNotFoundError."""
    manifest = detect_transfer_on_device(mountpoint)
    if manifest is None:
        raise PackageNotFoundError(f"No valid transfer data found on {mountpoint}")
    return manifest


def scan_for_packages(volumes: Optional[Iterable[Volume]] = None) -> list[DetectedPackage]:
    """Check every mounted removable volume for a transfer package."""
    if volumes is None:
        volumes = list_removable_volumes()

    found = []
    for volume in volumes:
        manifest = detect_transfer_on_device(volume.mountpoint)
        if manifest is None:
            continue
        found.append(DetectedPackage(
            device=volume.device,
            mountpoint=str(volume.mountpoint),
            label=volume.label,
            model=volume.model,
            size_bytes=volume.size_bytes,
            manifest=manifest,
        ))
        logger.info(f"[Transfer] Found package from {manifest.source_hostname} on {volume.mountpoint}")

    return found
