"""
Snapshot codec - reads and writes the package documents.

Write functions are used by export only, read functions by import and
detection only. The manifest is always the last document written.
"""
import json
import shutil
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any

from .errors import PackageIncompleteError
from .types import (
    ACCOUNT_FILE,
    DATABASE_FILE,
    FILES_DIR,
    MANIFEST_FILE,
    PACKAGE_DIR_NAME,
    AccountSnapshot,
    RelationalDump,
    TransferManifest,
)


def package_dir(mountpoint) -> Path:
    return Path(mountpoint) / PACKAGE_DIR_NAME


def files_dir(mountpoint) -> Path:
    return package_dir(mountpoint) / FILES_DIR


def reset_package_dir(mountpoint) -> Path:
    """Remove any previous package on the volume and create an empty one."""
    transfer_dir = package_dir(mountpoint)
    if transfer_dir.exists():
        shutil.rmtree(transfer_dir)
    transfer_dir.mkdir(parents=True)
    return transfer_dir


def _json_default(value: Any):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _write_json(path: Path, data: Any) -> Path:
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2, default=_json_default)
    return path


def _read_json(path: Path) -> Any:
    with open(path, 'r', encoding='utf-8') as f:
        return json.load(f)


# =============================================================================
# Export side
# =============================================================================

def write_relational_dump(mountpoint, dump: RelationalDump) -> Path:
    return _write_json(package_dir(mountpoint) / DATABASE_FILE, dump)


def write_account_snapshot(mountpoint, snapshot: AccountSnapshot) -> Path:
    return _write_json(package_dir(mountpoint) / ACCOUNT_FILE, snapshot.model_dump(mode="json"))


def write_manifest(mountpoint, manifest: TransferManifest) -> Path:
    return _write_json(package_dir(mountpoint) / MANIFEST_FILE, manifest.model_dump(mode="json", by_alias=True))


# =============================================================================
# Import / detection side
# =============================================================================

def read_manifest(mountpoint) -> TransferManifest:
    """Parse manifest.json.

    Raises:
        OSError: manifest missing or unreadable
        ValueError: not JSON, or not a manifest (pydantic ValidationError)
    """
    return TransferManifest.model_validate(_read_json(package_dir(mountpoint) / MANIFEST_FILE))


def read_account_snapshot(mountpoint) -> AccountSnapshot:
    path = package_dir(mountpoint) / ACCOUNT_FILE
    if not path.is_file():
        return AccountSnapshot()
    return AccountSnapshot.model_validate(_read_json(path))


def read_relational_dump(mountpoint) -> RelationalDump:
    """Parse database.json; a missing or malformed dump means the package is incomplete."""
    path = package_dir(mountpoint) / DATABASE_FILE
    if not path.is_file():
        raise PackageIncompleteError(f"Transfer package is incomplete - missing {DATABASE_FILE}")

    try:
        data = _read_json(path)
    except (OSError, ValueError) as e:
        raise PackageIncompleteError(f"Transfer package is incomplete - unreadable {DATABASE_FILE}: {e}") from e

    if not isinstance(data, dict) or not all(isinstance(rows, list) for rows in data.values()):
        raise PackageIncompleteError(f"Transfer package is incomplete - {DATABASE_FILE} is not a table map")
    return data
