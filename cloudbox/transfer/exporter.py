"""
Export pipeline - writes a transfer package to an external volume.

Phases and percent bands:
    exporting-db      5 - 20
    copying-files    20 - 90
    writing-manifest 95
    done            100
"""
import asyncio
import logging
import platform
import socket
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..config import get_data_dir, get_settings
from ..database import AsyncSessionLocal
from ..models import ActivityLog, ConnectedApp, FileMetadata, Notification, RecentFile, User, UserSettings
from .categories import category_label, category_paths, copy_tree, count_files
from .codec import (
    files_dir,
    reset_package_dir,
    write_account_snapshot,
    write_manifest,
    write_relational_dump,
)
from .errors import VolumeNotFoundError, VolumeNotWritableError
from .tracker import ProgressTracker
from .types import (
    APPLICATION_ID,
    PACKAGE_VERSION,
    WRITE_PROBE_NAME,
    AccountSnapshot,
    CategoryProgress,
    ExportResult,
    RelationalDump,
    RunContext,
    TableProgress,
    TransferManifest,
    TransferPhase,
)

logger = logging.getLogger(__name__)


COPY_BASE_PERCENT = 20
COPY_SPAN_PERCENT = 70

# Columns that never leave this host
USER_PRIVATE_COLUMNS = {"password_hash", "verification_code", "verification_expires"}
APP_PRIVATE_COLUMNS = {"credentials_encrypted"}

# Dump key -> label, in dump order
EXPORT_TABLES = {
    "users": "Users",
    "user_settings": "Settings",
    "file_metadata": "File Metadata",
    "recent_files": "Recent Files",
    "connected_apps": "Connected Apps",
    "activity_log": "Activity Log",
    "notifications": "Notifications",
}


def validate_export_target(mountpoint) -> Path:
    """Check that the volume exists and accepts writes.

    Raises:
        VolumeNotFoundError: mount path does not exist
        VolumeNotWritableError: a probe file could not be created and removed
    """
    mount = Path(mountpoint)
    if not mount.is_dir():
        raise VolumeNotFoundError(f"Drive not found: {mountpoint}")

    probe = mount / WRITE_PROBE_NAME
    try:
        probe.write_text("test")
        probe.unlink()
    except OSError as e:
        raise VolumeNotWritableError(f"Drive is not writable: {mountpoint}") from e

    return mount


def _strip(rows, private: set) -> list[dict]:
    return [{k: v for k, v in row.items() if k not in private} for row in rows]


async def dump_database(session_factory: async_sessionmaker, activity_limit: int) -> RelationalDump:
    """Read every transferable table in one pass.

    Password and verification material and app credentials are left out; the
    activity log is limited to its newest `activity_limit` rows.
    """
    activity = ActivityLog.__table__
    queries = {
        "users": select(User.__table__).order_by(User.__table__.c.id),
        "user_settings": select(UserSettings.__table__).order_by(UserSettings.__table__.c.id),
        "file_metadata": select(FileMetadata.__table__).order_by(FileMetadata.__table__.c.id),
        "recent_files": select(RecentFile.__table__).order_by(RecentFile.__table__.c.id),
        "connected_apps": select(ConnectedApp.__table__).order_by(ConnectedApp.__table__.c.id),
        "activity_log": select(activity)
            .order_by(activity.c.created_at.desc(), activity.c.id.desc())
            .limit(activity_limit),
        "notifications": select(Notification.__table__).order_by(Notification.__table__.c.id),
    }

    dump: RelationalDump = {}
    async with session_factory() as db:
        for table, query in queries.items():
            result = await db.execute(query)
            dump[table] = [dict(row) for row in result.mappings()]

    dump["users"] = _strip(dump["users"], USER_PRIVATE_COLUMNS)
    dump["connected_apps"] = _strip(dump["connected_apps"], APP_PRIVATE_COLUMNS)
    return dump


def account_snapshot_from_dump(dump: RelationalDump) -> AccountSnapshot:
    """Owner profile and settings: the first user row and the first settings row."""
    users = dump.get("users") or []
    settings = dump.get("user_settings") or []
    return AccountSnapshot(
        user=users[0] if users else None,
        settings=settings[0] if settings else None,
    )


async def prepare_transfer_package(
    mountpoint,
    tracker: ProgressTracker,
    *,
    data_dir: Optional[Path] = None,
    session_factory: Optional[async_sessionmaker] = None,
    context: Optional[RunContext] = None
) -> ExportResult:
    """Write a complete transfer package to `mountpoint`.

    Any previous package on the volume is replaced. The manifest is written
    last, so a package without one is never detected as complete.

    Returns:
        ExportResult; failures are recorded on the tracker as phase `error`
    """
    mountpoint = str(mountpoint)
    data_dir = Path(data_dir) if data_dir else get_data_dir()
    session_factory = session_factory or AsyncSessionLocal
    context = context or RunContext()

    tracker.begin(TransferPhase.EXPORTING_DB, 5, "Exporting database...")
    logger.info(f"[Transfer] Export to {mountpoint} started")

    try:
        await asyncio.to_thread(validate_export_target, mountpoint)
        transfer_dir = await asyncio.to_thread(reset_package_dir, mountpoint)

        # Database
        dump = await dump_database(session_factory, get_settings().activity_log_export_limit)
        tracker.set_tables(
            [TableProgress(table=t, label=label, imported=len(dump[t]), total=len(dump[t]))
             for t, label in EXPORT_TABLES.items()],
            percent=10,
        )
        await asyncio.to_thread(write_relational_dump, mountpoint, dump)
        tracker.update(15, message="Exporting account...")

        account = account_snapshot_from_dump(dump)
        await asyncio.to_thread(write_account_snapshot, mountpoint, account)
        tracker.set_percent(COPY_BASE_PERCENT)
        context.check()

        # Files
        tracker.update(phase=TransferPhase.COPYING_FILES, message="Counting files...")
        sources = category_paths(data_dir)
        categories = []
        for name, src in sources.items():
            total = await asyncio.to_thread(count_files, src)
            categories.append(CategoryProgress(name=name, label=category_label(name), total_files=total))
        tracker.begin_copy(categories, COPY_BASE_PERCENT, COPY_SPAN_PERCENT, "Copying files...")

        dest_root = files_dir(mountpoint)
        files_copied = 0
        for name, src in sources.items():
            context.check()
            files_copied += await asyncio.to_thread(copy_tree, src, dest_root / name, name, tracker, context)
            tracker.mark_category_done(name)

        # Manifest
        tracker.update(95, phase=TransferPhase.WRITING_MANIFEST, message="Writing manifest...")
        bytes_written = tracker.snapshot()["bytes_written"]
        user = account.user or {}
        manifest = TransferManifest(
            version=PACKAGE_VERSION,
            application=APPLICATION_ID,
            created_at=datetime.now(timezone.utc).isoformat(),
            source_hostname=socket.gethostname(),
            source_platform=platform.system().lower(),
            source_arch=platform.machine(),
            total_files=files_copied,
            bytes_written=bytes_written,
            data_dir=str(data_dir),
            user_name=" ".join(filter(None, [user.get("first_name"), user.get("last_name")])),
            user_email=user.get("email") or "",
        )
        await asyncio.to_thread(write_manifest, mountpoint, manifest)

        tracker.finish(
            f"Transfer package ready: {files_copied} files",
            current_file=None,
            current_category=None,
            eta_seconds=0,
        )
        logger.info(f"[Transfer] Export complete: {files_copied} files, {bytes_written} bytes -> {transfer_dir}")

        return ExportResult(
            success=True,
            mountpoint=mountpoint,
            package_path=str(transfer_dir),
            files_copied=files_copied,
            bytes_written=bytes_written,
        )

    except Exception as e:
        logger.error(f"[Transfer] Export to {mountpoint} failed: {e}", exc_info=True)
        tracker.fail(str(e))
        progress = tracker.snapshot()
        return ExportResult(
            success=False,
            mountpoint=mountpoint,
            files_copied=progress["files_copied"],
            bytes_written=progress["bytes_written"],
            error=str(e),
        )
