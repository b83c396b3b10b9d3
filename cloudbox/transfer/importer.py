"""
Import pipeline - reconstitutes an account from a transfer package.

    idle -> importing-account -> importing-db -> importing-files -> done
                  |                   |                |
                  +-------------------+----------------+--> error

Percent bands:
    importing-account  5 - 8
    importing-db      10 - 30
    importing-files   30 - 95
    done             100

The import only inserts or upserts. Running it twice against the same
package leaves settings, file metadata, recent files and connected apps
unchanged; the activity log and notifications are appended again.
"""
import asyncio
import logging
from pathlib import Path
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import get_data_dir, get_settings
from ..database import AsyncSessionLocal
from ..models import User
from ..services.auth import create_session, hash_password, public_user
from .categories import category_label, category_paths, copy_tree, count_files
from .codec import files_dir, read_account_snapshot, read_relational_dump
from .detection import require_package
from .errors import InvalidPasswordError, TransferError
from .tables import RESTORE_ORDER, dialect_insert, restore_row, rows_for
from .tracker import ProgressTracker
from .types import (
    CategoryProgress,
    ImportResult,
    RelationalDump,
    RowStatus,
    RunContext,
    TableProgress,
    TransferPhase,
)

logger = logging.getLogger(__name__)


IMPORT_USER_AGENT = "Cloudbox Transfer Import"

DB_BASE_PERCENT = 10
DB_SPAN_PERCENT = 20
FILES_BASE_PERCENT = 30
FILES_SPAN_PERCENT = 65

# Profile fields taken from the package; everything else is set locally
PROFILE_FIELDS = ("first_name", "last_name", "avatar_url")


def validate_import_password(password: Optional[str]):
    min_length = get_settings().min_password_length
    if not password or len(password) < min_length:
        raise InvalidPasswordError(f"Password must be at least {min_length} characters")


async def upsert_account(db: AsyncSession, account_user: dict, password_hash: str, storage_path: str) -> User:
    """Create or update the account keyed by email.

    The new host's password replaces any existing one, and the account is
    marked set up and verified.
    """
    email = account_user.get("email")
    if not email:
        raise TransferError("Transfer package account has no email")

    user = await db.scalar(select(User).where(User.email == email))
    if user is None:
        user = User(email=email)
        db.add(user)
        logger.info(f"[Transfer] Creating account {email}")
    else:
        logger.info(f"[Transfer] Updating existing account {email}")

    for field in PROFILE_FIELDS:
        if account_user.get(field) is not None:
            setattr(user, field, account_user[field])
    user.password_hash = password_hash
    user.storage_path = storage_path
    user.is_setup_complete = True
    user.email_verified = True

    await db.flush()
    return user


async def restore_tables(
    db: AsyncSession,
    dump: RelationalDump,
    user_id: int,
    tracker: ProgressTracker,
    context: Optional[RunContext] = None
) -> list[TableProgress]:
    """Restore every table in RESTORE_ORDER inside the caller's transaction.

    Rows are reassigned to `user_id`. Each row runs in its own SAVEPOINT, so a
    rejected row does not affect the rest of the import.
    """
    insert = dialect_insert(db.get_bind().dialect.name)
    plan = [(row_type, rows_for(row_type, dump)) for row_type in RESTORE_ORDER]
    total_rows = sum(len(rows) for _, rows in plan)

    tracker.set_tables(
        [TableProgress(table=row_type.table, label=row_type.label, total=len(rows)) for row_type, rows in plan],
        percent=DB_BASE_PERCENT,
        message="Importing database...",
    )

    done = 0
    for row_type, rows in plan:
        for raw in rows:
            if context is not None:
                context.check()

            result = await restore_row(db, row_type, raw, user_id, insert)
            if result.status != RowStatus.IMPORTED:
                logger.debug(f"[Transfer] Row {result.status.value}: {result.reason}")

            done += 1
            tracker.record_row(
                row_type.table,
                result,
                percent=DB_BASE_PERCENT + done * DB_SPAN_PERCENT // total_rows,
            )

    return tracker.table_results()


async def _issue_session(session_factory: async_sessionmaker, user_id: int) -> Optional[str]:
    """Log the imported account in on this host. Failure leaves the import intact."""
    try:
        async with session_factory() as db:
            user = await db.get(User, user_id)
            issued = await create_session(db, user, user_agent=IMPORT_USER_AGENT, is_current_host=True)
        return issued.token
    except Exception as e:
        logger.warning(f"[Transfer] Import finished but no session could be created: {e}")
        return None


async def import_transfer_package(
    mountpoint,
    new_password: str,
    tracker: ProgressTracker,
    *,
    data_dir: Optional[Path] = None,
    session_factory: Optional[async_sessionmaker] = None,
    context: Optional[RunContext] = None
) -> ImportResult:
    """Import the package on `mountpoint` into this host.

    The package is fully validated before anything is written. Account and
    database rows are committed together; files are then mirrored into the
    live data directory and a session is issued for the account.

    Returns:
        ImportResult; failures are recorded on the tracker as phase `error`
    """
    mountpoint = str(mountpoint)
    data_dir = Path(data_dir) if data_dir else get_data_dir()
    session_factory = session_factory or AsyncSessionLocal
    context = context or RunContext()

    tracker.begin(TransferPhase.IMPORTING_ACCOUNT, 5, "Importing account...")
    logger.info(f"[Transfer] Import from {mountpoint} started")

    try:
        validate_import_password(new_password)
        manifest = await asyncio.to_thread(require_package, mountpoint)
        dump = await asyncio.to_thread(read_relational_dump, mountpoint)
        account = await asyncio.to_thread(read_account_snapshot, mountpoint)

        account_user = account.user or next(iter(dump.get("users") or []), None)
        if not account_user:
            raise TransferError("Transfer package contains no user account")
        if not dump.get("user_settings") and account.settings:
            dump = {**dump, "user_settings": [account.settings]}

        logger.info(f"[Transfer] Package from {manifest.source_hostname or 'unknown host'} "
                    f"created {manifest.created_at or 'at an unknown time'}")

        password_hash = await asyncio.to_thread(hash_password, new_password)

        # Account + database, one transaction
        async with session_factory() as db:
            async with db.begin():
                user = await upsert_account(db, account_user, password_hash, str(data_dir))
                tracker.set_percent(8)
                tracker.update(DB_BASE_PERCENT, phase=TransferPhase.IMPORTING_DB)
                tables = await restore_tables(db, dump, user.id, tracker, context)
            user_id = user.id
            user_info = public_user(user)

        # Files
        tracker.update(FILES_BASE_PERCENT, phase=TransferPhase.IMPORTING_FILES, message="Counting files...")
        sources = category_paths(files_dir(mountpoint))
        categories = []
        for name, src in sources.items():
            total = await asyncio.to_thread(count_files, src)
            categories.append(CategoryProgress(name=name, label=category_label(name), total_files=total))
        tracker.begin_copy(categories, FILES_BASE_PERCENT, FILES_SPAN_PERCENT, "Copying files...")

        files_copied = 0
        for name, src in sources.items():
            context.check()
            files_copied += await asyncio.to_thread(copy_tree, src, data_dir / name, name, tracker, context)
            tracker.mark_category_done(name)
        bytes_copied = tracker.snapshot()["bytes_written"]

        session_token = await _issue_session(session_factory, user_id)

        tracker.finish(
            "Transfer complete",
            session_token=session_token,
            user=user_info,
            current_file=None,
            current_category=None,
            eta_seconds=0,
        )
        logger.info(f"[Transfer] Import complete for {user_info['email']}: {files_copied} files")

        return ImportResult(
            success=True,
            mountpoint=mountpoint,
            user=user_info,
            session_token=session_token,
            files_copied=files_copied,
            bytes_copied=bytes_copied,
            tables=tables,
        )

    except Exception as e:
        logger.error(f"[Transfer] Import from {mountpoint} failed: {e}", exc_info=True)
        tracker.fail(str(e))
        progress = tracker.snapshot()
        return ImportResult(
            success=False,
            mountpoint=mountpoint,
            files_copied=progress["files_copied"],
            bytes_copied=progress["bytes_written"],
            tables=tracker.table_results(),
            error=str(e),
        )
