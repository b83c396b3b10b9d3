"""
Tests for the import pipeline and per-table restore rules.
"""
import json
from pathlib import Path
from unittest.mock import patch

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from cloudbox.models import (
    ActivityLog,
    ConnectedApp,
    FileMetadata,
    Notification,
    RecentFile,
    Session,
    User,
    UserSettings,
)
from cloudbox.services.auth import decode_token, verify_password
from cloudbox.transfer import (
    InvalidPasswordError,
    PackageNotFoundError,
    ProgressTracker,
    RowStatus,
    import_transfer_package,
    prepare_transfer_package,
)
from cloudbox.transfer.codec import package_dir
from cloudbox.transfer.importer import upsert_account
from cloudbox.transfer.tables import ConnectedAppRow, NotificationRow, SettingsRow, dialect_insert, restore_row

NEW_PASSWORD = "new-host-password"


def _files(root: Path) -> dict:
    return {str(p.relative_to(root)): p.read_bytes() for p in sorted(root.rglob("*")) if p.is_file()}


async def _count(session_factory, model) -> int:
    async with session_factory() as db:
        return await db.scalar(select(func.count()).select_from(model))


async def _run_import(mount_dir, session_factory, data_dir, tracker=None):
    tracker = tracker or ProgressTracker()
    result = await import_transfer_package(
        mount_dir, NEW_PASSWORD, tracker, data_dir=data_dir, session_factory=session_factory
    )
    return result, tracker


@pytest_asyncio.fixture
async def exported(seeded_account, session_factory, populated_data_dir, mount_dir):
    """A package exported from the seeded source host"""
    result = await prepare_transfer_package(
        mount_dir, ProgressTracker(), data_dir=populated_data_dir, session_factory=session_factory
    )
    assert result.success, result.error
    return mount_dir


class TestImportScenario:
    @pytest.mark.asyncio
    async def test_restores_account_files_and_login(
        self, exported, populated_data_dir, target_session_factory, target_data_dir
    ):
        result, tracker = await _run_import(exported, target_session_factory, target_data_dir)

        assert result.success, result.error
        assert result.files_copied == 3
        assert result.bytes_copied == 150
        assert _files(target_data_dir) == _files(populated_data_dir)

        progress = tracker.snapshot()
        assert progress["phase"] == "done"
        assert progress["percent"] == 100
        assert progress["session_token"] == result.session_token
        assert progress["user"]["email"] == "owner@example.com"
        assert progress["user"]["is_setup_complete"] is True

        async with target_session_factory() as db:
            user = await db.scalar(select(User))
            assert user.email == "owner@example.com"
            assert user.first_name == "Sam"
            assert user.is_setup_complete is True
            assert user.email_verified is True
            assert user.storage_path == str(target_data_dir)
            assert user.verification_code is None
            assert verify_password(NEW_PASSWORD, user.password_hash)
            assert not verify_password("old-password", user.password_hash)

            settings = await db.scalar(select(UserSettings))
            assert settings.user_id == user.id
            assert settings.theme == "dark"
            assert settings.language == "de"
            assert settings.preferences == {"grid": True}

            favorite = await db.scalar(select(FileMetadata).where(FileMetadata.file_path == "files/report.txt"))
            assert favorite.is_favorite is True
            assert favorite.tags == ["work"]

            app = await db.scalar(select(ConnectedApp))
            assert app.app_name == "Dropbox"
            assert app.config == {"folder": "/sync"}
            assert app.credentials_encrypted is None

            session = await db.scalar(select(Session))
            assert session.session_token == result.session_token
            assert session.is_current_host is True
            assert session.user_agent == "Cloudbox Transfer Import"

        assert decode_token(result.session_token)["user_id"] == user.id
        assert await _count(target_session_factory, ActivityLog) == 3
        assert await _count(target_session_factory, Notification) == 1
        assert await _count(target_session_factory, RecentFile) == 1

    @pytest.mark.asyncio
    async def test_table_counts(self, exported, target_session_factory, target_data_dir):
        result, tracker = await _run_import(exported, target_session_factory, target_data_dir)

        tables = {t.table: t for t in result.tables}
        assert list(tables) == [
            "user_settings", "file_metadata", "recent_files",
            "connected_apps", "activity_log", "notifications",
        ]
        assert tables["user_settings"].imported == 1
        assert tables["file_metadata"].imported == 2
        assert tables["activity_log"].imported == 3
        assert all(t.imported <= t.total for t in result.tables)
        assert all(t.failed == 0 and t.skipped == 0 for t in result.tables)

        published = {t["table"]: t for t in tracker.snapshot()["db_rows"]}
        assert published["file_metadata"]["imported"] == 2

    @pytest.mark.asyncio
    async def test_reimport_is_idempotent(self, exported, target_session_factory, target_data_dir):
        first, _ = await _run_import(exported, target_session_factory, target_data_dir)
        second, _ = await _run_import(exported, target_session_factory, target_data_dir)

        assert first.success and second.success
        assert await _count(target_session_factory, User) == 1
        assert await _count(target_session_factory, UserSettings) == 1
        assert await _count(target_session_factory, FileMetadata) == 2
        assert await _count(target_session_factory, RecentFile) == 1
        assert await _count(target_session_factory, ConnectedApp) == 1
        # Append-only tables take the second run's rows as well
        assert await _count(target_session_factory, ActivityLog) == 6
        assert await _count(target_session_factory, Notification) == 2

        tables = {t.table: t for t in second.tables}
        assert tables["connected_apps"].skipped == 1
        assert tables["connected_apps"].imported == 0

    @pytest.mark.asyncio
    async def test_existing_account_is_updated(self, exported, target_session_factory, target_data_dir):
        async with target_session_factory() as db:
            db.add(User(email="owner@example.com", password_hash="x:y", first_name="Old"))
            await db.commit()

        result, _ = await _run_import(exported, target_session_factory, target_data_dir)

        assert result.success
        async with target_session_factory() as db:
            user = await db.scalar(select(User))
            assert user.first_name == "Sam"
            assert verify_password(NEW_PASSWORD, user.password_hash)
        assert await _count(target_session_factory, User) == 1


class TestImportRejections:
    @pytest.mark.asyncio
    async def test_wrong_application_rejected_before_mutation(
        self, exported, target_session_factory, target_data_dir
    ):
        manifest_path = package_dir(exported) / "manifest.json"
        manifest = json.loads(manifest_path.read_text())
        manifest["application"] = "OtherCloud"
        manifest_path.write_text(json.dumps(manifest))

        result, tracker = await _run_import(exported, target_session_factory, target_data_dir)

        assert not result.success
        assert tracker.snapshot()["phase"] == "error"
        assert await _count(target_session_factory, User) == 0
        assert list(target_data_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_missing_database_dump(self, exported, target_session_factory, target_data_dir):
        (package_dir(exported) / "database.json").unlink()

        result, tracker = await _run_import(exported, target_session_factory, target_data_dir)

        assert not result.success
        assert "incomplete" in result.error
        assert tracker.snapshot()["error"] == result.error
        assert await _count(target_session_factory, User) == 0

    @pytest.mark.asyncio
    async def test_short_password(self, exported, target_session_factory, target_data_dir):
        tracker = ProgressTracker()
        result = await import_transfer_package(
            exported, "short", tracker, data_dir=target_data_dir, session_factory=target_session_factory
        )
        assert not result.success
        assert "at least" in result.error
        assert await _count(target_session_factory, User) == 0

    @pytest.mark.asyncio
    async def test_no_package(self, mount_dir, target_session_factory, target_data_dir):
        result, tracker = await _run_import(mount_dir, target_session_factory, target_data_dir)
        assert not result.success
        assert "No valid transfer data" in result.error

    @pytest.mark.asyncio
    async def test_account_from_dump_when_account_file_missing(
        self, exported, target_session_factory, target_data_dir
    ):
        (package_dir(exported) / "account.json").unlink()

        result, _ = await _run_import(exported, target_session_factory, target_data_dir)

        assert result.success, result.error
        assert result.user["email"] == "owner@example.com"

    @pytest.mark.asyncio
    async def test_database_error_rolls_back_account_and_rows(
        self, exported, target_session_factory, target_data_dir
    ):
        calls = []

        async def failing_restore_row(*args, **kwargs):
            calls.append(args[1].table)
            if len(calls) == 3:
                raise OperationalError("INSERT", {}, Exception("disk I/O error"))
            return await restore_row(*args, **kwargs)

        with patch("cloudbox.transfer.importer.restore_row", new=failing_restore_row):
            result, tracker = await _run_import(exported, target_session_factory, target_data_dir)

        assert not result.success
        assert "disk I/O error" in result.error
        assert tracker.snapshot()["phase"] == "error"
        assert await _count(target_session_factory, User) == 0
        assert await _count(target_session_factory, UserSettings) == 0
        assert await _count(target_session_factory, FileMetadata) == 0
        assert list(target_data_dir.iterdir()) == []


class TestRestoreRow:
    @pytest_asyncio.fixture
    async def owner_id(self, target_session_factory):
        async with target_session_factory() as db:
            user = User(email="owner@example.com", password_hash="x:y")
            db.add(user)
            await db.commit()
            return user.id

    @pytest.mark.asyncio
    async def test_invalid_row_fails_alone(self, owner_id, target_session_factory):
        async with target_session_factory() as db:
            insert = dialect_insert(db.get_bind().dialect.name)
            async with db.begin():
                bad = await restore_row(db, NotificationRow, {"message": "no title"}, owner_id, insert)
                good = await restore_row(db, NotificationRow, {"title": "Hi"}, owner_id, insert)

        assert bad.status == RowStatus.FAILED
        assert "title" in bad.reason
        assert good.status == RowStatus.IMPORTED
        assert await _count(target_session_factory, Notification) == 1

    @pytest.mark.asyncio
    async def test_constraint_violation_rolls_back_only_that_row(self, owner_id, target_session_factory):
        async with target_session_factory() as db:
            insert = dialect_insert(db.get_bind().dialect.name)
            async with db.begin():
                orphan = await restore_row(db, NotificationRow, {"title": "Lost"}, None, insert)
                kept = await restore_row(db, NotificationRow, {"title": "Kept"}, owner_id, insert)

        assert orphan.status == RowStatus.SKIPPED
        assert kept.status == RowStatus.IMPORTED
        assert await _count(target_session_factory, Notification) == 1

    @pytest.mark.asyncio
    async def test_connected_app_conflict_is_skipped(self, owner_id, target_session_factory):
        row = {"app_type": "gdrive", "app_name": None, "config": '{"root": "/"}'}
        async with target_session_factory() as db:
            insert = dialect_insert(db.get_bind().dialect.name)
            async with db.begin():
                first = await restore_row(db, ConnectedAppRow, row, owner_id, insert)
                second = await restore_row(db, ConnectedAppRow, row, owner_id, insert)

        assert first.status == RowStatus.IMPORTED
        assert second.status == RowStatus.SKIPPED
        async with target_session_factory() as db:
            app = await db.scalar(select(ConnectedApp))
            assert app.app_name == "gdrive"
            assert app.config == {"root": "/"}

    @pytest.mark.asyncio
    async def test_settings_upsert(self, owner_id, target_session_factory):
        async with target_session_factory() as db:
            insert = dialect_insert(db.get_bind().dialect.name)
            async with db.begin():
                await restore_row(db, SettingsRow, {"theme": "dark"}, owner_id, insert)
                await restore_row(db, SettingsRow, {"theme": "light", "preferences": None}, owner_id, insert)

        async with target_session_factory() as db:
            settings = (await db.scalars(select(UserSettings))).all()
            assert len(settings) == 1
            assert settings[0].theme == "light"
            assert settings[0].language == "en"
            assert settings[0].preferences == {}

    def test_unsupported_dialect(self):
        with pytest.raises(ValueError):
            dialect_insert("mssql")


class TestUpsertAccount:
    @pytest.mark.asyncio
    async def test_requires_email(self, target_session_factory):
        async with target_session_factory() as db:
            with pytest.raises(Exception, match="no email"):
                await upsert_account(db, {"first_name": "Sam"}, "x:y", "/data")
