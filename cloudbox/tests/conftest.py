"""
Shared fixtures for Cloudbox tests.
"""
import os
import shutil
import tempfile

# Settings are read once; point them at throwaway directories before cloudbox is imported
_STATE_DIR = tempfile.mkdtemp(prefix="cloudbox-state-")
os.environ["CLOUDBOX_STATE_DIR"] = _STATE_DIR
os.environ["CLOUDBOX_DATA_DIR"] = tempfile.mkdtemp(prefix="cloudbox-data-")

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio

from cloudbox.database import build_engine, build_session_factory, init_db
from cloudbox.models import (
    ActivityLog,
    ConnectedApp,
    FileMetadata,
    Notification,
    RecentFile,
    User,
    UserSettings,
)
from cloudbox.services.auth import hash_password


def pytest_sessionfinish(session, exitstatus):
    shutil.rmtree(_STATE_DIR, ignore_errors=True)
    shutil.rmtree(os.environ["CLOUDBOX_DATA_DIR"], ignore_errors=True)


async def make_database(path: Path):
    engine = build_engine(f"sqlite+aiosqlite:///{path}")
    await init_db(engine)
    return engine


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = await make_database(tmp_path / "source.db")
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def target_engine(tmp_path):
    """Database of the host a package is imported into"""
    engine = await make_database(tmp_path / "target.db")
    yield engine
    await engine.dispose()


@pytest.fixture
def target_session_factory(target_engine):
    return build_session_factory(target_engine)


@pytest.fixture
def data_dir(tmp_path):
    path = tmp_path / "data"
    path.mkdir()
    return path


@pytest.fixture
def target_data_dir(tmp_path):
    path = tmp_path / "target-data"
    path.mkdir()
    return path


@pytest.fixture
def mount_dir(tmp_path):
    """Stands in for a mounted external drive"""
    path = tmp_path / "usb"
    path.mkdir()
    return path


@pytest.fixture
def populated_data_dir(data_dir):
    """Three files, 150 bytes: two documents and one photo."""
    (data_dir / "files" / "notes").mkdir(parents=True)
    (data_dir / "photos").mkdir()
    (data_dir / "files" / "report.txt").write_bytes(b"r" * 50)
    (data_dir / "files" / "notes" / "todo.md").write_bytes(b"t" * 50)
    (data_dir / "photos" / "beach.jpg").write_bytes(bytes(range(50)))
    return data_dir


@pytest_asyncio.fixture
async def seeded_account(session_factory):
    """Owner account with one row or more in every transferable table."""
    now = datetime.now(timezone.utc)
    async with session_factory() as db:
        user = User(
            email="owner@example.com",
            password_hash=hash_password("old-password"),
            first_name="Sam",
            last_name="Rivera",
            storage_path="/srv/old-host/data",
            is_setup_complete=True,
            email_verified=True,
            verification_code="123456",
        )
        db.add(user)
        await db.flush()

        db.add(UserSettings(user_id=user.id, theme="dark", language="de", preferences={"grid": True}))
        db.add(FileMetadata(user_id=user.id, file_path="files/report.txt", is_favorite=True, tags=["work"]))
        db.add(FileMetadata(user_id=user.id, file_path="photos/beach.jpg", custom_properties={"rating": 5}))
        db.add(RecentFile(user_id=user.id, file_path="files/report.txt", file_name="report.txt",
                          file_type="text", category="files", size_bytes=50))
        db.add(ConnectedApp(user_id=user.id, app_type="dropbox", app_name="Dropbox",
                            credentials_encrypted="secret-token", config={"folder": "/sync"}))
        for i in range(3):
            db.add(ActivityLog(user_id=user.id, action=f"upload-{i}", resource_path=f"files/{i}",
                               metadata_={"i": i}, created_at=now - timedelta(minutes=i)))
        db.add(Notification(user_id=user.id, title="Welcome", message="Hello"))
        await db.commit()
        return user.id
