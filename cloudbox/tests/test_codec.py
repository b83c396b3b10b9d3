"""
Tests for reading and writing package documents.
"""
import json
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from cloudbox.transfer import AccountSnapshot, PackageIncompleteError, TransferManifest
from cloudbox.transfer.codec import (
    package_dir,
    read_account_snapshot,
    read_manifest,
    read_relational_dump,
    reset_package_dir,
    write_account_snapshot,
    write_manifest,
    write_relational_dump,
)


@pytest.fixture
def package(mount_dir):
    reset_package_dir(mount_dir)
    return mount_dir


class TestPackageDir:
    def test_reset_removes_stale_package(self, mount_dir):
        stale = package_dir(mount_dir) / "files" / "old.txt"
        stale.parent.mkdir(parents=True)
        stale.write_text("stale")

        reset_package_dir(mount_dir)

        assert package_dir(mount_dir).is_dir()
        assert list(package_dir(mount_dir).iterdir()) == []


class TestManifest:
    def test_camel_case_on_disk(self, package):
        write_manifest(package, TransferManifest(
            version="1.0",
            application="Cloudbox",
            source_hostname="old-host",
            total_files=3,
            bytes_written=150,
            user_email="owner@example.com",
        ))

        raw = json.loads((package_dir(package) / "manifest.json").read_text())
        assert raw["sourceHostname"] == "old-host"
        assert raw["totalFiles"] == 3
        assert raw["bytesWritten"] == 150
        assert raw["userEmail"] == "owner@example.com"

        manifest = read_manifest(package)
        assert manifest.source_hostname == "old-host"
        assert manifest.total_files == 3

    def test_not_json(self, package):
        (package_dir(package) / "manifest.json").write_text("{not json")
        with pytest.raises(ValueError):
            read_manifest(package)

    def test_missing(self, package):
        with pytest.raises(OSError):
            read_manifest(package)


class TestAccountSnapshot:
    def test_missing_is_empty(self, package):
        snapshot = read_account_snapshot(package)
        assert snapshot.user is None
        assert snapshot.settings is None

    def test_round_trip(self, package):
        write_account_snapshot(package, AccountSnapshot(
            user={"email": "owner@example.com", "first_name": "Sam"},
            settings={"theme": "dark"},
        ))
        snapshot = read_account_snapshot(package)
        assert snapshot.user["first_name"] == "Sam"
        assert snapshot.settings == {"theme": "dark"}


class TestRelationalDump:
    def test_values_serialized(self, package):
        created = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)
        write_relational_dump(package, {
            "notifications": [{"title": "Hi", "created_at": created, "score": Decimal("1.5")}],
        })

        dump = read_relational_dump(package)
        assert dump["notifications"][0]["created_at"] == "2024-05-01T12:30:00+00:00"
        assert dump["notifications"][0]["score"] == 1.5

    def test_missing_means_incomplete(self, package):
        with pytest.raises(PackageIncompleteError, match="incomplete"):
            read_relational_dump(package)

    def test_unreadable_means_incomplete(self, package):
        (package_dir(package) / "database.json").write_text("[1, 2")
        with pytest.raises(PackageIncompleteError):
            read_relational_dump(package)

    def test_wrong_shape_means_incomplete(self, package):
        (package_dir(package) / "database.json").write_text('{"users": {"id": 1}}')
        with pytest.raises(PackageIncompleteError):
            read_relational_dump(package)
