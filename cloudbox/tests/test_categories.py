"""
Tests for category directory counting and mirroring.
"""
import os
import shutil
from pathlib import Path
from unittest.mock import patch

import pytest

from cloudbox.transfer import DATA_CATEGORIES, CategoryProgress, ProgressTracker, RunContext, TransferCancelled
from cloudbox.transfer.categories import category_label, category_paths, copy_tree, count_files


class TestCategoryPaths:
    def test_all_categories_in_order(self, tmp_path):
        paths = category_paths(tmp_path)
        assert list(paths) == DATA_CATEGORIES
        assert paths["photos"] == tmp_path / "photos"

    def test_labels(self):
        assert category_label("files") == "Documents & Files"
        assert category_label("music") == "Music & Audio"
        assert category_label("unknown") == "unknown"


class TestCountFiles:
    def test_missing_directory(self, tmp_path):
        assert count_files(tmp_path / "nope") == 0

    def test_nested(self, populated_data_dir):
        assert count_files(populated_data_dir / "files") == 2
        assert count_files(populated_data_dir / "photos") == 1
        assert count_files(populated_data_dir) == 3

    def test_symlinks_not_counted(self, tmp_path):
        (tmp_path / "real.txt").write_text("x")
        os.symlink(tmp_path / "real.txt", tmp_path / "link.txt")
        assert count_files(tmp_path) == 1


class TestCopyTree:
    def _tracker(self, total: int) -> ProgressTracker:
        tracker = ProgressTracker()
        tracker.begin_copy([CategoryProgress(name="files", label="Documents & Files", total_files=total)], 0, 100)
        return tracker

    def test_mirrors_nested_files(self, populated_data_dir, tmp_path):
        dest = tmp_path / "out"
        tracker = self._tracker(2)

        copied = copy_tree(populated_data_dir / "files", dest, "files", tracker)

        assert copied == 2
        assert (dest / "report.txt").read_bytes() == b"r" * 50
        assert (dest / "notes" / "todo.md").read_bytes() == b"t" * 50

        progress = tracker.snapshot()
        assert progress["files_copied"] == 2
        assert progress["bytes_written"] == 100
        assert progress["categories"][0]["files_copied"] == 2
        assert progress["categories"][0]["done"] is True
        assert progress["current_category"] == "files"

    def test_missing_source_copies_nothing(self, tmp_path):
        tracker = self._tracker(0)
        assert copy_tree(tmp_path / "missing", tmp_path / "out", "files", tracker) == 0
        assert not (tmp_path / "out").exists()

    def test_failed_file_is_skipped(self, populated_data_dir, tmp_path):
        dest = tmp_path / "out"
        tracker = self._tracker(2)
        real_copy = shutil.copy2

        def flaky_copy(src, dst, *args, **kwargs):
            if Path(src).name == "report.txt":
                raise PermissionError("denied")
            return real_copy(src, dst, *args, **kwargs)

        with patch("cloudbox.transfer.categories.shutil.copy2", side_effect=flaky_copy):
            copied = copy_tree(populated_data_dir / "files", dest, "files", tracker)

        assert copied == 1
        assert not (dest / "report.txt").exists()
        assert (dest / "notes" / "todo.md").exists()

    def test_stop_request_interrupts(self, populated_data_dir, tmp_path):
        context = RunContext()
        context.request_stop()

        with pytest.raises(TransferCancelled):
            copy_tree(populated_data_dir / "files", tmp_path / "out", "files", self._tracker(2), context)

    def test_expired_deadline_interrupts(self, populated_data_dir, tmp_path):
        context = RunContext(timeout=0.001)
        context.deadline -= 1

        with pytest.raises(TransferCancelled):
            copy_tree(populated_data_dir / "files", tmp_path / "out", "files", self._tracker(2), context)
