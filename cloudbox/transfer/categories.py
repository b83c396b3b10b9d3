"""
Category directory model.

Counting and mirroring primitives shared by export and import. Only regular
files are counted and copied; symlinks are left behind.
"""
import logging
import os
import shutil
from pathlib import Path
from typing import Optional

from .tracker import ProgressTracker
from .types import CATEGORY_LABELS, DATA_CATEGORIES, RunContext

logger = logging.getLogger(__name__)


def category_label(name: str) -> str:
    return CATEGORY_LABELS.get(name, name)


def category_paths(base: Path) -> dict[str, Path]:
    """Physical directory for every logical category under `base`."""
    return {name: base / name for name in DATA_CATEGORIES}


def count_files(directory: Path) -> int:
    """Count regular files below `directory`, skipping unreadable directories."""
    if not directory.is_dir():
        return 0

    try:
        entries = list(os.scandir(directory))
    except OSError as e:
        logger.debug(f"[Transfer] Skipping unreadable directory {directory}: {e}")
        return 0

    count = 0
    for entry in entries:
        try:
            if entry.is_file(follow_symlinks=False):
                count += 1
            elif entry.is_dir(follow_symlinks=False):
                count += count_files(Path(entry.path))
        except OSError:
            continue
    return count


def copy_tree(
    src: Path,
    dest: Path,
    category: str,
    tracker: ProgressTracker,
    context: Optional[RunContext] = None
) -> int:
    """Mirror `src` into `dest` depth-first, reporting each file to the tracker.

    A file that cannot be copied is logged and skipped. Returns the number of
    files copied.
    """
    if not src.is_dir():
        return 0

    dest.mkdir(parents=True, exist_ok=True)

    try:
        entries = sorted(os.scandir(src), key=lambda e: e.name)
    except OSError as e:
        logger.warning(f"[Transfer] Could not read {src}: {e}")
        return 0

    copied = 0
    for entry in entries:
        if context is not None:
            context.check()

        src_path = Path(entry.path)
        dest_path = dest / entry.name

        try:
            if entry.is_dir(follow_symlinks=False):
                copied += copy_tree(src_path, dest_path, category, tracker, context)
            elif entry.is_file(follow_symlinks=False):
                shutil.copy2(src_path, dest_path)
                size = dest_path.stat().st_size
                copied += 1
                tracker.record_file(category, entry.name, size)
            else:
                logger.debug(f"[Transfer] Skipping non-regular file {src_path}")
        except OSError as e:
            logger.warning(f"[Transfer] Failed to copy {src_path}: {e}")

    return copied
