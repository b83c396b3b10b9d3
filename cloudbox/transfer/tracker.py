"""
Transfer progress tracker.

Owns the single TransferProgress for the process. Pipelines mutate it
(possibly from a copy worker thread); API callers poll snapshot().
"""
import copy
import threading
import time
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Optional

from .types import (
    CategoryProgress,
    RowResult,
    TableProgress,
    TransferPhase,
    TransferProgress,
)


SPEED_INTERVAL_SECONDS = 0.5
ROW_PUBLISH_INTERVAL = 20


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ProgressTracker:
    """Thread-safe owner of the current (or last finished) run's progress.

    `percent` never decreases between reset() calls.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._tables: dict[str, TableProgress] = {}
        self._reset()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def snapshot(self) -> dict:
        """Deep copy of the current progress as plain data."""
        with self._lock:
            data = asdict(self._progress)
            data["phase"] = self._progress.phase.value
        return data

    @property
    def phase(self) -> TransferPhase:
        with self._lock:
            return self._progress.phase

    # -------------------------------------------------------------------------
    # Run lifecycle
    # -------------------------------------------------------------------------

    def reset(self):
        with self._lock:
            self._reset()

    def begin(self, phase: TransferPhase, percent: int, message: str):
        """Enter the first phase of a run.

        Progress left over from a finished run is cleared first. The start
        timestamp is kept if the run was already started.
        """
        with self._lock:
            if self._progress.phase.is_terminal:
                self._reset()
            if self._progress.started_at is None:
                self._progress.started_at = _now()
            self._apply(percent, {"phase": phase, "message": message})

    def update(self, percent: Optional[int] = None, **fields):
        with self._lock:
            self._apply(percent, fields)

    def set_percent(self, percent: int):
        with self._lock:
            self._apply(percent, {})

    def fail(self, message: str):
        with self._lock:
            self._apply(None, {
                "phase": TransferPhase.ERROR,
                "message": message,
                "error": message,
                "completed_at": _now(),
            })

    def finish(self, message: str, **fields):
        with self._lock:
            fields.update(phase=TransferPhase.DONE, message=message, completed_at=_now())
            self._apply(100, fields)

    def _reset(self):
        self._progress = TransferProgress(updated_at=_now())
        self._copy_base = 0
        self._copy_span = 0
        self._speed_mark = (time.monotonic(), 0)
        self._tables = {}
        self._rows_since_publish = 0

    def _apply(self, percent: Optional[int], fields: dict):
        for key, value in fields.items():
            if not hasattr(self._progress, key):
                raise AttributeError(f"TransferProgress has no field {key!r}")
            setattr(self._progress, key, value)
        if percent is not None:
            self._progress.percent = max(self._progress.percent, min(int(percent), 100))
        self._progress.updated_at = _now()

    # -------------------------------------------------------------------------
    # File copying
    # -------------------------------------------------------------------------

    def begin_copy(self, categories: list[CategoryProgress], base: int, span: int, message: str = ""):
        """Seed per-category totals and the percent band used while copying."""
        with self._lock:
            self._copy_base = base
            self._copy_span = span
            self._speed_mark = (time.monotonic(), self._progress.bytes_written)
            self._apply(base, {
                "categories": categories,
                "total_files": sum(c.total_files for c in categories),
                "message": message,
            })

    def record_file(self, category: str, name: str, size: int):
        """Account for one copied file."""
        with self._lock:
            p = self._progress
            p.files_copied += 1
            p.bytes_written += size
            p.current_file = name
            p.current_category = category

            cat = self._find_category(category)
            if cat is not None:
                cat.files_copied += 1
                cat.bytes_copied += size
                cat.done = cat.files_copied >= cat.total_files

            now = time.monotonic()
            mark_time, mark_bytes = self._speed_mark
            elapsed = now - mark_time
            if elapsed >= SPEED_INTERVAL_SECONDS:
                p.speed_bps = round((p.bytes_written - mark_bytes) / elapsed)
                self._speed_mark = (now, p.bytes_written)

                if p.speed_bps > 0 and p.total_files > 0:
                    remaining_files = max(p.total_files - p.files_copied, 0)
                    avg_file_size = p.bytes_written / p.files_copied
                    p.eta_seconds = round(remaining_files * avg_file_size / p.speed_bps)

            percent = None
            if p.total_files > 0:
                done_ratio = min(p.files_copied, p.total_files) / p.total_files
                percent = self._copy_base + round(done_ratio * self._copy_span)

            self._apply(percent, {"message": f"Copying: {name}"})

    def mark_category_done(self, category: str):
        with self._lock:
            cat = self._find_category(category)
            if cat is not None:
                cat.done = True
            self._apply(None, {})

    def _find_category(self, name: str) -> Optional[CategoryProgress]:
        for cat in self._progress.categories:
            if cat.name == name:
                return cat
        return None


    # -------------------------------------------------------------------------
    # Database rows
    # -------------------------------------------------------------------------

    def set_tables(self, tables: list[TableProgress], percent: Optional[int] = None, message: Optional[str] = None):
        """Seed the per-table counters and publish them immediately."""
        with self._lock:
            self._tables = {t.table: copy.deepcopy(t) for t in tables}
            self._rows_since_publish = 0
            fields = {"db_rows": copy.deepcopy(tables)}
            if message is not None:
                fields["message"] = message
            self._apply(percent, fields)

    def record_row(self, table: str, result: RowResult, percent: Optional[int] = None) -> TableProgress:
        """Count one restored row.

        Counters are published every ROW_PUBLISH_INTERVAL rows and when a
        table has been fully processed.
        """
        with self._lock:
            progress = self._tables[table]
            progress.record(result)
            self._rows_since_publish += 1

            handled = progress.imported + progress.skipped + progress.failed
            if self._rows_since_publish >= ROW_PUBLISH_INTERVAL or handled >= progress.total:
                self._rows_since_publish = 0
                self._apply(percent, {
                    "db_rows": copy.deepcopy(list(self._tables.values())),
                    "message": f"Importing {progress.label}...",
                })
            return copy.deepcopy(progress)

    def table_results(self) -> list[TableProgress]:
        with self._lock:
            return copy.deepcopy(list(self._tables.values()))
