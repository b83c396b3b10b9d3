"""
Transfer supervisor - runs at most one export or import at a time.

Start calls take the single-run lock, validate synchronously, then schedule the pipeline as a
background task and return immediately; callers poll get_progress().
"""
import asyncio
import logging
import threading
from pathlib import Path
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from ..services.events import TransferEventType, transfer_events
from .detection import require_package
from .errors import TransferBusyError
from .exporter import prepare_transfer_package, validate_export_target
from .importer import import_transfer_package, validate_import_password
from .tracker import ProgressTracker
from .types import RunContext, StartedRun, TransferPhase

logger = logging.getLogger(__name__)


def _validate_import(mountpoint: str, password: str):
    validate_import_password(password)
    require_package(mountpoint)


class TransferSupervisor:
    """Owns the progress tracker and the single-run lock."""

    def __init__(
        self,
        tracker: Optional[ProgressTracker] = None,
        *,
        data_dir: Optional[Path] = None,
        session_factory: Optional[async_sessionmaker] = None,
        timeout: Optional[float] = None
    ):
        self.tracker = tracker or ProgressTracker()
        self.data_dir = data_dir
        self.session_factory = session_factory
        self.timeout = timeout
        self._lock = threading.Lock()
        self._task: Optional[asyncio.Task] = None
        self._context: Optional[RunContext] = None

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_progress(self) -> dict:
        return self.tracker.snapshot()

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    # -------------------------------------------------------------------------
    # Runs
    # -------------------------------------------------------------------------

    def start_export(self, mountpoint: str) -> StartedRun:
        """Start writing a transfer package to `mountpoint`.

        Raises:
            VolumeNotFoundError, VolumeNotWritableError: volume unusable
            TransferBusyError: another run is in flight
        """
        return self._start("export", mountpoint, TransferPhase.EXPORTING_DB, "Starting export...",
                           lambda: validate_export_target(mountpoint),
                           lambda context: prepare_transfer_package(
                               mountpoint, self.tracker,
                               data_dir=self.data_dir,
                               session_factory=self.session_factory,
                               context=context,
                           ))

    def start_import(self, mountpoint: str, password: str) -> StartedRun:
        """Start importing the package on `mountpoint` with a new password.

        Raises:
            InvalidPasswordError: password too short
            PackageNotFoundError: no valid package on the volume
            TransferBusyError: another run is in flight
        """
        return self._start("import", mountpoint, TransferPhase.IMPORTING_ACCOUNT, "Starting import...",
                           lambda: _validate_import(mountpoint, password),
                           lambda context: import_transfer_package(
                               mountpoint, password, self.tracker,
                               data_dir=self.data_dir,
                               session_factory=self.session_factory,
                               context=context,
                           ))

    def _start(self, kind: str, mountpoint: str, phase: TransferPhase, message: str,
               validate, make_pipeline) -> StartedRun:
        # Busy wins over every other rejection; nothing touches the volume while a run owns it
        if not self._lock.acquire(blocking=False):
            raise TransferBusyError("A transfer is already in progress")

        try:
            validate()
            self.tracker.reset()
            self.tracker.begin(phase, 0, message)
            started_at = self.tracker.snapshot()["started_at"]

            self._context = RunContext(timeout=self.timeout)
            self._task = asyncio.create_task(self._run(kind, mountpoint, make_pipeline(self._context)))
        except BaseException:
            self._lock.release()
            raise

        logger.info(f"[Transfer] {kind.capitalize()} scheduled for {mountpoint}")
        return StartedRun(kind=kind, mountpoint=str(mountpoint), started_at=started_at)

    async def _run(self, kind: str, mountpoint: str, pipeline):
        try:
            await transfer_events.broadcast(TransferEventType.STARTED, {"kind": kind, "mountpoint": str(mountpoint)})
            result = await pipeline
            if result.success:
                await transfer_events.broadcast(TransferEventType.COMPLETED, {
                    "kind": kind,
                    "mountpoint": str(mountpoint),
                    "files_copied": result.files_copied,
                })
            else:
                await transfer_events.broadcast(TransferEventType.ERROR, {
                    "kind": kind,
                    "mountpoint": str(mountpoint),
                    "error": result.error,
                })
            return result
        finally:
            self._context = None
            self._lock.release()

    async def wait(self):
        """Wait for the current run (if any) to finish."""
        task = self._task
        if task is not None and not task.done():
            await asyncio.shield(task)

    async def shutdown(self):
        """Ask a running pipeline to stop at its next check and wait for it."""
        if self._context is not None:
            self._context.request_stop()
        task = self._task
        if task is not None and not task.done():
            logger.info("[Transfer] Waiting for running transfer to stop")
            await task


transfer_supervisor = TransferSupervisor()
