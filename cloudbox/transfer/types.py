"""
Device transfer types and constants.

Package layout on the external volume:
    <mount>/.cloudbox-transfer/
        manifest.json   - written last; identifies a complete package
        account.json    - owner profile + settings
        database.json   - {table: [row, ...]}
        files/<category>/...
"""
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict
from pydantic.alias_generators import to_camel

from .errors import TransferCancelled


PACKAGE_DIR_NAME = ".cloudbox-transfer"
PACKAGE_VERSION = "1.0"
APPLICATION_ID = "Cloudbox"
WRITE_PROBE_NAME = ".cloudbox-write-test"

MANIFEST_FILE = "manifest.json"
ACCOUNT_FILE = "account.json"
DATABASE_FILE = "database.json"
FILES_DIR = "files"

# Subdirectories of the data directory, in copy order
DATA_CATEGORIES = ["files", "photos", "videos", "music", "shared", "databases"]

CATEGORY_LABELS = {
    "files": "Documents & Files",
    "photos": "Photos & Images",
    "videos": "Videos",
    "music": "Music & Audio",
    "shared": "Shared Files",
    "databases": "Databases",
}

# {table name: [row, ...]}
RelationalDump = dict[str, list[dict[str, Any]]]


class TransferPhase(str, Enum):
    IDLE = "idle"
    # Export
    EXPORTING_DB = "exporting-db"
    COPYING_FILES = "copying-files"
    WRITING_MANIFEST = "writing-manifest"
    # Import
    IMPORTING_ACCOUNT = "importing-account"
    IMPORTING_DB = "importing-db"
    IMPORTING_FILES = "importing-files"
    # Terminal
    DONE = "done"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (TransferPhase.DONE, TransferPhase.ERROR)


@dataclass
class CategoryProgress:
    name: str
    label: str
    files_copied: int = 0
    total_files: int = 0
    bytes_copied: int = 0
    done: bool = False


class RowStatus(str, Enum):
    IMPORTED = "imported"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class RowResult:
    """Outcome of restoring one dump row"""
    status: RowStatus
    reason: Optional[str] = None

    @classmethod
    def imported(cls) -> "RowResult":
        return cls(RowStatus.IMPORTED)

    @classmethod
    def skipped(cls, reason: str) -> "RowResult":
        return cls(RowStatus.SKIPPED, reason)

    @classmethod
    def failed(cls, reason: str) -> "RowResult":
        return cls(RowStatus.FAILED, reason)


MAX_ROW_REASONS = 20


@dataclass
class TableProgress:
    table: str
    label: str
    imported: int = 0
    total: int = 0
    skipped: int = 0
    failed: int = 0
    skip_reasons: list[str] = field(default_factory=list)
    failure_reasons: list[str] = field(default_factory=list)

    def record(self, result: RowResult):
        if result.status == RowStatus.IMPORTED:
            self.imported = min(self.imported + 1, self.total)
            return

        if result.status == RowStatus.SKIPPED:
            self.skipped += 1
            reasons = self.skip_reasons
        else:
            self.failed += 1
            reasons = self.failure_reasons
        if result.reason and len(reasons) < MAX_ROW_REASONS:
            reasons.append(result.reason)


@dataclass
class TransferProgress:
    phase: TransferPhase = TransferPhase.IDLE
    percent: int = 0
    message: str = ""
    files_copied: int = 0
    total_files: int = 0
    bytes_written: int = 0
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    updated_at: Optional[str] = None
    error: Optional[str] = None
    current_file: Optional[str] = None
    current_category: Optional[str] = None
    categories: list[CategoryProgress] = field(default_factory=list)
    db_rows: list[TableProgress] = field(default_factory=list)
    speed_bps: Optional[int] = None
    eta_seconds: Optional[int] = None
    # Set on a successful import
    session_token: Optional[str] = None
    user: Optional[dict] = None


def _version_text(value: Any) -> Any:
    # The version may be a JSON number; 0 stays falsy
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value) if value else ""
    return value


VersionText = Annotated[str, BeforeValidator(_version_text)]


class TransferManifest(BaseModel):
    """manifest.json - camelCase on disk"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    version: VersionText
    application: str
    created_at: str = ""
    source_hostname: str = ""
    source_platform: str = ""
    source_arch: str = ""
    total_files: int = 0
    bytes_written: int = 0
    data_dir: str = ""
    user_name: str = ""
    user_email: str = ""


class AccountSnapshot(BaseModel):
    """account.json - profile fields and the single settings row, no password material"""
    user: Optional[dict[str, Any]] = None
    settings: Optional[dict[str, Any]] = None


@dataclass
class ExportResult:
    success: bool
    mountpoint: str
    package_path: str = ""
    files_copied: int = 0
    bytes_written: int = 0
    error: Optional[str] = None


@dataclass
class ImportResult:
    success: bool
    mountpoint: str
    user: Optional[dict] = None
    session_token: Optional[str] = None
    files_copied: int = 0
    bytes_copied: int = 0
    tables: list[TableProgress] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class StartedRun:
    """Acknowledgement returned when a background run is accepted"""
    kind: str  # "export" or "import"
    mountpoint: str
    started_at: str


class RunContext:
    """Cooperative stop signal shared by a running pipeline.

    Pipelines call check() between files and rows; request_stop() (or an
    expired deadline) makes the next check raise TransferCancelled.
    """

    def __init__(self, timeout: Optional[float] = None):
        self._stop = threading.Event()
        self.deadline = time.monotonic() + timeout if timeout else None

    def request_stop(self):
        self._stop.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def check(self):
        if self._stop.is_set():
            raise TransferCancelled("Transfer was stopped")
        if self.deadline is not None and time.monotonic() > self.deadline:
            raise TransferCancelled("Transfer exceeded its deadline")
