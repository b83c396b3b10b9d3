"""
Cloudbox device transfer module.

Moves a whole account between hosts through an external volume:
  - export writes <mount>/.cloudbox-transfer/ (database dump, account,
    category files, manifest last)
  - import validates the package, restores the account under a new password,
    replays the database rows and mirrors the files into the data directory

Only one export or import runs at a time (see TransferSupervisor).
"""

# Types and constants
from .types import (
    APPLICATION_ID,
    CATEGORY_LABELS,
    DATA_CATEGORIES,
    PACKAGE_DIR_NAME,
    PACKAGE_VERSION,
    AccountSnapshot,
    CategoryProgress,
    ExportResult,
    ImportResult,
    RowResult,
    RowStatus,
    RunContext,
    StartedRun,
    TableProgress,
    TransferManifest,
    TransferPhase,
    TransferProgress,
)

# Errors
from .errors import (
    TransferError,
    PreconditionError,
    VolumeNotFoundError,
    VolumeNotWritableError,
    PackageNotFoundError,
    PackageIncompleteError,
    InvalidPasswordError,
    TransferBusyError,
    TransferCancelled,
)

# Progress
from .tracker import ProgressTracker

# Detection
from .detection import (
    DetectedPackage,
    detect_transfer_on_device,
    require_package,
    scan_for_packages,
)

# Pipelines
from .exporter import prepare_transfer_package, validate_export_target
from .importer import import_transfer_package, validate_import_password

# Supervisor
from .supervisor import TransferSupervisor, transfer_supervisor

__all__ = [
    # Types
    "APPLICATION_ID",
    "CATEGORY_LABELS",
    "DATA_CATEGORIES",
    "PACKAGE_DIR_NAME",
    "PACKAGE_VERSION",
    "AccountSnapshot",
    "CategoryProgress",
    "ExportResult",
    "ImportResult",
    "RowResult",
    "RowStatus",
    "RunContext",
    "StartedRun",
    "TableProgress",
    "TransferManifest",
    "TransferPhase",
    "TransferProgress",
    # Errors
    "TransferError",
    "PreconditionError",
    "VolumeNotFoundError",
    "VolumeNotWritableError",
    "PackageNotFoundError",
    "PackageIncompleteError",
    "InvalidPasswordError",
    "TransferBusyError",
    "TransferCancelled",
    # Progress
    "ProgressTracker",
    # Detection
    "DetectedPackage",
    "detect_transfer_on_device",
    "require_package",
    "scan_for_packages",
    # Pipelines
    "prepare_transfer_package",
    "validate_export_target",
    "import_transfer_package",
    "validate_import_password",
    # Supervisor
    "TransferSupervisor",
    "transfer_supervisor",
]
