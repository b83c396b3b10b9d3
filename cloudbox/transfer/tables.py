"""
Per-table restore rules for the relational dump.

Every restorable table has a row model that validates a dumped row and builds
the INSERT that carries its conflict policy:

    user_settings   upsert on user (first row only)
    file_metadata   upsert on (user, file_path)
    recent_files    upsert on (user, file_path), refreshing accessed_at only
    connected_apps  insert, ignore on conflict
    activity_log    append
    notifications   append

The owning user reference is always rewritten to the importing user.
"""
import json
from datetime import datetime, timezone
from typing import Annotated, Any, ClassVar, Optional, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, ValidationError, model_validator
from sqlalchemy import func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import DataError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import ActivityLog, ConnectedApp, FileMetadata, Notification, RecentFile, UserSettings
from .types import RelationalDump, RowResult


def dialect_insert(dialect_name: str):
    """insert() construct with ON CONFLICT support for the given dialect."""
    if dialect_name == "sqlite":
        return sqlite.insert
    if dialect_name == "postgresql":
        return postgresql.insert
    raise ValueError(f"Transfer import does not support the {dialect_name} dialect")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _json_object(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value) if value.strip() else {}
    return value


def _tag_list(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
        if value.startswith("["):
            return json.loads(value)
        # Postgres array literal: {a,b}
        return [t for t in value.strip("{}").split(",") if t]
    return value


# JSON columns may arrive as encoded strings
JsonObject = Annotated[dict[str, Any], BeforeValidator(_json_object)]
TagList = Annotated[list[str], BeforeValidator(_tag_list)]


class DumpRow(BaseModel):
    """Base row model. Nulls fall back to field defaults; unknown columns are ignored."""
    model_config = ConfigDict(extra="ignore")

    table: ClassVar[str]
    label: ClassVar[str]
    singleton: ClassVar[bool] = False

    @model_validator(mode="before")
    @classmethod
    def drop_nulls(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data

    def statement(self, user_id: int, insert):
        raise NotImplementedError


class SettingsRow(DumpRow):
    table: ClassVar[str] = "user_settings"
    label: ClassVar[str] = "Settings"
    singleton: ClassVar[bool] = True

    theme: str = "system"
    language: str = "en"
    notifications_enabled: bool = True
    preferences: JsonObject = {}

    def statement(self, user_id: int, insert):
        table = UserSettings.__table__
        stmt = insert(table).values(
            user_id=user_id,
            theme=self.theme,
            language=self.language,
            notifications_enabled=self.notifications_enabled,
            preferences=self.preferences,
        )
        return stmt.on_conflict_do_update(
            index_elements=[table.c.user_id],
            set_={
                "theme": stmt.excluded.theme,
                "language": stmt.excluded.language,
                "notifications_enabled": stmt.excluded.notifications_enabled,
                "preferences": stmt.excluded.preferences,
                "updated_at": func.now(),
            },
        )


class FileMetadataRow(DumpRow):
    table: ClassVar[str] = "file_metadata"
    label: ClassVar[str] = "File Metadata"

    file_path: str
    is_favorite: bool = False
    tags: TagList = []
    custom_properties: JsonObject = {}
    created_at: Optional[datetime] = None

    def statement(self, user_id: int, insert):
        table = FileMetadata.__table__
        stmt = insert(table).values(
            user_id=user_id,
            file_path=self.file_path,
            is_favorite=self.is_favorite,
            tags=self.tags,
            custom_properties=self.custom_properties,
            created_at=self.created_at or _utcnow(),
        )
        return stmt.on_conflict_do_update(
            index_elements=[table.c.user_id, table.c.file_path],
            set_={
                "is_favorite": stmt.excluded.is_favorite,
                "tags": stmt.excluded.tags,
                "custom_properties": stmt.excluded.custom_properties,
                "updated_at": func.now(),
            },
        )


class RecentFileRow(DumpRow):
    table: ClassVar[str] = "recent_files"
    label: ClassVar[str] = "Recent Files"

    file_path: str
    file_name: str
    file_type: str = "file"
    category: str = "general"
    size_bytes: int = 0
    accessed_at: Optional[datetime] = None

    def statement(self, user_id: int, insert):
        table = RecentFile.__table__
        stmt = insert(table).values(
            user_id=user_id,
            file_path=self.file_path,
            file_name=self.file_name,
            file_type=self.file_type,
            category=self.category,
            size_bytes=self.size_bytes,
            accessed_at=self.accessed_at or _utcnow(),
        )
        return stmt.on_conflict_do_update(
            index_elements=[table.c.user_id, table.c.file_path],
            set_={"accessed_at": stmt.excluded.accessed_at},
        )


class ConnectedAppRow(DumpRow):
    table: ClassVar[str] = "connected_apps"
    label: ClassVar[str] = "Connected Apps"

    app_type: str
    app_name: Optional[str] = None
    config: JsonObject = {}
    is_active: bool = True

    def statement(self, user_id: int, insert):
        table = ConnectedApp.__table__
        stmt = insert(table).values(
            user_id=user_id,
            app_type=self.app_type,
            # NULLs never collide in a unique index, so name-less apps key on their type
            app_name=self.app_name or self.app_type,
            config=self.config,
            is_active=self.is_active,
        )
        return stmt.on_conflict_do_nothing(
            index_elements=[table.c.user_id, table.c.app_type, table.c.app_name],
        )


class ActivityLogRow(DumpRow):
    table: ClassVar[str] = "activity_log"
    label: ClassVar[str] = "Activity Log"

    action: str
    details: Optional[str] = None
    resource_type: Optional[str] = None
    resource_path: Optional[str] = None
    metadata: JsonObject = {}
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: Optional[datetime] = None

    def statement(self, user_id: int, insert):
        return insert(ActivityLog.__table__).values({
            "user_id": user_id,
            "action": self.action,
            "details": self.details,
            "resource_type": self.resource_type,
            "resource_path": self.resource_path,
            "metadata": self.metadata,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "created_at": self.created_at or _utcnow(),
        })


class NotificationRow(DumpRow):
    table: ClassVar[str] = "notifications"
    label: ClassVar[str] = "Notifications"

    title: str
    message: Optional[str] = None
    type: str = "info"
    category: str = "system"
    is_read: bool = False
    created_at: Optional[datetime] = None

    def statement(self, user_id: int, insert):
        return insert(Notification.__table__).values(
            user_id=user_id,
            title=self.title,
            message=self.message,
            type=self.type,
            category=self.category,
            is_read=self.is_read,
            created_at=self.created_at or _utcnow(),
        )


RestorableRow = Union[SettingsRow, FileMetadataRow, RecentFileRow, ConnectedAppRow, ActivityLogRow, NotificationRow]

# Restore order; also the order tables are listed in progress
RESTORE_ORDER: tuple[type[DumpRow], ...] = (
    SettingsRow,
    FileMetadataRow,
    RecentFileRow,
    ConnectedAppRow,
    ActivityLogRow,
    NotificationRow,
)


def rows_for(row_type: type[DumpRow], dump: RelationalDump) -> list[dict]:
    rows = dump.get(row_type.table) or []
    return rows[:1] if row_type.singleton else rows


async def restore_row(
    db: AsyncSession,
    row_type: type[DumpRow],
    raw: Any,
    user_id: int,
    insert
) -> RowResult:
    """Restore one dumped row inside its own SAVEPOINT.

    A row that fails validation or violates a constraint is rolled back on its
    own and reported; other database errors propagate and abort the import.
    """
    try:
        row: RestorableRow = row_type.model_validate(raw)
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first["loc"]) or "row"
        return RowResult.failed(f"{row_type.label}: {location}: {first['msg']}")

    try:
        async with db.begin_nested():
            result = await db.execute(row.statement(user_id, insert))
    except IntegrityError as e:
        return RowResult.skipped(f"{row_type.label}: conflict: {e.orig}")
    except DataError as e:
        return RowResult.failed(f"{row_type.label}: rejected: {e.orig}")

    if result.rowcount == 0:
        return RowResult.skipped(f"{row_type.label}: already present")
    return RowResult.imported()
