"""
Cloudbox database models

Architecture:
- One owner account per host (users), with login sessions
- Per-user records: user_settings (singleton), file_metadata, recent_files,
  connected_apps, activity_log, notifications
"""
from sqlalchemy import Column, Integer, BigInteger, String, Text, Boolean, DateTime, ForeignKey, JSON, UniqueConstraint
from sqlalchemy.sql import func
from .database import Base


class User(Base):
    """Account that owns the data directory"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)  # Format: salt:hash (PBKDF2)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    avatar_url = Column(Text, nullable=True)
    storage_path = Column(Text, nullable=True)
    is_setup_complete = Column(Boolean, default=False)
    email_verified = Column(Boolean, default=False)
    verification_code = Column(String(10), nullable=True)
    verification_expires = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Session(Base):
    """Login session issued to a device"""
    __tablename__ = "sessions"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    session_token = Column(String(512), unique=True, nullable=False)
    device_name = Column(String(255), nullable=True)
    user_agent = Column(Text, nullable=True)
    ip_address = Column(String(45), nullable=True)
    is_current_host = Column(Boolean, default=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    last_activity = Column(DateTime(timezone=True), server_default=func.now())


class UserSettings(Base):
    """Per-user preferences (one row per user)"""
    __tablename__ = "user_settings"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    theme = Column(String(20), default="light")
    language = Column(String(10), default="en")
    notifications_enabled = Column(Boolean, default=True)
    preferences = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class FileMetadata(Base):
    """Favorites, tags and custom properties attached to a file path"""
    __tablename__ = "file_metadata"
    __table_args__ = (UniqueConstraint("user_id", "file_path"),)

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    file_path = Column(Text, nullable=False)
    is_favorite = Column(Boolean, default=False)
    tags = Column(JSON, nullable=True)  # list[str]
    custom_properties = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class RecentFile(Base):
    """Recently accessed file entry"""
    __tablename__ = "recent_files"
    __table_args__ = (UniqueConstraint("user_id", "file_path"),)

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    file_path = Column(Text, nullable=False)
    file_name = Column(String(255), nullable=False)
    file_type = Column(String(50), nullable=True)
    category = Column(String(50), nullable=True)
    size_bytes = Column(BigInteger, nullable=True)
    accessed_at = Column(DateTime(timezone=True), server_default=func.now())


class ConnectedApp(Base):
    """Third-party app connection (Google Drive, Dropbox, ...)"""
    __tablename__ = "connected_apps"
    __table_args__ = (UniqueConstraint("user_id", "app_type", "app_name"),)

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    app_type = Column(String(50), nullable=False)
    app_name = Column(String(100), nullable=True)
    credentials_encrypted = Column(Text, nullable=True)  # Never leaves this host
    config = Column(JSON, nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class ActivityLog(Base):
    """Append-only audit trail"""
    __tablename__ = "activity_log"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    action = Column(String(100), nullable=False)
    details = Column(Text, nullable=True)
    resource_type = Column(String(50), nullable=True)
    resource_path = Column(Text, nullable=True)
    metadata_ = Column("metadata", JSON, nullable=True)  # "metadata" is reserved on declarative classes
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Notification(Base):
    """In-app notification"""
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=True)
    type = Column(String(20), default="info")
    category = Column(String(50), default="system")
    is_read = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
