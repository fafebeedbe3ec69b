from sqlalchemy import (
    Boolean, CheckConstraint, Column, DateTime, ForeignKey, Integer, JSON, String
)
from sqlalchemy.sql import func

from app.core.database import Base
from app.utils.time import utcnow


class UserPresence(Base):
    __tablename__ = "user_presence"

    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    status = Column(String(20), nullable=False, default="offline")  # online, away, busy, offline, invisible
    # Last status the user chose explicitly; keeps invisible across reconnects
    preferred_status = Column(String(20), nullable=False, default="online")
    activity_message = Column(String(100), nullable=True)
    last_seen = Column(DateTime(timezone=True), default=utcnow)
    socket_count = Column(Integer, nullable=False, default=0)

    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint('socket_count >= 0', name='presence_socket_count_non_negative'),
    )


class UserPresenceSettings(Base):
    __tablename__ = "user_presence_settings"

    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    privacy_mode = Column(String(20), nullable=False, default="friends")
    allowed_contacts = Column(JSON, nullable=False, default=list)
    auto_away_enabled = Column(Boolean, nullable=False, default=True)
    auto_away_minutes = Column(Integer, nullable=False, default=5)
    block_unknown_users = Column(Boolean, nullable=False, default=False)
    show_activity_to_friends = Column(Boolean, nullable=False, default=True)
    allow_urgent_override = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint('auto_away_minutes BETWEEN 1 AND 60', name='presence_auto_away_range'),
    )


class SocketSession(Base):
    """Persisted mirror of live connections, kept for diagnostics"""
    __tablename__ = "socket_sessions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    socket_id = Column(String(64), nullable=False, unique=True)
    connected_at = Column(DateTime(timezone=True), default=utcnow)
    last_activity = Column(DateTime(timezone=True), default=utcnow)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(String(255), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
