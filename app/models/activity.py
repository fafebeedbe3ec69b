from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, JSON, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.core.database import Base
from app.utils.time import utcnow


class FriendActivity(Base):
    """One feed row per (recipient, activity)"""
    __tablename__ = "friend_activity_feed"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    actor_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    activity_type = Column(String(30), nullable=False)
    activity_data = Column(JSON, nullable=True)
    is_visible = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), index=True)

    actor = relationship("User", foreign_keys=[actor_id])

    __table_args__ = (
        Index('ix_friend_activity_feed_user_created', 'user_id', 'created_at'),
    )
