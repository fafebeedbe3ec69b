from sqlalchemy import (
    CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint, text
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.core.database import Base
from app.utils.time import utcnow


class Friendship(Base):
    """Undirected friendship stored once, with user_a_id < user_b_id"""
    __tablename__ = "friendships"

    id = Column(Integer, primary_key=True, index=True)
    user_a_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    user_b_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="active")

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    user_a = relationship("User", foreign_keys=[user_a_id])
    user_b = relationship("User", foreign_keys=[user_b_id])

    __table_args__ = (
        UniqueConstraint('user_a_id', 'user_b_id', name='unique_friendship'),
        CheckConstraint('user_a_id < user_b_id', name='friendship_canonical_order'),
    )

    def other(self, user_id: int) -> int:
        return self.user_b_id if self.user_a_id == user_id else self.user_a_id


class FriendRequest(Base):
    __tablename__ = "friend_requests"

    id = Column(Integer, primary_key=True, index=True)
    sender_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    receiver_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    status = Column(String(20), nullable=False, default="pending")  # pending, accepted, declined, cancelled, expired
    message = Column(String(500), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    sender = relationship("User", foreign_keys=[sender_id])
    receiver = relationship("User", foreign_keys=[receiver_id])

    __table_args__ = (
        # At most one pending request per direction
        Index(
            'ix_friend_requests_pair_pending', 'sender_id', 'receiver_id',
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
        Index('ix_friend_requests_receiver_status', 'receiver_id', 'status'),
    )


class BlockedUser(Base):
    """Directional block: blocker no longer interacts with blocked"""
    __tablename__ = "blocked_users"

    id = Column(Integer, primary_key=True, index=True)
    blocker_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    blocked_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    reason = Column(String(100), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    blocked = relationship("User", foreign_keys=[blocked_id])

    __table_args__ = (
        UniqueConstraint('blocker_id', 'blocked_id', name='unique_block'),
    )
