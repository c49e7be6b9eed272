"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.

Timestamps are stored as ISO-8601 UTC strings with microsecond precision
(see utils.utc_now_iso), so lexical order equals chronological order.
"""

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from eventchat.storage import Base


class Conversation(Base):
    """
    A chat channel between one admin identity and one guest identity,
    scoped to a single event.
    """
    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint("event_id", "admin_identity", "guest_identity", name="uq_conversation_parties"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String, nullable=False, index=True)
    admin_identity = Column(String, nullable=False)
    guest_identity = Column(String, nullable=False)
    created_at = Column(String, nullable=False)

    def is_party(self, identity: str) -> bool:
        return identity in (self.admin_identity, self.guest_identity)

    def recipient_for(self, sender_identity: str) -> str:
        """Return the other party of the conversation."""
        if sender_identity == self.admin_identity:
            return self.guest_identity
        return self.admin_identity


class Message(Base):
    """
    SQLAlchemy model for chat messages.

    Table: messages
    Primary Key: id (server-assigned, authoritative)
    """
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=False, index=True)
    sender_type = Column(String, nullable=False)  # admin | guest
    sender_identity = Column(String, nullable=False, index=True)
    body = Column(Text, nullable=False)
    created_at = Column(String, nullable=False, index=True)  # Server time ISO-8601
    is_edited = Column(Boolean, nullable=False, default=False)
    edited_at = Column(String, nullable=True)
    reply_to_id = Column(Integer, nullable=True)

    reactions = relationship(
        "Reaction",
        back_populates="message",
        cascade="all, delete-orphan",
        order_by="Reaction.id",
    )


class Reaction(Base):
    """
    One reactor's emoji on one message.

    The (message_id, reactor, emoji) unique constraint makes repeated adds
    idempotent.
    """
    __tablename__ = "reactions"
    __table_args__ = (
        UniqueConstraint("message_id", "reactor", "emoji", name="uq_reaction_reactor_emoji"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(Integer, ForeignKey("messages.id", ondelete="CASCADE"), nullable=False, index=True)
    reactor = Column(String, nullable=False)
    emoji = Column(String, nullable=False)
    created_at = Column(String, nullable=False)

    message = relationship("Message", back_populates="reactions")


class DeviceToken(Base):
    """Push token registered by one of an identity's devices."""
    __tablename__ = "device_tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    identity = Column(String, nullable=False, index=True)
    token = Column(String, nullable=False, unique=True)
    platform = Column(String, nullable=True)
    updated_at = Column(String, nullable=False)


class NotificationRecord(Base):
    """
    Per-message, per-recipient push delivery record.

    Written as 'pending' in the same transaction as the message insert and
    moved exactly once to a terminal status by the dispatcher.
    """
    __tablename__ = "notification_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(Integer, nullable=False, index=True)
    conversation_id = Column(Integer, nullable=False)
    recipient_identity = Column(String, nullable=False)
    event_id = Column(String, nullable=True)
    sender_identity = Column(String, nullable=False)
    sender_name = Column(String, nullable=True)
    preview = Column(Text, nullable=False)
    status = Column(String, nullable=False, default="pending", index=True)
    push_sent = Column(Boolean, nullable=False, default=False)
    push_sent_at = Column(String, nullable=True)
    push_error = Column(Text, nullable=True)
    created_at = Column(String, nullable=False)
