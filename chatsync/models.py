"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.

All timestamps are integer nanoseconds since the epoch.
"""

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from chatsync.storage import Base


class Room(Base):
    """
    Table: rooms
    Primary Key: code (first writer wins on concurrent creation)
    """
    __tablename__ = "rooms"

    code = Column(String(30), primary_key=True)
    created_at = Column(BigInteger, nullable=False)
    last_activity_at = Column(BigInteger, nullable=False, index=True)


class Message(Base):
    """
    Table: messages

    id is an AUTOINCREMENT key: unique across all rooms, strictly increasing
    and never reused, even after the newest row is deleted.
    (room_code, nonce) is unique so client retries cannot create duplicates.
    """
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("room_code", "nonce", name="uq_messages_room_nonce"),
        Index("ix_messages_room_id", "room_code", "id"),
        {"sqlite_autoincrement": True},
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    room_code = Column(String(30), ForeignKey("rooms.code"), nullable=False)
    content = Column(Text, nullable=False, default="")
    nickname = Column(String(20), nullable=False)
    owner_id = Column(String, nullable=False)
    created_at = Column(BigInteger, nullable=False, index=True)
    is_edited = Column(Boolean, nullable=False, default=False)
    reply_to_id = Column(Integer, nullable=True)
    image_ref = Column(String, nullable=True)
    video_ref = Column(String, nullable=True)
    audio_ref = Column(String, nullable=True)
    nonce = Column(String, nullable=True)

    reactions = relationship(
        "Reaction",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Reaction.id",
    )


class Reaction(Base):
    """
    Table: reactions
    One row per (message, user, emoji): adding the same pair twice is a no-op.
    """
    __tablename__ = "reactions"
    __table_args__ = (
        UniqueConstraint("message_id", "user_id", "emoji", name="uq_reactions_pair"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(
        Integer,
        ForeignKey("messages.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = Column(String, nullable=False)
    emoji = Column(String(32), nullable=False)
