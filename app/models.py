"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

import enum
from typing import Optional

from sqlalchemy import Column, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from app.storage import Base


class MessageType(str, enum.Enum):
    TEXT = "text"
    IMAGE = "image"
    MIXED = "mixed"


def derive_message_type(text: Optional[str], image_url: Optional[str]) -> MessageType:
    """
    Derive the message type from what was attached at creation.

    - no image -> text
    - image and empty text -> image
    - image and non-empty text -> mixed
    """
    if not image_url:
        return MessageType.TEXT
    if text:
        return MessageType.MIXED
    return MessageType.IMAGE


class Message(Base):
    """
    SQLAlchemy model for storing chat messages.

    Table: messages
    Primary Key: seq (insertion order, breaks timestamp ties)
    Public identifier: id (opaque UUID assigned by the store)

    Rows are never updated after insert; read state lives in message_reads.
    """
    __tablename__ = "messages"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String, unique=True, nullable=False, index=True)
    text = Column(Text, nullable=False, default="")
    sender_id = Column(String, nullable=False, index=True)
    sender_email = Column(String, nullable=False, default="")
    timestamp = Column(String, nullable=False, index=True)  # ISO-8601 UTC, server time
    type = Column(String, nullable=False)
    image_url = Column(String, nullable=True)
    thumbnail_url = Column(String, nullable=True)

    reads = relationship(
        "MessageRead",
        lazy="selectin",
        order_by="MessageRead.read_at",
    )

    @property
    def read_by(self) -> dict:
        """Mapping of user id -> time that user first read the message."""
        return {read.user_id: read.read_at for read in self.reads}


class MessageRead(Base):
    """
    One read receipt: the first time a user read a message.

    Table: message_reads
    Primary Key: (message_id, user_id), so each reader is a separate row and
    concurrent readers of one message never overwrite each other.
    """
    __tablename__ = "message_reads"

    message_id = Column(String, ForeignKey("messages.id"), primary_key=True)
    user_id = Column(String, primary_key=True)
    read_at = Column(String, nullable=False)  # ISO-8601 UTC
