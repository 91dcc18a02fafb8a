from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, Text

from ..db.base import Base


def generate_uuid():
    return str(uuid4())


def utcnow():
    return datetime.now(timezone.utc)


class FlagStatus:
    PENDING_RETRY = "PENDING_RETRY"
    RESOLVED = "RESOLVED"
    # Terminal: retries exhausted without a confident verdict
    ABANDONED = "ABANDONED"


class FlagResolution:
    AUTO_APPROVED = "AUTO_APPROVED"
    AUTO_REJECTED = "AUTO_REJECTED"


class MessageStatus:
    SENT = "sent"
    REJECTED = "rejected"


REMOVED_MESSAGE_TEXT = "[Message removed by moderator]"


class User(Base):
    """SQLAlchemy model for chat participants."""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    display_name = Column(String(255), nullable=True)
    age = Column(Integer, nullable=True)
    # Durable home of the reputation score; the shared cache mirrors it
    reputation = Column(Integer, nullable=False, default=50)
    created_at = Column(DateTime, default=utcnow)

    def __repr__(self):
        return f"<User(id='{self.id}', reputation={self.reputation})>"


class Message(Base):
    """SQLAlchemy model for chat messages as persisted by the chat layer."""

    __tablename__ = "messages"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    room_id = Column(String(36), nullable=False, index=True)
    sender_id = Column(String(36), ForeignKey("users.id"), nullable=True)
    text = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default=MessageStatus.SENT)
    created_at = Column(DateTime, default=utcnow)

    def __repr__(self):
        return f"<Message(id='{self.id}', room_id='{self.room_id}', status='{self.status}')>"


class FlaggedMessage(Base):
    """A message shown without a confident verdict, queued for re-adjudication."""

    __tablename__ = "flagged_messages"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    message_id = Column(String(36), nullable=True, index=True)
    user_id = Column(String(36), nullable=False)
    content = Column(Text, nullable=False)
    # Verdict audit plus retry metadata: senderAge, receiverAge, roomId, retryAfter
    ai_triggers = Column(JSON, default=dict)
    status = Column(String(20), nullable=False, default=FlagStatus.PENDING_RETRY, index=True)
    resolution = Column(String(20), nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, onupdate=utcnow, nullable=True)

    def __repr__(self):
        return (
            f"<FlaggedMessage(id='{self.id}', status='{self.status}', "
            f"retry_count={self.retry_count})>"
        )
