import json
import logging
from typing import Any, Callable, Optional

from fastapi.concurrency import run_in_threadpool
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..db.base import SessionLocal
from ..models.sql_models import REMOVED_MESSAGE_TEXT, Message, MessageStatus

logger = logging.getLogger(__name__)


class MessageRetractor:
    """Pulls a message already shown to users.

    Marks the stored message rejected, then broadcasts
    ``{"type": "delete", "messageId", "roomId"}`` to the live chat layer
    over Redis pub/sub. Without Redis, clients pick the rejection up by polling.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        redis_client: Optional[Any] = None,
        channel: str = "moderation_events",
    ):
        self.session_factory = session_factory
        self.redis = redis_client
        self.channel = channel

    async def retract(self, message_id: str, room_id: Optional[str] = None) -> bool:
        """Returns True when the delete event was published."""
        stored_room = await run_in_threadpool(self._mark_rejected, message_id)
        target_room = room_id or stored_room

        if self.redis is None:
            logger.warning("No shared cache configured; cannot publish retraction of %s", message_id)
            return False
        if not target_room:
            logger.warning("Could not find roomId for message %s, skipping publish", message_id)
            return False

        payload = json.dumps({"type": "delete", "messageId": message_id, "roomId": target_room})
        try:
            await self.redis.publish(self.channel, payload)
        except (RedisError, OSError) as e:
            logger.error("Failed to publish retraction of %s: %s", message_id, e)
            return False
        logger.info("retraction_published", extra={"message_id": message_id, "room_id": target_room})
        return True

    def _mark_rejected(self, message_id: str) -> Optional[str]:
        db = self.session_factory()
        try:
            msg = db.query(Message).filter(Message.id == message_id).first()
            if msg is None:
                return None
            room_id = msg.room_id
            msg.status = MessageStatus.REJECTED
            msg.text = REMOVED_MESSAGE_TEXT
            db.commit()
            logger.info("Marked message %s as rejected", message_id)
            return room_id
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Failed to mark message %s rejected: %s", message_id, e)
            return None
        finally:
            db.close()
