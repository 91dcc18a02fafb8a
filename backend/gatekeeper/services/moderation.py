from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Union
import logging

from fastapi.concurrency import run_in_threadpool
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..db.base import SessionLocal
from ..models.sql_models import FlaggedMessage, FlagStatus
from ..models.verdict import ModerationOptions, Verdict
from ..orchestration.cascade import ContentModerator, HistoryLike
from ..orchestration.llm import EscalationClient
from ..orchestration.screen import CategoricalScreen
from ..safety.reputation import ReputationCache
from .reputation_store import SqlReputationStore
from .retraction import MessageRetractor

logger = logging.getLogger(__name__)


def retry_after_from(verdict: Verdict, now: Optional[datetime] = None) -> Optional[str]:
    if verdict.retry_delay is None:
        return None
    now = now or datetime.now(timezone.utc)
    return (now + timedelta(seconds=float(verdict.retry_delay))).isoformat()


class ModerationService:
    """Entry point for the chat layer: adjudicate, and queue what stays uncertain."""

    def __init__(
        self,
        moderator: ContentModerator,
        session_factory: Callable[[], Session] = SessionLocal,
    ):
        self.moderator = moderator
        self.session_factory = session_factory

    async def check_and_record(
        self,
        text: Optional[str],
        history: Optional[Sequence[HistoryLike]] = None,
        override_config: Optional[Mapping[str, Any]] = None,
        options: Optional[Union[ModerationOptions, Mapping[str, Any]]] = None,
        message_id: Optional[str] = None,
        room_id: Optional[str] = None,
    ) -> Verdict:
        verdict = await self.moderator.check_message(text, history, override_config, options)
        if verdict.review_needed and message_id:
            try:
                opts = options if isinstance(options, ModerationOptions) else ModerationOptions.model_validate(dict(options or {}))
                await run_in_threadpool(self._record, text or "", verdict, opts, message_id, room_id)
            except (SQLAlchemyError, ValueError) as e:
                logger.error("Failed to queue message %s for review: %s", message_id, e)
        return verdict

    def _record(
        self,
        content: str,
        verdict: Verdict,
        opts: ModerationOptions,
        message_id: str,
        room_id: Optional[str],
    ) -> str:
        ai_triggers: Dict[str, Any] = {
            "source": verdict.source,
            "reason": verdict.reason,
            "triggers": list(verdict.triggers),
            "senderAge": opts.user_age,
            "receiverAge": opts.receiver_age,
            "roomId": room_id,
            "retryAfter": retry_after_from(verdict),
        }
        db = self.session_factory()
        try:
            row = FlaggedMessage(
                message_id=message_id,
                user_id=opts.user_id,
                content=content[: self.moderator.settings.MAX_MESSAGE_CHARS],
                ai_triggers=ai_triggers,
                status=FlagStatus.PENDING_RETRY,
                retry_count=0,
            )
            db.add(row)
            db.commit()
            flag_id = row.id
            logger.info(
                "flagged_for_review",
                extra={"message_id": message_id, "source": verdict.source, "flag_id": flag_id},
            )
            return flag_id
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()


def build_moderator(settings: Optional[Settings] = None) -> ContentModerator:
    settings = settings or get_settings()
    store = SqlReputationStore(minimum=settings.REPUTATION_MIN, maximum=settings.REPUTATION_MAX)
    return ContentModerator(
        security=ReputationCache.from_settings(store=store, settings=settings),
        screen=CategoricalScreen.from_settings(settings),
        escalation=EscalationClient.from_settings(settings),
        settings=settings,
    )


@lru_cache()
def get_moderation_service() -> ModerationService:
    """Process-wide service (one cache connection pool, one set of provider clients)."""
    return ModerationService(build_moderator())


def get_retractor(service: Optional[ModerationService] = None) -> MessageRetractor:
    service = service or get_moderation_service()
    return MessageRetractor(
        redis_client=service.moderator.security.redis,
        channel=service.moderator.settings.MODERATION_EVENTS_CHANNEL,
    )
