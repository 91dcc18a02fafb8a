"""Retry queue for messages shown during an outage without a confident verdict.

Each sweep re-adjudicates PENDING_RETRY rows. Confirmed-safe rows resolve as
AUTO_APPROVED; confirmed-unsafe rows are retracted from the live chat,
resolved as AUTO_REJECTED and their sender penalised; anything still
inconclusive is retried on a later sweep until REVIEW_MAX_RETRIES, after which
it is ABANDONED for human follow-up.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional

from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from ..db.base import SessionLocal
from ..models.sql_models import FlaggedMessage, FlagResolution, FlagStatus
from ..models.verdict import ModerationOptions, Verdict
from ..orchestration.cascade import ContentModerator
from ..services.moderation import get_moderation_service, get_retractor, retry_after_from
from ..services.retraction import MessageRetractor

logger = logging.getLogger(__name__)


@dataclass
class PendingReview:
    id: str
    message_id: Optional[str]
    user_id: str
    content: str
    retry_count: int
    ai_triggers: Dict[str, Any] = field(default_factory=dict)


def _parse_ts(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def _age(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class ReviewQueueWorker:
    def __init__(
        self,
        moderator: ContentModerator,
        retractor: MessageRetractor,
        session_factory: Callable[[], Session] = SessionLocal,
        max_retries: Optional[int] = None,
        interval_s: Optional[int] = None,
    ):
        self.moderator = moderator
        self.retractor = retractor
        self.session_factory = session_factory
        self.max_retries = max_retries if max_retries is not None else moderator.settings.REVIEW_MAX_RETRIES
        self.interval_s = interval_s if interval_s is not None else moderator.settings.REVIEW_WORKER_INTERVAL_S
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def sweep(self) -> Optional[Dict[str, int]]:
        """Process the queue once. Returns None when a sweep is already in flight."""
        if self._running:
            logger.info("Review sweep already running; skipping")
            return None
        self._running = True
        try:
            return await self._sweep()
        finally:
            self._running = False

    async def run_forever(self, stop: asyncio.Event) -> None:
        logger.info("Review worker started (interval=%ss)", self.interval_s)
        while not stop.is_set():
            try:
                await self.sweep()
            except Exception as e:
                logger.error("Review sweep failed: %s", e, exc_info=True)
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval_s)
            except asyncio.TimeoutError:
                continue
        logger.info("Review worker stopped")

    async def _sweep(self) -> Dict[str, int]:
        items = await run_in_threadpool(self._load_pending)
        counts: Dict[str, int] = {
            "checked": len(items),
            "approved": 0,
            "rejected": 0,
            "deferred": 0,
            "waiting": 0,
            "abandoned": 0,
            "errors": 0,
        }
        for item in items:
            try:
                outcome = await self._process(item)
            except Exception as e:
                logger.error("Review of flagged message %s failed: %s", item.id, e, exc_info=True)
                outcome = "errors"
            counts[outcome] += 1
        if items:
            logger.info("review_sweep", extra=counts)
        return counts

    def _load_pending(self) -> List[PendingReview]:
        db = self.session_factory()
        try:
            rows = (
                db.query(FlaggedMessage)
                .filter(
                    FlaggedMessage.status == FlagStatus.PENDING_RETRY,
                    FlaggedMessage.retry_count < self.max_retries,
                )
                .order_by(FlaggedMessage.created_at)
                .all()
            )
            return [
                PendingReview(
                    id=r.id,
                    message_id=r.message_id,
                    user_id=r.user_id,
                    content=r.content,
                    retry_count=r.retry_count or 0,
                    ai_triggers=dict(r.ai_triggers or {}),
                )
                for r in rows
            ]
        finally:
            db.close()

    async def _process(self, item: PendingReview) -> str:
        meta = item.ai_triggers
        now = datetime.now(timezone.utc)
        retry_after = _parse_ts(meta.get("retryAfter"))
        if retry_after and now < retry_after:
            logger.info(
                "Skipping flagged message %s, provider asked to wait %ss",
                item.message_id,
                int((retry_after - now).total_seconds()) + 1,
            )
            return "waiting"

        logger.info("Retrying flagged message %s", item.message_id)
        verdict = await self.moderator.check_message(
            item.content,
            [],
            None,
            ModerationOptions(
                user_id=item.user_id,
                user_age=_age(meta.get("senderAge")),
                receiver_age=_age(meta.get("receiverAge")),
            ),
        )

        if verdict.review_needed:
            return await run_in_threadpool(self._defer, item, verdict)

        if verdict.is_safe:
            await run_in_threadpool(self._resolve, item.id, FlagResolution.AUTO_APPROVED, verdict)
            return "approved"

        logger.warning("Unsafe content detected retroactively: %s", item.message_id)
        # Retraction and penalty only follow a committed resolution
        await run_in_threadpool(self._resolve, item.id, FlagResolution.AUTO_REJECTED, verdict)
        if item.message_id:
            await self.retractor.retract(item.message_id, meta.get("roomId"))
        if not verdict.penalty_applied:
            security = self.moderator.security
            baseline = await security.get_reputation(item.user_id)
            await security.penalize_once(
                item.user_id,
                item.content[: self.moderator.settings.MAX_MESSAGE_CHARS],
                self.moderator.settings.REPUTATION_PENALTY_UNSAFE,
                baseline=baseline,
            )
        return "rejected"

    def _resolve(self, flag_id: str, resolution: str, verdict: Verdict) -> None:
        db = self.session_factory()
        try:
            row = db.get(FlaggedMessage, flag_id)
            if row is None:
                return
            meta = dict(row.ai_triggers or {})
            meta.update({"finalSource": verdict.source, "finalReason": verdict.reason, "category": verdict.category})
            row.ai_triggers = meta
            row.status = FlagStatus.RESOLVED
            row.resolution = resolution
            db.commit()
        finally:
            db.close()

    def _defer(self, item: PendingReview, verdict: Verdict) -> str:
        db = self.session_factory()
        try:
            row = db.get(FlaggedMessage, item.id)
            if row is None:
                return "errors"
            meta = dict(row.ai_triggers or {})
            meta["lastSource"] = verdict.source
            meta["retryAfter"] = retry_after_from(verdict)
            row.ai_triggers = meta
            row.retry_count = (row.retry_count or 0) + 1
            outcome = "deferred"
            if row.retry_count >= self.max_retries:
                row.status = FlagStatus.ABANDONED
                outcome = "abandoned"
                logger.warning(
                    "Flagged message %s abandoned after %s retries; needs human review",
                    item.message_id,
                    row.retry_count,
                )
            db.commit()
            return outcome
        finally:
            db.close()


@lru_cache()
def get_review_worker() -> ReviewQueueWorker:
    service = get_moderation_service()
    return ReviewQueueWorker(
        moderator=service.moderator,
        retractor=get_retractor(service),
        session_factory=service.session_factory,
    )
