from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ....models.verdict import HistoryItem, ModerationOptions
from ....services.moderation import ModerationService, get_moderation_service
from ....workers.review_worker import get_review_worker

router = APIRouter(prefix="/moderation", tags=["moderation"])


# Models


class CheckRequest(BaseModel):
    text: str = ""
    history: List[HistoryItem] = Field(default_factory=list)
    override_config: Optional[Dict[str, Any]] = None
    user_id: str = "anonymous"
    user_age: Optional[int] = None
    receiver_age: Optional[int] = None
    max_history_chars: Optional[int] = None
    # Present when the chat layer has already stored the message
    message_id: Optional[str] = None
    room_id: Optional[str] = None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


@router.post("/check")
async def check_message(
    check_request: CheckRequest,
    service: ModerationService = Depends(get_moderation_service),
) -> Dict[str, Any]:
    """
    Adjudicate one chat message. Always answers with a verdict.
    """
    verdict = await service.check_and_record(
        check_request.text,
        history=check_request.history,
        override_config=check_request.override_config,
        options=ModerationOptions(
            user_id=check_request.user_id,
            user_age=check_request.user_age,
            receiver_age=check_request.receiver_age,
            max_history_chars=check_request.max_history_chars,
        ),
        message_id=check_request.message_id,
        room_id=check_request.room_id,
    )
    return verdict.to_wire()


@router.get("/reputation/{user_id}")
async def get_reputation(
    user_id: str,
    service: ModerationService = Depends(get_moderation_service),
) -> Dict[str, Any]:
    score = await service.moderator.security.get_reputation(user_id)
    return {"userId": user_id, "score": score}


@router.post("/review/sweep")
async def run_review_sweep(request: Request) -> Dict[str, Any]:
    """Run one review sweep now (the periodic worker keeps its own schedule)."""
    worker = getattr(request.app.state, "review_worker", None) or get_review_worker()
    counts = await worker.sweep()
    if counts is None:
        return {"skipped": True}
    return {"skipped": False, **counts}
