import logging
from typing import Callable, Optional

from fastapi.concurrency import run_in_threadpool
from sqlalchemy import case, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.errors import PersistenceError
from ..db.base import SessionLocal
from ..models.sql_models import User

logger = logging.getLogger(__name__)


class SqlReputationStore:
    """Durable reputation delegate backed by ``users.reputation``.

    Blocking SQLAlchemy work runs in the threadpool so the event loop
    never waits on the database.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        minimum: int = 0,
        maximum: int = 100,
    ):
        self.session_factory = session_factory
        self.minimum = minimum
        self.maximum = maximum

    async def get_score(self, user_id: str) -> Optional[int]:
        return await run_in_threadpool(self._get_score, user_id)

    async def increment_score(self, user_id: str, delta: int) -> None:
        await run_in_threadpool(self._increment_score, user_id, delta)

    def _get_score(self, user_id: str) -> Optional[int]:
        db = self.session_factory()
        try:
            row = db.query(User.reputation).filter(User.id == user_id).first()
            return int(row[0]) if row and row[0] is not None else None
        except SQLAlchemyError as e:
            raise PersistenceError(f"reputation read failed: {e}") from e
        finally:
            db.close()

    def _increment_score(self, user_id: str, delta: int) -> None:
        db = self.session_factory()
        try:
            # Single clamped UPDATE so concurrent increments cannot escape [min, max]
            raw = User.reputation + delta
            stmt = (
                update(User)
                .where(User.id == user_id)
                .values(
                    reputation=case(
                        (raw > self.maximum, self.maximum),
                        (raw < self.minimum, self.minimum),
                        else_=raw,
                    )
                )
            )
            result = db.execute(stmt)
            db.commit()
            if result.rowcount == 0:
                logger.info("Reputation increment for unknown user %s ignored", user_id)
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError(f"reputation increment failed: {e}") from e
        finally:
            db.close()
