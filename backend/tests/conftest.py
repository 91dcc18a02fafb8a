import json
import sys
import types
from pathlib import Path
from typing import Any, Dict, List, Optional

# Ensure repository root is on sys.path so 'import backend' works
ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Force pytest-anyio to use asyncio backend (avoid requiring 'trio')
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from backend.gatekeeper.config import Settings
from backend.gatekeeper.db.base import init_db
from backend.gatekeeper.orchestration.cascade import ContentModerator
from backend.gatekeeper.orchestration.llm import EscalationClient
from backend.gatekeeper.orchestration.screen import CategoricalScreen
from backend.gatekeeper.safety.reputation import ReputationCache


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeRedis:
    """In-memory stand-in for the redis.asyncio client surface we use."""

    def __init__(self):
        self.data: Dict[str, str] = {}
        self.ttls: Dict[str, int] = {}
        self.published: List[tuple] = []
        self.down = False
        # Commands that fail once, e.g. {"eval"}
        self.fail_once: set = set()
        self.closed = False

    def _check(self, command=None):
        if self.down:
            raise RedisConnectionError("connection refused")
        if command in self.fail_once:
            self.fail_once.discard(command)
            raise RedisConnectionError(f"{command} timed out")

    async def get(self, key):
        self._check("get")
        return self.data.get(key)

    async def set(self, key, value, ex=None, nx=False):
        self._check("set")
        if nx and key in self.data:
            return None
        self.data[key] = str(value)
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def incr(self, key):
        self._check("incr")
        value = int(self.data.get(key, 0)) + 1
        self.data[key] = str(value)
        return value

    async def expire(self, key, seconds):
        self._check("expire")
        self.ttls[key] = seconds
        return True

    async def eval(self, script, numkeys, key, *args):
        # Mirrors the two Lua scripts in use; no await inside, so atomic
        self._check("eval")
        if "'incr'" in script:
            value = int(self.data.get(key, 0)) + 1
            self.data[key] = str(value)
            if key not in self.ttls:
                self.ttls[key] = int(args[0])
            return value
        delta, baseline, maximum, minimum, ttl = args
        current = int(self.data.get(key, baseline))
        new_score = max(int(minimum), min(int(maximum), current + int(delta)))
        self.data[key] = str(new_score)
        self.ttls[key] = ttl
        return new_score

    async def publish(self, channel, message):
        self._check("publish")
        self.published.append((channel, json.loads(message)))
        return 1

    async def aclose(self):
        self.closed = True


class MemoryReputationStore:
    def __init__(self, scores: Optional[Dict[str, int]] = None):
        self.scores: Dict[str, int] = dict(scores or {})
        self.increments: List[tuple] = []

    async def get_score(self, user_id):
        return self.scores.get(user_id)

    async def increment_score(self, user_id, delta):
        self.increments.append((user_id, delta))
        if user_id in self.scores:
            self.scores[user_id] = max(0, min(100, self.scores[user_id] + delta))


class StubScreenClient:
    """Mimics ``AsyncOpenAI().moderations``; records every input it receives."""

    def __init__(self, scores: Optional[Dict[str, float]] = None, flagged: bool = False, error: Any = None):
        self.scores = scores or {}
        self.flagged = flagged
        self.error = error
        self.inputs: List[str] = []
        self.moderations = types.SimpleNamespace(create=self._create)

    async def _create(self, model: str, input: str):
        self.inputs.append(input)
        if self.error is not None:
            raise self.error
        result = types.SimpleNamespace(flagged=self.flagged, category_scores=dict(self.scores))
        return types.SimpleNamespace(results=[result])


class StubChatClient:
    """Mimics ``AsyncOpenAI().chat.completions``.

    ``replies`` is consumed in order; an exception instance is raised, a
    dict is returned as JSON content.
    """

    def __init__(self, replies: Optional[List[Any]] = None):
        self.replies = list(replies or [])
        self.calls: List[Dict[str, Any]] = []
        self.chat = types.SimpleNamespace(completions=types.SimpleNamespace(create=self._create))

    async def _create(self, **kwargs):
        self.calls.append(kwargs)
        reply = self.replies.pop(0) if self.replies else {"isSafe": True, "reason": "ok", "category": None}
        if isinstance(reply, Exception):
            raise reply
        content = reply if isinstance(reply, str) else json.dumps(reply)
        message = types.SimpleNamespace(content=content)
        return types.SimpleNamespace(choices=[types.SimpleNamespace(message=message)])


@pytest.fixture
def settings():
    return Settings(
        REDIS_URL="",
        OPENAI_API_KEY="test",
        ESCALATION_API_KEY="test",
        ESCALATION_MODELS=["fast", "medium", "slow"],
        REVIEW_WORKER_ENABLED=False,
    )


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def rep_store():
    return MemoryReputationStore()


@pytest.fixture
def make_moderator(settings, fake_redis, rep_store):
    def _make(screen_client=None, chat_client=None, redis_client=fake_redis, store=rep_store):
        security = ReputationCache(redis_client=redis_client, store=store, settings=settings)
        screen = CategoricalScreen(client=screen_client or StubScreenClient())
        escalation = EscalationClient(client=chat_client or StubChatClient(), models=settings.ESCALATION_MODELS)
        return ContentModerator(security=security, screen=screen, escalation=escalation, settings=settings)

    return _make


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    try:
        yield factory
    finally:
        engine.dispose()
