import pytest

from backend.gatekeeper.models.verdict import HistoryItem, ModerationOptions
from backend.gatekeeper.orchestration.cascade import build_context, categorize
from backend.gatekeeper.policies.thresholds import TriggerReport
from backend.gatekeeper.policies.tiers import ConversationTier

from conftest import StubChatClient, StubScreenClient
from test_llm import connection_error, quota_error


def opts(user_id="u1", user_age=None, receiver_age=None):
    return ModerationOptions(user_id=user_id, user_age=user_age, receiver_age=receiver_age)


@pytest.mark.anyio
async def test_clean_teen_banter_is_rewarded_and_cached(make_moderator, fake_redis):
    screen = StubScreenClient(scores={"harassment": 0.2})
    chat = StubChatClient()
    moderator = make_moderator(screen_client=screen, chat_client=chat)

    verdict = await moderator.check_message("you suck at this game", [], None, opts("teen-1", 15, 15))

    assert verdict.is_safe is True
    assert verdict.review_needed is False
    assert verdict.source == "screen_clean"
    assert chat.calls == []
    assert await moderator.security.get_reputation("teen-1") == 51
    assert await moderator.security.get_cached_verdict("you suck at this game") is not None


@pytest.mark.anyio
async def test_short_clean_message_earns_nothing(make_moderator):
    moderator = make_moderator()
    verdict = await moderator.check_message("gg", [], None, opts("teen-2", 15, 15))
    assert verdict.is_safe is True
    assert await moderator.security.get_reputation("teen-2") == 50


@pytest.mark.anyio
async def test_pii_is_scrubbed_before_any_provider_call(make_moderator):
    screen = StubScreenClient(scores={"harassment": 0.5})
    chat = StubChatClient([{"isSafe": True, "reason": "sharing contact details with a teammate"}])
    moderator = make_moderator(screen_client=screen, chat_client=chat)
    history = [HistoryItem(role="user", content="or mail me at sam@example.com")]

    await moderator.check_message("call me 050-1234567", history, None, opts("teen-3", 16, 16))

    assert len(screen.inputs) == 1
    assert "[PHONE]" in screen.inputs[0]
    assert "050-1234567" not in screen.inputs[0]
    sent = "".join(m["content"] for call in chat.calls for m in call["messages"])
    assert "[PHONE]" in sent
    assert "[EMAIL]" in sent
    assert "050-1234567" not in sent
    assert "sam@example.com" not in sent


@pytest.mark.anyio
async def test_suspicious_user_is_rate_limited_without_provider_calls(make_moderator, fake_redis):
    fake_redis.data["huddle:user_rep:shady"] = "20"
    screen = StubScreenClient()
    chat = StubChatClient()
    moderator = make_moderator(screen_client=screen, chat_client=chat)

    verdicts = [
        await moderator.check_message(f"message number {i}", [], None, opts("shady", 30, 30)) for i in range(6)
    ]

    assert [v.source for v in verdicts[:5]] == ["screen_clean"] * 5
    assert verdicts[5].source == "ratelimit_bypass"
    assert verdicts[5].is_safe is True
    assert verdicts[5].review_needed is True
    assert len(screen.inputs) == 5
    assert chat.calls == []


@pytest.mark.anyio
async def test_adult_to_minor_solicitation_is_grooming(make_moderator, rep_store):
    screen = StubScreenClient(scores={"sexual/minors": 0.10, "sexual": 0.05})
    chat = StubChatClient([{"isSafe": False, "reason": "asks a minor for a photo", "category": None}])
    moderator = make_moderator(screen_client=screen, chat_client=chat)

    verdict = await moderator.check_message("send me a pic", [], None, opts("adult-1", 30, 14))

    assert verdict.is_safe is False
    assert verdict.review_needed is False
    assert verdict.category == "GROOMING"
    assert verdict.penalty_applied is True
    assert "STRICT_PROTECTION" in chat.calls[0]["messages"][1]["content"]
    assert await moderator.security.get_reputation("adult-1") == 30
    await moderator.security.drain()
    assert rep_store.increments == [("adult-1", -20)]

    # Replaying the same text is served from the cache: no providers, no second penalty
    again = await moderator.check_message("send me a pic", [], None, opts("adult-1", 30, 14))
    assert again.source == "cache_hit"
    assert again.is_safe is False
    assert again.penalty_applied is False
    assert len(screen.inputs) == 1
    assert len(chat.calls) == 1
    assert await moderator.security.get_reputation("adult-1") == 30


@pytest.mark.anyio
async def test_flag_overruled_by_escalation_caches_final_verdict_only(make_moderator, rep_store):
    screen = StubScreenClient(scores={"violence": 0.8})
    chat = StubChatClient([{"isSafe": True, "reason": "sports slang"}])
    moderator = make_moderator(screen_client=screen, chat_client=chat)

    verdict = await moderator.check_message("that tackle was sick, you destroyed him", [], None, opts("adult-2", 30, 30))

    assert verdict.is_safe is True
    assert verdict.source == "escalation_decision"
    assert verdict.triggers and verdict.triggers[0].startswith("violence")
    assert verdict.penalty_applied is False
    await moderator.security.drain()
    assert rep_store.increments == []

    cached = await moderator.security.get_cached_verdict("that tackle was sick, you destroyed him")
    assert cached["isSafe"] is True
    assert cached["reviewNeeded"] is False

    again = await moderator.check_message("that tackle was sick, you destroyed him", [], None, opts("adult-2", 30, 30))
    assert again.source == "cache_hit"
    assert len(screen.inputs) == 1
    assert len(chat.calls) == 1


@pytest.mark.anyio
async def test_screen_quota_fails_open_with_retry_hint(make_moderator):
    screen = StubScreenClient(error=quota_error(delay="7s"))
    moderator = make_moderator(screen_client=screen)

    verdict = await moderator.check_message("see you at practice", [], None, opts())

    assert verdict.is_safe is True
    assert verdict.review_needed is True
    assert verdict.source == "fail_open_error"
    assert verdict.retry_delay == 7.0
    assert await moderator.security.get_cached_verdict("see you at practice") is None


@pytest.mark.anyio
async def test_escalation_chain_exhaustion_fails_open(make_moderator):
    screen = StubScreenClient(scores={"harassment": 0.99})
    chat = StubChatClient([quota_error("10s"), quota_error("20s"), quota_error("30s")])
    moderator = make_moderator(screen_client=screen, chat_client=chat)

    verdict = await moderator.check_message("you are trash", [], None, opts("adult-3", 30, 30))

    assert len(chat.calls) == 3
    assert verdict.is_safe is True
    assert verdict.review_needed is True
    assert verdict.source == "escalation_quota_exhausted"
    assert verdict.retry_delay == 30.0
    assert verdict.triggers
    assert await moderator.security.get_cached_verdict("you are trash") is None


@pytest.mark.anyio
async def test_escalation_transport_error_fails_open(make_moderator):
    screen = StubScreenClient(scores={"harassment": 0.99})
    chat = StubChatClient([connection_error()])
    moderator = make_moderator(screen_client=screen, chat_client=chat)

    verdict = await moderator.check_message("you are trash", [], None, opts("adult-4", 30, 30))

    assert len(chat.calls) == 1
    assert verdict.source == "escalation_failed"
    assert verdict.review_needed is True


@pytest.mark.anyio
async def test_missing_provider_reports_system_down(settings, fake_redis):
    from backend.gatekeeper.orchestration.cascade import ContentModerator
    from backend.gatekeeper.orchestration.llm import EscalationClient
    from backend.gatekeeper.orchestration.screen import CategoricalScreen
    from backend.gatekeeper.safety.reputation import ReputationCache

    moderator = ContentModerator(
        security=ReputationCache(redis_client=fake_redis, settings=settings),
        screen=CategoricalScreen(client=None),
        escalation=EscalationClient(client=StubChatClient(), models=["fast"]),
        settings=settings,
    )
    verdict = await moderator.check_message("anyone up for a game?", [], None, opts())
    assert verdict.source == "system_down"
    assert verdict.is_safe is True
    assert verdict.review_needed is True


@pytest.mark.anyio
async def test_unexpected_error_never_escapes(make_moderator):
    moderator = make_moderator(screen_client=StubScreenClient(error=RuntimeError("boom")))
    verdict = await moderator.check_message("anyone up for a game?", [], None, {"userId": "u9"})
    assert verdict.source == "fail_open_error"
    assert verdict.is_safe is True
    assert verdict.review_needed is True


@pytest.mark.anyio
async def test_empty_message_short_circuits(make_moderator):
    screen = StubScreenClient()
    moderator = make_moderator(screen_client=screen)
    verdict = await moderator.check_message("", [], None, None)
    assert verdict.source == "empty"
    assert screen.inputs == []


@pytest.mark.anyio
async def test_screen_flag_without_scores_still_escalates(make_moderator):
    chat = StubChatClient([{"isSafe": True, "reason": "fine"}])
    moderator = make_moderator(screen_client=StubScreenClient(flagged=True), chat_client=chat)
    verdict = await moderator.check_message("meet behind the gym", [], None, opts())
    assert verdict.triggers == ["flagged_by_screen"]
    assert len(chat.calls) == 1


@pytest.mark.anyio
async def test_low_reputation_is_called_out_in_prompt(make_moderator, fake_redis):
    fake_redis.data["huddle:user_rep:shady"] = "10"
    chat = StubChatClient([{"isSafe": True, "reason": "fine"}])
    moderator = make_moderator(screen_client=StubScreenClient(scores={"harassment": 0.5}), chat_client=chat)
    await moderator.check_message("you are slow", [], None, opts("shady", 16, 16))
    assert "low reputation" in chat.calls[0]["messages"][1]["content"]


def test_build_context_keeps_most_recent_within_budget():
    history = [{"role": "user", "content": f"message {i} " + "x" * 20} for i in range(20)]
    context = build_context(history, max_chars=100, max_messages=10)
    assert len(context) <= 100
    assert "message 19" in context
    assert "message 0 " not in context
    lines = context.strip().split("\n")
    assert lines[-1].startswith("user: message 19")


def test_build_context_scrubs_history():
    context = build_context([HistoryItem(role="user", content="my cell is 050-1234567")])
    assert context == "user: my cell is [PHONE]\n"


@pytest.mark.parametrize(
    "tier,categories,proposed,expected",
    [
        (ConversationTier.TEEN_PEER, ["harassment"], "threat", "THREAT"),
        (ConversationTier.TEEN_PEER, ["sexual"], None, "GROOMING"),
        (ConversationTier.LOOSE, ["sexual"], None, "HARASSMENT"),
        (ConversationTier.LOOSE, ["self-harm/intent"], None, "SELF_HARM"),
        (ConversationTier.LOOSE, ["harassment/threatening"], "nonsense", "THREAT"),
        (ConversationTier.STRICT_PROTECTION, [], None, "GROOMING"),
    ],
)
def test_categorize(tier, categories, proposed, expected):
    assert categorize(tier, TriggerReport(categories=categories), proposed) == expected
