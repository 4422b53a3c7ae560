import asyncio

import pytest

from cascade import (
    EXHAUSTED_MESSAGE,
    GENERIC_ERROR_MESSAGE,
    METHOD_NOT_ALLOWED_MESSAGE,
    NO_REPLY_MESSAGE,
    CancelToken,
    ChatSession,
    DispatchState,
    build_contents,
    is_capacity_error,
)
from relay_client import RelayError
from tiers import DEFAULT_TIER_INDEX, MODEL_TIERS
from transcript import TranscriptStore, Turn

EXHAUSTED = RelayError(
    'HTTP 429 — {"error": {"code": 429, "status": "RESOURCE_EXHAUSTED"}}', status=429
)


def reply(text):
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


class FakeRelay:
    """Answers per model id; a list of outcomes is consumed one per call."""

    def __init__(self, outcomes):
        self.outcomes = outcomes
        self.payloads = []

    @property
    def models(self):
        return [p["metadata"]["model"] for p in self.payloads]

    async def send(self, payload):
        self.payloads.append(payload)
        outcome = self.outcomes[payload["metadata"]["model"]]
        if isinstance(outcome, list):
            outcome = outcome.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def make_session(outcomes, **kwargs):
    store = TranscriptStore({})
    relay = FakeRelay(outcomes)
    kwargs.setdefault("backoff", 0)
    return ChatSession(relay, store, **kwargs), relay, store


def ids(*indexes):
    return [MODEL_TIERS[i].identifier for i in indexes]


def test_success_appends_both_turns_and_sends_history():
    session, relay, store = make_session({MODEL_TIERS[DEFAULT_TIER_INDEX].identifier: reply("**Hi** there")})
    store.append("user", "earlier")
    store.append("assistant", "sure")

    result = asyncio.run(session.submit("  hello  "))

    assert result.state is DispatchState.SUCCEEDED
    assert result.text == "Hi there"
    assert relay.payloads == [
        {
            "contents": [
                {"role": "user", "parts": [{"text": "earlier"}]},
                {"role": "model", "parts": [{"text": "sure"}]},
                {"role": "user", "parts": [{"text": "hello"}]},
            ],
            "metadata": {"model": "gemini-2.5-flash-lite", "preset": "balanced"},
        }
    ]
    assert store.load()[-2:] == [Turn("user", "hello"), Turn("assistant", "Hi there")]


def test_unsanitized_reply_is_kept_verbatim():
    session, _, store = make_session({ids(2)[0]: reply("**bold**")}, sanitize=False)
    result = asyncio.run(session.submit("x"))
    assert result.text == "**bold**"
    assert store.load()[-1] == Turn("assistant", "**bold**")


def test_resource_exhausted_falls_back_to_next_tier():
    notices = []
    session, relay, store = make_session(
        {ids(2)[0]: EXHAUSTED, ids(3)[0]: reply("from lower tier")},
        on_fallback=lambda a, b: notices.append((a.identifier, b.identifier)),
    )

    result = asyncio.run(session.submit("hello"))

    assert result.state is DispatchState.SUCCEEDED
    assert relay.models == ids(2, 3)
    assert session.selected_index == 3
    assert notices == [tuple(ids(2, 3))]
    assert store.load()[-1] == Turn("assistant", "from lower tier")


def test_all_tiers_exhausted_from_top():
    session, relay, store = make_session(
        {tier.identifier: EXHAUSTED for tier in MODEL_TIERS}, selected_index=0
    )

    result = asyncio.run(session.submit("hello"))

    assert result.state is DispatchState.EXHAUSTED
    assert result.error == EXHAUSTED_MESSAGE
    assert relay.models == ids(0, 1, 2, 3, 4)
    assert result.attempts == ids(0, 1, 2, 3, 4)
    assert session.selected_index == 4
    assert store.load() == [Turn("user", "hello")]


def test_fallback_walks_forward_only():
    session, relay, _ = make_session(
        {tier.identifier: EXHAUSTED for tier in MODEL_TIERS}, selected_index=3
    )
    result = asyncio.run(session.submit("hello"))
    assert result.state is DispatchState.EXHAUSTED
    assert relay.models == ids(3, 4)


def test_attempted_tiers_reset_for_each_turn():
    session, relay, _ = make_session(
        {ids(0)[0]: [EXHAUSTED, reply("top tier back")], ids(1)[0]: reply("second")},
        selected_index=0,
    )

    first = asyncio.run(session.submit("one"))
    assert first.text == "second"
    assert session.selected_index == 1

    session.select("2.5 Pro")
    second = asyncio.run(session.submit("two"))
    assert second.text == "top tier back"
    assert relay.models == ids(0, 1, 0)


def test_other_failure_is_terminal_with_verbose_message():
    session, relay, store = make_session({ids(2)[0]: RelayError("HTTP 400 — bad", status=400)})
    result = asyncio.run(session.submit("hello"))

    assert result.state is DispatchState.FAILED
    assert result.error == "Connection error: HTTP 400 — bad"
    assert relay.models == ids(2)
    assert store.load() == [Turn("user", "hello")]


def test_other_failure_generic_message_without_debug():
    session, _, _ = make_session({ids(2)[0]: RelayError("Network error: boom")}, debug_errors=False)
    result = asyncio.run(session.submit("hello"))
    assert result.error == GENERIC_ERROR_MESSAGE


def test_method_not_allowed_gets_relay_hint():
    session, _, _ = make_session({ids(2)[0]: RelayError("HTTP 405 — nope", status=405)})
    result = asyncio.run(session.submit("hello"))
    assert result.error == METHOD_NOT_ALLOWED_MESSAGE


def test_empty_reply_is_a_failure():
    session, _, store = make_session({ids(2)[0]: ""})
    result = asyncio.run(session.submit("hello"))
    assert result.state is DispatchState.FAILED
    assert result.error == NO_REPLY_MESSAGE
    assert store.load() == [Turn("user", "hello")]


def test_empty_message_is_rejected():
    session, relay, _ = make_session({})
    with pytest.raises(ValueError):
        asyncio.run(session.submit("   "))
    assert relay.payloads == []


def test_cancel_mid_attempt_discards_late_reply():
    store = TranscriptStore({})

    async def scenario():
        started = asyncio.Event()
        release = asyncio.get_running_loop().create_future()

        class SlowRelay:
            async def send(self, payload):
                started.set()
                return await asyncio.shield(release)

        session = ChatSession(SlowRelay(), store, backoff=0)
        task = asyncio.create_task(session.submit("hello"))
        await started.wait()
        assert session.busy
        assert session.cancel() is True
        release.set_result(reply("too late"))
        result = await task
        await asyncio.sleep(0)
        return session, result

    session, result = asyncio.run(scenario())
    assert result.state is DispatchState.CANCELLED
    assert store.load() == [Turn("user", "hello")]
    assert not session.busy
    assert session.cancel() is False


def test_cancel_during_backoff_skips_next_attempt():
    async def scenario():
        session, relay, _ = make_session(
            {ids(2)[0]: EXHAUSTED, ids(3)[0]: reply("never")}, backoff=30
        )
        loop = asyncio.get_running_loop()
        session.on_fallback = lambda a, b: loop.call_soon(session.cancel)
        result = await session.submit("hello")
        return session, relay, result

    session, relay, result = asyncio.run(scenario())
    assert result.state is DispatchState.CANCELLED
    assert relay.models == ids(2)
    assert session.selected_index == 2


def test_new_submission_cancels_previous_run_once(monkeypatch):
    events = []
    original_cancel = CancelToken.cancel

    def counting_cancel(self):
        events.append("cancel")
        return original_cancel(self)

    monkeypatch.setattr(CancelToken, "cancel", counting_cancel)
    store = TranscriptStore({})

    class BlockingRelay:
        async def send(self, payload):
            text = payload["contents"][-1]["parts"][0]["text"]
            events.append(f"send {text}")
            if text == "first":
                await asyncio.Event().wait()
            return reply(f"reply to {text}")

    async def scenario():
        session = ChatSession(BlockingRelay(), store, backoff=0)
        first = asyncio.create_task(session.submit("first"))
        while "send first" not in events:
            await asyncio.sleep(0)
        second = await session.submit("second")
        return await first, second

    first, second = asyncio.run(scenario())
    assert first.state is DispatchState.CANCELLED
    assert second.state is DispatchState.SUCCEEDED
    assert events == ["send first", "cancel", "send second"]
    assert store.load() == [
        Turn("user", "first"),
        Turn("user", "second"),
        Turn("assistant", "reply to second"),
    ]


def test_new_chat_clears_transcript():
    session, _, store = make_session({ids(2)[0]: reply("hi")})
    asyncio.run(session.submit("hello"))
    session.new_chat()
    assert store.load() == []


def test_select_by_index_id_and_alias():
    session, _, _ = make_session({})
    assert session.select(0).identifier == "gemini-2.5-pro"
    assert session.select("gemini-2.0-flash").alias == "2.0 Flash"
    assert session.select("2.5 flash-lite") is MODEL_TIERS[2]
    assert session.select("4").identifier == "gemini-2.0-flash-lite"
    with pytest.raises(ValueError):
        session.select("gpt-4")


@pytest.mark.parametrize(
    "message",
    [
        "HTTP 429 — Too Many Requests",
        'HTTP 500 — {"status": "RESOURCE_EXHAUSTED"}',
        "Resource exhausted for this project",
        "You exceeded your current quota",
        "HTTP 503 — The model is overloaded. Please try again later.",
        "rate limit reached",
    ],
)
def test_capacity_signals(message):
    assert is_capacity_error(RelayError(message))


def test_non_capacity_errors():
    assert not is_capacity_error(RelayError("HTTP 400 — INVALID_ARGUMENT"))
    assert not is_capacity_error(RelayError("Network error: connection refused"))
    assert is_capacity_error(RelayError("HTTP 429", status=429))


def test_build_contents_respects_relay_window():
    history = [Turn("user" if i % 2 == 0 else "assistant", f"t{i}") for i in range(16)]
    contents = build_contents(history, "new")

    assert len(contents) <= 10
    assert contents[0]["role"] == "user"
    assert contents[-1] == {"role": "user", "parts": [{"text": "new"}]}
    assert contents[-2] == {"role": "model", "parts": [{"text": "t15"}]}


def test_reply_that_sanitizes_to_nothing_is_not_stored():
    session, relay, store = make_session(
        {ids(2)[0]: [reply("```python\nprint(1)\n```"), reply("plain words")]}
    )

    first = asyncio.run(session.submit("show code"))
    assert first.state is DispatchState.FAILED
    assert first.error == NO_REPLY_MESSAGE
    assert store.load() == [Turn("user", "show code")]

    second = asyncio.run(session.submit("again"))
    assert second.text == "plain words"
    for entry in relay.payloads[1]["contents"]:
        assert entry["parts"][0]["text"].strip()


def test_oversize_turn_is_not_resent_to_the_relay():
    from app import validate_body

    class ValidatingRelay:
        async def send(self, payload):
            error = validate_body(payload)
            if error:
                raise RelayError(f"HTTP 400 — {error}", status=400)
            return reply("ok")

    store = TranscriptStore({})
    session = ChatSession(ValidatingRelay(), store, backoff=0)

    too_long = asyncio.run(session.submit("y" * 8001))
    assert too_long.state is DispatchState.FAILED
    assert "message too long" in too_long.error

    follow_up = asyncio.run(session.submit("thanks"))
    assert follow_up.state is DispatchState.SUCCEEDED
    assert follow_up.text == "ok"


def test_build_contents_skips_empty_and_oversize_turns():
    history = [
        Turn("user", "x" * 8001),
        Turn("user", "kept"),
        Turn("assistant", ""),
        Turn("assistant", "answer"),
    ]
    assert build_contents(history, "new") == [
        {"role": "user", "parts": [{"text": "kept"}]},
        {"role": "model", "parts": [{"text": "answer"}]},
        {"role": "user", "parts": [{"text": "new"}]},
    ]
