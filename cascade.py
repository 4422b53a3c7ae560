import asyncio
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Protocol, Sequence, Union

from normalize import extract_reply_text, sanitize_reply_text
from relay_client import RelayError
from tiers import DEFAULT_TIER_INDEX, MODEL_TIERS, ModelTier, find_tier
from transcript import Turn, TranscriptStore

logger = logging.getLogger(__name__)

# ----- Config -----
FALLBACK_DELAY_SECONDS = 0.6
RELAY_MAX_CONTENTS = 10  # the relay rejects longer ``contents`` arrays
RELAY_MAX_PART_CHARS = 8000
DEBUG_SHOW_ERRORS = os.getenv("CELEBRA_DEBUG_ERRORS", "true").lower() == "true"

CAPACITY_SIGNALS = (
    "http 429",
    "rate limit",
    "quota",
    "resource_exhausted",
    "resource exhausted",
    "overload",
)

EXHAUSTED_MESSAGE = (
    "All available model tiers have reached their limits. "
    "Please try again later or choose a different model."
)
NO_REPLY_MESSAGE = "No response from the model."
GENERIC_ERROR_MESSAGE = "Connection error. Try again."
METHOD_NOT_ALLOWED_MESSAGE = (
    "Server returned 405: the host does not run the relay at /api/*. "
    "Start it with `python app.py` or point --relay at a running relay."
)


class Relay(Protocol):
    async def send(self, payload: dict) -> Any: ...


class DispatchCancelled(Exception):
    """The run's cancel token fired before the awaited step finished."""


class DispatchState(str, Enum):
    SUCCEEDED = "succeeded"
    CANCELLED = "cancelled"
    EXHAUSTED = "exhausted"
    FAILED = "failed"


@dataclass
class DispatchResult:
    state: DispatchState
    tier: ModelTier
    text: Optional[str] = None
    error: Optional[str] = None
    attempts: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state is DispatchState.SUCCEEDED


class CancelToken:
    """Cooperative cancellation shared by one cascade run and its network call."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> bool:
        if self._event.is_set():
            return False
        self._event.set()
        return True

    async def run(self, awaitable: Awaitable[Any]) -> Any:
        """Await ``awaitable`` unless the token fires first.

        Once the token has fired the call's result is discarded, even if it
        finished in the same loop iteration.
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise DispatchCancelled()

        call = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({call, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            call.cancel()
            raise
        finally:
            waiter.cancel()

        if call in done and not self.cancelled:
            return call.result()
        if not call.done():
            call.cancel()
        elif not call.cancelled():
            call.exception()  # retrieved, so asyncio does not log it
        raise DispatchCancelled()

    async def sleep(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise DispatchCancelled()


def is_capacity_error(exc: BaseException) -> bool:
    if isinstance(exc, RelayError) and exc.status == 429:
        return True
    msg = str(exc).lower()
    return any(signal in msg for signal in CAPACITY_SIGNALS)


def build_contents(history: Sequence[Turn], text: str, limit: int = RELAY_MAX_CONTENTS) -> List[dict]:
    """Map history plus the new user message onto ``generateContent`` contents.

    Turns the relay would reject (empty, or longer than its part limit) are
    left out so one bad turn does not break every later request.
    """
    sendable = [t for t in history if t.text.strip() and len(t.text) <= RELAY_MAX_PART_CHARS]
    window = sendable[-(limit - 1):] if limit > 1 else []
    while window and window[0].role == "assistant":
        window.pop(0)

    contents = [
        {"role": "model" if t.role == "assistant" else "user", "parts": [{"text": t.text}]}
        for t in window
    ]
    contents.append({"role": "user", "parts": [{"text": text}]})
    return contents


class ChatSession:
    """One conversation: the selected tier, the transcript and the in-flight run.

    ``submit`` runs the dispatch cascade for a single user message. When the
    upstream reports rate limits, quota or overload for a tier, the cascade
    moves forward to the next tier it has not tried in this run, so a run
    makes at most one attempt per tier.
    """

    def __init__(
        self,
        relay: Relay,
        store: TranscriptStore,
        tiers: Sequence[ModelTier] = MODEL_TIERS,
        selected_index: int = DEFAULT_TIER_INDEX,
        preset: str = "balanced",
        backoff: float = FALLBACK_DELAY_SECONDS,
        debug_errors: bool = DEBUG_SHOW_ERRORS,
        sanitize: bool = True,
        on_fallback: Optional[Callable[[ModelTier, ModelTier], None]] = None,
    ):
        if not tiers:
            raise ValueError("at least one model tier is required")
        if not 0 <= selected_index < len(tiers):
            raise ValueError(f"selected_index {selected_index} out of range")
        self.relay = relay
        self.store = store
        self.tiers = list(tiers)
        self.selected_index = selected_index
        self.preset = preset
        self.backoff = backoff
        self.debug_errors = debug_errors
        self.sanitize = sanitize
        self.on_fallback = on_fallback
        self._token: Optional[CancelToken] = None

    @property
    def selected_tier(self) -> ModelTier:
        return self.tiers[self.selected_index]

    @property
    def busy(self) -> bool:
        return self._token is not None and not self._token.cancelled

    def select(self, choice: Union[int, str]) -> ModelTier:
        idx = find_tier(self.tiers, choice)
        if idx is None:
            raise ValueError(f"unknown model tier: {choice!r}")
        self.selected_index = idx
        return self.selected_tier

    def cancel(self) -> bool:
        token, self._token = self._token, None
        return token.cancel() if token is not None else False

    def new_chat(self) -> None:
        self.cancel()
        self.store.clear()

    def _next_untried(self, index: int, attempted: set) -> Optional[int]:
        for candidate in range(index + 1, len(self.tiers)):
            if candidate not in attempted:
                return candidate
        return None

    def _failure_text(self, exc: Exception) -> str:
        msg = str(exc)
        if (isinstance(exc, RelayError) and exc.status == 405) or "HTTP 405" in msg:
            return METHOD_NOT_ALLOWED_MESSAGE
        if self.debug_errors and msg:
            return f"Connection error: {msg}"
        return GENERIC_ERROR_MESSAGE

    async def submit(self, text: str) -> DispatchResult:
        text = (text or "").strip()
        if not text:
            raise ValueError("message is empty")

        self.cancel()
        token = CancelToken()
        self._token = token

        contents = build_contents(self.store.load(), text)
        self.store.append("user", text)

        attempted: set = set()
        index = self.selected_index
        attempts: List[str] = []
        try:
            while True:
                attempted.add(index)
                if index != self.selected_index:
                    self.selected_index = index
                tier = self.tiers[index]
                attempts.append(tier.identifier)
                payload = {
                    "contents": contents,
                    "metadata": {"model": tier.identifier, "preset": self.preset},
                }

                try:
                    raw = await token.run(self.relay.send(payload))
                except DispatchCancelled:
                    raise
                except Exception as exc:
                    if not is_capacity_error(exc):
                        logger.warning("Request to %s failed: %s", tier.identifier, exc)
                        return DispatchResult(
                            DispatchState.FAILED, tier, error=self._failure_text(exc), attempts=attempts
                        )

                    nxt = self._next_untried(index, attempted)
                    if nxt is None:
                        logger.warning("All model tiers exhausted after %s", ", ".join(attempts))
                        return DispatchResult(
                            DispatchState.EXHAUSTED, tier, error=EXHAUSTED_MESSAGE, attempts=attempts
                        )
                    logger.info(
                        "%s is over capacity, falling back to %s", tier.identifier, self.tiers[nxt].identifier
                    )
                    if self.on_fallback is not None:
                        self.on_fallback(tier, self.tiers[nxt])
                    index = nxt
                    await token.sleep(self.backoff)
                    continue

                reply = extract_reply_text(raw)
                if reply is not None and self.sanitize:
                    reply = sanitize_reply_text(reply)
                if not reply or not reply.strip():
                    return DispatchResult(DispatchState.FAILED, tier, error=NO_REPLY_MESSAGE, attempts=attempts)
                self.store.append("assistant", reply)
                return DispatchResult(DispatchState.SUCCEEDED, tier, text=reply, attempts=attempts)
        except DispatchCancelled:
            logger.info("Generation stopped on %s", self.tiers[index].identifier)
            return DispatchResult(DispatchState.CANCELLED, self.tiers[index], attempts=attempts)
        finally:
            if self._token is token:
                self._token = None
