"""Terminal front end for the relay.

Each line typed is one user turn. Ctrl-C while a reply is pending stops the
generation; ``/new`` starts a fresh conversation and ``/model`` shows or
switches the model tier.
"""

import argparse
import asyncio
import logging
import os
import signal
import threading
from typing import Callable, List, Optional

from cascade import ChatSession, DispatchResult, DispatchState
from relay_client import RELAY_ENDPOINT, RelayClient
from tiers import ModelTier
from transcript import JsonFileStorage, TranscriptStore

DEFAULT_HISTORY_PATH = os.getenv("CELEBRA_HISTORY", "~/.celebra_history.json")
PROMPT = "you> "


def fallback_notice(current: ModelTier, nxt: ModelTier) -> str:
    return (
        f'⚠️ "{current.alias}" is overloaded or reached its limit. '
        f'Switching to "{nxt.alias}" and retrying.'
    )


def render_result(result: DispatchResult) -> str:
    if result.state is DispatchState.SUCCEEDED:
        return result.text or ""
    if result.state is DispatchState.CANCELLED:
        return "⚠️ Generation stopped."
    return f"⚠️ {result.error}"


def describe_tiers(session: ChatSession) -> str:
    lines: List[str] = []
    for idx, tier in enumerate(session.tiers):
        marker = "*" if idx == session.selected_index else " "
        lines.append(f"{marker} {idx}  {tier.alias:<16} {tier.identifier}")
    return "\n".join(lines)


def handle_command(session: ChatSession, line: str) -> Optional[str]:
    """Run a slash command and return the text to show, or None to quit."""
    name, _, arg = line[1:].partition(" ")
    name, arg = name.lower(), arg.strip()
    if name in ("quit", "exit"):
        return None
    if name == "new":
        session.new_chat()
        return "Started a new chat."
    if name == "model":
        if not arg:
            return describe_tiers(session)
        try:
            tier = session.select(arg)
        except ValueError as exc:
            return str(exc)
        return f"Using {tier.alias} ({tier.identifier})."
    return f"Unknown command: /{name}"


def _trap_sigint(loop: asyncio.AbstractEventLoop, handler: Callable[[], None]) -> bool:
    try:
        loop.add_signal_handler(signal.SIGINT, handler)
    except (NotImplementedError, RuntimeError):
        return False
    return True


async def _prompt(read_line: Callable[[str], str]) -> Optional[str]:
    """Read one line on a daemon thread; None on EOF or Ctrl-C.

    A blocked reader thread never holds up interpreter shutdown.
    """
    loop = asyncio.get_running_loop()
    answer = loop.create_future()

    def settle(line: Optional[str]) -> None:
        if not answer.done():
            answer.set_result(line)

    def worker() -> None:
        try:
            line = read_line(PROMPT)
        except (EOFError, KeyboardInterrupt):
            line = None
        try:
            loop.call_soon_threadsafe(settle, line)
        except RuntimeError:
            pass  # loop already closed

    threading.Thread(target=worker, name="celebra-prompt", daemon=True).start()
    trapped = _trap_sigint(loop, lambda: settle(None))
    try:
        return await answer
    finally:
        if trapped:
            loop.remove_signal_handler(signal.SIGINT)


async def _submit(session: ChatSession, text: str) -> DispatchResult:
    loop = asyncio.get_running_loop()
    trapped = _trap_sigint(loop, session.cancel)
    try:
        return await session.submit(text)
    finally:
        if trapped:
            loop.remove_signal_handler(signal.SIGINT)


async def repl(session: ChatSession, read_line: Callable[[str], str] = input, write=print) -> int:
    write(f"Model: {session.selected_tier.alias}. Type /model, /new or /quit.")
    while True:
        line = await _prompt(read_line)
        if line is None:
            return 0
        line = line.strip()
        if not line:
            continue
        if line.startswith("/"):
            reply = handle_command(session, line)
            if reply is None:
                return 0
            write(reply)
            continue
        result = await _submit(session, line)
        write(render_result(result))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="celebra-chat", description="Chat through the Gemini relay")
    parser.add_argument("--relay", default=RELAY_ENDPOINT, help="relay endpoint URL")
    parser.add_argument("--model", help="model tier (index, id or alias)")
    parser.add_argument("--history", default=DEFAULT_HISTORY_PATH, help="transcript file")
    parser.add_argument("--debug", action="store_true", help="verbose logging")
    return parser


async def _run(args: argparse.Namespace) -> int:
    store = TranscriptStore(JsonFileStorage(args.history))
    async with RelayClient(args.relay) as relay:
        session = ChatSession(relay, store, on_fallback=lambda a, b: print(fallback_notice(a, b)))
        if args.model:
            try:
                session.select(args.model)
            except ValueError as exc:
                print(exc)
                return 2
        return await repl(session)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    try:
        return asyncio.run(_run(args))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
