import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Literal, MutableMapping, Optional, Union

logger = logging.getLogger(__name__)

# ----- Config -----
HISTORY_KEY = "celebra_conversation_history_v1"
HISTORY_MAX_MESSAGES = 16  # user + assistant turns
HISTORY_MAX_CHARS = 8000

Role = Literal["user", "assistant"]
ROLES = ("user", "assistant")


class StorageError(Exception):
    """Raised internally when the backing key-value store cannot be used."""


@dataclass(frozen=True)
class Turn:
    role: Role
    text: str

    @classmethod
    def create(cls, role: Role, text: str) -> "Turn":
        return cls(role=role, text=str(text).strip())

    def to_record(self) -> dict:
        return {"role": self.role, "text": self.text}


def _turn_from_record(entry) -> Optional[Turn]:
    if not isinstance(entry, dict):
        return None
    role = entry.get("role")
    text = entry.get("text")
    if role not in ROLES or not isinstance(text, str):
        return None
    return Turn(role=role, text=text)


def enforce_caps(turns: List[Turn], max_messages: int, max_chars: int) -> List[Turn]:
    """Drop the oldest turns until both caps hold, keeping at least one turn."""
    capped = list(turns[-max_messages:]) if max_messages > 0 else []
    total = sum(len(t.text) for t in capped)
    while total > max_chars and len(capped) > 1:
        dropped = capped.pop(0)
        total -= len(dropped.text)
    return capped


class JsonFileStorage(MutableMapping[str, str]):
    """String key-value store kept in a single JSON object file.

    Reads treat a missing or unreadable file as empty. Writes go straight to
    disk and let ``OSError`` escape to the caller.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path).expanduser()

    def _read(self) -> dict:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(data, ensure_ascii=False), encoding="utf-8")
        os.replace(tmp, self.path)

    def __getitem__(self, key: str) -> str:
        return self._read()[key]

    def __setitem__(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def __delitem__(self, key: str) -> None:
        data = self._read()
        del data[key]
        self._write(data)

    def __iter__(self) -> Iterator[str]:
        return iter(self._read())

    def __len__(self) -> int:
        return len(self._read())


class TranscriptStore:
    """Bounded conversation log persisted under one key of a key-value store.

    The public methods never raise: a broken store reads as an empty
    transcript and failed writes are dropped.
    """

    def __init__(
        self,
        storage: MutableMapping[str, str],
        key: str = HISTORY_KEY,
        max_messages: int = HISTORY_MAX_MESSAGES,
        max_chars: int = HISTORY_MAX_CHARS,
    ):
        self.storage = storage
        self.key = key
        self.max_messages = max_messages
        self.max_chars = max_chars

    def _read(self) -> List[Turn]:
        try:
            raw = self.storage.get(self.key)
        except Exception as exc:
            raise StorageError(f"cannot read {self.key!r}: {exc}") from exc
        if raw is None:
            return []
        try:
            parsed = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise StorageError(f"corrupt transcript under {self.key!r}") from exc
        if not isinstance(parsed, list):
            raise StorageError(f"transcript under {self.key!r} is not a list")

        turns = []
        for entry in parsed:
            turn = _turn_from_record(entry)
            if turn is not None:
                turns.append(turn)
        return turns

    def _write(self, turns: List[Turn]) -> None:
        payload = json.dumps([t.to_record() for t in turns], ensure_ascii=False)
        try:
            self.storage[self.key] = payload
        except Exception as exc:
            raise StorageError(f"cannot write {self.key!r}: {exc}") from exc

    def load(self) -> List[Turn]:
        try:
            return self._read()
        except StorageError as exc:
            logger.debug("Transcript load failed, starting empty: %s", exc)
            return []

    def save(self, turns: List[Turn]) -> None:
        capped = enforce_caps(turns, self.max_messages, self.max_chars)
        try:
            self._write(capped)
        except StorageError as exc:
            logger.debug("Transcript save dropped: %s", exc)

    def append(self, role: str, text: Optional[str]) -> None:
        if role not in ROLES or text is None:
            return
        turns = self.load()
        turns.append(Turn.create(role, text))
        self.save(turns)

    def clear(self) -> None:
        try:
            del self.storage[self.key]
        except KeyError:
            pass
        except Exception as exc:
            logger.debug("Transcript clear failed: %s", exc)
