import html
import json
import re
from typing import Any, Callable, List, Optional, Union

RawReply = Union[str, dict, list, None]


def _text_of(part: Any) -> Optional[str]:
    if isinstance(part, dict) and part.get("text"):
        return str(part["text"])
    return None


def _match_candidates(raw: Any) -> Optional[str]:
    candidates = raw.get("candidates") if isinstance(raw, dict) else None
    if not isinstance(candidates, list) or not candidates:
        return None
    cand = candidates[0]
    if not isinstance(cand, dict):
        return None

    content = cand.get("content")
    if isinstance(content, dict):
        parts = content.get("parts")
        if isinstance(parts, list) and parts:
            text = _text_of(parts[0])
            if text:
                return text
        if isinstance(content.get("text"), str):
            return content["text"]
    if isinstance(cand.get("text"), str):
        return cand["text"]
    return None


def merge_candidate_texts(raw: Any) -> Optional[str]:
    """Join the text of every candidate, in order, with a blank line between."""
    candidates = raw.get("candidates") if isinstance(raw, dict) else None
    if not isinstance(candidates, list):
        return None

    fragments: List[str] = []
    for cand in candidates:
        if not isinstance(cand, dict) or not isinstance(cand.get("content"), dict):
            continue
        content = cand["content"]
        if isinstance(content.get("parts"), list):
            fragments.extend(t for t in map(_text_of, content["parts"]) if t)
        elif isinstance(content.get("text"), str):
            fragments.append(content["text"])
    return "\n\n".join(fragments) if fragments else None


def _match_output(raw: Any) -> Optional[str]:
    output = raw.get("output") if isinstance(raw, dict) else None
    if not isinstance(output, list) or not output:
        return None
    out = output[0]
    if not isinstance(out, dict):
        return None
    content = out.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list) and content:
        return _text_of(content[0])
    return None


def _walk(raw: Any) -> Optional[str]:
    seen = set()

    def visit(node: Any) -> Optional[str]:
        if not isinstance(node, (dict, list)) or id(node) in seen:
            return None
        seen.add(id(node))
        if isinstance(node, dict):
            for key in ("text", "content"):
                value = node.get(key)
                if isinstance(value, str) and value.strip():
                    return value
            children = node.values()
        else:
            children = node
        for child in children:
            found = visit(child)
            if found:
                return found
        return None

    return visit(raw)


# The merge must precede _walk, which would stop at the first text it finds.
_MATCHERS: List[Callable[[Any], Optional[str]]] = [
    _match_candidates,
    merge_candidate_texts,
    _match_output,
    _walk,
]


def extract_reply_text(raw: RawReply) -> Optional[str]:
    """Best-effort plain text from a ``generateContent`` style reply.

    Known shapes are tried first (``candidates`` then ``output``), then the
    first non-empty ``text``/``content`` field anywhere in the structure. As
    a last resort the whole reply is dumped as JSON, so only an empty reply
    yields ``None``.
    """
    if raw is None:
        return None
    if isinstance(raw, str):
        return raw or None

    for matcher in _MATCHERS:
        text = matcher(raw)
        if text:
            return text

    try:
        return json.dumps(raw, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(raw)


_FENCED = re.compile(r"```[\s\S]*?```")
_BACKTICKS = re.compile(r"`+")
_EMPHASIS = re.compile(r"[*_~]{1,3}")
_TAGS = re.compile(r"<[^>]*>")


def sanitize_reply_text(raw: Optional[str]) -> str:
    """Strip markdown and HTML decoration so a reply reads as plain text."""
    if not raw:
        return ""
    s = _FENCED.sub("", raw)
    s = _BACKTICKS.sub("", s)
    s = _EMPHASIS.sub("", s)
    s = _TAGS.sub("", s)
    s = html.unescape(s)
    s = re.sub(r"\r\n?", "\n", s)
    s = re.sub(r"\n{3,}", "\n\n", s)
    s = "\n".join(line.strip() for line in s.split("\n"))
    s = re.sub(r"[ \t]{2,}", " ", s)
    return s.strip()
