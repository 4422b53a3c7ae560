import json
import os
import time
from threading import Lock
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union
from urllib.parse import quote

import httpx
from flask import Flask, Response, jsonify, request
from openai import OpenAI
from werkzeug.exceptions import MethodNotAllowed

from tiers import MODEL_TIERS

# ----- Config -----
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")
GEMINI_API_ENDPOINT = os.getenv(
    "GEMINI_API_ENDPOINT",
    "https://generativelanguage.googleapis.com/v1beta/models/gemini-2.5-flash:generateContent",
)
GEMINI_MODEL_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
GEMINI_OPENAI_BASE_URL = os.getenv(
    "GEMINI_OPENAI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta/openai/"
)
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "")  # comma-separated
RATE_LIMIT_MAX = int(os.getenv("RATE_LIMIT_MAX", "60"))
RATE_LIMIT_WINDOW = int(os.getenv("RATE_LIMIT_WINDOW", "3600"))  # seconds
# Forwarding upstream error bodies helps debugging but can leak details.
EXPOSE_UPSTREAM_ERRORS = os.getenv("EXPOSE_UPSTREAM_ERRORS", "true").lower() == "true"
UPSTREAM_TIMEOUT = float(os.getenv("UPSTREAM_TIMEOUT", "60"))

MAX_CONTENTS = 10
MAX_PART_CHARS = 8000


app = Flask(__name__)
app.config.update(
    GEMINI_API_KEY=GEMINI_API_KEY,
    GEMINI_API_ENDPOINT=GEMINI_API_ENDPOINT,
    GEMINI_OPENAI_BASE_URL=GEMINI_OPENAI_BASE_URL,
    ALLOWED_ORIGINS=ALLOWED_ORIGINS,
    RATE_LIMIT_MAX=RATE_LIMIT_MAX,
    RATE_LIMIT_WINDOW=RATE_LIMIT_WINDOW,
    EXPOSE_UPSTREAM_ERRORS=EXPOSE_UPSTREAM_ERRORS,
    UPSTREAM_TIMEOUT=UPSTREAM_TIMEOUT,
)


class RateLimiter:
    """Fixed-window request counter per client, kept in process memory.

    Expired windows are swept at most once per window length, so clients
    that stop calling do not stay in memory.
    """

    def __init__(self, clock=time.time):
        self.clock = clock
        self._entries: Dict[str, Tuple[int, int]] = {}
        self._next_sweep = 0
        self._lock = Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def hit(self, key: str, limit: int, window: int) -> Optional[int]:
        """Count one request; return seconds until reset when over ``limit``."""
        now = int(self.clock())
        with self._lock:
            if now >= self._next_sweep:
                self._entries = {k: v for k, v in self._entries.items() if v[1] >= now}
                self._next_sweep = now + window
            count, reset = self._entries.get(key, (0, 0))
            if now > reset:
                count, reset = 0, now + window
            count += 1
            self._entries[key] = (count, reset)
        if count > limit:
            return reset - now
        return None

    def reset(self) -> None:
        with self._lock:
            self._entries.clear()
            self._next_sweep = 0


rate_limiter = RateLimiter()


def _allowed_origins() -> List[str]:
    raw = app.config.get("ALLOWED_ORIGINS") or ""
    return [o.strip() for o in raw.split(",") if o.strip()]


def _client_key() -> str:
    forwarded = request.headers.get("X-Forwarded-For", "")
    ip = forwarded.split(",")[0].strip() or request.remote_addr or ""
    return ip or "unknown"


def _upstream_url(body: Any) -> str:
    metadata = body.get("metadata") if isinstance(body, dict) else None
    model = metadata.get("model") if isinstance(metadata, dict) else None
    if model and isinstance(model, str):
        return GEMINI_MODEL_URL.format(model=quote(model, safe=""))
    return app.config["GEMINI_API_ENDPOINT"]


def validate_body(body: Any) -> Optional[str]:
    """Return an error message when ``body`` must not be forwarded."""
    if not isinstance(body, dict):
        return "Bad request: missing JSON body"
    contents = body.get("contents")
    if not isinstance(contents, list) or not contents or len(contents) > MAX_CONTENTS:
        return "Bad request: invalid contents"
    for entry in contents:
        parts = entry.get("parts") if isinstance(entry, dict) else None
        if not isinstance(parts, list):
            continue
        for part in parts:
            text = part.get("text") if isinstance(part, dict) else part
            if len(str(text or "")) > MAX_PART_CHARS:
                return "Bad request: message too long"
    return None


def normalize_contents(body: dict) -> dict:
    """Drop proxy-only fields and coerce ``contents`` into the upstream shape.

    Roles other than ``model`` become ``user`` and parts are reduced to
    ``{"text": ...}``; the upstream rejects anything else as INVALID_ARGUMENT.
    """
    outgoing = json.loads(json.dumps(body))
    outgoing.pop("metadata", None)
    contents = outgoing.get("contents")
    if not isinstance(contents, list):
        return outgoing

    normalized = []
    for entry in contents:
        if not isinstance(entry, dict):
            continue
        role = "model" if str(entry.get("role") or "").lower() == "model" else "user"
        if isinstance(entry.get("parts"), list):
            parts = []
            for part in entry["parts"]:
                if isinstance(part, dict) and isinstance(part.get("text"), str):
                    parts.append({"text": part["text"]})
                elif isinstance(part, str):
                    parts.append({"text": part})
            if parts:
                normalized.append({"role": role, "parts": parts})
            continue
        text = entry.get("text")
        if isinstance(text, str) and text.strip():
            normalized.append({"role": role, "parts": [{"text": text}]})

    if not normalized:
        prompt = outgoing.get("prompt")
        if isinstance(prompt, str) and prompt.strip():
            normalized.append({"role": "user", "parts": [{"text": prompt}]})
        else:
            collected = [v.strip() for v in outgoing.values() if isinstance(v, str) and v.strip()]
            if collected:
                normalized.append({"role": "user", "parts": [{"text": "\n\n".join(collected)}]})

    if normalized:
        outgoing["contents"] = normalized
    return outgoing


def post_upstream(url: str, payload: dict, api_key: str) -> httpx.Response:
    return httpx.post(
        url,
        json=payload,
        headers={"Content-Type": "application/json", "x-goog-api-key": api_key},
        timeout=app.config["UPSTREAM_TIMEOUT"],
    )


def _mirror_upstream_error(resp: httpx.Response):
    text = resp.text
    content_type = resp.headers.get("content-type") or "application/json"
    app.logger.warning("Upstream error from Google API: status=%s body=%s", resp.status_code, text[:2000])

    if not app.config["EXPOSE_UPSTREAM_ERRORS"]:
        return jsonify({"error": "Upstream API error"}), resp.status_code
    try:
        parsed = json.loads(text)
    except ValueError:
        return Response(text, status=resp.status_code, content_type=content_type)
    return jsonify(parsed), resp.status_code


@app.errorhandler(MethodNotAllowed)
def method_not_allowed(exc: MethodNotAllowed):
    resp = jsonify({"error": "Method not allowed"})
    resp.status_code = 405
    resp.headers["Allow"] = ", ".join(sorted(exc.valid_methods or ["POST"]))
    return resp


@app.route("/api/gemini", methods=["POST"])
def relay():
    api_key = app.config.get("GEMINI_API_KEY")
    if not api_key:
        return jsonify({"error": "Server missing GEMINI_API_KEY environment variable"}), 500

    body = request.get_json(silent=True)
    url = _upstream_url(body)

    allowed = _allowed_origins()
    origin = request.headers.get("Origin")
    cors_origin = None
    if allowed:
        if origin not in allowed:
            app.logger.warning("Blocked origin: %s", origin)
            return jsonify({"error": "Origin not allowed"}), 403
        cors_origin = origin

    retry_after = rate_limiter.hit(
        _client_key(), app.config["RATE_LIMIT_MAX"], app.config["RATE_LIMIT_WINDOW"]
    )
    if retry_after is not None:
        resp = jsonify({"error": "Rate limit exceeded", "retry_after_seconds": retry_after})
        resp.status_code = 429
        resp.headers["Retry-After"] = str(retry_after)
        return resp

    error = validate_body(body)
    if error:
        return jsonify({"error": error}), 400

    outgoing = normalize_contents(body)
    try:
        upstream = post_upstream(url, outgoing, api_key)
    except httpx.HTTPError as exc:
        app.logger.error("Proxy error: %s", exc)
        return jsonify({"error": "Proxy request failed"}), 500

    if upstream.is_success:
        content_type = upstream.headers.get("content-type") or "application/json"
        result = Response(upstream.text, status=upstream.status_code, content_type=content_type)
    else:
        result = app.make_response(_mirror_upstream_error(upstream))

    if cors_origin:
        result.headers["Access-Control-Allow-Origin"] = cors_origin
    return result


def _normalize_model_list(payload: Union[dict, Iterable]):
    def to_id(item):
        model_id = getattr(item, "id", None)
        if model_id is None and isinstance(item, dict):
            model_id = item.get("id") or item.get("name")
        if isinstance(model_id, str) and model_id.startswith("models/"):
            model_id = model_id[len("models/"):]
        return model_id

    data: Iterable = []
    if hasattr(payload, "data"):
        data = getattr(payload, "data") or []
    elif isinstance(payload, dict):
        data = payload.get("data") or payload.get("models") or []
    elif isinstance(payload, Iterable):
        data = payload

    return sorted({model_id for model_id in map(to_id, data) if model_id})


@app.route("/api/models", methods=["GET"])
def list_models():
    api_key = app.config.get("GEMINI_API_KEY")
    if not api_key:
        return jsonify({"error": "Server missing GEMINI_API_KEY environment variable"}), 500

    allowed = _allowed_origins()
    if allowed and request.headers.get("Origin") not in allowed:
        return jsonify({"error": "Origin not allowed"}), 403

    client = OpenAI(base_url=app.config["GEMINI_OPENAI_BASE_URL"], api_key=api_key)
    try:
        response = client.models.list()
    except Exception as exc:
        app.logger.warning("Model listing failed: %s", exc)
        return jsonify({"error": str(exc)}), 502

    models = _normalize_model_list(response)
    tiers = [
        {"id": tier.identifier, "alias": tier.alias, "available": tier.identifier in models}
        for tier in MODEL_TIERS
    ]
    return jsonify({"models": models, "tiers": tiers})


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=5000, debug=True)
