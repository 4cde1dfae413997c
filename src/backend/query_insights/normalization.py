"""
Boundary between raw agent-log documents and canonical ``Event`` objects.

Upstream documents are loosely typed: timestamps arrive as ISO strings or
native datetimes, token counters may be wrapped in one-element lists, and any
field may be missing. Everything downstream of ``normalize_event`` can rely on
the explicit optional types declared on ``Event``.
"""

from __future__ import annotations

import math
import re
from datetime import datetime, timezone
from numbers import Real
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .models import Event, StageTokens, UserCategory

DEFAULT_PIPELINE_KEY = "petpooja_dashboard"
NEW_USER_SENTINEL = 1

_WHITESPACE = re.compile(r"\s+")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Return a timezone-aware UTC datetime, or ``None`` when ``value`` is not a
    recognisable instant. Never raises.
    """

    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if not isinstance(value, str) or not value.strip():
        return None

    text = value.strip()
    for candidate in (text, _WHITESPACE.sub("T", text, count=1)):
        parsed = _parse_iso(candidate)
        if parsed is not None:
            return parsed
    return None


def _parse_iso(text: str) -> Optional[datetime]:
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def unwrap(value: Any) -> Any:
    """Unwrap a single-element list (the first element wins for longer ones)."""

    if isinstance(value, (list, tuple)):
        return value[0] if value else None
    return value


def coerce_number(value: Any) -> Optional[float]:
    """Real numbers only; strings, even numeric ones, are not counted."""

    value = unwrap(value)
    if isinstance(value, bool) or not isinstance(value, Real):
        return None
    number = float(value)
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def coerce_int(value: Any) -> Optional[int]:
    number = coerce_number(value)
    return None if number is None else int(number)


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return str(value)


def dig(document: Mapping[str, Any], *path: str) -> Any:
    current: Any = document
    for key in path:
        current = unwrap(current)
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current


def _user_category(raw: Any) -> UserCategory:
    if isinstance(raw, bool) or not isinstance(raw, Real):
        return UserCategory.RETURNING
    return UserCategory.NEW if raw == NEW_USER_SENTINEL else UserCategory.RETURNING


def _succeeded(raw: Any) -> bool:
    if raw is True:
        return True
    return isinstance(raw, str) and raw.strip().lower() == "success"


def _error_text(document: Mapping[str, Any]) -> Optional[str]:
    for key in ("error_message", "message"):
        value = document.get(key)
        if value is not None and value != "":
            return _text(value)
    return None


def _token_usage(raw: Any) -> Dict[str, StageTokens]:
    if not isinstance(raw, Mapping):
        return {}
    usage: Dict[str, StageTokens] = {}
    for stage, value in raw.items():
        value = unwrap(value)
        if not isinstance(value, Mapping):
            usage[str(stage)] = StageTokens()
            continue
        usage[str(stage)] = StageTokens(
            prompt_tokens=coerce_int(value.get("prompt_tokens")),
            completion_tokens=coerce_int(value.get("completion_tokens")),
            total_tokens=coerce_int(value.get("total_tokens")),
        )
    return usage


def _stage_timing(value: Any) -> Optional[float]:
    value = unwrap(value)
    direct = coerce_number(value)
    if direct is not None:
        return direct
    if not isinstance(value, Mapping):
        return None

    fallback: Optional[float] = None
    for key, item in value.items():
        key = str(key)
        if not key.endswith("_time"):
            continue
        number = coerce_number(item)
        if number is None:
            continue
        if key.endswith("total_time"):
            return number
        if fallback is None:
            fallback = number
    return fallback


def _stage_timings(raw: Any) -> Dict[str, float]:
    if not isinstance(raw, Mapping):
        return {}
    timings: Dict[str, float] = {}
    for stage, value in raw.items():
        timing = _stage_timing(value)
        if timing is not None:
            timings[str(stage)] = timing
    return timings


def _request_type(raw: Any) -> Optional[str]:
    raw = unwrap(raw)
    if isinstance(raw, Mapping):
        raw = unwrap(raw.get("raw_output"))
    if raw is None or raw == "":
        return None
    return _text(raw)


def normalize_event(document: Mapping[str, Any], pipeline_key: str = DEFAULT_PIPELINE_KEY) -> Event:
    """
    Convert one raw agent-log document into an ``Event``.

    Field mapping::

        _id / id                                         -> id
        query_time                                       -> occurred_at
        user_email                                       -> user_id
        session_id                                       -> session_id
        restaurant_id                                    -> restaurant_id
        user_type (exactly 1 = new)                      -> user_category
        question                                         -> question
        status (True)                                    -> succeeded
        error_message / message                          -> error_text
        time.total_time                                  -> latency_ms
        time.<pipeline_key>.<stage>                      -> stage_timings
        token_usage.<pipeline_key>.<stage>               -> token_usage
        <pipeline_key>.request_type_identifier.raw_output -> request_type
    """

    raw_time = document.get("query_time")
    succeeded = _succeeded(document.get("status"))
    question = document.get("question")

    return Event(
        id=_text(document.get("_id", document.get("id"))) or "",
        occurred_at=parse_timestamp(raw_time),
        occurred_at_raw=raw_time.isoformat() if isinstance(raw_time, datetime) else _text(raw_time),
        user_id=_text(document.get("user_email")) or None,
        session_id=_text(document.get("session_id")) or None,
        restaurant_id=_text(document.get("restaurant_id")),
        user_category=_user_category(document.get("user_type")),
        question=_text(question) if question else None,
        succeeded=succeeded,
        error_text=None if succeeded else _error_text(document),
        latency_ms=coerce_number(dig(document, "time", "total_time")),
        token_usage=_token_usage(dig(document, "token_usage", pipeline_key)),
        stage_timings=_stage_timings(dig(document, "time", pipeline_key)),
        request_type=_request_type(dig(document, pipeline_key, "request_type_identifier")),
    )


def normalize_events(documents: Iterable[Mapping[str, Any]], pipeline_key: str = DEFAULT_PIPELINE_KEY) -> List[Event]:
    return [normalize_event(document, pipeline_key) for document in documents if isinstance(document, Mapping)]
