"""Helpers for safe debug logging.

Customer and offer rows carry personal data and the store is addressed with
API keys. Credentials are replaced outright; contact fields are masked so a
log line still shows *which* customer it is about without exposing it.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from pydantic import BaseModel

REDACTED = "<redacted>"

_SECRET_KEYS: frozenset[str] = frozenset(
    {"apikey", "api_key", "authorization", "password", "token", "cookie", "afm"},
)

# Contact fields keep a short hint (domain of an email, last digits of a phone).
_CONTACT_KEYS: frozenset[str] = frozenset({"email", "phone", "telephone", "fax_number"})

_MAX_DEPTH = 20


def _mask_contact(key: str, value: Any) -> str:
    text = str(value).strip()
    if not text:
        return REDACTED
    if key == "email":
        _local, at, domain = text.partition("@")
        return f"***@{domain}" if at and domain else REDACTED
    digits = [c for c in text if c.isdigit()]
    if len(digits) < 6:
        return REDACTED
    return "***" + "".join(digits[-2:])


def redact_for_log(value: Any, *, max_string: int = 512, _depth: int = 0) -> Any:
    """Return a copy of *value* with secrets replaced and contact data masked.

    Validated rows are dumped first so models can be passed straight in.
    Strings longer than *max_string* are truncated.
    """
    if _depth > _MAX_DEPTH:
        return "<max-depth>"

    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json", exclude={"raw"})

    if value is None or isinstance(value, (bool, int, float)):
        return value

    if isinstance(value, str):
        return value if len(value) <= max_string else f"{value[:max_string]}…<truncated>"

    if isinstance(value, (bytes, bytearray)):
        return f"<bytes:{len(value)}b>"

    if isinstance(value, Mapping):
        out: dict[str, Any] = {}
        for raw_key, item in value.items():
            key = str(raw_key)
            lowered = key.lower()
            if lowered in _SECRET_KEYS:
                out[key] = REDACTED
            elif lowered in _CONTACT_KEYS and item is not None:
                out[key] = _mask_contact(lowered, item)
            else:
                out[key] = redact_for_log(item, max_string=max_string, _depth=_depth + 1)
        return out

    if isinstance(value, Sequence):
        return [redact_for_log(item, max_string=max_string, _depth=_depth + 1) for item in value]

    return repr(value)
