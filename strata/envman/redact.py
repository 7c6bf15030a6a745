from __future__ import annotations

import re
import threading
from typing import Any, Set

ASSIGNMENT = re.compile(r"(?i)\b(secret|token|password|apikey|api_key|pat)(\s*[=:]\s*)(\"[^\"]*\"|\S+)")
HEX_LONG = re.compile(r"\b[0-9a-f]{32,}\b", re.I)
MASK = "[REDACTED]"

# Values currently being provisioned, masked wherever they appear
_known: Set[str] = set()
_lock = threading.Lock()


def register_secret(value: str) -> None:
    if value:
        with _lock:
            _known.add(value)


def forget_secret(value: str) -> None:
    with _lock:
        _known.discard(value)


def redact_string(s: str) -> str:
    with _lock:
        known = list(_known)
    for value in known:
        s = s.replace(value, MASK)
    s = ASSIGNMENT.sub(lambda m: f"{m.group(1)}{m.group(2)}{MASK}", s)
    return HEX_LONG.sub(MASK, s)


def redact_value(value: Any) -> Any:
    if isinstance(value, str):
        return redact_string(value)
    if isinstance(value, dict):
        return {k: redact_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact_value(v) for v in value]
    return value
