from __future__ import annotations

import re
from datetime import datetime, timezone

_INT_PREFIX = re.compile(r'^\s*([+-]?\d+)')


def normalize_code(value: object) -> str:
    if value is None:
        return ''
    return str(value).strip()


def code_or_placeholder(value: object, placeholder: str = 'N/A') -> str:
    return normalize_code(value) or placeholder


def safe_int(value: object) -> int:
    # Leading digits count, anything else is zero.
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value == value and value not in (float('inf'), float('-inf')) else 0
    match = _INT_PREFIX.match(normalize_code(value))
    if not match:
        return 0
    return int(match.group(1))


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def timestamp_ms(value: datetime | None) -> int:
    normalized = as_utc(value)
    if normalized is None:
        return 0
    return int(normalized.timestamp() * 1000)
