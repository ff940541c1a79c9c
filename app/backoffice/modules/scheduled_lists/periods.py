"""
Period bucketing for delivery rows.

A period key is "YYYY-NN" (NN = two-digit month). Keys may carry a trailing "T"
type marker ("2024-03T"); the marker is preserved in the key but ignored when
ordering. Keys are never sorted lexically.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from datetime import date, datetime
from typing import Any

logger = logging.getLogger(__name__)

_PERIOD_RE = re.compile(r"^(\d{4})-(\d{2})(T?)$")


def period_key_for(anchor: date | datetime) -> str:
    """Truncate a date to its calendar-month period key."""
    return f"{anchor.year:04d}-{anchor.month:02d}"


def parse_period_key(key: Any) -> tuple[int, int, str] | None:
    """
    Returns (year, period_number, suffix) or None if `key` is malformed.
    Period numbers must be 01..12.
    """
    if not isinstance(key, str):
        return None
    m = _PERIOD_RE.match(key.strip())
    if not m:
        return None
    year, number, suffix = int(m.group(1)), int(m.group(2)), m.group(3)
    if not 1 <= number <= 12:
        return None
    return year, number, suffix


def is_valid_period_key(key: Any) -> bool:
    return parse_period_key(key) is not None


def period_sort_key(key: str) -> tuple[int, int, str]:
    parsed = parse_period_key(key)
    if parsed is None:
        raise ValueError(f"Malformed period key: {key!r}")
    year, number, suffix = parsed
    # suffix only breaks ties between "2024-03" and "2024-03T"
    return year, number, suffix


def sort_periods(keys: Iterable[str]) -> list[str]:
    """Chronological sort; malformed keys are dropped with a warning."""
    valid: list[str] = []
    for k in keys:
        if parse_period_key(k) is None:
            logger.warning("PERIODS: skipping malformed period key %r", k)
            continue
        valid.append(k.strip())
    return sorted(set(valid), key=period_sort_key)


def normalize_shipment_id(value: Any) -> str | None:
    """Trimmed, case preserved; blank -> None."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def bucket_periods(rows: Iterable[tuple[str, Any]]) -> tuple[list[str], dict[str, set[str]]]:
    """
    rows: (period_key, shipment_id) pairs, any other fields ignored.

    Returns (sorted_periods, {period: {shipment_id, ...}}). Every period seen in a
    well-formed row is present, even when none of its rows carried a shipment id.
    """
    buckets: dict[str, set[str]] = {}
    for row in rows:
        period, shipment_id = row[0], row[1]
        if parse_period_key(period) is None:
            logger.warning("PERIODS: skipping row with malformed period key %r", period)
            continue
        period = period.strip()
        shipments = buckets.setdefault(period, set())
        sid = normalize_shipment_id(shipment_id)
        if sid is not None:
            shipments.add(sid)
    return sorted(buckets, key=period_sort_key), buckets
