"""
Sanitization boundary between the raw queue and the estimators.

Converts an opaque raw queue payload (JSON text or an already decoded dict)
into a validated :class:`~bms.src.models.RawSample`, or rejects it. This is
the only place where untrusted numbers are coerced; nothing downstream
re-checks for NaN or infinities.

Accepted spellings:

- battery identity: ``batteryId``, ``battery_id``, ``batteryName``
  (defaults to ``BATT_DEFAULT`` when absent or blank)
- voltage: ``voltage_V``, ``voltage_v``
- current: ``current_A``, ``current_a``, or ``current_mA`` (divided by 1000)
- timestamp: ISO-8601 string, :class:`datetime`, or epoch milliseconds

A payload is rejected (``None``) when it cannot be decoded, when voltage or
current is missing or non-finite, or when the timestamp cannot be parsed.
Rejected samples are dropped by the pipeline, never retried.

This is a pure function module: no I/O, no clock.

CHANGELOG:
- 2026-10-18: Accept current_mA payloads from legacy loggers (STORY-010)
- 2026-10-18: Initial creation (STORY-010)

TODO:
- None
"""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from bms.src.models import RawSample

logger = logging.getLogger(__name__)

DEFAULT_BATTERY_ID = "BATT_DEFAULT"

_BATTERY_KEYS = ("batteryId", "battery_id", "batteryName")
_VOLTAGE_KEYS = ("voltage_V", "voltage_v")
_CURRENT_A_KEYS = ("current_A", "current_a")


# ---------------------------------------------------------------------------
# Field coercion helpers
# ---------------------------------------------------------------------------


def _first_present(data: Mapping[str, Any], keys: tuple[str, ...]) -> Any:
    """Return the value of the first key present (and not None) in *data*."""
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return None


def finite_float(value: Any) -> float | None:
    """Coerce *value* to a finite float, or return ``None``.

    Booleans are rejected even though they are ints.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a timestamp into a timezone-aware UTC datetime.

    Numbers are interpreted as epoch milliseconds. Naive datetimes and ISO
    strings without an offset are taken to be UTC.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, int | float):
        if not math.isfinite(value):
            return None
        try:
            ts = datetime.fromtimestamp(value / 1000.0, tz=UTC)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        try:
            ts = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
    else:
        return None

    if ts.tzinfo is None:
        return ts.replace(tzinfo=UTC)
    return ts.astimezone(UTC)


def _battery_id(data: Mapping[str, Any]) -> str:
    raw = _first_present(data, _BATTERY_KEYS)
    if raw is None:
        return DEFAULT_BATTERY_ID
    text = str(raw).strip()
    return text or DEFAULT_BATTERY_ID


def _current_a(data: Mapping[str, Any]) -> float | None:
    raw = _first_present(data, _CURRENT_A_KEYS)
    if raw is not None:
        return finite_float(raw)
    milliamps = finite_float(data.get("current_mA"))
    if milliamps is None:
        return None
    return milliamps / 1000.0


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def decode_payload(payload: str | bytes | Mapping[str, Any]) -> dict[str, Any] | None:
    """Decode a queue payload into a dict, or ``None`` if it is not an object."""
    if isinstance(payload, Mapping):
        return dict(payload)
    try:
        data = json.loads(payload)
    except (TypeError, ValueError):
        return None
    return data if isinstance(data, dict) else None


def normalize(payload: str | bytes | Mapping[str, Any]) -> RawSample | None:
    """Validate a raw queue payload into a :class:`RawSample`.

    Args:
        payload: JSON text or a decoded mapping as stored in the raw queue.

    Returns:
        The validated sample, or ``None`` when the payload is malformed.
    """
    data = decode_payload(payload)
    if data is None:
        logger.warning("Raw payload is not a JSON object, rejecting")
        return None

    battery_id = _battery_id(data)

    timestamp = parse_timestamp(data.get("timestamp"))
    if timestamp is None:
        logger.warning(
            "Battery '%s': unparseable timestamp %r, rejecting",
            battery_id,
            data.get("timestamp"),
        )
        return None

    voltage_v = finite_float(_first_present(data, _VOLTAGE_KEYS))
    current_a = _current_a(data)
    if voltage_v is None or current_a is None:
        logger.warning(
            "Battery '%s': missing or non-finite voltage/current "
            "(voltage=%r, current=%r), rejecting",
            battery_id,
            _first_present(data, _VOLTAGE_KEYS),
            _first_present(data, (*_CURRENT_A_KEYS, "current_mA")),
        )
        return None

    try:
        return RawSample(
            battery_id=battery_id,
            timestamp=timestamp,
            voltage_v=voltage_v,
            current_a=current_a,
        )
    except ValidationError:
        logger.warning("Battery '%s': sample failed validation", battery_id, exc_info=True)
        return None
