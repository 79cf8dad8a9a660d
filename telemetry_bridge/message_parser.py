"""Utilities for converting raw MQTT payloads into table-ready records."""
from __future__ import annotations

import json
import logging
import math
import re
from datetime import datetime, timedelta, timezone
from typing import Any

from .models import DecodeFailure, DecodeFailureReason, Record

logger = logging.getLogger(__name__)

READING_FIELDS = ("temperature", "humidity", "light")

_RFC3339 = re.compile(
    r"^(?P<year>\d{4})-(?P<month>\d{2})-(?P<day>\d{2})"
    r"[Tt](?P<hour>\d{2}):(?P<minute>\d{2}):(?P<second>\d{2})"
    r"(?:\.(?P<fraction>\d+))?"
    r"(?:(?P<utc>[Zz])|(?P<sign>[+-])(?P<off_hour>\d{2}):(?P<off_minute>\d{2}))$"
)
_DECIMAL = re.compile(r"^[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?$")


def parse_rfc3339(value: str) -> datetime:
    """Parse an RFC3339 date-time, keeping the offset it carries.

    Fractional seconds beyond microseconds are truncated. Raises ``ValueError``
    when the text is not RFC3339 or names an impossible date or offset.
    """

    match = _RFC3339.match(value.strip())
    if match is None:
        raise ValueError(f"not an RFC3339 timestamp: {value!r}")

    if match.group("utc"):
        tz = timezone.utc
    else:
        offset = timedelta(hours=int(match.group("off_hour")), minutes=int(match.group("off_minute")))
        if match.group("sign") == "-":
            offset = -offset
        tz = timezone(offset)

    fraction = (match.group("fraction") or "0")[:6].ljust(6, "0")
    return datetime(
        int(match.group("year")),
        int(match.group("month")),
        int(match.group("day")),
        int(match.group("hour")),
        int(match.group("minute")),
        int(match.group("second")),
        int(fraction),
        tzinfo=tz,
    )


def coerce_reading(value: Any) -> float | None:
    """Return ``value`` as a float when it is a number or a numeric string."""

    if isinstance(value, bool):
        return None
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, int):
        try:
            return float(value)
        except OverflowError:
            return None
    if isinstance(value, str):
        text = value.strip()
        if not _DECIMAL.match(text):
            return None
        parsed = float(text)
        return parsed if math.isfinite(parsed) else None
    return None


def _resolve_timestamp(raw: Any, received_at: datetime) -> datetime:
    if not isinstance(raw, str):
        return received_at
    try:
        return parse_rfc3339(raw)
    except ValueError as exc:
        logger.warning("Error parsing timestamp, using receipt time: %s", exc)
        return received_at


def decode_payload(payload: bytes, *, received_at: datetime | None = None) -> Record | DecodeFailure:
    """Decode one sensor message.

    Missing or unreadable readings default to 0.0 and a missing or unreadable
    timestamp falls back to ``received_at`` (now, in UTC, when not given).
    Only an unparseable body or an unusable ``device_id`` rejects the message.
    """

    if received_at is None:
        received_at = datetime.now(timezone.utc)

    try:
        data = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        return DecodeFailure(DecodeFailureReason.MALFORMED, str(exc))
    except RecursionError:
        return DecodeFailure(DecodeFailureReason.MALFORMED, "JSON nested too deeply")

    if not isinstance(data, dict):
        return DecodeFailure(
            DecodeFailureReason.MALFORMED,
            f"expected a JSON object, got {type(data).__name__}",
        )

    timestamp = _resolve_timestamp(data.get("timestamp"), received_at)

    readings: dict[str, float] = {}
    for name in READING_FIELDS:
        value = coerce_reading(data.get(name))
        if value is None:
            if name in data:
                logger.debug("Unreadable %s=%r, defaulting to 0.0", name, data[name])
            value = 0.0
        readings[name] = value

    device_id = data.get("device_id")
    if not isinstance(device_id, str):
        return DecodeFailure(
            DecodeFailureReason.MISSING_DEVICE_ID,
            "device_id is missing or not a string",
        )
    if not device_id.strip():
        return DecodeFailure(DecodeFailureReason.MISSING_DEVICE_ID, "device_id is empty")

    return Record(timestamp=timestamp, device_id=device_id, **readings)
