# envsense/model/normalize.py
from __future__ import annotations

import json
import logging
import math
from datetime import datetime
from typing import Any, Mapping, Optional, Sequence, Union

from .reading import DeviceReading, ParseFailure

_log = logging.getLogger(__name__)

# Alias lists, highest priority first.
TEMPERATURE_ALIASES = ("temperature", "temp")
HUMIDITY_ALIASES = ("humidity",)
SOUND_ALIASES = ("soundLevel", "sound", "noise", "sound_ao", "sound_do")


def _as_number(value: Any) -> Optional[float]:
    # bool is an int subclass; a true/false flag is not a measurement
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        value = float(value)
    except OverflowError:
        # integer too large for a float
        return None
    if not math.isfinite(value):
        return None
    return value


def resolve_field(obj: Mapping[str, Any], aliases: Sequence[str]) -> Optional[float]:
    """Return the first alias holding a finite number, else None."""
    for name in aliases:
        if name in obj:
            value = _as_number(obj[name])
            if value is not None:
                return value
    return None


def normalize(frame: str, now: datetime) -> Union[DeviceReading, ParseFailure]:
    """
    Map one decoded frame to a DeviceReading.

    A frame that is not a JSON object yields ParseFailure instead of raising,
    so one bad line never ends a session. Missing or malformed fields become
    None.
    """
    try:
        obj = json.loads(frame)
    except (ValueError, RecursionError) as e:
        # ValueError covers JSONDecodeError and the int digit limit
        _log.debug("FRAME_NOT_JSON err=%s line=%r", e, frame[:80])
        return ParseFailure(line=frame, reason=f"invalid JSON: {e}")

    if not isinstance(obj, dict):
        _log.debug("FRAME_NOT_OBJECT type=%s line=%r", type(obj).__name__, frame[:80])
        return ParseFailure(line=frame, reason=f"expected JSON object, got {type(obj).__name__}")

    return DeviceReading(
        temperature_c=resolve_field(obj, TEMPERATURE_ALIASES),
        humidity_pct=resolve_field(obj, HUMIDITY_ALIASES),
        sound_level=resolve_field(obj, SOUND_ALIASES),
        observed_at=now,
    )
