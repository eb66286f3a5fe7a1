# envsense/model/reading.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class DeviceReading:
    """
    A normalized telemetry snapshot.

    None means the device did not report the quantity (Unknown). It is never
    replaced by a default number.
    """
    temperature_c: Optional[float]
    humidity_pct: Optional[float]
    sound_level: Optional[float]
    observed_at: datetime

    def as_dict(self) -> dict:
        return {
            "temperature_c": self.temperature_c,
            "humidity_pct": self.humidity_pct,
            "sound_level": self.sound_level,
            "observed_at": self.observed_at.isoformat(),
        }


@dataclass(frozen=True)
class ParseFailure:
    """A frame that could not be decoded as a JSON object."""
    line: str
    reason: str
