# envsense/model/climate.py
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .reading import DeviceReading


class TemperatureBand(str, Enum):
    UNKNOWN = "unknown"
    COLD = "cold"
    COMFORTABLE = "comfortable"
    HOT = "hot"


class HumidityBand(str, Enum):
    UNKNOWN = "unknown"
    DRY = "dry"
    NORMAL = "normal"
    HUMID = "humid"


class SoundBand(str, Enum):
    UNKNOWN = "unknown"
    QUIET = "quiet"
    NORMAL = "normal"
    LOUD = "loud"


@dataclass(frozen=True)
class ClimateThresholds:
    """
    Band edges. Values equal to an edge fall in the middle band.
    """
    cold_below: float = 18.0
    hot_above: float = 24.0
    dry_below: float = 30.0
    humid_above: float = 60.0
    quiet_below: float = 40.0
    loud_above: float = 70.0

    def __post_init__(self) -> None:
        for low, high in (
            ("cold_below", "hot_above"),
            ("dry_below", "humid_above"),
            ("quiet_below", "loud_above"),
        ):
            if getattr(self, low) > getattr(self, high):
                raise ValueError(f"{low} must not exceed {high}")


DEFAULT_THRESHOLDS = ClimateThresholds()


@dataclass(frozen=True)
class ClimateStatus:
    temperature: TemperatureBand
    humidity: HumidityBand
    sound: SoundBand

    def as_dict(self) -> dict:
        return {
            "temperature": self.temperature.value,
            "humidity": self.humidity.value,
            "sound": self.sound.value,
        }


UNKNOWN_STATUS = ClimateStatus(TemperatureBand.UNKNOWN, HumidityBand.UNKNOWN, SoundBand.UNKNOWN)


def _band(value: Optional[float], low: float, high: float, below, middle, above, unknown):
    if value is None:
        return unknown
    if value < low:
        return below
    if value > high:
        return above
    return middle


def classify(reading: Optional[DeviceReading], thresholds: ClimateThresholds = DEFAULT_THRESHOLDS) -> ClimateStatus:
    """Pure, total classification of a reading into independent bands."""
    if reading is None:
        return UNKNOWN_STATUS

    t = thresholds
    return ClimateStatus(
        temperature=_band(
            reading.temperature_c, t.cold_below, t.hot_above,
            TemperatureBand.COLD, TemperatureBand.COMFORTABLE, TemperatureBand.HOT, TemperatureBand.UNKNOWN,
        ),
        humidity=_band(
            reading.humidity_pct, t.dry_below, t.humid_above,
            HumidityBand.DRY, HumidityBand.NORMAL, HumidityBand.HUMID, HumidityBand.UNKNOWN,
        ),
        sound=_band(
            reading.sound_level, t.quiet_below, t.loud_above,
            SoundBand.QUIET, SoundBand.NORMAL, SoundBand.LOUD, SoundBand.UNKNOWN,
        ),
    )
