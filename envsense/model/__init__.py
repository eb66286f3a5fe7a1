from .reading import DeviceReading, ParseFailure
from .normalize import normalize
from .climate import ClimateStatus, ClimateThresholds, classify

__all__ = ["DeviceReading",
           "ParseFailure",
           "normalize",
           "ClimateStatus",
           "ClimateThresholds",
           "classify"]
