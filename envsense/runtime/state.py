# envsense/runtime/state.py
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from envsense.model.climate import ClimateStatus
from envsense.model.reading import DeviceReading


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"
    AWAITING_RECONNECT = "awaiting_reconnect"
    ERROR = "error"


@dataclass(frozen=True)
class SessionStatus:
    """
    A snapshot of the session as published to subscribers, safe to share across threads.

    last_error/error_code are only set in the ERROR state.
    """
    state: ConnectionState
    reading: Optional[DeviceReading] = None
    climate: Optional[ClimateStatus] = None
    last_error: Optional[str] = None
    error_code: Optional[str] = None
    device: Optional[str] = None

    @property
    def connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED


@dataclass(frozen=True)
class SessionDiagnostics:
    """
    Troubleshooting side-channel. Display only.
    """
    last_raw_chunk: Optional[str] = None
    last_raw_frame: Optional[str] = None
    frames_ok: int = 0
    frames_failed: int = 0
