# envsense/core/errors.py
from __future__ import annotations


class EnvSenseError(Exception):
    """
    Base class for all expected operational errors in envsense.
    """

    #: Stable machine-readable identifier (for CLI exit mapping, status snapshots, etc.)
    code: str = "unknown"

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.hint = hint
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Configuration / setup errors (no hardware access yet)
# ---------------------------------------------------------------------------

class ConfigError(EnvSenseError):
    """
    Configuration file or CLI overrides are invalid.

    Examples:
      - malformed YAML
      - unknown transport driver key
      - thresholds that are not numbers
    """
    code = "config_error"


class UnsupportedTransportError(EnvSenseError):
    """
    The host platform cannot provide the serial transport at all.

    Not retryable: connecting again will fail the same way.
    """
    code = "unsupported"


# ---------------------------------------------------------------------------
# Transport / connection lifecycle errors
# ---------------------------------------------------------------------------

class DeviceConnectError(EnvSenseError):
    """
    The selected device could not be opened.

    Examples:
      - port already claimed by another process
      - permission denied
      - device vanished between selection and open
    """
    code = "device_connect_error"


class DeviceDisconnectedError(EnvSenseError):
    """
    Device was connected but the stream ended or failed without us asking.

    Examples:
      - USB cable unplugged
      - OS-level I/O error during read
    """
    code = "connection_lost"


# ---------------------------------------------------------------------------
# Session usage errors
# ---------------------------------------------------------------------------

class SessionBusyError(EnvSenseError):
    """
    Operation rejected because the session is mid-transition or already open.
    """
    code = "session_busy"
