# envsense/transport/errors.py
from __future__ import annotations

class TransportError(Exception):
    """Base class for transport-layer failures."""

class TransportOpenError(TransportError):
    pass

class TransportIOError(TransportError):
    pass

class TransportCancelledError(TransportError):
    """The user dismissed the device chooser."""

class TransportUnsupportedError(TransportError):
    """The platform has no usable serial backend."""
