# envsense/runtime/link.py
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Optional

from envsense.transport.base import SerialHandle, SerialReader
from envsense.transport.errors import TransportError, TransportOpenError

from envsense.core.errors import DeviceConnectError


@dataclass
class SerialLink:
    """
    One open device: the handle and its reader, owned together.

    Responsibilities:
      - open the handle and its reader, translating failures into operator-safe errors
      - abort a pending read
      - release reader then handle, exactly once, even if either step raises
    """

    handle: SerialHandle
    reader: SerialReader
    logger: Optional[logging.Logger] = None

    def __post_init__(self) -> None:
        self._log = self.logger or logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._released = False

    @classmethod
    def open(
        cls,
        handle: SerialHandle,
        baudrate: int,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> "SerialLink":
        log = logger or logging.getLogger(__name__)

        try:
            handle.open(baudrate)
        except TransportOpenError as e:
            log.warning("TRANSPORT_OPEN_FAILED device=%s err=%s", handle.label, e)
            raise DeviceConnectError(
                "Could not open serial device.",
                hint=str(e),
                details={"device": handle.label, "baudrate": int(baudrate)},
            ) from None
        except TransportError as e:
            log.warning("TRANSPORT_OPEN_ERROR device=%s err=%s", handle.label, e)
            raise DeviceConnectError(
                "Transport error while opening device.",
                hint=str(e),
                details={"device": handle.label, "baudrate": int(baudrate)},
            ) from None

        try:
            reader = handle.open_reader()
        except Exception as e:
            log.exception("READER_OPEN_FAILED device=%s", handle.label)
            _close_quietly(handle, log)
            raise DeviceConnectError(
                "Device opened but its stream could not be read.",
                hint=str(e),
                details={"device": handle.label},
            ) from None

        return cls(handle=handle, reader=reader, logger=log)

    @property
    def released(self) -> bool:
        return self._released

    def cancel_read(self) -> None:
        try:
            self.reader.cancel()
        except Exception:
            self._log.exception("READER_CANCEL_FAILED device=%s", self.handle.label)

    def release(self) -> bool:
        """Returns False if the link was already released."""
        with self._lock:
            if self._released:
                return False
            self._released = True

        try:
            self.reader.release()
        except Exception:
            self._log.exception("READER_RELEASE_FAILED device=%s", self.handle.label)

        _close_quietly(self.handle, self._log)
        return True


def _close_quietly(handle: SerialHandle, log: logging.Logger) -> None:
    try:
        handle.close()
    except Exception:
        log.exception("TRANSPORT_CLOSE_FAILED device=%s", handle.label)
