from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional


class SerialReader(ABC):
    """
    Text reader bound to an open SerialHandle.

    Contract:
      - read() blocks until a chunk of text is available and returns it.
        It returns None once the stream is done (closed by the device or
        cancelled), and raises TransportIOError on I/O failure.
      - cancel() must unblock a pending read() from another thread.
      - release() drops the read lock without closing the handle.
    """

    @abstractmethod
    def read(self) -> Optional[str]: ...

    @abstractmethod
    def cancel(self) -> None: ...

    @abstractmethod
    def release(self) -> None: ...


class SerialHandle(ABC):
    """
    Exclusive handle to one physical device.

    Contract:
      - open(baudrate) claims the device; raises TransportOpenError.
      - open_reader() is only valid after open() and returns a new reader.
      - close() releases the device. Callers release the reader first.
    """

    @abstractmethod
    def open(self, baudrate: int) -> None: ...

    @abstractmethod
    def open_reader(self) -> SerialReader: ...

    @abstractmethod
    def close(self) -> None: ...

    @property
    def label(self) -> str:
        return type(self).__name__


class TransportProvider(ABC):
    """
    Platform capability that hands out device handles.

    request_device() raises TransportCancelledError when the user declines
    to pick a device and TransportUnsupportedError when the platform has no
    backend at all.
    """

    @abstractmethod
    def is_supported(self) -> bool: ...

    @abstractmethod
    def request_device(self) -> SerialHandle: ...
