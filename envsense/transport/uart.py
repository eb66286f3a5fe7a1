# envsense/transport/uart.py
from __future__ import annotations

import codecs
import sys
import threading
from typing import Callable, Optional, Sequence

import serial
from serial import SerialException
from serial.tools import list_ports

from .base import SerialHandle, SerialReader, TransportProvider
from .errors import (
    TransportCancelledError,
    TransportIOError,
    TransportOpenError,
    TransportUnsupportedError,
)

# Common USB-serial bridges found on hobby sensor boards.
DEFAULT_VID_PID = (
    (0x2341, 0x0043),  # Arduino Uno
    (0x2341, 0x0001),
    (0x1A86, 0x7523),  # CH340
    (0x10C4, 0xEA60),  # CP210x
    (0x0403, 0x6001),  # FT232
)
DEFAULT_SUBSTRINGS = ("Arduino", "CH340", "CP210", "FT232", "USB-SERIAL", "USB Serial")

PortChooser = Callable[[Sequence], Optional[str]]


def list_candidates() -> list:
    """Return a list of pyserial port info objects (for error messages/UI)."""
    return list(list_ports.comports())


def autodetect_port(
    ports: Optional[Sequence] = None,
    prefer_vid_pid=DEFAULT_VID_PID,
    prefer_substrings=DEFAULT_SUBSTRINGS,
) -> Optional[str]:
    """
    Return a likely sensor board port path, or None if not confidently found.
    Strategy: (1) VID:PID exact match, (2) descriptor substring match. No fallback.
    """
    ports = list_candidates() if ports is None else list(ports)
    if not ports:
        return None

    for p in ports:
        if p.vid is not None and p.pid is not None:
            if (p.vid, p.pid) in prefer_vid_pid:
                return p.device

    for p in ports:
        desc = " ".join(filter(None, [p.manufacturer, p.product, p.description]))
        if any(s.lower() in desc.lower() for s in prefer_substrings):
            return p.device

    return None


class UARTReader(SerialReader):
    """
    Blocking text reader over an open pyserial port.

    Bytes are decoded incrementally as UTF-8, so a multi-byte character split
    across two reads is never mangled. cancel() uses Serial.cancel_read(),
    which wakes a read() parked in the OS.
    """

    def __init__(self, ser: serial.Serial):
        self._ser = ser
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._cancelled = threading.Event()
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def read(self) -> Optional[str]:
        if self._released:
            raise TransportIOError("read on released reader")

        while not self._cancelled.is_set():
            try:
                data = self._ser.read(max(1, self._ser.in_waiting))
            except (SerialException, OSError, TypeError) as e:
                if self._cancelled.is_set():
                    return None
                raise TransportIOError(f"UART read failed: {e}") from None

            if not data:
                # cancel_read() or a spurious wakeup
                continue

            text = self._decoder.decode(data)
            if text:
                return text

        return None

    def cancel(self) -> None:
        self._cancelled.set()
        try:
            self._ser.cancel_read()
        except (SerialException, OSError) as e:
            raise TransportIOError(f"UART cancel_read failed: {e}") from None

    def release(self) -> None:
        self._released = True


class UARTHandle(SerialHandle):
    """
    Exclusive pyserial port. The port is only claimed by open().
    """

    def __init__(self, port: str):
        self.port = port
        self.ser: Optional[serial.Serial] = None
        self._reader: Optional[UARTReader] = None

    @property
    def label(self) -> str:
        return self.port

    def open(self, baudrate: int) -> None:
        kwargs = dict(baudrate=int(baudrate), timeout=None)
        if sys.platform != "win32":
            # asks the OS for exclusive access to the device
            kwargs["exclusive"] = True
        try:
            self.ser = serial.Serial(self.port, **kwargs)
            self.ser.reset_input_buffer()
        except (SerialException, ValueError) as e:
            self.ser = None
            raise TransportOpenError(f"could not open serial port {self.port!r}: {e}") from None

    def open_reader(self) -> UARTReader:
        if self.ser is None:
            raise TransportIOError("open_reader while transport not open")
        if self._reader is not None and not self._reader.released:
            raise TransportIOError("reader already active on this port")
        self._reader = UARTReader(self.ser)
        return self._reader

    def close(self) -> None:
        if self.ser is not None:
            try:
                self.ser.close()
            finally:
                self.ser = None
                self._reader = None


class UARTProvider(TransportProvider):
    """
    Hands out UARTHandle instances.

    Device selection, in order: fixed `port`, the `chooser` callback (given
    the list of candidate ports, returns a device path or None to cancel),
    then VID:PID / descriptor auto-detection.
    """

    def __init__(self, port: Optional[str] = None, chooser: Optional[PortChooser] = None):
        self.port = port
        self.chooser = chooser

    def is_supported(self) -> bool:
        # Only the posix and win32 backends can abort a blocking read.
        return hasattr(serial.Serial, "cancel_read")

    def request_device(self) -> UARTHandle:
        if not self.is_supported():
            raise TransportUnsupportedError(
                f"pyserial backend for {sys.platform!r} cannot cancel pending reads"
            )

        if self.port:
            return UARTHandle(self.port)

        ports = list_candidates()
        if self.chooser is not None:
            chosen = self.chooser(ports)
            if not chosen:
                raise TransportCancelledError("no device selected")
            return UARTHandle(chosen)

        found = autodetect_port(ports)
        if found is None:
            listing = ", ".join(p.device for p in ports) or "(no serial ports found)"
            raise TransportOpenError(f"could not auto-detect a sensor port; candidates: {listing}")
        return UARTHandle(found)
