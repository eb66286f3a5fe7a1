# envsense/transport/replay.py
from __future__ import annotations

import threading
from pathlib import Path
from typing import Optional, TextIO

from .base import SerialHandle, SerialReader, TransportProvider
from .errors import TransportIOError, TransportOpenError


class ReplayReader(SerialReader):
    """
    Plays a captured text stream back in fixed-size chunks.

    Chunks deliberately ignore line boundaries, like a real UART does.
    """

    def __init__(self, fh: TextIO, *, chunk_size: int, interval_s: float, loop: bool):
        self._fh = fh
        self._chunk_size = max(1, int(chunk_size))
        self._interval_s = max(0.0, float(interval_s))
        self._loop = loop
        self._last_char = ""
        self._cancelled = threading.Event()
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def read(self) -> Optional[str]:
        if self._released:
            raise TransportIOError("read on released reader")

        # Event.wait doubles as the pacing delay and the abort point.
        if self._cancelled.wait(self._interval_s):
            return None

        try:
            chunk = self._fh.read(self._chunk_size)
            if not chunk and self._loop:
                self._fh.seek(0)
                chunk = self._fh.read(self._chunk_size)
                if chunk and self._last_char not in ("", "\n"):
                    # keep the last line of the pass from running into the first
                    chunk = "\n" + chunk
        except (OSError, ValueError) as e:
            raise TransportIOError(f"replay read failed: {e}") from None

        if chunk:
            self._last_char = chunk[-1]

        return chunk or None

    def cancel(self) -> None:
        self._cancelled.set()

    def release(self) -> None:
        self._released = True


class ReplayHandle(SerialHandle):
    def __init__(self, path: Path, *, chunk_size: int = 16, interval_s: float = 0.05, loop: bool = False):
        self.path = Path(path)
        self.chunk_size = chunk_size
        self.interval_s = interval_s
        self.loop = loop
        self._fh: Optional[TextIO] = None
        self._reader: Optional[ReplayReader] = None

    @property
    def label(self) -> str:
        return f"replay:{self.path.name}"

    def open(self, baudrate: int) -> None:
        # baudrate has no meaning for a file; accepted for interface parity.
        try:
            self._fh = open(self.path, "r", encoding="utf-8", errors="replace", newline="")
        except OSError as e:
            raise TransportOpenError(f"could not open capture {str(self.path)!r}: {e}") from None

    def open_reader(self) -> ReplayReader:
        if self._fh is None:
            raise TransportIOError("open_reader while transport not open")
        if self._reader is not None and not self._reader.released:
            raise TransportIOError("reader already active on this capture")
        self._reader = ReplayReader(
            self._fh,
            chunk_size=self.chunk_size,
            interval_s=self.interval_s,
            loop=self.loop,
        )
        return self._reader

    def close(self) -> None:
        if self._fh is not None:
            try:
                self._fh.close()
            finally:
                self._fh = None
                self._reader = None


class ReplayProvider(TransportProvider):
    def __init__(self, path: str | Path, *, chunk_size: int = 16, interval_s: float = 0.05, loop: bool = False):
        self.path = Path(path)
        self.chunk_size = chunk_size
        self.interval_s = interval_s
        self.loop = loop

    def is_supported(self) -> bool:
        return True

    def request_device(self) -> ReplayHandle:
        return ReplayHandle(
            self.path,
            chunk_size=self.chunk_size,
            interval_s=self.interval_s,
            loop=self.loop,
        )
