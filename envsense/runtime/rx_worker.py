# envsense/runtime/rx_worker.py
from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from envsense.transport.base import SerialReader

ChunkCallback = Callable[[str], None]
EndCallback = Callable[[Optional[BaseException]], None]


class ReadLoop(threading.Thread):
    """
    Thread that blocks on reader.read() and hands each chunk to the session.

    stop() only marks the loop; the owner must also cancel the reader so a
    read parked in the OS returns. on_end(error) fires once when the stream
    finishes on its own (done or I/O error), never after stop().
    """

    def __init__(
        self,
        reader: SerialReader,
        *,
        on_chunk: ChunkCallback,
        on_end: EndCallback,
        logger: Optional[logging.Logger] = None,
        name: str = "envsense-rx",
    ):
        super().__init__(name=name, daemon=True)
        self._reader = reader
        self._on_chunk = on_chunk
        self._on_end = on_end
        self._log = logger or logging.getLogger(__name__)
        self._stop_event = threading.Event()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def run(self) -> None:
        error: Optional[BaseException] = None

        while not self._stop_event.is_set():
            try:
                chunk = self._reader.read()
            except Exception as e:
                error = e
                break

            if chunk is None or self._stop_event.is_set():
                break

            try:
                self._on_chunk(chunk)
            except Exception:
                self._log.exception("RX_CHUNK_HANDLER_ERROR")

        if self._stop_event.is_set():
            return

        try:
            self._on_end(error)
        except Exception:
            self._log.exception("RX_END_HANDLER_ERROR")

    def stop(self) -> None:
        self._stop_event.set()
