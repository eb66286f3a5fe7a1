from __future__ import annotations

import logging
from typing import List, Optional


class LineFrameDecoder:
    """
    Recovers newline-delimited frames from arbitrarily chunked text.

    Only "\\n" delimits frames, so a chunk boundary inside a JSON object
    never corrupts its neighbours. The unterminated tail is kept until a
    later chunk completes it.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.buffer = ""
        self._log = logger or logging.getLogger(__name__)

    # ---------------- Public API ----------------
    @property
    def pending(self) -> str:
        """Text received but not yet terminated by a newline."""
        return self.buffer

    def feed(self, chunk: str) -> List[str]:
        """Append a chunk and return every frame it completed, in order."""
        if not chunk:
            return []

        parts = (self.buffer + chunk).split("\n")
        self.buffer = parts.pop()

        frames = [line.strip() for line in parts]
        frames = [line for line in frames if line]

        self._log.debug(
            "Decoder fed %d chars, frames=%d buffer_len=%d",
            len(chunk),
            len(frames),
            len(self.buffer),
        )
        return frames

    def reset(self) -> None:
        self.buffer = ""
