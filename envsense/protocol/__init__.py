# protocol/__init__.py

from .framing import LineFrameDecoder

__all__ = ["LineFrameDecoder"]
