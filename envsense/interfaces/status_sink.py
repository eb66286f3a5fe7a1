# envsense/interfaces/status_sink.py
from typing import Protocol

from envsense.runtime.state import SessionStatus


class StatusSink(Protocol):
    def on_status(self, status: SessionStatus) -> None: ...
    def close(self) -> None: ...
