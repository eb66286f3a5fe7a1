from __future__ import annotations

import json
import logging
import sys
from threading import Lock
from typing import Callable, Optional, TextIO

from envsense.interfaces.status_sink import StatusSink
from envsense.runtime.session import TelemetrySession
from envsense.runtime.state import SessionStatus


def status_as_dict(st: SessionStatus) -> dict:
    out = {
        "state": st.state.value,
        "device": st.device,
        "reading": st.reading.as_dict() if st.reading else None,
        "climate": st.climate.as_dict() if st.climate else None,
        "last_error": st.last_error,
        "error_code": st.error_code,
    }
    return {k: v for k, v in out.items() if v is not None}


class JsonLinesSink(StatusSink):
    """Write one JSON object per status update (machine-readable monitor output)."""

    def __init__(self, stream: Optional[TextIO] = None):
        self._stream = stream or sys.stdout
        self._lock = Lock()

    def on_status(self, status: SessionStatus) -> None:
        line = json.dumps(status_as_dict(status), ensure_ascii=False)
        with self._lock:
            self._stream.write(line + "\n")
            self._stream.flush()

    def close(self) -> None:
        return None


class StatusFanout:
    """
    Subscribes once to a session and forwards every snapshot to the sinks.
    A failing sink is logged and skipped.
    """

    def __init__(self, session: TelemetrySession, logger: Optional[logging.Logger] = None):
        self._session = session
        self._log = logger or logging.getLogger(__name__)
        self._sinks: list[StatusSink] = []
        self._unsubscribe: Optional[Callable[[], None]] = None

    def add_sink(self, sink: StatusSink) -> None:
        if sink not in self._sinks:
            self._sinks.append(sink)
        self._subscribe_once()

    def remove_sink(self, sink: StatusSink) -> None:
        if sink in self._sinks:
            self._sinks.remove(sink)

    def close(self) -> None:
        if self._unsubscribe:
            try:
                self._unsubscribe()
            finally:
                self._unsubscribe = None

        for s in list(self._sinks):
            try:
                s.close()
            except Exception:
                self._log.exception("SINK_CLOSE_ERROR")

        self._sinks.clear()

    def _subscribe_once(self) -> None:
        if self._unsubscribe is not None:
            return

        def _fanout(status: SessionStatus) -> None:
            for s in list(self._sinks):
                try:
                    s.on_status(status)
                except Exception:
                    self._log.exception("SINK_ON_STATUS_ERROR")

        self._unsubscribe = self._session.subscribe(_fanout)
