from __future__ import annotations

import queue
import threading
import time
from datetime import datetime, timezone

import pytest

import envsense.runtime.session as session_mod
from envsense.core.errors import SessionBusyError
from envsense.core.intent_store import MemoryIntentStore
from envsense.model.climate import HumidityBand, SoundBand, TemperatureBand
from envsense.runtime.session import TelemetrySession
from envsense.runtime.state import ConnectionState
from envsense.transport.base import SerialHandle, SerialReader, TransportProvider
from envsense.transport.errors import (
    TransportCancelledError,
    TransportIOError,
    TransportOpenError,
    TransportUnsupportedError,
)

FIXED_NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeReader(SerialReader):
    """
    Queue-backed reader. Push str chunks, None (done) or an exception.
    cancel() unblocks a pending read the way Serial.cancel_read() does.
    """
    def __init__(self, events: list):
        self.events = events
        self._q: "queue.Queue" = queue.Queue()
        self.released = False
        self.cancel_calls = 0
        self.raise_on_cancel: Exception | None = None
        self.raise_on_release: Exception | None = None
        self.ignore_cancel = False

    def push(self, item) -> None:
        self._q.put(item)

    def read(self):
        item = self._q.get()
        if isinstance(item, BaseException):
            raise item
        return item

    def cancel(self) -> None:
        self.cancel_calls += 1
        self.events.append("cancel")
        if not self.ignore_cancel:
            self._q.put(None)
        if self.raise_on_cancel is not None:
            raise self.raise_on_cancel

    def release(self) -> None:
        self.events.append("release")
        if self.raise_on_release is not None:
            raise self.raise_on_release
        self.released = True


class FakeHandle(SerialHandle):
    def __init__(self, name: str = "FAKE0"):
        self.name = name
        self.events: list[str] = []
        self.opened_with: int | None = None
        self.close_calls = 0
        self.reader: FakeReader | None = None

        self.raise_on_open: Exception | None = None
        self.raise_on_open_reader: Exception | None = None
        # close() refuses while the reader still holds the lock
        self.strict_close = False
        self.reader_setup = None

    @property
    def label(self) -> str:
        return self.name

    def open(self, baudrate: int) -> None:
        self.events.append("open")
        if self.raise_on_open is not None:
            raise self.raise_on_open
        self.opened_with = baudrate

    def open_reader(self) -> FakeReader:
        if self.raise_on_open_reader is not None:
            raise self.raise_on_open_reader
        self.reader = FakeReader(self.events)
        if self.reader_setup is not None:
            self.reader_setup(self.reader)
        return self.reader

    def close(self) -> None:
        self.close_calls += 1
        self.events.append("close")
        if self.strict_close and self.reader is not None and not self.reader.released:
            raise TransportIOError("close while reader locked")


class FakeProvider(TransportProvider):
    def __init__(self):
        self.supported = True
        self.request_error: Exception | None = None
        self.requests = 0
        self.handles: list[FakeHandle] = []
        self.configure = None

    def is_supported(self) -> bool:
        return self.supported

    def request_device(self) -> FakeHandle:
        self.requests += 1
        if self.request_error is not None:
            raise self.request_error
        h = FakeHandle(f"FAKE{len(self.handles)}")
        if self.configure is not None:
            self.configure(h)
        self.handles.append(h)
        return h


# -----------------------------
# Helpers
# -----------------------------

def make_session(provider=None, intent=None, **kw) -> TelemetrySession:
    return TelemetrySession(
        provider or FakeProvider(),
        intent_store=intent if intent is not None else MemoryIntentStore(),
        clock=lambda: FIXED_NOW,
        **kw,
    )


def wait_for(pred, timeout: float = 1.0) -> bool:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if pred():
            return True
        time.sleep(0.005)
    return pred()


class Recorder:
    def __init__(self):
        self.statuses = []
        self._lock = threading.Lock()

    def __call__(self, st) -> None:
        with self._lock:
            self.statuses.append(st)

    def readings(self):
        with self._lock:
            return [s.reading for s in self.statuses if s.reading is not None]

    def states(self):
        with self._lock:
            return [s.state for s in self.statuses]


# -----------------------------
# Construction / connect
# -----------------------------

def test_initial_state_without_intent_is_disconnected():
    s = make_session()
    assert s.state is ConnectionState.DISCONNECTED


def test_initial_state_with_pending_intent_awaits_reconnect():
    s = make_session(intent=MemoryIntentStore(True))
    assert s.state is ConnectionState.AWAITING_RECONNECT


def test_connect_opens_device_with_baudrate_and_starts_reading():
    prov = FakeProvider()
    s = make_session(prov)
    rec = Recorder()
    s.subscribe(rec)

    st = s.connect()

    assert st.state is ConnectionState.CONNECTED
    assert st.device == "FAKE0"
    assert prov.handles[0].opened_with == 9600
    assert rec.states()[:2] == [ConnectionState.CONNECTING, ConnectionState.CONNECTED]

    s.force_disconnect()


def test_connect_custom_baudrate():
    prov = FakeProvider()
    s = make_session(prov, baudrate=115200)
    s.connect()
    assert prov.handles[0].opened_with == 115200
    s.force_disconnect()


def test_connect_while_connected_is_rejected_without_second_open():
    prov = FakeProvider()
    s = make_session(prov)
    s.connect()

    with pytest.raises(SessionBusyError):
        s.connect()

    assert prov.requests == 1
    assert s.state is ConnectionState.CONNECTED
    s.force_disconnect()


def test_user_cancel_returns_to_disconnected_silently():
    prov = FakeProvider()
    prov.request_error = TransportCancelledError("dismissed")
    s = make_session(prov)

    st = s.connect()

    assert st.state is ConnectionState.DISCONNECTED
    assert st.last_error is None


def test_unsupported_platform_is_reported_not_raised():
    prov = FakeProvider()
    prov.supported = False
    s = make_session(prov)

    assert s.is_supported() is False
    st = s.connect()

    assert st.state is ConnectionState.ERROR
    assert st.error_code == "unsupported"
    assert prov.requests == 0


def test_provider_unsupported_error_maps_to_unsupported():
    prov = FakeProvider()
    prov.request_error = TransportUnsupportedError("no backend")
    s = make_session(prov)

    st = s.connect()
    assert st.error_code == "unsupported"


def test_open_failure_surfaces_error_and_is_retryable():
    prov = FakeProvider()
    prov.configure = lambda h: setattr(h, "raise_on_open", TransportOpenError("busy"))
    s = make_session(prov)

    st = s.connect()
    assert st.state is ConnectionState.ERROR
    assert st.error_code == "device_connect_error"
    assert "busy" in st.last_error

    prov.configure = None
    st = s.connect()
    assert st.state is ConnectionState.CONNECTED
    assert st.last_error is None
    s.force_disconnect()


def test_reader_open_failure_closes_handle():
    prov = FakeProvider()
    prov.configure = lambda h: setattr(h, "raise_on_open_reader", TransportIOError("locked"))
    s = make_session(prov)

    st = s.connect()

    assert st.state is ConnectionState.ERROR
    assert prov.handles[0].close_calls == 1


# -----------------------------
# Read loop
# -----------------------------

def test_frame_split_across_chunks_is_published_once():
    prov = FakeProvider()
    s = make_session(prov)
    rec = Recorder()
    s.subscribe(rec)
    s.connect()
    reader = prov.handles[0].reader

    reader.push('{"temperature":2')
    reader.push('1.5,"humidity":45,"sou')
    reader.push('nd_ao":63}\n')

    assert wait_for(lambda: len(rec.readings()) == 1)
    r = rec.readings()[0]
    assert (r.temperature_c, r.humidity_pct, r.sound_level) == (21.5, 45.0, 63.0)
    assert r.observed_at == FIXED_NOW

    st = s.status()
    assert st.climate.temperature is TemperatureBand.COMFORTABLE
    assert st.climate.humidity is HumidityBand.NORMAL
    assert st.climate.sound is SoundBand.NORMAL
    s.force_disconnect()


def test_malformed_line_does_not_end_session():
    prov = FakeProvider()
    s = make_session(prov)
    rec = Recorder()
    s.subscribe(rec)
    s.connect()

    prov.handles[0].reader.push('{"temperature":1}\nnot json\n{"temperature":2}\n')

    assert wait_for(lambda: len(rec.readings()) == 2)
    assert [r.temperature_c for r in rec.readings()] == [1.0, 2.0]
    assert s.state is ConnectionState.CONNECTED

    d = s.diagnostics()
    assert d.frames_ok == 2
    assert d.frames_failed == 1
    assert d.last_raw_frame == '{"temperature":2}'
    s.force_disconnect()


def test_oversized_number_does_not_drop_following_frame():
    prov = FakeProvider()
    s = make_session(prov)
    rec = Recorder()
    s.subscribe(rec)
    s.connect()

    huge = "1" + "0" * 400
    prov.handles[0].reader.push(f'{{"temperature": {huge}}}\n{{"temperature":2}}\n')

    assert wait_for(lambda: len(rec.readings()) == 2)
    assert [r.temperature_c for r in rec.readings()] == [None, 2.0]
    assert s.diagnostics().frames_ok == 2
    s.force_disconnect()


def test_unexpected_frame_error_is_counted_and_later_frames_published(monkeypatch):
    real_normalize = session_mod.normalize
    calls = {"n": 0}

    def flaky_normalize(frame, now):
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("decoder bug")
        return real_normalize(frame, now)

    monkeypatch.setattr(session_mod, "normalize", flaky_normalize)

    prov = FakeProvider()
    s = make_session(prov)
    rec = Recorder()
    s.subscribe(rec)
    s.connect()

    prov.handles[0].reader.push('{"temperature":1}\n{"temperature":2}\n')

    assert wait_for(lambda: len(rec.readings()) == 1)
    assert rec.readings()[0].temperature_c == 2.0
    d = s.diagnostics()
    assert (d.frames_ok, d.frames_failed) == (1, 1)
    assert s.state is ConnectionState.CONNECTED
    s.force_disconnect()


def test_device_closing_stream_moves_to_error_and_releases_in_order():
    prov = FakeProvider()
    s = make_session(prov)
    s.connect()
    h = prov.handles[0]

    h.reader.push(None)

    assert wait_for(lambda: s.state is ConnectionState.ERROR)
    st = s.status()
    assert st.last_error == "connection lost"
    assert st.error_code == "connection_lost"
    assert st.device is None
    assert wait_for(lambda: h.close_calls == 1)
    assert h.events[-2:] == ["release", "close"]


def test_stream_io_error_moves_to_error_then_reconnect_works():
    prov = FakeProvider()
    s = make_session(prov)
    s.connect()

    prov.handles[0].reader.push(TransportIOError("unplugged"))
    assert wait_for(lambda: s.state is ConnectionState.ERROR)

    st = s.connect()
    assert st.state is ConnectionState.CONNECTED
    assert len(prov.handles) == 2
    s.force_disconnect()


def test_subscriber_exception_does_not_break_session():
    prov = FakeProvider()
    s = make_session(prov)

    def boom(st):
        raise RuntimeError("sink failed")

    rec = Recorder()
    s.subscribe(boom)
    s.subscribe(rec)
    s.connect()
    prov.handles[0].reader.push('{"humidity":70}\n')

    assert wait_for(lambda: len(rec.readings()) == 1)
    assert s.status().climate.humidity is HumidityBand.HUMID
    s.force_disconnect()


def test_unsubscribe_stops_delivery():
    s = make_session()
    rec = Recorder()
    unsubscribe = s.subscribe(rec)
    unsubscribe()

    s.connect()
    s.force_disconnect()
    assert rec.statuses == []


# -----------------------------
# Disconnect
# -----------------------------

def test_disconnect_cancels_then_releases_reader_before_closing():
    prov = FakeProvider()
    intent = MemoryIntentStore()
    s = make_session(prov, intent=intent)
    s.connect()
    h = prov.handles[0]
    h.reader.push('{"temperature":30}\n')
    assert wait_for(lambda: s.status().reading is not None)

    intent.set(True)
    st = s.disconnect()

    assert st.state is ConnectionState.DISCONNECTED
    assert st.reading is None
    assert st.climate is None
    assert h.events == ["open", "cancel", "release", "close"]
    assert intent.get() is False
    assert s.diagnostics().last_raw_chunk is None


def test_disconnect_with_strict_close_still_succeeds():
    prov = FakeProvider()
    prov.configure = lambda h: setattr(h, "strict_close", True)
    s = make_session(prov)
    s.connect()

    st = s.disconnect()

    assert st.state is ConnectionState.DISCONNECTED
    assert prov.handles[0].close_calls == 1


def test_disconnect_closes_transport_even_if_reader_release_raises():
    prov = FakeProvider()

    def configure(h):
        h.strict_close = True
        h.reader_setup = lambda r: setattr(r, "raise_on_release", RuntimeError("release failed"))

    prov.configure = configure
    s = make_session(prov)
    s.connect()

    st = s.disconnect()

    h = prov.handles[0]
    assert st.state is ConnectionState.DISCONNECTED
    assert h.close_calls == 1
    assert h.events[-2:] == ["release", "close"]


def test_disconnect_unblocks_silent_reader_quickly():
    prov = FakeProvider()
    s = make_session(prov, join_timeout_s=5.0)
    s.connect()

    t0 = time.monotonic()
    st = s.disconnect()
    elapsed = time.monotonic() - t0

    assert st.state is ConnectionState.DISCONNECTED
    assert elapsed < 1.0


def test_disconnect_is_bounded_when_cancel_does_not_unblock():
    prov = FakeProvider()
    prov.configure = lambda h: setattr(h, "reader_setup", lambda r: setattr(r, "ignore_cancel", True))
    s = make_session(prov, join_timeout_s=0.1)
    s.connect()

    t0 = time.monotonic()
    st = s.disconnect()
    elapsed = time.monotonic() - t0

    assert st.state is ConnectionState.DISCONNECTED
    assert elapsed < 1.0
    assert prov.handles[0].close_calls == 1


def test_disconnect_from_error_settles_to_disconnected():
    prov = FakeProvider()
    prov.supported = False
    s = make_session(prov)
    s.connect()

    st = s.disconnect()
    assert st.state is ConnectionState.DISCONNECTED
    assert st.last_error is None


def test_force_disconnect_swallows_every_cleanup_error():
    prov = FakeProvider()

    def configure(h):
        h.strict_close = True

        def setup(r):
            r.raise_on_cancel = RuntimeError("cancel failed")
            r.raise_on_release = RuntimeError("release failed")

        h.reader_setup = setup

    prov.configure = configure
    s = make_session(prov)
    s.connect()

    st = s.force_disconnect()

    assert st.state is ConnectionState.DISCONNECTED
    assert prov.handles[0].close_calls == 1


def test_force_disconnect_when_idle_is_noop():
    s = make_session()
    st = s.force_disconnect()
    assert st.state is ConnectionState.DISCONNECTED


def test_stale_read_loop_cannot_publish_after_reconnect():
    prov = FakeProvider()
    s = make_session(prov)
    rec = Recorder()
    s.subscribe(rec)

    s.connect()
    s.force_disconnect()
    s.connect()

    # epoch 1 belongs to the first open
    s._on_chunk(1, '{"temperature":5}\n')
    s._on_read_end(1, None)

    assert rec.readings() == []
    assert s.state is ConnectionState.CONNECTED
    s.force_disconnect()


# -----------------------------
# Reconnect intent
# -----------------------------

def test_teardown_while_connected_records_intent_for_next_session():
    intent = MemoryIntentStore()
    prov = FakeProvider()
    s = make_session(prov, intent=intent)
    s.connect()

    s.close()

    assert intent.get() is True
    assert s.state is ConnectionState.DISCONNECTED
    assert prov.handles[0].close_calls == 1

    s2 = make_session(FakeProvider(), intent=intent)
    assert s2.state is ConnectionState.AWAITING_RECONNECT


def test_teardown_while_disconnected_does_not_record_intent():
    intent = MemoryIntentStore()
    s = make_session(intent=intent)

    assert s.notify_teardown() is False
    assert intent.get() is False


def test_connect_clears_pending_intent():
    intent = MemoryIntentStore(True)
    s = make_session(intent=intent)

    s.connect()

    assert intent.get() is False
    s.force_disconnect()


def test_disconnect_from_awaiting_reconnect_clears_intent():
    intent = MemoryIntentStore(True)
    s = make_session(intent=intent)

    st = s.disconnect()

    assert st.state is ConnectionState.DISCONNECTED
    assert intent.get() is False


def test_force_disconnect_clears_intent():
    intent = MemoryIntentStore(True)
    s = make_session(intent=intent)

    s.force_disconnect()

    assert intent.get() is False


def test_failing_intent_store_does_not_break_session():
    class BrokenStore:
        def get(self):
            raise OSError("disk gone")

        def set(self, value):
            raise OSError("disk gone")

        def clear(self):
            raise OSError("disk gone")

    prov = FakeProvider()
    s = make_session(prov, intent=BrokenStore())
    assert s.state is ConnectionState.DISCONNECTED

    assert s.connect().state is ConnectionState.CONNECTED
    assert s.notify_teardown() is True
    assert s.disconnect().state is ConnectionState.DISCONNECTED
