# envsense/runtime/session.py
from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from functools import partial
from typing import Callable, List, Optional

from envsense.runtime.link import SerialLink
from envsense.runtime.rx_worker import ReadLoop
from envsense.runtime.state import ConnectionState, SessionDiagnostics, SessionStatus
from envsense.protocol.framing import LineFrameDecoder
from envsense.model.reading import DeviceReading, ParseFailure
from envsense.model.normalize import normalize
from envsense.model.climate import ClimateStatus, ClimateThresholds, DEFAULT_THRESHOLDS, classify
from envsense.transport.base import TransportProvider
from envsense.transport.errors import TransportCancelledError, TransportError, TransportUnsupportedError
from envsense.core.intent_store import MemoryIntentStore, ReconnectIntentStore

from envsense.core.errors import (
    DeviceConnectError,
    DeviceDisconnectedError,
    EnvSenseError,
    SessionBusyError,
    UnsupportedTransportError,
)

StatusCallback = Callable[[SessionStatus], None]
Clock = Callable[[], datetime]

DEFAULT_BAUDRATE = 9600
CONNECTION_LOST = "connection lost"

_BUSY_FOR_CONNECT = (
    ConnectionState.CONNECTING,
    ConnectionState.CONNECTED,
    ConnectionState.DISCONNECTING,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TelemetrySession:
    """
    Owns one serial sensor connection and its read loop.

    State changes and readings are pushed to subscribers as SessionStatus
    snapshots. The transport link is held only while CONNECTED or
    DISCONNECTING. Each successful open gets a new epoch; anything a read
    loop from an older epoch produces is dropped.
    """

    def __init__(
        self,
        provider: TransportProvider,
        *,
        intent_store: Optional[ReconnectIntentStore] = None,
        baudrate: int = DEFAULT_BAUDRATE,
        thresholds: ClimateThresholds = DEFAULT_THRESHOLDS,
        join_timeout_s: float = 1.0,
        clock: Clock = _utcnow,
        logger: Optional[logging.Logger] = None,
    ):
        self._provider = provider
        self._intent = intent_store if intent_store is not None else MemoryIntentStore()
        self._baudrate = int(baudrate)
        self._thresholds = thresholds
        self._join_timeout_s = float(join_timeout_s)
        self._clock = clock
        self._log = logger or logging.getLogger(__name__)

        self._lock = threading.RLock()
        # serializes delivery so snapshots reach subscribers in publish order
        self._publish_lock = threading.RLock()

        self._decoder = LineFrameDecoder(logger=self._log)
        self._link: Optional[SerialLink] = None
        self._worker: Optional[ReadLoop] = None
        self._stop_requested = False
        self._epoch = 0

        self._reading: Optional[DeviceReading] = None
        self._climate: Optional[ClimateStatus] = None
        self._last_error: Optional[str] = None
        self._error_code: Optional[str] = None
        self._device: Optional[str] = None

        self._last_raw_chunk: Optional[str] = None
        self._last_raw_frame: Optional[str] = None
        self._frames_ok = 0
        self._frames_failed = 0

        self._status_cbs: List[StatusCallback] = []

        if self._read_intent():
            self._state = ConnectionState.AWAITING_RECONNECT
            self._log.info("SESSION_AWAITING_RECONNECT")
        else:
            self._state = ConnectionState.DISCONNECTED

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    def is_supported(self) -> bool:
        try:
            return bool(self._provider.is_supported())
        except Exception:
            self._log.exception("SUPPORT_PROBE_FAILED")
            return False

    def status(self) -> SessionStatus:
        with self._lock:
            return self._snapshot_locked()

    def diagnostics(self) -> SessionDiagnostics:
        with self._lock:
            return SessionDiagnostics(
                last_raw_chunk=self._last_raw_chunk,
                last_raw_frame=self._last_raw_frame,
                frames_ok=self._frames_ok,
                frames_failed=self._frames_failed,
            )

    def subscribe(self, cb: StatusCallback) -> Callable[[], None]:
        with self._lock:
            self._status_cbs.append(cb)

        def _unsubscribe() -> None:
            with self._lock:
                if cb in self._status_cbs:
                    self._status_cbs.remove(cb)

        return _unsubscribe

    # ------------------------------------------------------------------
    # Connect
    # ------------------------------------------------------------------
    def connect(self) -> SessionStatus:
        """
        Request a device, open it and start the read loop.

        Expected failures (unsupported platform, picker dismissed, open
        refused) are reported through the returned status, not raised.
        """
        with self._lock:
            if self._state in _BUSY_FOR_CONNECT:
                raise SessionBusyError(
                    f"connect() rejected while {self._state.value}.",
                    hint="Disconnect first.",
                    details={"state": self._state.value},
                )
            self._epoch += 1
            epoch = self._epoch
            self._stop_requested = False
            self._decoder.reset()
            self._reset_readings_locked()
            self._frames_ok = 0
            self._frames_failed = 0
            self._set_error_locked(None)
            self._set_state_locked(ConnectionState.CONNECTING)

        self._clear_intent()
        self._publish()

        if not self.is_supported():
            return self._fail_connect(
                epoch,
                UnsupportedTransportError(
                    "Serial transport is not supported on this platform.",
                    hint="Install a pyserial backend that supports cancel_read (posix or win32).",
                ),
            )

        try:
            handle = self._provider.request_device()
        except TransportCancelledError:
            self._log.info("SESSION_CONNECT_CANCELLED")
            return self._settle_connect(epoch)
        except TransportUnsupportedError as e:
            return self._fail_connect(
                epoch,
                UnsupportedTransportError("Serial transport is not supported on this platform.", hint=str(e)),
            )
        except TransportError as e:
            return self._fail_connect(epoch, DeviceConnectError("Could not select a serial device.", hint=str(e)))

        self._log.info("SESSION_CONNECT device=%s baudrate=%d", handle.label, self._baudrate)
        try:
            link = SerialLink.open(handle, self._baudrate, logger=self._log)
        except EnvSenseError as e:
            return self._fail_connect(epoch, e)

        worker = ReadLoop(
            link.reader,
            on_chunk=partial(self._on_chunk, epoch),
            on_end=partial(self._on_read_end, epoch),
            logger=self._log,
        )

        with self._lock:
            superseded = self._epoch != epoch or self._state is not ConnectionState.CONNECTING
            if not superseded:
                self._link = link
                self._worker = worker
                self._device = handle.label
                self._set_state_locked(ConnectionState.CONNECTED)
                worker.start()

        if superseded:
            # force_disconnect() ran while the device was opening
            self._log.info("SESSION_CONNECT_SUPERSEDED device=%s", handle.label)
            link.release()
            return self.status()

        self._log.info("SESSION_CONNECTED device=%s", handle.label)
        self._publish()
        return self.status()

    def _fail_connect(self, epoch: int, err: EnvSenseError) -> SessionStatus:
        with self._lock:
            if self._epoch == epoch and self._state is ConnectionState.CONNECTING:
                self._set_error_locked(err)
                self._set_state_locked(ConnectionState.ERROR)
        self._log.warning("SESSION_CONNECT_FAILED code=%s msg=%s hint=%s", err.code, err.message, err.hint)
        self._publish()
        return self.status()

    def _settle_connect(self, epoch: int) -> SessionStatus:
        with self._lock:
            if self._epoch == epoch and self._state is ConnectionState.CONNECTING:
                self._set_state_locked(ConnectionState.DISCONNECTED)
        self._publish()
        return self.status()

    # ------------------------------------------------------------------
    # Disconnect
    # ------------------------------------------------------------------
    def disconnect(self) -> SessionStatus:
        """
        Stop reading and release the device.

        The pending read is cancelled rather than awaited, so this returns
        within roughly join_timeout_s even if the device is silent. Outside
        CONNECTED it just settles to DISCONNECTED (declining a reconnect).
        """
        with self._lock:
            state = self._state
            if state in (ConnectionState.CONNECTING, ConnectionState.DISCONNECTING):
                raise SessionBusyError(
                    f"disconnect() rejected while {state.value}.",
                    hint="Use force_disconnect() to abort.",
                    details={"state": state.value},
                )

            link: Optional[SerialLink] = None
            worker: Optional[ReadLoop] = None
            if state is ConnectionState.CONNECTED:
                self._stop_requested = True
                link = self._link
                worker = self._worker
                epoch = self._epoch
                self._set_state_locked(ConnectionState.DISCONNECTING)
            else:
                self._set_error_locked(None)
                self._set_state_locked(ConnectionState.DISCONNECTED)

        if link is None:
            self._clear_intent()
            self._publish()
            return self.status()

        self._log.info("SESSION_DISCONNECT device=%s", self._device)
        self._publish()

        self._stop_worker(worker, link)
        link.release()

        with self._lock:
            if self._epoch == epoch and self._state is ConnectionState.DISCONNECTING:
                self._link = None
                self._worker = None
                self._decoder.reset()
                self._reset_readings_locked()
                self._set_state_locked(ConnectionState.DISCONNECTED)

        self._clear_intent()
        self._log.info("SESSION_DISCONNECTED")
        self._publish()
        return self.status()

    def force_disconnect(self) -> SessionStatus:
        """Unconditional escape hatch. Never raises."""
        try:
            self._release_all(clear_intent=True)
        except Exception:
            self._log.exception("FORCE_DISCONNECT_FAILED")
        return self.status()

    # ------------------------------------------------------------------
    # Host lifetime
    # ------------------------------------------------------------------
    def notify_teardown(self) -> bool:
        """
        The host is about to go away. Record the reconnect intent if a
        device is live so the next session offers to resume.
        """
        with self._lock:
            live = self._state is ConnectionState.CONNECTED
        if live:
            self._log.info("SESSION_TEARDOWN_WHILE_CONNECTED device=%s", self._device)
            try:
                self._intent.set(True)
            except Exception:
                self._log.exception("INTENT_WRITE_FAILED")
        return live

    def close(self) -> None:
        """Teardown: keep a pending reconnect intent, release everything."""
        self.notify_teardown()
        try:
            self._release_all(clear_intent=False)
        except Exception:
            self._log.exception("SESSION_CLOSE_FAILED")

    def __enter__(self) -> "TelemetrySession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Read loop callbacks (RX thread)
    # ------------------------------------------------------------------
    def _on_chunk(self, epoch: int, chunk: str) -> None:
        snapshots: List[SessionStatus] = []

        with self._lock:
            if epoch != self._epoch or self._stop_requested or self._state is not ConnectionState.CONNECTED:
                return

            self._last_raw_chunk = chunk
            for frame in self._decoder.feed(chunk):
                self._last_raw_frame = frame
                try:
                    result = normalize(frame, self._clock())
                    if isinstance(result, ParseFailure):
                        self._frames_failed += 1
                        self._log.warning("FRAME_PARSE_FAILED reason=%s", result.reason)
                        continue
                    climate = classify(result, self._thresholds)
                except Exception:
                    # frames already split off this chunk must still be handled
                    self._frames_failed += 1
                    self._log.exception("FRAME_PARSE_FAILED line=%r", frame[:80])
                    continue

                self._frames_ok += 1
                self._reading = result
                self._climate = climate
                snapshots.append(self._snapshot_locked())

        if snapshots:
            self._publish_many(snapshots, epoch=epoch)

    def _on_read_end(self, epoch: int, error: Optional[BaseException]) -> None:
        with self._lock:
            if epoch != self._epoch or self._stop_requested or self._state is not ConnectionState.CONNECTED:
                return
            link = self._link
            self._link = None
            self._worker = None
            self._decoder.reset()
            self._reset_readings_locked()
            self._set_error_locked(DeviceDisconnectedError(CONNECTION_LOST))
            self._set_state_locked(ConnectionState.ERROR)

        if error is not None:
            self._log.warning("STREAM_ERROR device=%s err=%s", self._device, error)
        else:
            self._log.warning("STREAM_CLOSED device=%s", self._device)

        if link is not None:
            link.release()
        self._publish()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _release_all(self, *, clear_intent: bool) -> None:
        with self._lock:
            link = self._link
            worker = self._worker
            self._link = None
            self._worker = None
            self._stop_requested = True
            self._epoch += 1
            self._decoder.reset()
            self._reset_readings_locked()
            self._set_error_locked(None)
            self._set_state_locked(ConnectionState.DISCONNECTED)

        if link is not None:
            self._log.info("SESSION_RELEASE device=%s", self._device)
            self._stop_worker(worker, link)
            link.release()

        if clear_intent:
            self._clear_intent()
        self._publish()

    def _stop_worker(self, worker: Optional[ReadLoop], link: SerialLink) -> None:
        if worker is not None:
            worker.stop()
        link.cancel_read()
        if worker is None or worker is threading.current_thread() or not worker.is_alive():
            return
        worker.join(timeout=self._join_timeout_s)
        if worker.is_alive():
            self._log.warning("READ_LOOP_JOIN_TIMEOUT timeout_s=%.2f", self._join_timeout_s)

    def _set_state_locked(self, new: ConnectionState) -> None:
        old = self._state
        self._state = new
        if old is not new:
            self._log.debug("STATE %s -> %s", old.value, new.value)

    def _set_error_locked(self, err: Optional[EnvSenseError]) -> None:
        if err is None:
            self._last_error = None
            self._error_code = None
            return
        self._last_error = f"{err.message} ({err.hint})" if err.hint else err.message
        self._error_code = err.code

    def _reset_readings_locked(self) -> None:
        self._reading = None
        self._climate = None
        self._last_raw_chunk = None
        self._last_raw_frame = None

    def _snapshot_locked(self) -> SessionStatus:
        return SessionStatus(
            state=self._state,
            reading=self._reading,
            climate=self._climate,
            last_error=self._last_error,
            error_code=self._error_code,
            device=self._device if self._link is not None else None,
        )

    def _read_intent(self) -> bool:
        try:
            return bool(self._intent.get())
        except Exception:
            self._log.exception("INTENT_READ_FAILED")
            return False

    def _clear_intent(self) -> None:
        try:
            self._intent.clear()
        except Exception:
            self._log.exception("INTENT_CLEAR_FAILED")

    def _publish(self) -> None:
        with self._publish_lock:
            self._emit(self.status())

    def _publish_many(self, snapshots: List[SessionStatus], *, epoch: int) -> None:
        with self._publish_lock:
            for st in snapshots:
                with self._lock:
                    if epoch != self._epoch or self._stop_requested:
                        return
                self._emit(st)

    def _emit(self, st: SessionStatus) -> None:
        with self._lock:
            cbs = list(self._status_cbs)

        for cb in cbs:
            try:
                cb(st)
            except Exception:
                self._log.exception("STATUS_CALLBACK_ERROR")
