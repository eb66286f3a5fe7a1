# envsense/cli/commands.py
from __future__ import annotations

import logging
import signal
import sys
import time
from pathlib import Path
from typing import Optional, Sequence

from envsense.app.config import EnvSenseConfig
from envsense.app.runner import start_run
from envsense.app.sinks import JsonLinesSink, StatusFanout
from envsense.core.intent_store import JsonIntentStore
from envsense.interfaces.status_sink import StatusSink
from envsense.runtime.session import TelemetrySession
from envsense.runtime.state import ConnectionState, SessionStatus
from envsense.transport.uart import autodetect_port, list_candidates


class HostTeardown(Exception):
    """Raised from the SIGTERM/SIGHUP handler to unwind the monitor loop."""


# ---------------- Status sink ----------------

def _fmt(value: Optional[float], unit: str) -> str:
    return "n/a" if value is None else f"{value:g}{unit}"


class PrintStatusSink(StatusSink):
    """Print one compact line per status update."""
    def __init__(self, session: Optional[TelemetrySession] = None):
        # set to show the raw frame side-channel
        self._session = session

    def on_status(self, st: SessionStatus) -> None:
        line = f"[{st.state.value}]"
        if st.device:
            line += f" {st.device}"
        if st.reading is not None and st.climate is not None:
            r, c = st.reading, st.climate
            line += (
                f" T={_fmt(r.temperature_c, 'C')} ({c.temperature.value})"
                f" H={_fmt(r.humidity_pct, '%')} ({c.humidity.value})"
                f" S={_fmt(r.sound_level, '')} ({c.sound.value})"
            )
        if st.last_error:
            line += f" error: {st.last_error}"
        print(line, flush=True)

        if self._session is not None and st.reading is not None:
            d = self._session.diagnostics()
            print(f"    raw: {d.last_raw_frame!r} (ok={d.frames_ok} failed={d.frames_failed})", flush=True)

    def close(self) -> None:
        return None

# ---------------- Logging ----------------

def configure_logging(level: str, log_file: Optional[str] = None) -> None:
    """
    Console handler on stderr plus an optional file handler (idempotent).
    Kept in CLI (presentation-layer concern).
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    if not any(getattr(h, "_envsense_console", False) for h in root.handlers):
        sh = logging.StreamHandler(sys.stderr)
        sh.setFormatter(fmt)
        sh._envsense_console = True  # type: ignore[attr-defined]
        root.addHandler(sh)

    if log_file:
        configure_file_logging(Path(log_file).expanduser())


def configure_file_logging(app_log_path: Path) -> None:
    root = logging.getLogger()
    app_log_path.parent.mkdir(parents=True, exist_ok=True)
    target = str(app_log_path.resolve())

    for h in root.handlers:
        if isinstance(h, logging.FileHandler) and getattr(h, "baseFilename", None) == target:
            return

    fh = logging.FileHandler(app_log_path, encoding="utf-8", delay=True)
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
    root.addHandler(fh)

# ---------------- Port chooser ----------------

def prompt_for_port(ports: Sequence) -> Optional[str]:
    """Interactive device picker. Empty input or EOF cancels."""
    if not ports:
        print("No serial ports found.")
        return None

    for i, p in enumerate(ports, start=1):
        print(f"  {i}) {p.device}  {p.description or ''}".rstrip())
    try:
        answer = input("Select port number (empty to cancel): ").strip()
    except EOFError:
        return None
    if not answer:
        return None
    try:
        return ports[int(answer) - 1].device
    except (ValueError, IndexError):
        print(f"Invalid selection {answer!r}.")
        return None

# ---------------- Commands ----------------

def cmd_ports() -> int:
    ports = list_candidates()
    if not ports:
        print("No serial ports found.")
        return 0

    guess = autodetect_port(ports)
    print("Serial ports:")
    for p in ports:
        ids = f"[{p.vid:04X}:{p.pid:04X}] " if (p.vid is not None and p.pid is not None) else ""
        mark = "  <- auto" if p.device == guess else ""
        print(f"  - {p.device} {ids}{(p.description or '')}".rstrip() + mark)
    return 0


def cmd_status(cfg: EnvSenseConfig) -> int:
    run = start_run(cfg)
    st = run.session.status()
    print(f"State:     {st.state.value}")
    print(f"Supported: {run.session.is_supported()}")
    print(f"Driver:    {cfg.transport.driver} baudrate={cfg.transport.baudrate}")
    if st.state is ConnectionState.AWAITING_RECONNECT:
        print("The device was connected when envsense last exited. Run 'envsense monitor' to resume,")
        print("or 'envsense forget' to discard.")
    return 0


def cmd_forget(cfg: EnvSenseConfig) -> int:
    store = JsonIntentStore(cfg.session.intent_path, key=cfg.session.intent_key)
    pending = store.get()
    store.clear()
    print("Reconnect intent cleared." if pending else "No reconnect intent pending.")
    return 0


def cmd_monitor(args, cfg: EnvSenseConfig) -> int:
    run = start_run(cfg, chooser=prompt_for_port if args.choose else None)
    session = run.session

    if session.state is ConnectionState.AWAITING_RECONNECT:
        print("Device was connected when envsense last exited; reconnecting.")

    fanout = StatusFanout(session)
    fanout.add_sink(JsonLinesSink() if args.json else PrintStatusSink(session if args.raw else None))

    def _on_signal(signum, frame):
        raise HostTeardown(signum)

    previous = {}
    for name in ("SIGTERM", "SIGHUP"):
        sig = getattr(signal, name, None)
        if sig is not None:
            previous[sig] = signal.signal(sig, _on_signal)

    try:
        st = session.connect()
        if st.state is not ConnectionState.CONNECTED:
            return 1 if st.state is ConnectionState.ERROR else 0

        print("Listening… Press Ctrl+C to quit", flush=True)
        t0 = time.monotonic()
        while args.secs is None or time.monotonic() - t0 < args.secs:
            if session.state is ConnectionState.ERROR:
                return 1
            time.sleep(0.2)

        session.disconnect()
        return 0

    except KeyboardInterrupt:
        session.disconnect()
        return 0
    except HostTeardown as e:
        signum = int(e.args[0])
        logging.getLogger(__name__).info("HOST_TEARDOWN signal=%s", signal.Signals(signum).name)
        session.close()
        return 128 + signum
    finally:
        if session.state in (ConnectionState.CONNECTED, ConnectionState.DISCONNECTING):
            session.force_disconnect()
        fanout.close()
        for sig, handler in previous.items():
            signal.signal(sig, handler)
