from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from envsense.app.config import EnvSenseConfig
from envsense.core.errors import ConfigError
from envsense.core.intent_store import JsonIntentStore
from envsense.runtime.session import TelemetrySession
from envsense.transport.base import TransportProvider
from envsense.transport.errors import TransportError
from envsense.transport.registry import TransportDriverRegistry
from envsense.transport.uart import PortChooser


@dataclass(frozen=True)
class AppRun:
    config: EnvSenseConfig
    provider: TransportProvider
    intent_store: JsonIntentStore
    session: TelemetrySession


def build_provider(
    cfg: EnvSenseConfig,
    *,
    drivers: Optional[TransportDriverRegistry] = None,
    chooser: Optional[PortChooser] = None,
) -> TransportProvider:
    """
    Construct the transport provider named by cfg.transport.driver.
    Note: does NOT open anything.
    """
    drivers = drivers or TransportDriverRegistry.default()
    t = cfg.transport
    driver = t.driver.lower()

    if driver == "uart":
        params = {"port": t.port, "chooser": chooser}
    elif driver == "replay":
        if not t.replay_path:
            raise ConfigError(
                "Replay driver needs a capture file.",
                hint="Set transport.replay_path or pass --replay FILE.",
            )
        params = {
            "path": t.replay_path,
            "chunk_size": t.chunk_size,
            "interval_s": t.interval_s,
            "loop": t.loop,
        }
    else:
        params = {}

    try:
        return drivers.create(driver, **params)
    except (TransportError, TypeError) as e:
        # unknown driver key or constructor mismatch
        raise ConfigError(
            f"Failed to construct transport driver '{t.driver}'.",
            hint=str(e),
            details={"driver": t.driver, "known": drivers.names()},
        ) from None


def start_run(
    cfg: EnvSenseConfig,
    *,
    drivers: Optional[TransportDriverRegistry] = None,
    chooser: Optional[PortChooser] = None,
    provider: Optional[TransportProvider] = None,
) -> AppRun:
    log = logging.getLogger("envsense")

    provider = provider or build_provider(cfg, drivers=drivers, chooser=chooser)
    intent_store = JsonIntentStore(cfg.session.intent_path, key=cfg.session.intent_key)

    session = TelemetrySession(
        provider,
        intent_store=intent_store,
        baudrate=cfg.transport.baudrate,
        thresholds=cfg.climate,
        join_timeout_s=cfg.session.join_timeout_s,
        logger=log,
    )

    return AppRun(
        config=cfg,
        provider=provider,
        intent_store=intent_store,
        session=session,
    )
