from __future__ import annotations

from typing import Dict, Type

from .base import TransportProvider
from .uart import UARTProvider
from .replay import ReplayProvider
from .errors import TransportError


class TransportDriverRegistry:
    """
    Driver key -> TransportProvider class used to build the session's device source.

    Built-in keys:
      - "uart": UARTProvider(port=None, chooser=None), a live pyserial port
      - "replay": ReplayProvider(path, chunk_size, interval_s, loop), a capture file

    Lookups ignore case. create() passes keyword params straight through;
    app.runner decides which params each driver gets.
    """

    def __init__(self, drivers: Dict[str, Type[TransportProvider]]):
        self._drivers: Dict[str, Type[TransportProvider]] = {k.lower(): v for k, v in drivers.items()}

    @classmethod
    def default(cls) -> "TransportDriverRegistry":
        return cls(
            drivers={
                "uart": UARTProvider,
                "replay": ReplayProvider,
            }
        )

    def names(self) -> list[str]:
        return sorted(self._drivers)

    def has(self, driver: str) -> bool:
        return driver.lower() in self._drivers

    def get_class(self, driver: str) -> Type[TransportProvider]:
        key = driver.lower()
        if key not in self._drivers:
            raise TransportError(f"Transport driver '{driver}' not registered")
        return self._drivers[key]

    def create(self, driver: str, **params) -> TransportProvider:
        """
        Instantiate a transport provider by driver key.
        """
        provider_cls = self.get_class(driver)
        return provider_cls(**params)
