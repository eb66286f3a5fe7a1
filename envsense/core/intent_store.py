# envsense/core/intent_store.py
from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Protocol

_log = logging.getLogger(__name__)

DEFAULT_INTENT_KEY = "iot-device-connected"


class ReconnectIntentStore(Protocol):
    def get(self) -> bool: ...
    def set(self, value: bool) -> None: ...
    def clear(self) -> None: ...


class MemoryIntentStore:
    """Process-local store; survives session objects, not the process."""

    def __init__(self, value: bool = False):
        self._value = bool(value)

    def get(self) -> bool:
        return self._value

    def set(self, value: bool) -> None:
        self._value = bool(value)

    def clear(self) -> None:
        self._value = False


# ---------------- low-level json helpers ----------------

def load_state_json(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        return {}
    except json.JSONDecodeError as e:
        _log.warning("STATE_JSON_CORRUPT path=%s error=%s", path, e)
        return {}
    except OSError:
        _log.exception("STATE_JSON_READ_FAILED path=%s", path)
        return {}
    return data if isinstance(data, dict) else {}


def write_state_json(path: Path, data: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)

    data = dict(data)
    data["updated_at_utc"] = datetime.now(timezone.utc).isoformat()

    # temp file + rename so a crash mid-write never leaves half a document
    fd, tmp = tempfile.mkstemp(prefix=".state_", suffix=".json", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


class JsonIntentStore:
    """
    Reconnect intent persisted as one boolean key in a small JSON document.

    Other keys in the document are preserved. Last write wins; there is no
    concurrent-writer protection.
    """

    def __init__(self, path: str | Path, key: str = DEFAULT_INTENT_KEY):
        self.path = Path(path).expanduser()
        self.key = key

    def get(self) -> bool:
        return load_state_json(self.path).get(self.key) is True

    def set(self, value: bool) -> None:
        data = load_state_json(self.path)
        data[self.key] = bool(value)
        write_state_json(self.path, data)

    def clear(self) -> None:
        data = load_state_json(self.path)
        if self.key not in data:
            return
        data.pop(self.key, None)
        write_state_json(self.path, data)
