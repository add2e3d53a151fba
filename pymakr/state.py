"""Key/value storage for state that outlives a session.

The core only relies on ``get``/``update``; where the values end up is up to
the storage implementation.
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

from .typing import PathType

logger = logging.getLogger(__name__)


def device_state_key(device_id: str) -> str:
    """Key under which a device's ``{connected, name}`` record is stored."""
    return f"devices.{device_id}.state"


class StateStorage(ABC):
    @abstractmethod
    def get(self, key: str, default: Optional[Any] = None) -> Any:
        raise NotImplementedError

    @abstractmethod
    def update(self, key: str, value: Any) -> None:
        raise NotImplementedError

    def load_device_state(self, device_id: str) -> dict:
        return self.get(device_state_key(device_id)) or {}

    def save_device_state(self, device_id: str, *, connected: bool, name: str) -> None:
        self.update(device_state_key(device_id), {"connected": connected, "name": name})


class MemoryStateStorage(StateStorage):
    def __init__(self, data: Optional[dict] = None):
        self.data = {} if data is None else dict(data)

    def get(self, key, default=None):
        return self.data.get(key, default)

    def update(self, key, value):
        self.data[key] = value


class JsonStateStorage(StateStorage):
    """Storage backed by a single JSON file, rewritten on every update."""

    def __init__(self, path: PathType):
        self.path = Path(path)
        self._lock = threading.Lock()
        try:
            self.data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            self.data = {}
        except json.JSONDecodeError:
            logger.warning('Ignoring corrupt state file "%s".', self.path)
            self.data = {}

    def get(self, key, default=None):
        return self.data.get(key, default)

    def update(self, key, value):
        with self._lock:
            self.data[key] = value
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(self.data, indent=2, sort_keys=True), encoding="utf-8")
