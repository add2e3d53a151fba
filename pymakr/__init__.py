# Don't manually change, let poetry-dynamic-versioning-plugin handle it.
__version__ = "0.0.0"

__all__ = [
    "AutoConnect",
    "ConfigError",
    "ConnectionLost",
    "ConnectionState",
    "ConnectionTimeout",
    "DevModePhase",
    "DevModeWatcher",
    "DeviceConfig",
    "DeviceIdentity",
    "DeviceInput",
    "DeviceNotFoundError",
    "DeviceSession",
    "JsonStateStorage",
    "MemoryStateStorage",
    "Project",
    "ProjectConfig",
    "PymakrException",
    "ReactiveStore",
    "Registry",
    "RestartTimeout",
    "ScriptError",
    "Settings",
    "StateStorage",
    "SyncEngine",
    "TransferError",
    "Transport",
    "TransportError",
]
from .config import AutoConnect, DeviceConfig, ProjectConfig, Settings
from .device import ConnectionState, DeviceIdentity, DeviceInput, DeviceSession
from .devmode import DevModePhase, DevModeWatcher
from .exceptions import (
    ConfigError,
    ConnectionLost,
    ConnectionTimeout,
    DeviceNotFoundError,
    PymakrException,
    RestartTimeout,
    ScriptError,
    TransferError,
    TransportError,
)
from .project import Project
from .registry import Registry
from .state import JsonStateStorage, MemoryStateStorage, StateStorage
from .store import ReactiveStore
from .sync import SyncEngine
from .transport import Transport
