"""Pydantic models for Pymakr settings, device config and ``pymakr.conf``."""

import json
import os
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel as PydanticBaseModel
from pydantic import ConfigDict, Field, ValidationError, field_validator

from .exceptions import ConfigError
from .typing import PathType
from .utils import env_parse_bool

PROJECT_CONFIG_FILENAME = "pymakr.conf"

DEFAULT_IGNORE = (
    "*.pyc",
    "__pycache__",
    ".DS_Store",
    ".pytest_cache",
    ".git",
    ".vscode",
    ".gitignore",
    "env",
    "venv",
    ".pymakr",
    PROJECT_CONFIG_FILENAME,
)


class AutoConnect(str, Enum):
    """When a device that comes online should be connected automatically."""

    ALWAYS = "always"
    LAST_STATE = "lastState"
    ON_LOST_CONNECTION = "onLostConnection"
    NEVER = "never"


class BaseModel(PydanticBaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


class Settings(BaseModel):
    """Global defaults shared by every session."""

    # Policy used by devices that don't override ``auto_connect``.
    auto_connect: AutoConnect = AutoConnect.ON_LOST_CONNECTION

    # Time allowances, in seconds.
    connect_timeout: float = 2.0
    disconnect_timeout: float = 2.0
    board_info_timeout: float = 10.0
    restart_timeout: float = 10.0

    # Seconds of quiet after a local save before dev mode redeploys.
    debounce: float = 0.3

    # Board filesystem mount that remote destinations are relative to.
    root: str = "/flash"

    # Transport commands that skip the per-device command queue.
    bypass: tuple[str, ...] = ("send_data",)

    # Readiness prompt printed by the board's REPL.
    prompt: str = ">>>"

    # Run ``gc.collect()`` on-device before every script.
    gc_collect: bool = True

    # Git's wildmatch patterns never uploaded to a device.
    ignore: tuple[str, ...] = DEFAULT_IGNORE

    @field_validator("root")
    @classmethod
    def _v_root(cls, v):
        if not v.startswith("/"):
            raise ValueError('root must start with "/"')
        return v

    @classmethod
    def from_env(cls, **overrides) -> "Settings":
        """Build settings from ``PYMAKR_*`` environment variables.

        Explicit keyword ``overrides`` take precedence over the environment.
        """
        values = {}
        # Pydantic coerces the strings.
        for name in (
            "auto_connect",
            "root",
            "prompt",
            "connect_timeout",
            "disconnect_timeout",
            "board_info_timeout",
            "restart_timeout",
            "debounce",
        ):
            env_var = f"PYMAKR_{name.upper()}"
            if env_var in os.environ:
                values[name] = os.environ[env_var]
        values["gc_collect"] = env_parse_bool("PYMAKR_GC_COLLECT", True)
        values.update(overrides)
        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigError(str(e)) from e


class DeviceConfig(BaseModel):
    """Per-device configuration."""

    # ``None`` defers to ``Settings.auto_connect``.
    auto_connect: Optional[AutoConnect] = Field(None, alias="autoConnect")

    # Hidden devices are kept but not shown by collaborators.
    hidden: bool = False


class DevConfig(BaseModel):
    """Development-mode options of a project."""

    # Replace ``machine`` with ``fake_machine`` so deepsleep doesn't drop the connection.
    simulate_deep_sleep: bool = Field(False, alias="simulateDeepSleep")


class ProjectConfig(BaseModel):
    """Schema of a project's ``pymakr.conf``."""

    name: Optional[str] = None

    # Items in project directory to not upload.
    py_ignore: list[str] = []

    dev: DevConfig = DevConfig()


def find_project_dir(path: PathType) -> Optional[Path]:
    """Find the nearest folder, ``path`` included, that contains ``pymakr.conf``."""
    path = Path(path).absolute()
    for candidate in (path, *path.parents):
        if (candidate / PROJECT_CONFIG_FILENAME).is_file():
            return candidate
    return None


def load_project_config(folder: PathType) -> ProjectConfig:
    """Load and validate ``pymakr.conf`` from ``folder``.

    A missing file yields the default configuration.

    Raises
    ------
    ConfigError
        File content is not valid JSON or doesn't match the schema.
    """
    path = Path(folder) / PROJECT_CONFIG_FILENAME
    if not path.exists():
        return ProjectConfig()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return ProjectConfig.model_validate(data)
    except (json.JSONDecodeError, ValidationError) as e:
        raise ConfigError(f'Invalid "{path}": {e}') from e
