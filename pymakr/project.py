from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Optional

from .config import DEFAULT_IGNORE, ProjectConfig, find_project_dir, load_project_config
from .exceptions import ConfigError
from .store import ReactiveStore
from .typing import PathType

if TYPE_CHECKING:
    from .devmode import DevModeWatcher


class Project:
    """Local folder holding a ``pymakr.conf``, and the devices it targets.

    Attributes
    ----------
    device_ids: ReactiveStore[tuple[str, ...]]
        Ordered, unique ids of the associated devices.
    watcher: Optional[DevModeWatcher]
        Dev-mode watcher while dev mode runs for this project.
    """

    def __init__(
        self,
        folder: PathType,
        *,
        name: Optional[str] = None,
        config: Optional[ProjectConfig] = None,
        base_ignore: Iterable[str] = DEFAULT_IGNORE,
    ):
        self.folder = Path(folder).absolute()
        self.config = config if config is not None else load_project_config(self.folder)
        self.name = name or self.config.name or self.folder.name
        self.base_ignore = tuple(base_ignore)
        self.device_ids: ReactiveStore[tuple[str, ...]] = ReactiveStore(())
        self.watcher: Optional["DevModeWatcher"] = None

    def __repr__(self):
        return f"{type(self).__name__}({self.name!r}, {str(self.folder)!r})"

    @classmethod
    def from_path(cls, path: PathType = ".", **kwargs) -> "Project":
        """Load the project whose ``pymakr.conf`` is closest to ``path``."""
        folder = find_project_dir(path)
        if folder is None:
            raise ConfigError(f'No pymakr.conf found in "{Path(path).absolute()}" or any parent directory.')
        return cls(folder, **kwargs)

    @property
    def id(self) -> str:
        return self.folder.as_posix()

    @property
    def ignore(self) -> list[str]:
        """Git wildmatch patterns of project files never uploaded."""
        return [*self.base_ignore, *self.config.py_ignore]

    def add_device(self, device_id: str) -> None:
        if device_id not in self.device_ids.get():
            self.device_ids.update(lambda ids: (*ids, device_id))

    def remove_device(self, device_id: str) -> None:
        if device_id in self.device_ids.get():
            self.device_ids.update(lambda ids: tuple(i for i in ids if i != device_id))

    def set_devices(self, device_ids: Iterable[str]) -> None:
        self.device_ids.set(tuple(dict.fromkeys(device_ids)))
