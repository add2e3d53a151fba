from abc import abstractmethod
from typing import Callable, Optional

from attrs import define
from autoregistry import Registry

from ..typing import DataConsumer


@define(frozen=True)
class FileInfo:
    """Entry of a board filesystem listing.

    Parameters
    ----------
    path: str
        Absolute on-device path.
    is_dir: bool
        Entry is a directory.
    size: int
        Size of file in bytes; ``0`` for directories.
    fingerprint: Optional[int]
        FNV-1a 32-bit hash of the file contents, if requested and available.
    """

    path: str
    is_dir: bool
    size: int = 0
    fingerprint: Optional[int] = None


@define(frozen=True)
class BoardInfo:
    """``os.uname()`` of the board."""

    sysname: str = ""
    nodename: str = ""
    release: str = ""
    version: str = ""
    machine: str = ""


class Transport(Registry, suffix="Transport"):
    """Asynchronous capability for connecting to and commanding a board.

    Concrete transports register under their protocol name::

        transport = Transport["serial"]()

    A transport is exclusively owned by one session. The owner binds two
    callbacks with :meth:`bind`:

    * ``data_consumer(data: bytes)`` receives terminal output that isn't the
      result of a command (e.g. boot messages and prompts after a reset).
    * ``on_disconnect()`` is invoked when the connection drops unexpectedly.
    """

    def __init__(self):
        self.data_consumer: Optional[DataConsumer] = None
        self.on_disconnect: Optional[Callable[[], None]] = None

    def bind(self, data_consumer: DataConsumer, on_disconnect: Callable[[], None]) -> None:
        self.data_consumer = data_consumer
        self.on_disconnect = on_disconnect

    def _emit(self, data: bytes) -> None:
        if self.data_consumer and data:
            self.data_consumer(bytes(data))

    def _disconnected(self) -> None:
        if self.on_disconnect:
            self.on_disconnect()

    @abstractmethod
    async def connect(self, address: str, **kwargs) -> None:
        raise NotImplementedError

    @abstractmethod
    async def disconnect(self) -> None:
        raise NotImplementedError

    @abstractmethod
    async def run_script(self, text: str, *, gc_collect: bool = True) -> str:
        """Execute ``text`` on-device and return its captured stdout.

        Raises
        ------
        ScriptError
            Code raised an uncaught exception on-device.
        """
        raise NotImplementedError

    @abstractmethod
    async def put_file(self, path: str, data: bytes, *, check_if_similar_before_upload: bool = False) -> bool:
        """Write ``data`` to ``path`` on-device.

        Returns
        -------
        bool
            ``False`` if the write was skipped because the on-device file
            already had identical contents.
        """
        raise NotImplementedError

    @abstractmethod
    async def get_file(self, path: str) -> bytes:
        raise NotImplementedError

    @abstractmethod
    async def list_files(self, path: str, *, recursive: bool = False, fingerprint: bool = False) -> list[FileInfo]:
        raise NotImplementedError

    @abstractmethod
    async def mkdir(self, path: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def remove(self, path: str, recursive: bool = False) -> None:
        raise NotImplementedError

    @abstractmethod
    async def reset(self, *, soft_reset: bool = True) -> None:
        raise NotImplementedError

    @abstractmethod
    async def get_board_info(self) -> BoardInfo:
        raise NotImplementedError

    @abstractmethod
    async def send_data(self, data: bytes) -> None:
        """Write raw bytes to the board's terminal."""
        raise NotImplementedError
