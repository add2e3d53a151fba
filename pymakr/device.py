import asyncio
import logging
from enum import Enum
from pathlib import Path
from typing import Callable, Literal, Optional

from attrs import define, field
from attrs.validators import in_
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from .command_queue import SerializedTransport
from .config import AutoConnect, BaseModel, DeviceConfig, Settings
from .exceptions import ConnectionLost, ConnectionTimeout, PymakrException, TransportError
from .store import ReactiveStore
from .sync import SyncEngine
from .transport import BoardInfo, Transport
from .typing import Command, PathType
from .utils import wait_for

logger = logging.getLogger(__name__)

PROTOCOLS = ("serial", "telnet")


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    LOST_CONNECTION = "lostConnection"


@define(frozen=True)
class DeviceIdentity:
    """Immutable address of a board.

    Parameters
    ----------
    protocol: str
        One of ``{"serial", "telnet"}``.
    address: str
        Port (like ``/dev/ttyUSB0``) or hostname/IP of the device.
    """

    protocol: str = field(validator=in_(PROTOCOLS))
    address: str
    username: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)

    @property
    def id(self) -> str:
        return f"{self.protocol}://{self.address}"


class DeviceInput(BaseModel):
    """Device description accepted by :meth:`pymakr.registry.Registry.upsert`."""

    protocol: Literal["serial", "telnet"]
    address: str
    name: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None

    def identity(self) -> DeviceIdentity:
        return DeviceIdentity(self.protocol, self.address, self.username, self.password)


class _SessionLogAdapter(logging.LoggerAdapter):
    def process(self, msg, kwargs):
        return f"[{self.extra['session'].name}] {msg}", kwargs


class TerminalWaiter:
    """Collects terminal output until ``pattern`` has been seen ``count`` times.

    Output is collected from construction on, so create the waiter *before*
    triggering whatever produces the output.
    """

    def __init__(self, terminal: ReactiveStore[bytes], pattern, count: int = 1):
        self.pattern = pattern.encode() if isinstance(pattern, str) else pattern
        self.count = count
        self.buffer = bytearray()
        self._future = asyncio.get_running_loop().create_future()
        self._unsubscribe = terminal.subscribe(self._consume)

    def _consume(self, data: bytes) -> None:
        self.buffer.extend(data)
        if not self._future.done() and self.buffer.count(self.pattern) >= self.count:
            self._future.set_result(bytes(self.buffer))
            self.close()

    async def wait(self, timeout: Optional[float] = None) -> bytes:
        """Wait for the pattern.

        Raises
        ------
        asyncio.TimeoutError
            Pattern wasn't seen ``count`` times within ``timeout`` seconds.
        """
        try:
            return await asyncio.wait_for(asyncio.shield(self._future), timeout)
        finally:
            self.close()

    def close(self) -> None:
        """Stop collecting output; a pending :meth:`wait` is cancelled."""
        self._unsubscribe()
        if not self._future.done():
            self._future.cancel()


class DeviceSession:
    """Live session with one board.

    Owns the board's :class:`~pymakr.transport.Transport` and presents an
    ordered command surface: every command goes through a per-session
    :class:`~pymakr.command_queue.CommandQueue`, except those named in
    ``Settings.bypass``.

    Attributes
    ----------
    state: ReactiveStore[ConnectionState]
        Connection state; subscribe to observe transitions.
    terminal: ReactiveStore[bytes]
        Latest chunk of terminal output.
    config: ReactiveStore[DeviceConfig]
        Per-device configuration.
    info: Optional[BoardInfo]
        Populated after a successful connect.
    """

    def __init__(
        self,
        device: DeviceIdentity,
        transport: Optional[Transport] = None,
        *,
        name: Optional[str] = None,
        config: Optional[DeviceConfig] = None,
        settings: Optional[Settings] = None,
        load_state: Optional[Callable[[], dict]] = None,
    ):
        """Create a session; doesn't connect.

        Parameters
        ----------
        transport: Optional[Transport]
            Defaults to a new transport registered under ``device.protocol``.
        load_state: Optional[Callable[[], dict]]
            Returns the last persisted ``{connected, name}`` record of this
            device. Used by the ``lastState`` auto-connect policy.
        """
        self.device = device
        self.name = name or device.id
        self.settings = settings or Settings()
        self.config = ReactiveStore(config or DeviceConfig())
        self.transport = transport if transport is not None else Transport[device.protocol]()
        self.transport.bind(self._on_terminal_data, self._on_transport_disconnect)
        self.adapter = SerializedTransport(self.transport, bypass=self.settings.bypass)

        self.state = ReactiveStore(ConnectionState.DISCONNECTED)
        self.terminal: ReactiveStore[bytes] = ReactiveStore(b"")
        self.info: Optional[BoardInfo] = None
        self.online = False
        self.lost_connection = False

        self.log = _SessionLogAdapter(logger, {"session": self})
        self._load_state = load_state or dict
        self._connect_task: Optional[asyncio.Future] = None

    def __repr__(self):
        return f"{type(self).__name__}({self.id!r}, state={self.state.get().value!r})"

    @property
    def id(self) -> str:
        return self.device.id

    @property
    def connected(self) -> bool:
        return self.state.get() is ConnectionState.CONNECTED

    @property
    def auto_connect(self) -> AutoConnect:
        return self.config.get().auto_connect or self.settings.auto_connect

    def configure(self, **changes) -> DeviceConfig:
        """Replace the device config with ``changes`` applied."""
        config = DeviceConfig.model_validate({**self.config.get().model_dump(), **changes})
        self.config.set(config)
        return config

    ##############
    # Connection #
    ##############
    async def connect(self) -> None:
        """Connect to the board.

        No-op if already connected. If a connection attempt is in flight, waits
        for that attempt instead of starting another.

        Raises
        ------
        ConnectionTimeout
            Transport didn't connect within ``Settings.connect_timeout``.
        """
        if self.connected:
            return
        if self._connect_task is None or self._connect_task.done():
            self._connect_task = asyncio.ensure_future(self._connect())
        await asyncio.shield(self._connect_task)

    async def _connect(self) -> None:
        self.state.set(ConnectionState.CONNECTING)
        self.log.info("connecting...")
        credentials = {}
        if self.device.username:
            credentials["username"] = self.device.username
        if self.device.password:
            credentials["password"] = self.device.password

        try:
            await wait_for(
                self.transport.connect(self.device.address, **credentials),
                self.settings.connect_timeout,
                ConnectionTimeout(f"Timed out while connecting to {self.device.address}."),
            )
        except Exception as e:
            self.log.error("Failed to connect to %s. %s", self.device.address, e)
            self.state.set(ConnectionState.DISCONNECTED)
            raise

        self.lost_connection = False
        self.state.set(ConnectionState.CONNECTED)
        self.log.info("connected.")

        try:
            self.info = await wait_for(
                self.adapter.get_board_info(),
                self.settings.board_info_timeout,
                ConnectionTimeout("Timed out while getting board info."),
            )
        except Exception as e:
            self.log.warning("Failed to get board info: %s", e)
        else:
            self.log.debug("boardInfo %s", self.info)

    async def connect_with_retry(self, attempts: int = 3, wait: float = 1.0) -> None:
        """:meth:`connect`, retrying on timeouts and transport errors."""
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type((ConnectionTimeout, TransportError)),
            stop=stop_after_attempt(attempts),
            wait=wait_fixed(wait),
            reraise=True,
        ):
            with attempt:
                await self.connect()

    async def disconnect(self) -> None:
        """Disconnect from the board.

        Always ends ``DISCONNECTED``, even if the transport fails or times out;
        that failure is still raised.
        """
        try:
            await wait_for(
                self.transport.disconnect(),
                self.settings.disconnect_timeout,
                ConnectionTimeout("Timed out while disconnecting."),
            )
        finally:
            self.lost_connection = False
            self.state.set(ConnectionState.DISCONNECTED)
            self.log.info("disconnected.")

    def _on_transport_disconnect(self) -> None:
        if self.state.get() is not ConnectionState.CONNECTED:
            return
        self.lost_connection = True
        self.log.warning("%s", ConnectionLost(f"Lost connection to {self.id}."))
        self.state.set(ConnectionState.LOST_CONNECTION)

    async def update_connection(self, online: bool) -> bool:
        """React to the device appearing or disappearing.

        When the device comes online, connects according to the auto-connect
        policy. When it goes offline while connected, the connection is
        marked as lost.

        Returns
        -------
        bool
            ``True`` if this call connected the session.
        """
        self.online = online
        state = self.state.get()
        if not online:
            if state is ConnectionState.CONNECTED:
                self.lost_connection = True
                self.state.set(ConnectionState.LOST_CONNECTION)
            return False

        if state in (ConnectionState.CONNECTED, ConnectionState.CONNECTING):
            return False

        policy = self.auto_connect
        should_connect = policy is AutoConnect.ALWAYS
        should_resume = policy is AutoConnect.LAST_STATE and bool(self._load_state().get("connected"))
        should_reconnect = policy is AutoConnect.ON_LOST_CONNECTION and self.lost_connection
        if not (should_connect or should_resume or should_reconnect):
            return False

        try:
            await self.connect()
        except PymakrException:
            # Already logged by ``connect``; try again next time the device is seen.
            return False
        return True

    ############
    # Commands #
    ############
    async def execute(self, command: Command, name: str = ""):
        """Run ``command`` through the session's command queue."""
        return await self.adapter.queue.run(command, name)

    async def run_script(self, script: str, *, gc_collect: Optional[bool] = None) -> str:
        """Collect garbage, then evaluate ``script`` on-device.

        Returns
        -------
        str
            Captured stdout.

        Raises
        ------
        ScriptError
            Script raised an uncaught exception on-device.
        """
        if gc_collect is None:
            gc_collect = self.settings.gc_collect
        self.log.debug("runScript:\n\n%s\n\n", script)
        result = await self.adapter.run_script(script + "\n", gc_collect=gc_collect)
        self.log.debug("script returned:\n\n%s\n\n", result)
        return result

    async def reset(self, *, soft: bool = True) -> None:
        await self.adapter.reset(soft_reset=soft)

    async def send_data(self, data: bytes) -> None:
        await self.adapter.send_data(data)

    def sync_engine(self, **kwargs) -> SyncEngine:
        kwargs.setdefault("root", self.settings.root)
        kwargs.setdefault("ignore", self.settings.ignore)
        return SyncEngine(self.adapter, **kwargs)

    async def upload(self, source: PathType, destination: str = "/", **kwargs) -> None:
        """Upload a local file or folder to ``destination`` (relative to the board root)."""
        self.log.info("upload %s to %s", source, destination)
        try:
            await self.sync_engine(**kwargs).upload(source, destination)
        except PymakrException as e:
            self.log.error("failed to upload %s to %s. Reason: %s", source, destination, e)
            raise
        self.log.info("upload completed")

    async def download(self, source: str = "/", destination: PathType = ".", **kwargs) -> list[Path]:
        """Download board folder ``source`` (relative to the board root) into local ``destination``."""
        self.log.info("download %s to %s", source, destination)
        try:
            written = await self.sync_engine(**kwargs).download(source, destination)
        except PymakrException as e:
            self.log.error("failed to download %s to %s. Reason: %s", source, destination, e)
            raise
        self.log.info("download completed")
        return written

    async def erase(self) -> None:
        """Remove everything in the board's root folder."""
        self.log.info("erasing %s", self.settings.root)
        await self.sync_engine().clear()

    ############
    # Terminal #
    ############
    def _on_terminal_data(self, data: bytes) -> None:
        self.terminal.set(data)

    def write_terminal(self, text: str) -> None:
        """Show a host-side notice to everyone watching this session's terminal."""
        self.terminal.set(f"{text}\r\n".encode())

    def terminal_waiter(self, pattern, count: int = 1) -> TerminalWaiter:
        return TerminalWaiter(self.terminal, pattern, count)

    async def read_until(self, pattern, *, count: int = 1, timeout: Optional[float] = None) -> bytes:
        """Wait until terminal output produced from now on contains ``pattern`` ``count`` times."""
        return await self.terminal_waiter(pattern, count).wait(timeout)
