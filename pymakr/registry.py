import asyncio
import logging
from collections.abc import Iterable, Iterator
from functools import partial
from typing import Callable, Optional, Union

from serial.tools import list_ports

from .config import Settings
from .device import ConnectionState, DeviceIdentity, DeviceInput, DeviceSession
from .devmode import DevModeWatcher
from .exceptions import DeviceNotFoundError, PymakrException
from .project import Project
from .state import MemoryStateStorage, StateStorage
from .store import ReactiveStore
from .transport import Transport

logger = logging.getLogger(__name__)


class Registry:
    """Owns every :class:`DeviceSession` and :class:`Project`.

    Whenever a session's connection state settles, its ``{connected, name}``
    record is persisted to ``storage``; the ``lastState`` auto-connect policy
    reads it back.

    Parameters
    ----------
    settings: Optional[Settings]
        Shared by every session and dev-mode watcher.
    storage: Optional[StateStorage]
        Defaults to an in-memory storage.
    transport_factory: Optional[Callable[[DeviceIdentity], Transport]]
        Creates the transport of new sessions. Defaults to the transport
        registered under the device's protocol.
    observe: bool
        Dev-mode watchers watch project folders with ``watchdog``.

    Attributes
    ----------
    devices: ReactiveStore[tuple[DeviceSession, ...]]
        Set whenever a device is added, removed, or changes.
    projects: ReactiveStore[tuple[Project, ...]]
    active_device: ReactiveStore[Optional[DeviceSession]]
    """

    def __init__(
        self,
        *,
        settings: Optional[Settings] = None,
        storage: Optional[StateStorage] = None,
        transport_factory: Optional[Callable[[DeviceIdentity], Transport]] = None,
        observe: bool = True,
    ):
        self.settings = settings or Settings()
        self.storage = storage if storage is not None else MemoryStateStorage()
        self.transport_factory = transport_factory
        self.observe = observe

        self.devices: ReactiveStore[tuple[DeviceSession, ...]] = ReactiveStore(())
        self.projects: ReactiveStore[tuple[Project, ...]] = ReactiveStore(())
        self.active_device: ReactiveStore[Optional[DeviceSession]] = ReactiveStore(None)

        self._sessions: dict[str, DeviceSession] = {}
        self._unsubscribers: dict[str, list[Callable[[], None]]] = {}
        self._last_used: list[str] = []

    def __contains__(self, device_id: str) -> bool:
        return device_id in self._sessions

    def __iter__(self) -> Iterator[DeviceSession]:
        return iter(list(self._sessions.values()))

    def __len__(self):
        return len(self._sessions)

    def _refresh_devices(self) -> None:
        self.devices.set(tuple(self._sessions.values()))

    ###########
    # Devices #
    ###########
    def get(self, device_id: str) -> DeviceSession:
        try:
            return self._sessions[device_id]
        except KeyError:
            raise DeviceNotFoundError(f"Unknown device {device_id!r}.") from None

    def upsert(self, device_input: Union[DeviceInput, dict]) -> DeviceSession:
        """Return the session of a device, creating it if it's new.

        A ``name`` given for a known device renames it.
        """
        if not isinstance(device_input, DeviceInput):
            device_input = DeviceInput.model_validate(device_input)
        identity = device_input.identity()

        session = self._sessions.get(identity.id)
        if session is not None:
            if device_input.name and device_input.name != session.name:
                session.name = device_input.name
                self._save(session)
                self._refresh_devices()
            return session

        saved = self.storage.load_device_state(identity.id)
        transport = self.transport_factory(identity) if self.transport_factory else None
        session = DeviceSession(
            identity,
            transport,
            name=device_input.name or saved.get("name"),
            settings=self.settings,
            load_state=partial(self.storage.load_device_state, identity.id),
        )
        self._unsubscribers[identity.id] = [
            session.state.subscribe(partial(self._on_state_changed, session)),
            session.config.subscribe(lambda _: self._refresh_devices()),
        ]
        self._sessions[identity.id] = session
        logger.debug("registered %s", session)
        self._refresh_devices()
        return session

    def _save(self, session: DeviceSession) -> None:
        self.storage.save_device_state(session.id, connected=session.connected, name=session.name)

    def _on_state_changed(self, session: DeviceSession, state: ConnectionState) -> None:
        if state is not ConnectionState.CONNECTING:
            self._save(session)
        if state is ConnectionState.CONNECTED:
            if session.id in self._last_used:
                self._last_used.remove(session.id)
            self._last_used.append(session.id)
        self._refresh_devices()

    async def remove(self, device_id: str) -> None:
        """Forget a device; it's disconnected first if connected."""
        session = self.get(device_id)
        if session.state.get() is not ConnectionState.DISCONNECTED:
            try:
                await session.disconnect()
            except PymakrException as e:
                session.log.warning("failed to disconnect while removing: %s", e)

        for unsubscribe in self._unsubscribers.pop(device_id, []):
            unsubscribe()
        del self._sessions[device_id]
        if device_id in self._last_used:
            self._last_used.remove(device_id)
        for project in self.projects.get():
            project.remove_device(device_id)
        self._refresh_devices()

        if self.active_device.get() is session:
            self.set_active_to_last_used_or_first_found()

    def set_active_to_last_used_or_first_found(self) -> Optional[DeviceSession]:
        """Make the most recently connected device active; else the first registered one."""
        session = None
        for device_id in reversed(self._last_used):
            if device_id in self._sessions:
                session = self._sessions[device_id]
                break
        else:
            session = next(iter(self._sessions.values()), None)
        self.active_device.set(session)
        return session

    async def update_online(self, online_ids: Iterable[str], protocol: Optional[str] = None) -> None:
        """Feed device discovery results.

        Every session (of ``protocol``, if given) is told whether its id is in
        ``online_ids`` and applies its auto-connect policy accordingly.
        """
        online_ids = set(online_ids)
        sessions = [s for s in self if protocol is None or s.device.protocol == protocol]
        await asyncio.gather(*(s.update_connection(s.id in online_ids) for s in sessions))

    async def scan_serial(self) -> list[DeviceSession]:
        """Register every serial port currently present and update online status of serial devices."""
        ports = await asyncio.to_thread(list_ports.comports)
        sessions = [self.upsert(DeviceInput(protocol="serial", address=port.device)) for port in ports]
        await self.update_online((s.id for s in sessions), protocol="serial")
        return sessions

    ############
    # Projects #
    ############
    def add_project(self, project: Project) -> Project:
        """Register ``project``; returns the already registered one for the same folder."""
        for existing in self.projects.get():
            if existing.id == project.id:
                return existing
        self.projects.set((*self.projects.get(), project))
        return project

    async def remove_project(self, project: Project) -> None:
        """Forget ``project``, stopping its dev mode. Its device sessions stay alive."""
        await self.stop_dev_mode(project)
        self.projects.set(tuple(p for p in self.projects.get() if p is not project))

    def sessions_for(self, project: Project) -> list[DeviceSession]:
        return [self._sessions[i] for i in project.device_ids.get() if i in self._sessions]

    async def start_dev_mode(self, project: Project) -> DevModeWatcher:
        project = self.add_project(project)
        if project.watcher is None:
            project.watcher = DevModeWatcher(self.sessions_for, self.settings, observe=self.observe)
        await project.watcher.start(project)
        return project.watcher

    async def stop_dev_mode(self, project: Project) -> None:
        watcher, project.watcher = project.watcher, None
        if watcher is not None:
            await watcher.stop()

    async def close(self) -> None:
        """Stop every dev-mode watcher and disconnect every session.

        Persisted states are left as they were, so ``lastState`` reconnects
        whatever was connected at shutdown.
        """
        for project in self.projects.get():
            await self.stop_dev_mode(project)
        for unsubscribers in self._unsubscribers.values():
            for unsubscribe in unsubscribers:
                unsubscribe()
        self._unsubscribers.clear()
        for session in self:
            if session.state.get() is ConnectionState.DISCONNECTED:
                continue
            try:
                await session.disconnect()
            except PymakrException as e:
                session.log.warning("failed to disconnect: %s", e)
