"""Development mode: redeploy a project to its boards whenever a file is saved.

Starting dev mode installs a small toolkit on every board (``_pymakr_dev/``
plus a ``boot.dev`` executed from ``boot.py``). Afterwards each local save is
debounced, the changed files are uploaded and the boards are soft-reset.
"""

import asyncio
import logging
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from pathspec import PathSpec
from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from .config import DevConfig, Settings
from .device import DeviceSession
from .exceptions import PymakrException, RestartTimeout, TransferError, is_not_found
from .helpers import devtools_payload_path, read_devtools_template
from .project import Project
from .store import ReactiveStore
from .utils import Debouncer, normalize_remote_path, wait_for

logger = logging.getLogger(__name__)

DEVTOOLS_DIRNAME = "_pymakr_dev"
BOOT_MARKER = "# pymakr devmode"

_WATCHED_EVENTS = {EVENT_TYPE_CREATED, EVENT_TYPE_DELETED, EVENT_TYPE_MODIFIED, EVENT_TYPE_MOVED}


class DevModePhase(str, Enum):
    IDLE = "idle"
    INSTALLING = "installing"
    WATCHING = "watching"
    UPLOADING = "uploading"
    RESTARTING = "restarting"


def render_boot_dev(devtools_dir: str, config: DevConfig) -> str:
    """Render the ``boot.dev`` script for a project's dev config."""
    text = read_devtools_template("boot.dev").format(devtools_dir=devtools_dir)
    if config.simulate_deep_sleep:
        text += read_devtools_template("simulate_deep_sleep.dev")
    return text


def patch_boot_py(content: str, boot_dev_path: str) -> str:
    """Append the line executing ``boot.dev`` to ``boot.py``, unless already present."""
    if BOOT_MARKER in content:
        return content
    line = f'exec(open("{boot_dev_path}").read())  {BOOT_MARKER}\n'
    if not content.strip():
        return line
    return content.rstrip("\n") + "\n" + line


class DeviceManager:
    """Dev-mode duties for a single board."""

    def __init__(self, session: DeviceSession, project: Project, settings: Settings):
        self.session = session
        self.project = project
        self.settings = settings
        self.installed_devtools = False

    def __repr__(self):
        return f"{type(self).__name__}({self.session.id!r})"

    @property
    def devtools_dir(self) -> str:
        return normalize_remote_path(self.settings.root, DEVTOOLS_DIRNAME)

    def notify(self, text: str) -> None:
        self.session.log.info(text)
        self.session.write_terminal(text)

    async def install_devtools(self) -> None:
        """Upload ``_pymakr_dev/``, write ``boot.dev`` and hook it into ``boot.py``."""
        adapter = self.session.adapter

        self.notify("uploading Pymakr devtools")
        await self.session.sync_engine(ignore=("__pycache__", "*.pyc")).upload(
            devtools_payload_path(), DEVTOOLS_DIRNAME
        )

        self.notify("patching boot.dev")
        boot_dev = normalize_remote_path(self.devtools_dir, "boot.dev")
        boot_dev_text = render_boot_dev(self.devtools_dir, self.project.config.dev)
        await adapter.put_file(boot_dev, boot_dev_text.encode(), check_if_similar_before_upload=True)

        boot_py = normalize_remote_path(self.settings.root, "boot.py")
        try:
            content = (await adapter.get_file(boot_py)).decode()
        except TransferError as e:
            if not is_not_found(e):
                raise
            content = ""
        patched = patch_boot_py(content, boot_dev)
        if patched != content:
            await adapter.put_file(boot_py, patched.encode())

        self.installed_devtools = True

    async def redeploy(self, changed: list[str]) -> None:
        """Upload the ``changed`` project-relative paths."""
        if not self.installed_devtools:
            await self.install_devtools()

        engine = self.session.sync_engine(ignore=self.project.ignore)
        for rel in changed:
            local = self.project.folder / rel
            if local.is_dir():
                await engine.upload_dir(local, rel)
            elif local.is_file():
                await engine.upload_file(local, rel)
            else:
                logger.debug("%s no longer exists locally; not uploaded.", local)

    async def restart(self, changed: list[str]) -> None:
        """Soft-reset the board and wait for its prompt twice.

        Raises
        ------
        RestartTimeout
            Prompts weren't seen within ``Settings.restart_timeout``.
        """
        self.notify(f"{', '.join(changed)} changed. Restarting...")
        waiter = self.session.terminal_waiter(self.settings.prompt, count=2)

        async def reset_and_wait():
            await self.session.reset(soft=True)
            return await waiter.wait()

        try:
            await wait_for(
                reset_and_wait(),
                self.settings.restart_timeout,
                RestartTimeout(f"{self.session.name} didn't restart within {self.settings.restart_timeout}s."),
            )
        finally:
            waiter.close()


class ProjectEventHandler(FileSystemEventHandler):
    """Forwards watchdog events from the observer thread to the event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop, callback: Callable[[str], None]):
        self.loop = loop
        self.callback = callback

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type not in _WATCHED_EVENTS:
            return
        if event.is_directory and event.event_type == EVENT_TYPE_MODIFIED:
            # A directory's mtime changes whenever its contents do.
            return
        for path in (event.src_path, getattr(event, "dest_path", "")):
            if path:
                self.loop.call_soon_threadsafe(self.callback, str(path))


class DevModeWatcher:
    """Watches a project folder and redeploys changes to its boards.

    Parameters
    ----------
    resolve_sessions: Callable[[Project], list[DeviceSession]]
        Returns the sessions associated with a project.
    settings: Optional[Settings]
        Debounce delay, restart allowance, board root and prompt.
    observe: bool
        Watch the folder with a ``watchdog`` observer. When ``False``, changes
        must be fed through :meth:`on_file_changed`.

    Attributes
    ----------
    phase: ReactiveStore[DevModePhase]
    errors: ReactiveStore[Optional[PymakrException]]
        Latest upload or restart failure.
    """

    def __init__(
        self,
        resolve_sessions: Callable[[Project], list[DeviceSession]],
        settings: Optional[Settings] = None,
        *,
        observe: bool = True,
    ):
        self.resolve_sessions = resolve_sessions
        self.settings = settings or Settings()
        self.observe = observe

        self.project: Optional[Project] = None
        self.device_managers: list[DeviceManager] = []
        self.phase = ReactiveStore(DevModePhase.IDLE)
        self.errors: ReactiveStore[Optional[PymakrException]] = ReactiveStore(None)

        self._changed: dict[str, None] = {}
        self._ignore_spec = PathSpec.from_lines("gitwildmatch", [])
        self._debouncer = Debouncer(self.settings.debounce, self._redeploy_pending)
        self._lock = asyncio.Lock()
        self._observer: Optional[Observer] = None
        self._generation = 0

    @property
    def active(self) -> bool:
        return self.phase.get() is not DevModePhase.IDLE

    def _report(self, error: PymakrException, manager: Optional[DeviceManager] = None) -> None:
        if manager is None:
            logger.error("dev mode: %s", error)
        else:
            manager.session.log.error("dev mode: %s", error)
        self.errors.set(error)

    async def start(self, project: Project) -> None:
        """Install devtools on every associated board and start watching ``project``."""
        if self.active:
            await self.stop()

        self._generation += 1
        generation = self._generation
        self.project = project
        self._ignore_spec = PathSpec.from_lines("gitwildmatch", project.ignore)
        self.phase.set(DevModePhase.INSTALLING)
        logger.info('starting dev mode for "%s"', project.name)

        managers = []
        for session in self.resolve_sessions(project):
            try:
                await session.connect()
            except PymakrException as e:
                self._report(e)
                continue
            managers.append(DeviceManager(session, project, self.settings))

        for manager in managers:
            try:
                await manager.install_devtools()
            except PymakrException as e:
                self._report(e, manager)

        if generation != self._generation:
            # Stopped while installing.
            return
        self.device_managers = managers
        if self.observe:
            self._start_observer(project.folder)
        self.phase.set(DevModePhase.WATCHING)

    async def stop(self) -> None:
        """Stop watching; pending and in-flight redeploys are cancelled."""
        self._generation += 1
        await self._stop_observer()
        await self._debouncer.cancel()
        self._changed.clear()
        self.device_managers = []
        self.phase.set(DevModePhase.IDLE)
        if self.project is not None:
            logger.info('stopped dev mode for "%s"', self.project.name)

    def _start_observer(self, folder: Path) -> None:
        handler = ProjectEventHandler(asyncio.get_running_loop(), self.on_file_changed)
        self._observer = Observer()
        self._observer.schedule(handler, str(folder), recursive=True)
        self._observer.start()

    async def _stop_observer(self) -> None:
        observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
            await asyncio.to_thread(observer.join)

    def on_file_changed(self, path) -> None:
        """Record a changed local path and (re)start the debounce timer."""
        if self.phase.get() in (DevModePhase.IDLE, DevModePhase.INSTALLING) or self.project is None:
            return
        try:
            rel = Path(path).absolute().relative_to(self.project.folder).as_posix()
        except ValueError:
            return
        if rel == "." or self._ignore_spec.match_file(rel):
            return
        logger.debug("changed: %s", rel)
        self._changed[rel] = None
        self._debouncer.trigger()

    async def _redeploy_pending(self) -> None:
        async with self._lock:
            # Everything changed since the previous round, including edits made during it.
            changed, self._changed = list(self._changed), {}
            if changed:
                await self.redeploy(changed)

    async def redeploy(self, changed: list[str]) -> None:
        """Upload ``changed`` to every board, then restart the boards that got it."""
        self.phase.set(DevModePhase.UPLOADING)
        uploaded = []
        for manager in self.device_managers:
            try:
                await manager.redeploy(changed)
            except PymakrException as e:
                self._report(e, manager)
            else:
                uploaded.append(manager)

        if uploaded:
            self.phase.set(DevModePhase.RESTARTING)
        for manager in uploaded:
            try:
                await manager.restart(changed)
            except PymakrException as e:
                self._report(e, manager)

        self.phase.set(DevModePhase.WATCHING)

    async def wait_idle(self) -> None:
        """Wait until no redeploy is pending or running."""
        while self._debouncer.pending or self._debouncer.running:
            if self._debouncer.running:
                await self._debouncer.wait()
            else:
                await asyncio.sleep(self.settings.debounce / 4)
