"""Synchronize local files and folders with the board's filesystem."""

import asyncio
import logging
import posixpath
from collections.abc import Iterable, Iterator
from enum import Enum
from pathlib import Path
from typing import Optional

from attrs import define, field
from pathspec import PathSpec

from .config import DEFAULT_IGNORE
from .exceptions import PymakrException, ScriptError, TransferError, is_already_exists, is_not_found
from .hash import fnv1a
from .typing import PathType
from .utils import normalize_remote_path, relative_remote_path

logger = logging.getLogger(__name__)


@define(frozen=True)
class FileManifestEntry:
    """File or folder, relative to the root of a synchronized tree.

    Parameters
    ----------
    path: str
        Relative posix path, e.g. ``"lib/foo.py"``.
    is_dir: bool
        Entry is a directory.
    size: int
        File size in bytes; ``0`` for directories.
    fingerprint: Optional[int]
        FNV-1a 32-bit hash of the contents; ``None`` if unknown.
    """

    path: str
    is_dir: bool
    size: int = 0
    fingerprint: Optional[int] = None


class SyncOp(str, Enum):
    MKDIR = "mkdir"
    PUT = "put"
    SKIP = "skip"


@define(frozen=True)
class SyncStep:
    op: SyncOp
    entry: FileManifestEntry


@define
class SyncPlan:
    steps: list[SyncStep] = field(factory=list)

    def __iter__(self) -> Iterator[SyncStep]:
        return iter(self.steps)

    def __len__(self):
        return len(self.steps)

    def paths(self, op: SyncOp) -> list[str]:
        return [step.entry.path for step in self.steps if step.op is op]


def local_manifest(folder: PathType, ignore: Iterable[str] = ()) -> list[FileManifestEntry]:
    """Depth-first listing of ``folder``, sorted by name within each directory.

    A directory is listed before its contents. Entries matching any of the
    git wildmatch ``ignore`` patterns are skipped; an ignored directory is
    skipped with everything inside it.
    """
    folder = Path(folder)
    ignore_spec = PathSpec.from_lines("gitwildmatch", ignore)
    entries = []

    def walk(directory: Path):
        for child in sorted(directory.iterdir(), key=lambda p: p.name):
            rel = child.relative_to(folder).as_posix()
            is_dir = child.is_dir()
            if ignore_spec.match_file(rel + "/" if is_dir else rel):
                continue
            if is_dir:
                entries.append(FileManifestEntry(rel, True))
                walk(child)
            else:
                entries.append(FileManifestEntry(rel, False, child.stat().st_size, fnv1a(child)))

    walk(folder)
    return entries


def _unchanged(local: FileManifestEntry, remote: FileManifestEntry) -> bool:
    if remote.is_dir:
        return False
    if local.fingerprint is not None and remote.fingerprint is not None:
        return local.fingerprint == remote.fingerprint
    # Board couldn't fingerprint the file.
    return local.size == remote.size


def build_plan(local: Iterable[FileManifestEntry], remote: Iterable[FileManifestEntry]) -> SyncPlan:
    """Decide what has to be done to make ``remote`` contain ``local``.

    Steps follow the order of ``local``, so with a depth-first ``local`` every
    ``mkdir`` precedes the ``put`` of the files inside that directory.
    Remote-only entries are left alone.
    """
    remote_by_path = {entry.path: entry for entry in remote}
    plan = SyncPlan()
    for entry in local:
        existing = remote_by_path.get(entry.path)
        if entry.is_dir:
            op = SyncOp.SKIP if existing is not None and existing.is_dir else SyncOp.MKDIR
        elif existing is not None and _unchanged(entry, existing):
            op = SyncOp.SKIP
        else:
            op = SyncOp.PUT
        plan.steps.append(SyncStep(op, entry))
    return plan


class SyncEngine:
    """Uploads and downloads between the local filesystem and a board.

    Parameters
    ----------
    transport
        Anything with the :class:`~pymakr.transport.Transport` file commands;
        usually a session's serialized adapter.
    root: str
        Board mount that remote destinations are relative to.
    ignore: Iterable[str]
        Git wildmatch patterns of local entries to never upload.
    """

    def __init__(self, transport, root: str = "/flash", ignore: Iterable[str] = DEFAULT_IGNORE):
        self.transport = transport
        self.root = root
        self.ignore = list(ignore)

    def remote_path(self, destination: str = "") -> str:
        return normalize_remote_path(self.root, destination)

    ##########
    # Upload #
    ##########
    async def upload(self, source: PathType, destination: str = "/") -> None:
        """Upload a local file or folder.

        A folder's contents are unpacked into ``destination``. A file is
        written to ``destination``, or into it if ``destination`` ends with
        ``/``.
        """
        source = Path(source)
        if source.is_dir():
            await self.upload_dir(source, destination)
        elif source.is_file():
            if destination.endswith("/"):
                destination += source.name
            await self.upload_file(source, destination)
        else:
            raise TransferError(f'"{source}" does not exist.')

    async def upload_file(self, source: PathType, destination: str) -> bool:
        """Upload a single file, creating its parent directories as needed.

        Returns
        -------
        bool
            ``False`` if the board already had identical contents.
        """
        remote = self.remote_path(destination)
        logger.debug("uploadFile %s to %s", source, remote)
        data = await asyncio.to_thread(Path(source).read_bytes)
        await self._ensure_dir(posixpath.dirname(remote))
        return await self.transport.put_file(remote, data, check_if_similar_before_upload=True)

    async def upload_dir(self, source: PathType, destination: str = "/") -> SyncPlan:
        """Upload the contents of a folder, skipping unchanged files."""
        source = Path(source)
        remote_root = self.remote_path(destination)
        await self._ensure_dir(remote_root)

        local = await asyncio.to_thread(local_manifest, source, self.ignore)
        remote = await self.remote_manifest(remote_root)
        plan = build_plan(local, remote)
        logger.debug("sync plan for %s: %s", remote_root, plan)
        await self.execute_plan(plan, source, remote_root)
        return plan

    async def execute_plan(self, plan: SyncPlan, source: PathType, remote_root: str) -> None:
        source = Path(source)
        for step in plan:
            remote = normalize_remote_path(remote_root, step.entry.path)
            if step.op is SyncOp.MKDIR:
                await self._mkdir(remote)
            elif step.op is SyncOp.PUT:
                data = await asyncio.to_thread((source / step.entry.path).read_bytes)
                await self.transport.put_file(remote, data)

    async def remote_manifest(self, remote_root: str) -> list[FileManifestEntry]:
        """Recursive, fingerprinted listing of ``remote_root``; empty if it doesn't exist."""
        try:
            infos = await self.transport.list_files(remote_root, recursive=True, fingerprint=True)
        except ScriptError as e:
            if is_not_found(e):
                return []
            raise TransferError(f'Failed listing "{remote_root}": {e.remote_text}') from e
        return [
            FileManifestEntry(relative_remote_path(remote_root, info.path), info.is_dir, info.size, info.fingerprint)
            for info in infos
        ]

    async def _ensure_dir(self, path: str) -> None:
        """Create ``path`` and every missing ancestor below the filesystem root."""
        parts = [p for p in path.split("/") if p]
        # The root mount (e.g. ``/flash`` or ``/``) always exists.
        start = len([p for p in self.root.split("/") if p]) + 1
        for i in range(start, len(parts) + 1):
            await self._mkdir("/" + "/".join(parts[:i]))

    async def _mkdir(self, path: str) -> None:
        try:
            await self.transport.mkdir(path)
        except ScriptError as e:
            if is_already_exists(e):
                return
            raise TransferError(f'Failed creating "{path}": {e.remote_text}') from e

    ############
    # Download #
    ############
    async def download(self, source: str = "/", destination: PathType = ".") -> list[Path]:
        """Download a board folder into local folder ``destination``.

        All local directories are created before any file is written.

        Returns
        -------
        list[Path]
            Written local files.

        Raises
        ------
        TransferError
            Any listing, read or write failed.
        """
        destination = Path(destination)
        remote_root = self.remote_path(source)
        try:
            infos = await self.transport.list_files(remote_root, recursive=True)
        except ScriptError as e:
            raise TransferError(f'Failed listing "{remote_root}": {e.remote_text}') from e

        targets = {info.path: destination / relative_remote_path(remote_root, info.path) for info in infos}
        logger.debug("download %s", [info.path for info in infos])

        try:
            destination.mkdir(parents=True, exist_ok=True)
            for info in infos:
                if info.is_dir:
                    targets[info.path].mkdir(parents=True, exist_ok=True)

            files = {}
            for info in infos:
                if not info.is_dir:
                    files[targets[info.path]] = await self.transport.get_file(info.path)
            await asyncio.gather(*(asyncio.to_thread(path.write_bytes, data) for path, data in files.items()))
        except TransferError:
            raise
        except (PymakrException, OSError) as e:
            raise TransferError(f'Failed downloading "{remote_root}": {e}') from e

        return [targets[info.path] for info in infos if not info.is_dir]

    async def clear(self, source: str = "/") -> None:
        """Recursively remove everything inside board folder ``source``."""
        remote_root = self.remote_path(source)
        for info in await self.transport.list_files(remote_root):
            await self.transport.remove(info.path, recursive=info.is_dir)
