"""Per-device command serialization.

A board can only process one command at a time; interleaving two scripts on
the same REPL corrupts both. :class:`CommandQueue` runs commands strictly one
at a time in submission order. Commands whose name is in the queue's
``bypass`` set run immediately instead, concurrently with the queue; their
results are unordered relative to queued commands.
"""

import asyncio
import logging
from collections import deque
from functools import partial
from typing import Iterable, Optional

from attrs import define

from .transport import BoardInfo, FileInfo, Transport
from .typing import Command

logger = logging.getLogger(__name__)


@define
class CommandQueueEntry:
    command: Command
    future: asyncio.Future
    name: str = ""


class CommandQueue:
    def __init__(self, bypass: Iterable[str] = ()):
        self.bypass = frozenset(bypass)
        self._entries: deque[CommandQueueEntry] = deque()
        self._runner: Optional[asyncio.Task] = None

    def __len__(self):
        """Number of commands waiting to start."""
        return len(self._entries)

    async def run(self, command: Command, name: str = ""):
        """Run ``command`` once every previously submitted command has settled.

        Cancelling the caller does not remove ``command`` from the queue; it
        still runs, and its outcome is discarded.
        """
        if name and name in self.bypass:
            return await command()

        loop = asyncio.get_running_loop()
        entry = CommandQueueEntry(command, loop.create_future(), name)
        self._entries.append(entry)
        if self._runner is None or self._runner.done():
            self._runner = loop.create_task(self._run_entries())
        return await entry.future

    async def _run_entries(self):
        while self._entries:
            entry = self._entries.popleft()
            try:
                result = await entry.command()
            except Exception as e:
                if entry.future.done():
                    logger.debug("Abandoned command %r failed: %r", entry.name, e)
                else:
                    entry.future.set_exception(e)
            else:
                if not entry.future.done():
                    entry.future.set_result(result)


class SerializedTransport:
    """Transport facade routing every command through a :class:`CommandQueue`.

    Connection lifecycle (``connect``/``disconnect``) is absent;
    the owning session calls those on :attr:`transport` directly.
    """

    def __init__(self, transport: Transport, bypass: Iterable[str] = ()):
        self.transport = transport
        self.queue = CommandQueue(bypass)

    async def run_script(self, text: str, **kwargs) -> str:
        return await self.queue.run(partial(self.transport.run_script, text, **kwargs), "run_script")

    async def put_file(self, path: str, data: bytes, **kwargs) -> bool:
        return await self.queue.run(partial(self.transport.put_file, path, data, **kwargs), "put_file")

    async def get_file(self, path: str) -> bytes:
        return await self.queue.run(partial(self.transport.get_file, path), "get_file")

    async def list_files(self, path: str, **kwargs) -> list[FileInfo]:
        return await self.queue.run(partial(self.transport.list_files, path, **kwargs), "list_files")

    async def mkdir(self, path: str) -> None:
        return await self.queue.run(partial(self.transport.mkdir, path), "mkdir")

    async def remove(self, path: str, recursive: bool = False) -> None:
        return await self.queue.run(partial(self.transport.remove, path, recursive), "remove")

    async def reset(self, *, soft_reset: bool = True) -> None:
        return await self.queue.run(partial(self.transport.reset, soft_reset=soft_reset), "reset")

    async def get_board_info(self) -> BoardInfo:
        return await self.queue.run(self.transport.get_board_info, "get_board_info")

    async def send_data(self, data: bytes) -> None:
        return await self.queue.run(partial(self.transport.send_data, data), "send_data")
