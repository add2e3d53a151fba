# This file is derived from pyboard.py of the MicroPython project, http://micropython.org/
#
# The MIT License (MIT)
#
# Copyright (c) 2014-2021 Damien P. George
# Copyright (c) 2017 Paul Sokolovsky
#
# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:
#
# The above copyright notice and this permission notice shall be included in
# all copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
# OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN
# THE SOFTWARE.

"""Blocking raw-REPL driver and the transports built on it.

The driver talks to anything "serial-like" (``read``, ``write``,
``in_waiting``, ``close``). :class:`RawReplTransport` runs it in worker threads
so the asynchronous :class:`~pymakr.transport.base.Transport` interface never
blocks the event loop.
"""

import ast
import asyncio
import contextlib
import logging
import time
from typing import Optional

from ..exceptions import ScriptError, TransferError, TransportError
from ..hash import fnv1a_bytes
from ..helpers import read_snippet
from ..typing import DataConsumer
from .base import BoardInfo, FileInfo, Transport

logger = logging.getLogger(__name__)

CHUNK_SIZE = 256


def _dummy_data_consumer(data):
    pass


class RawRepl:
    """MicroPython raw REPL over a serial-like channel."""

    def __init__(self, serial):
        self.serial = serial
        self.in_raw_repl = False
        self._buf = bytearray()

    def close(self):
        if not self.serial:
            return
        try:
            self.exit_raw_repl()
        finally:
            self.serial.close()
            self.serial = None

    def read_until(self, ending: bytes, timeout: Optional[float] = 10, data_consumer: Optional[DataConsumer] = None):
        """Read bytes until ``ending`` is received.

        Parameters
        ----------
        data_consumer: Callable
            Called with data as soon as it becomes available.
        timeout: Union[None, float]
            Timeout in seconds. If None, no timeout.

        Returns
        -------
        data: bytes
            Data read up to, and including, ``ending``.
        """
        if data_consumer is None:
            data_consumer = _dummy_data_consumer

        deadline = time.monotonic() + (float("inf") if timeout is None else timeout)
        consumed = 0
        while True:
            index = self._buf.find(ending)
            if index >= 0:
                index += len(ending)
                out = bytes(self._buf[:index])
                del self._buf[:index]
                data_consumer(out[consumed:])
                return out

            # ``ending`` may be split across reads; only forward what can't be part of it.
            safe = max(consumed, len(self._buf) - len(ending) + 1)
            if safe > consumed:
                data_consumer(bytes(self._buf[consumed:safe]))
                consumed = safe

            if time.monotonic() > deadline:
                raise TransportError(f"Timed out reading until {ending!r}\n    Received: {bytes(self._buf)!r}")

            n_bytes = self.serial.in_waiting
            if n_bytes:
                self._buf.extend(self.serial.read(min(2048, n_bytes)))
            else:
                time.sleep(0.001)

    def cancel_running_program(self):
        self.serial.write(b"\r\x03\x03")  # ctrl-C twice: interrupt any running program

    def ctrl_d(self):
        self.serial.write(b"\x04")  # ctrl-D: soft reset

    def forward_available(self, data_consumer: DataConsumer, duration: float = 0.05):
        """Pass everything received within ``duration`` seconds to ``data_consumer``."""
        if self._buf:
            data_consumer(bytes(self._buf))
            self._buf.clear()
        deadline = time.monotonic() + duration
        while time.monotonic() < deadline:
            n_bytes = self.serial.in_waiting
            if n_bytes:
                data_consumer(self.serial.read(n_bytes))
            else:
                time.sleep(0.001)

    def enter_raw_repl(self, soft_reset=False, data_consumer=None):
        if data_consumer is None:
            data_consumer = _dummy_data_consumer

        # flush input (without relying on serial.flushInput())
        if self._buf:
            data_consumer(bytes(self._buf))
            self._buf.clear()
        n = self.serial.in_waiting
        while n > 0:
            data_consumer(self.serial.read(n))
            n = self.serial.in_waiting
        self.cancel_running_program()
        self.exit_raw_repl()  # if device is already in raw_repl, b'>>>' won't be printed.
        self.read_until(b">>>", data_consumer=data_consumer)
        self.serial.write(b"\r\x01")  # ctrl-A: enter raw REPL
        if soft_reset:
            self.read_until(b"raw REPL; CTRL-B to exit\r\n>")
            self.ctrl_d()

        self.read_until(b"raw REPL; CTRL-B to exit\r\n")
        self.in_raw_repl = True

    def exit_raw_repl(self):
        self.serial.write(b"\r\x02")  # ctrl-B: enter friendly REPL
        self.in_raw_repl = False

    def exec_raw(self, command, timeout=None):
        command_bytes = command if isinstance(command, bytes) else command.encode("utf-8")

        # check we have a prompt
        self.read_until(b">")

        # Write command using standard raw REPL, 256 bytes every 10ms.
        for i in range(0, len(command_bytes), 256):
            self.serial.write(command_bytes[i : i + 256])
            time.sleep(0.01)
        self.serial.write(b"\x04")

        data = self.read_until(b"OK", timeout=timeout)
        if not data.endswith(b"OK"):
            raise TransportError(f"could not exec command (response: {data!r})")

        # normal output, then error output; each terminated by EOF.
        out = self.read_until(b"\x04", timeout=timeout)[:-1]
        err = self.read_until(b"\x04", timeout=timeout)[:-1]
        return out, err

    def exec(self, command, timeout=None) -> bytes:
        out, err = self.exec_raw(command, timeout=timeout)
        if err:
            raise ScriptError(err.decode("utf-8", errors="replace"))
        return out


class RawReplTransport(Transport, skip=True):
    """Transport executing everything as scripts in the board's raw REPL.

    After a soft reset the board is left in the friendly REPL running its
    ``boot.py``/``main.py``; its output is forwarded to the data consumer
    until the next command re-enters the raw REPL.
    """

    def __init__(self):
        super().__init__()
        self._repl: Optional[RawRepl] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._pumping = False

    def _open(self, address: str, **kwargs):
        """Open and return a serial-like channel to ``address``."""
        raise NotImplementedError

    def _forward(self, data: bytes) -> None:
        # Called from worker threads.
        if self._loop is not None and data:
            self._loop.call_soon_threadsafe(self._emit, data)

    @property
    def repl(self) -> RawRepl:
        if self._repl is None:
            raise TransportError("Not connected.")
        return self._repl

    async def _call(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except OSError as e:
            # pyserial and socket failures are OSErrors; the channel is gone.
            self._repl = None
            self._disconnected()
            raise TransportError(str(e)) from e

    def _start_pump(self, repl: RawRepl) -> None:
        self._pumping = True
        self._pump_task = asyncio.ensure_future(self._pump(repl))

    async def _pump(self, repl: RawRepl) -> None:
        try:
            while self._pumping and self._repl is repl:
                await self._call(repl.forward_available, self._forward)
        except TransportError as e:
            logger.debug("Stopped forwarding terminal output: %s", e)

    async def _stop_pump(self) -> None:
        self._pumping = False
        task, self._pump_task = self._pump_task, None
        if task is not None:
            await task

    async def _raw_repl(self) -> RawRepl:
        """Connected driver, in raw REPL mode."""
        repl = self.repl
        if not repl.in_raw_repl:
            await self._stop_pump()
            await self._call(repl.enter_raw_repl, False, self._forward)
        return repl

    async def _exec(self, script: str) -> bytes:
        repl = await self._raw_repl()
        return await self._call(repl.exec, script)

    async def connect(self, address, **kwargs):
        self._loop = asyncio.get_running_loop()
        if self._repl is not None:
            # A previous (possibly timed-out) attempt left a channel open.
            await self.disconnect()

        def _connect():
            repl = RawRepl(self._open(address, **kwargs))
            repl.enter_raw_repl(data_consumer=self._forward)
            return repl

        self._repl = await self._call(_connect)

    async def disconnect(self):
        await self._stop_pump()
        repl, self._repl = self._repl, None
        if repl is not None:
            await asyncio.to_thread(repl.close)

    async def run_script(self, text, *, gc_collect=True):
        if gc_collect:
            text = "import gc\ngc.collect()\n" + text
        out = await self._exec(text)
        return out.decode("utf-8", errors="replace")

    async def _remote_hash(self, path: str) -> int:
        cmd = read_snippet("hf") + f"print(__pymakr_hf({path!r}, memoryview(bytearray({CHUNK_SIZE}))))"
        return int((await self._exec(cmd)).strip())

    async def put_file(self, path, data, *, check_if_similar_before_upload=False):
        if check_if_similar_before_upload and await self._remote_hash(path) == fnv1a_bytes(data):
            return False
        try:
            await self._exec(f"f=open({path!r},'wb')\nw=f.write")
            for i in range(0, len(data), CHUNK_SIZE):
                await self._exec(f"w({data[i : i + CHUNK_SIZE]!r})")
            await self._exec("f.close()")
        except ScriptError as e:
            raise TransferError(f'Failed writing "{path}": {e.remote_text}') from e
        return True

    async def get_file(self, path):
        contents = bytearray()
        try:
            await self._exec(f"f=open({path!r},'rb')\nr=f.read")
            while True:
                out = await self._exec(f"print(r({CHUNK_SIZE}))")
                chunk = ast.literal_eval(out.decode("ascii").strip())
                if not isinstance(chunk, bytes):
                    raise TransportError(f"Unexpected response while reading {path}: {out!r}")
                if not chunk:
                    break
                contents.extend(chunk)
            await self._exec("f.close()")
        except ScriptError as e:
            raise TransferError(f'Failed reading "{path}": {e.remote_text}') from e
        return bytes(contents)

    async def list_files(self, path, *, recursive=False, fingerprint=False):
        cmd = (
            read_snippet("hf")
            + read_snippet("list_files")
            + f"print(repr(__pymakr_ls({path!r}, {recursive!r}, {fingerprint!r})))"
        )
        out = await self._exec(cmd)
        return [FileInfo(*entry) for entry in ast.literal_eval(out.decode("utf-8").strip())]

    async def mkdir(self, path):
        await self._exec(f"import os\nos.mkdir({path!r})")

    async def remove(self, path, recursive=False):
        await self._exec(read_snippet("remove") + f"__pymakr_rm({path!r}, {recursive!r})")

    async def reset(self, *, soft_reset=True):
        if not soft_reset:
            repl = await self._raw_repl()
            # The board won't answer; a hard reset drops the channel.
            await self._call(repl.serial.write, b"import machine\nmachine.reset()\x04")
            self._repl = None
            with contextlib.suppress(OSError):
                await asyncio.to_thread(repl.serial.close)
            self._disconnected()
            return

        repl = self.repl
        await self._stop_pump()

        def _soft_reset():
            if repl.in_raw_repl:
                repl.exit_raw_repl()
            else:
                repl.cancel_running_program()
            repl.read_until(b">>>", data_consumer=self._forward)
            repl.ctrl_d()

        await self._call(_soft_reset)
        # Boot output and the program's prints are forwarded from now on.
        self._start_pump(repl)

    async def get_board_info(self):
        out = await self._exec("import os\nprint(tuple(os.uname()))")
        return BoardInfo(*ast.literal_eval(out.decode("utf-8").strip()))

    async def send_data(self, data):
        await self._call(self.repl.serial.write, data)
