import asyncio
import builtins
import errno
import io
import json
import posixpath
import shutil
import types
from pathlib import Path

import pytest

from pymakr.config import Settings
from pymakr.device import DeviceIdentity, DeviceSession
from pymakr.exceptions import ScriptError, TransportError
from pymakr.transport import RawReplTransport


def run_cli(app, args):
    """Run a CLI app with support for both Cyclopts v3 and v4.

    Cyclopts v3 returns None on success.
    Cyclopts v4 raises SystemExit with code 0 on success.

    Returns
    -------
    int
        Exit code (0 for success).
    """
    try:
        result = app(args)
        return result if isinstance(result, int) else 0
    except SystemExit as e:
        return e.code if e.code is not None else 0


class MockSession:
    """Stands in for the :class:`DeviceSession` created by CLI commands."""

    def __init__(self, mocker):
        self.mocker = mocker
        # Spec'd on the class so coroutine methods become AsyncMocks.
        self.inst = mocker.MagicMock(spec=DeviceSession)
        self.inst.name = "my device"
        self.inst.info = None
        self.cls = None

    def patch(self, target: str = "pymakr.cli.common.DeviceSession"):
        self.cls = self.mocker.patch(target, return_value=self.inst)

    def cls_assert_common(self, identity=None):
        if identity is None:
            identity = DeviceIdentity("serial", "/dev/ttyUSB0", None, "password")
        self.cls.assert_called_once()
        assert self.cls.call_args.args[0] == identity
        self.inst.connect_with_retry.assert_awaited_once()
        self.inst.disconnect.assert_awaited_once()


BANNER = 'MicroPython v1.20.0 on 2023-04-26; ESP32 module with ESP32\r\nType "help()" for more information.\r\n>>> '
UNAME = ("esp32", "esp32", "1.20.0", "v1.20.0 on 2023-04-26", "ESP32 module with ESP32")
S_IFDIR = 0x4000
S_IFREG = 0x8000


def _oserror(code):
    return OSError(code, errno.errorcode[code])


class _BoardFile(io.BytesIO):
    """File opened for writing on a :class:`FakeBoard`; contents land on close."""

    def __init__(self, board, path, binary):
        super().__init__()
        self.board = board
        self.path = path
        self.binary = binary

    def write(self, data):
        if not self.binary:
            data = data.encode()
        return super().write(data)

    def close(self):
        if not self.closed:
            self.board.files[self.path] = self.getvalue()
        super().close()


class FakeBoard:
    """In-memory MicroPython board.

    Scripts run with CPython's ``exec`` against a persistent namespace, with
    ``sys``, ``os``, ``gc``, ``machine``, ``open`` and ``print`` replaced by
    versions backed by the board's filesystem and output buffer.
    """

    def __init__(self, root="/flash"):
        self.root = root
        self.cwd = root
        self.files: dict[str, bytes] = {}
        self.dirs = {"/", root}
        self.modules: dict[str, types.ModuleType] = {}
        self.sys = types.SimpleNamespace(path=[], modules=self.modules, platform="esp32")
        self.os = types.SimpleNamespace(
            listdir=self.listdir,
            ilistdir=self.ilistdir,
            mkdir=self.mkdir,
            remove=self.remove,
            rmdir=self.rmdir,
            stat=self.stat,
            uname=lambda: UNAME,
            getcwd=lambda: self.cwd,
        )
        self.gc = types.SimpleNamespace(collect=lambda: None)
        self.machine = types.ModuleType("machine")
        self.machine.freq = lambda: 240_000_000
        self.machine.deepsleep = self._real_deepsleep
        self.deepslept = False
        self._out = io.StringIO()
        self.builtins = {
            **builtins.__dict__,
            "__import__": self._import,
            "open": self.open,
            "print": self._print,
        }
        self._reset_namespace()

    def _reset_namespace(self):
        self.modules.clear()
        self.sys.path[:] = ["", self.root, self.root + "/lib"]
        self.globals = {"__name__": "__main__", "__builtins__": self.builtins}

    def _real_deepsleep(self, ms=0):
        self.deepslept = True

    ##############
    # Filesystem #
    ##############
    def resolve(self, path):
        if not path:
            return self.cwd
        if not path.startswith("/"):
            path = self.cwd + "/" + path
        return posixpath.normpath(path).replace("//", "/")

    def _children(self, path):
        prefix = path.rstrip("/") + "/"
        names = set()
        for candidate in (*self.files, *self.dirs):
            if candidate != path and candidate.startswith(prefix):
                names.add(candidate[len(prefix) :].split("/")[0])
        return sorted(names)

    def listdir(self, path=""):
        path = self.resolve(path)
        if path not in self.dirs:
            raise _oserror(errno.ENOENT)
        return self._children(path)

    def ilistdir(self, path=""):
        path = self.resolve(path)
        for name in self.listdir(path):
            full = posixpath.join(path, name)
            if full in self.dirs:
                yield (name, S_IFDIR, 0, 0)
            else:
                yield (name, S_IFREG, 0, len(self.files[full]))

    def mkdir(self, path):
        path = self.resolve(path)
        if path in self.dirs or path in self.files:
            raise _oserror(errno.EEXIST)
        if posixpath.dirname(path) not in self.dirs:
            raise _oserror(errno.ENOENT)
        self.dirs.add(path)

    def remove(self, path):
        path = self.resolve(path)
        if path not in self.files:
            raise _oserror(errno.ENOENT)
        del self.files[path]

    def rmdir(self, path):
        path = self.resolve(path)
        if path not in self.dirs:
            raise _oserror(errno.ENOENT)
        if self._children(path):
            raise _oserror(errno.ENOTEMPTY)
        self.dirs.discard(path)

    def stat(self, path):
        path = self.resolve(path)
        if path in self.dirs:
            return (S_IFDIR, 0, 0, 0, 0, 0, 0, 0, 0, 0)
        if path in self.files:
            return (S_IFREG, 0, 0, 0, 0, 0, len(self.files[path]), 0, 0, 0)
        raise _oserror(errno.ENOENT)

    def open(self, path, mode="r"):
        path = self.resolve(path)
        if "w" in mode:
            if posixpath.dirname(path) not in self.dirs or path in self.dirs:
                raise _oserror(errno.ENOENT)
            self.files[path] = b""
            return _BoardFile(self, path, "b" in mode)
        if path not in self.files:
            raise _oserror(errno.ENOENT)
        data = self.files[path]
        return io.BytesIO(data) if "b" in mode else io.StringIO(data.decode())

    ###############
    # Interpreter #
    ###############
    def _print(self, *args, sep=" ", end="\n", **kwargs):
        self._out.write(sep.join(str(a) for a in args) + end)

    def _import(self, name, globals=None, locals=None, fromlist=(), level=0):
        if name in self.modules:
            return self.modules[name]
        if name in ("sys", "os", "gc"):
            return getattr(self, name)
        if name == "machine":
            return self.machine
        if name in ("time", "math", "json"):
            return builtins.__import__(name, globals, locals, fromlist, level)
        for directory in self.sys.path:
            candidate = self.resolve(posixpath.join(directory, name + ".py") if directory else name + ".py")
            if candidate in self.files:
                module = types.ModuleType(name)
                module.__dict__["__builtins__"] = self.builtins
                self.modules[name] = module
                exec(compile(self.files[candidate].decode(), candidate, "exec"), module.__dict__)  # noqa: S102
                return module
        raise ImportError(f"no module named '{name}'")

    def exec(self, script: str) -> bytes:
        """Run ``script`` like the raw REPL would; returns its stdout."""
        self._out = io.StringIO()
        try:
            exec(compile(script, "<stdin>", "exec"), self.globals)  # noqa: S102
        except Exception as e:
            raise ScriptError(
                'Traceback (most recent call last):\r\n  File "<stdin>", line 1, in <module>\r\n'
                f"{type(e).__name__}: {e}\r\n"
            ) from None
        return self._out.getvalue().encode()

    def soft_reset(self) -> bytes:
        """Reboot the interpreter, running ``boot.py`` then ``main.py``."""
        self._reset_namespace()
        output = "MPY: soft reboot\r\n"
        for name in ("boot.py", "main.py"):
            path = posixpath.join(self.root, name)
            if path not in self.files:
                continue
            try:
                output += self.exec(self.files[path].decode()).decode()
            except ScriptError as e:
                output += e.remote_text
        return (output + BANNER).encode()


class FakeTransport(RawReplTransport, skip=True):
    """Transport talking to a :class:`FakeBoard` instead of a raw REPL.

    Every command is recorded in ``calls`` as ``(loop time, name)``.
    """

    def __init__(self, board=None, *, connect_delay=0.0, latency=0.0):
        super().__init__()
        self.board = board if board is not None else FakeBoard()
        self.connect_delay = connect_delay
        self.latency = latency
        self.connect_error = None
        self.mute_reset = False
        self.connected = False
        self.calls: list[tuple[float, str]] = []
        self.sent: list[bytes] = []

    def _record(self, name):
        self.calls.append((asyncio.get_running_loop().time(), name))

    def count(self, name):
        return sum(1 for _, call in self.calls if call == name)

    def _check_connected(self):
        if not self.connected:
            raise TransportError("Not connected.")

    async def connect(self, address, **kwargs):
        self._record("connect")
        await asyncio.sleep(self.connect_delay)
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    async def disconnect(self):
        self._record("disconnect")
        self.connected = False

    async def _exec(self, script):
        self._check_connected()
        await asyncio.sleep(self.latency)
        return self.board.exec(script)

    async def put_file(self, path, data, *, check_if_similar_before_upload=False):
        self._record("put_file")
        return await super().put_file(path, data, check_if_similar_before_upload=check_if_similar_before_upload)

    async def mkdir(self, path):
        self._record("mkdir")
        await super().mkdir(path)

    async def reset(self, *, soft_reset=True):
        self._check_connected()
        self._record("reset")
        if self.mute_reset:
            return
        self._emit(b"\r\n>>> ")
        await asyncio.sleep(0)
        output = self.board.soft_reset()
        if not soft_reset:
            self.connected = False
            self._disconnected()
            return
        self._emit(output)

    async def send_data(self, data):
        self._record("send_data")
        self.sent.append(data)

    def drop(self):
        """Simulate the board vanishing (e.g. cable pulled)."""
        self.connected = False
        self._disconnected()


@pytest.fixture
def board():
    return FakeBoard()


@pytest.fixture
def fake_transport(board):
    return FakeTransport(board)


@pytest.fixture
def settings():
    return Settings(
        connect_timeout=0.5,
        disconnect_timeout=0.5,
        board_info_timeout=0.5,
        restart_timeout=1.0,
        debounce=0.05,
    )


@pytest.fixture
def identity():
    return DeviceIdentity("serial", "/dev/ttyUSB0")


@pytest.fixture
def session(identity, fake_transport, settings):
    return DeviceSession(identity, fake_transport, name="my device", settings=settings)


@pytest.fixture
def tmp_cwd(tmp_path, monkeypatch):
    """Change to a temporary directory for the duration of the test."""
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def project_folder(tmp_path):
    folder = tmp_path / "project-1"
    folder.mkdir()
    (folder / "pymakr.conf").write_text(json.dumps({"name": "my project", "dev": {"simulateDeepSleep": True}}))
    return folder


@pytest.fixture
def sync_path(tmp_path):
    folder = tmp_path / "sync"
    (folder / "folder1" / "folder1_1").mkdir(parents=True)
    (folder / "alpha.py").write_text("def alpha():\n    pass")
    (folder / "bar.txt").write_text("bar contents")
    (folder / "folder1" / "file1.txt").write_text("file1 contents")
    (folder / "folder1" / "folder1_1" / "file1_1.txt").write_text("file1_1 contents")
    (folder / "__pycache__").mkdir()
    (folder / "__pycache__" / "alpha.cpython-311.pyc").write_bytes(b"\x00")
    return folder


@pytest.fixture
def data_path(tmp_path, request):
    """Temporary copy of folder with same name as test module.

    Fixture responsible for searching a folder with the same name of test
    module and, if available, copying all contents to a temporary directory so
    tests can use them freely.
    """
    filename = Path(request.module.__file__)
    test_dir = filename.parent / filename.stem
    if test_dir.is_dir():
        shutil.copytree(test_dir, tmp_path, dirs_exist_ok=True)

    return tmp_path


@pytest.fixture
def mock_session(mocker):
    return MockSession(mocker)
