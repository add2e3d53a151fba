import asyncio

import pytest
import pytest_asyncio

from pymakr.exceptions import ScriptError, TransportError, is_already_exists, is_not_found
from pymakr.transport import RawReplTransport, SerialTransport, TelnetTransport, Transport
from pymakr.transport.raw_repl import RawRepl


class ScriptedSerial:
    """Serial-like channel that replays canned board output."""

    def __init__(self, *chunks: bytes):
        self.incoming = bytearray(b"".join(chunks))
        self.written = bytearray()
        self.closed = False

    @property
    def in_waiting(self):
        return len(self.incoming)

    def read(self, size=1):
        out = bytes(self.incoming[:size])
        del self.incoming[:size]
        return out

    def write(self, data):
        self.written.extend(data)
        return len(data)

    def close(self):
        self.closed = True


BANNER = b"\r\nMicroPython v1.20.0 on 2023-04-26; ESP32 module with ESP32\r\n>>> "
RAW_BANNER = b"raw REPL; CTRL-B to exit\r\n>"


class BoardSerial(ScriptedSerial):
    """Serial-like channel answering REPL control characters like a board."""

    def __init__(self, main_output=b"hello from main\r\n"):
        super().__init__()
        self.main_output = main_output
        self.raw = False

    def write(self, data):
        super().write(data)
        for byte in data:
            if byte == 0x01:
                self.raw = True
                self.incoming.extend(RAW_BANNER)
            elif byte == 0x02:
                self.raw = False
                self.incoming.extend(BANNER)
            elif byte == 0x03 and not self.raw:
                self.incoming.extend(b"\r\n>>> ")
            elif byte == 0x04 and self.raw:
                self.incoming.extend(b"OK\x04\x04>")
            elif byte == 0x04:
                self.incoming.extend(b"MPY: soft reboot\r\n" + self.main_output + BANNER)
        return len(data)


@pytest.fixture
def board_serial():
    return BoardSerial()


@pytest_asyncio.fixture
async def connected_transport(board_serial, mocker):
    transport = SerialTransport()
    mocker.patch.object(transport, "_open", return_value=board_serial)
    received = []
    on_disconnect = mocker.MagicMock()
    transport.bind(received.append, on_disconnect)
    await transport.connect("/dev/ttyUSB0")
    yield transport, received, on_disconnect
    await transport.disconnect()


async def _wait_for_output(received, text, timeout=2.0):
    async def poll():
        while text not in b"".join(received):
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


def test_transport_registry():
    assert Transport["serial"] is SerialTransport
    assert Transport["telnet"] is TelnetTransport
    assert "rawrepl" not in Transport
    assert issubclass(SerialTransport, RawReplTransport)


def test_read_until_forwards_data():
    repl = RawRepl(ScriptedSerial(b"MPY: soft reboot\r\n>>> extra"))
    received = []

    out = repl.read_until(b">>>", data_consumer=received.append)

    assert out == b"MPY: soft reboot\r\n>>>"
    assert b"".join(received) == out
    assert repl.read_until(b"extra") == b" extra"


def test_read_until_timeout():
    repl = RawRepl(ScriptedSerial(b"nothing useful"))
    with pytest.raises(TransportError, match="Timed out"):
        repl.read_until(b">>>", timeout=0.05)


def test_exec():
    serial = ScriptedSerial(b">OK4\r\n\x04\x04>")
    repl = RawRepl(serial)
    assert repl.exec("print(2 + 2)") == b"4\r\n"
    assert serial.written == b"print(2 + 2)\x04"


def test_exec_error():
    repl = RawRepl(ScriptedSerial(b">OK\x04Traceback (most recent call last):\r\nZeroDivisionError\r\n\x04>"))
    with pytest.raises(ScriptError) as exc_info:
        repl.exec("1 / 0")
    assert "ZeroDivisionError" in exc_info.value.remote_text


def test_close_exits_raw_repl():
    serial = ScriptedSerial()
    repl = RawRepl(serial)
    repl.close()
    assert serial.closed
    assert serial.written == b"\r\x02"
    repl.close()


@pytest.mark.asyncio
async def test_transport_not_connected():
    with pytest.raises(TransportError, match="Not connected"):
        await SerialTransport().run_script("x = 1")


@pytest.mark.asyncio
async def test_transport_channel_failure_disconnects(mocker):
    transport = SerialTransport()
    on_disconnect = mocker.MagicMock()
    transport.bind(lambda data: None, on_disconnect)

    def fail():
        raise OSError("device reports readiness to read but returned no data")

    with pytest.raises(TransportError, match="no data"):
        await transport._call(fail)
    on_disconnect.assert_called_once()


@pytest.mark.parametrize(
    "text, exists, not_found",
    [
        ("OSError: [Errno 17] EEXIST", True, False),
        ("OSError: 17", False, False),
        ("OSError: [Errno 2] ENOENT", False, True),
        ("OSError: ENOENT", False, True),
    ],
)
def test_errno_helpers(text, exists, not_found):
    exc = ScriptError(text)
    assert is_already_exists(exc) is exists
    assert is_not_found(exc) is not_found


@pytest.mark.asyncio
async def test_connect_enters_raw_repl(connected_transport, board_serial):
    transport, received, _ = connected_transport
    assert board_serial.raw
    assert transport.repl.in_raw_repl
    assert board_serial.written.startswith(b"\r\x03\x03\r\x02")
    assert board_serial.written.endswith(b"\r\x01")
    assert b">>>" in b"".join(received)


@pytest.mark.asyncio
async def test_connect_forwards_pending_output(board_serial, mocker):
    board_serial.incoming.extend(b"left over from before\r\n")
    transport = SerialTransport()
    mocker.patch.object(transport, "_open", return_value=board_serial)
    received = []
    transport.bind(received.append, lambda: None)
    await transport.connect("/dev/ttyUSB0")
    assert b"left over from before" in b"".join(received)
    await transport.disconnect()


@pytest.mark.asyncio
async def test_soft_reset_leaves_program_running(connected_transport, board_serial):
    transport, received, on_disconnect = connected_transport
    received.clear()
    del board_serial.written[:]

    await transport.reset(soft_reset=True)
    await _wait_for_output(received, b"hello from main")

    after_ctrl_d = bytes(board_serial.written[board_serial.written.index(b"\x04") :])
    assert b"\x03" not in after_ctrl_d
    assert b"\x01" not in after_ctrl_d
    assert not board_serial.raw

    await _wait_for_output(received, b"hello from main\r\n" + BANNER)
    output = b"".join(received)
    assert output.index(b">>>") < output.index(b"MPY: soft reboot")
    assert output.count(b">>>") == 2
    on_disconnect.assert_not_called()


@pytest.mark.asyncio
async def test_command_after_soft_reset_reenters_raw_repl(connected_transport, board_serial):
    transport, received, _ = connected_transport
    await transport.reset(soft_reset=True)
    await _wait_for_output(received, b"hello from main")

    assert await transport.run_script("x = 1", gc_collect=False) == ""
    assert board_serial.raw
    assert transport.repl.in_raw_repl
    assert board_serial.written.endswith(b"x = 1\x04")


@pytest.mark.asyncio
async def test_soft_reset_twice(connected_transport, board_serial):
    transport, received, _ = connected_transport
    await transport.reset(soft_reset=True)
    await _wait_for_output(received, b"hello from main")
    received.clear()

    await transport.reset(soft_reset=True)
    await _wait_for_output(received, b"hello from main")
    assert not board_serial.raw


@pytest.mark.asyncio
async def test_hard_reset_drops_connection(connected_transport, board_serial):
    transport, _, on_disconnect = connected_transport
    await transport.reset(soft_reset=False)

    assert b"machine.reset()" in board_serial.written
    assert board_serial.closed
    on_disconnect.assert_called_once()
    with pytest.raises(TransportError, match="Not connected"):
        await transport.run_script("x = 1")
