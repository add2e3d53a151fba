import select
import socket
import time
from collections import deque

from ..exceptions import TransportError
from .raw_repl import RawReplTransport

IAC = 0xFF
_NEGOTIATION = {0xFB, 0xFC, 0xFD, 0xFE}  # WILL, WONT, DO, DONT


class TelnetToSerial:
    """Serial-like wrapper around a logged-in telnet REPL."""

    def __init__(self, host, user, password, port=23, read_timeout=10):
        self.sock = socket.create_connection((host, port), timeout=15)
        self.read_timeout = read_timeout
        self.fifo = deque()

        if not self._read_until(b"Login as:"):
            raise TransportError(f"{host} didn't ask for a login.")
        self.write(user.encode("ascii") + b"\r\n")
        if not self._read_until(b"Password:"):
            raise TransportError(f"{host} didn't ask for a password.")
        # needed because of internal implementation details of the telnet server
        time.sleep(0.2)
        self.write(password.encode("ascii") + b"\r\n")
        if not self._read_until(b'Type "help()" for more information.'):
            raise TransportError(f"Failed to log in to {host}.")
        self.fifo.clear()

    def _read_until(self, ending: bytes) -> bool:
        buf = bytearray()
        deadline = time.monotonic() + self.read_timeout
        while ending not in buf:
            if time.monotonic() > deadline:
                return False
            self._fill(timeout=0.05)
            while self.fifo:
                buf.append(self.fifo.popleft())
        return True

    def _fill(self, timeout=0.0):
        readable, _, _ = select.select([self.sock], [], [], timeout)
        if not readable:
            return
        data = self.sock.recv(1024)
        if not data:
            raise ConnectionResetError("Telnet connection closed by board.")
        i = 0
        while i < len(data):
            # Drop option negotiation; the REPL doesn't need any.
            if data[i] == IAC and i + 1 < len(data) and data[i + 1] in _NEGOTIATION:
                i += 3
                continue
            self.fifo.append(data[i])
            i += 1

    def close(self):
        self.sock.close()

    def read(self, size=1):
        deadline = time.monotonic() + self.read_timeout
        while len(self.fifo) < size and time.monotonic() < deadline:
            self._fill(timeout=0.01)
        return bytes(self.fifo.popleft() for _ in range(min(size, len(self.fifo))))

    def write(self, data):
        self.sock.sendall(data)
        return len(data)

    @property
    def in_waiting(self):
        self._fill()
        return len(self.fifo)


class TelnetTransport(RawReplTransport):
    """Networked board reachable by hostname or IP, e.g. ``192.168.4.1``."""

    def _open(self, address, username="micro", password="python", **kwargs):  # noqa: S107
        return TelnetToSerial(address, username or "micro", password or "python")
