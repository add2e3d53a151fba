__all__ = [
    "BoardInfo",
    "FileInfo",
    "RawReplTransport",
    "SerialTransport",
    "TelnetTransport",
    "Transport",
]

from .base import BoardInfo, FileInfo, Transport
from .raw_repl import RawReplTransport
from .serial import SerialTransport
from .telnet import TelnetTransport
