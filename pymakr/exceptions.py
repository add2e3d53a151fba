import re


class PymakrException(Exception):  # noqa: N818
    """Root Pymakr exception class."""


class ConfigError(PymakrException):
    """Invalid ``pymakr.conf`` or settings."""


class DeviceNotFoundError(PymakrException):
    """No device registered under the requested id."""


class TransportError(PymakrException):
    """An issue communicating with the board or parsing board response."""


class ConnectionTimeout(PymakrException):  # noqa: N818
    """Time allowance exceeded while connecting or disconnecting."""


class ConnectionLost(PymakrException):  # noqa: N818
    """Transport dropped while the session was connected."""


class ScriptError(PymakrException):
    """Uncaught exception from code executed on the device.

    The remote traceback text is available as ``remote_text``.
    """

    def __init__(self, remote_text: str):
        super().__init__(remote_text)
        self.remote_text = remote_text

    def __str__(self):
        return "\n\n" + self.remote_text


class TransferError(PymakrException):
    """File read, write, or mkdir failure."""


class RestartTimeout(PymakrException):  # noqa: N818
    """Board did not report readiness after a triggered restart."""


_EEXIST_RE = re.compile(r"EEXIST|\[Errno 17\]")
_ENOENT_RE = re.compile(r"ENOENT|\[Errno 2\]")


def is_already_exists(exc: BaseException) -> bool:
    """Board reported ``OSError: [Errno 17] EEXIST``."""
    return bool(_EEXIST_RE.search(str(exc)))


def is_not_found(exc: BaseException) -> bool:
    """Board reported ``OSError: [Errno 2] ENOENT``."""
    return bool(_ENOENT_RE.search(str(exc)))
