import asyncio
from contextlib import asynccontextmanager, contextmanager
from typing import Annotated, Optional

from cyclopts import Parameter
from rich.console import Console

from pymakr.config import Settings
from pymakr.device import DeviceIdentity, DeviceSession
from pymakr.exceptions import PymakrException

console = Console()
err_console = Console(stderr=True)

# Custom annotated types for consistent CLI parameter help
AddressStr = Annotated[
    str,
    Parameter(help="Port (like /dev/ttyUSB0) or hostname/IP (like 192.168.4.1) of device."),
]
ProtocolStr = Annotated[
    Optional[str],
    Parameter(help='Either "serial" or "telnet". Guessed from the address if omitted.'),
]
UsernameStr = Annotated[
    str,
    Parameter(help="Username for telnet devices."),
]
PasswordStr = Annotated[
    str,
    Parameter(help="Password for telnet devices."),
]


def guess_protocol(address: str) -> str:
    """Guess the protocol of a device address.

    Examples
    --------
    >>> guess_protocol("/dev/ttyUSB0")
    'serial'
    >>> guess_protocol("COM3")
    'serial'
    >>> guess_protocol("192.168.4.1")
    'telnet'
    """
    if "." in address and "/" not in address and "\\" not in address:
        return "telnet"
    return "serial"


def create_session(
    address: str,
    *,
    protocol: Optional[str] = None,
    username: str = "",
    password: str = "",
) -> DeviceSession:
    identity = DeviceIdentity(protocol or guess_protocol(address), address, username or None, password or None)
    return DeviceSession(identity, settings=Settings.from_env())


@asynccontextmanager
async def connected_session(address: str, **kwargs):
    """Connected :class:`DeviceSession`, disconnected on exit."""
    session = create_session(address, **kwargs)
    await session.connect_with_retry()
    try:
        yield session
    finally:
        await session.disconnect()


@contextmanager
def remove_stacktrace():
    """Context manager that suppresses PymakrException stack traces and prints only the error message."""
    try:
        yield
    except PymakrException as e:
        err_console.print(f"[red]{type(e).__name__}:[/red] {e}", highlight=False)
        # Exception is handled, don't re-raise


def run_async(coro):
    """Run ``coro`` to completion, printing Pymakr errors without stack traces."""
    with remove_stacktrace():
        return asyncio.run(coro)
