from pathlib import Path

from pymakr.cli.common import AddressStr, PasswordStr, ProtocolStr, UsernameStr, connected_session, run_async


async def _download(address, src, dst, **kwargs):
    async with connected_session(address, **kwargs) as session:
        await session.download(src, dst)


def download(
    address: AddressStr,
    *,
    src: str = "/",
    dst: Path = Path(),
    protocol: ProtocolStr = None,
    username: UsernameStr = "",
    password: PasswordStr = "",
):
    """Download a folder from device.

    Parameters
    ----------
    src : str
        On-device folder, relative to the board's root mount.
    dst : Path
        Local folder to download into.
    """
    run_async(_download(address, src, dst, protocol=protocol, username=username, password=password))
