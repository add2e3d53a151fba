from pymakr.cli.common import AddressStr, PasswordStr, ProtocolStr, UsernameStr, connected_session, run_async


async def _erase(address, **kwargs):
    async with connected_session(address, **kwargs) as session:
        await session.erase()


def erase(
    address: AddressStr,
    *,
    yes: bool = False,
    protocol: ProtocolStr = None,
    username: UsernameStr = "",
    password: PasswordStr = "",
):
    """Remove every file from the device's root mount.

    Parameters
    ----------
    yes : bool
        Don't ask for confirmation.
    """
    if not yes and input(f"Erase all files on {address}? [y/N]: ").strip().lower() not in ("y", "yes"):
        return
    run_async(_erase(address, protocol=protocol, username=username, password=password))
