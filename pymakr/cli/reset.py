from pymakr.cli.common import AddressStr, PasswordStr, ProtocolStr, UsernameStr, connected_session, run_async


async def _reset(address, hard, **kwargs):
    async with connected_session(address, **kwargs) as session:
        await session.reset(soft=not hard)


def reset(
    address: AddressStr,
    *,
    hard: bool = False,
    protocol: ProtocolStr = None,
    username: UsernameStr = "",
    password: PasswordStr = "",
):
    """Reset device.

    Parameters
    ----------
    hard : bool
        Hard reset (``machine.reset()``) instead of a soft reboot.
    """
    run_async(_reset(address, hard, protocol=protocol, username=username, password=password))
