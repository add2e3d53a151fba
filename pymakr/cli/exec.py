from pymakr.cli.common import AddressStr, PasswordStr, ProtocolStr, UsernameStr, connected_session, console, run_async


async def _exec(address, statement, **kwargs):
    async with connected_session(address, **kwargs) as session:
        return await session.run_script(statement)


def exec(
    address: AddressStr,
    statement: str,
    *,
    protocol: ProtocolStr = None,
    username: UsernameStr = "",
    password: PasswordStr = "",
):
    """Execute python statement on-device.

    Parameters
    ----------
    statement : str
        Statement to execute on-device.
    """
    output = run_async(_exec(address, statement, protocol=protocol, username=username, password=password))
    if output:
        console.print(output, end="", markup=False, highlight=False)
