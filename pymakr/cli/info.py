from pymakr.cli.common import AddressStr, PasswordStr, ProtocolStr, UsernameStr, connected_session, console, run_async


async def _info(address, **kwargs):
    async with connected_session(address, **kwargs) as session:
        return session.info


def info(
    address: AddressStr,
    *,
    protocol: ProtocolStr = None,
    username: UsernameStr = "",
    password: PasswordStr = "",
):
    """Display device firmware information."""
    board = run_async(_info(address, protocol=protocol, username=username, password=password))
    if board is not None:
        console.print(f"{board.sysname} {board.release} - {board.machine}", highlight=False)
