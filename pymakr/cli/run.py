from pathlib import Path

from pymakr.cli.common import AddressStr, PasswordStr, ProtocolStr, UsernameStr, connected_session, console, run_async


async def _run(address, content, **kwargs):
    async with connected_session(address, **kwargs) as session:
        return await session.run_script(content)


def run(
    address: AddressStr,
    file: Path,
    *,
    protocol: ProtocolStr = None,
    username: UsernameStr = "",
    password: PasswordStr = "",
):
    """Run file on-device.

    Parameters
    ----------
    file : Path
        File to run on-device.
    """
    content = file.read_text(encoding="utf-8")
    output = run_async(_run(address, content, protocol=protocol, username=username, password=password))
    if output:
        console.print(output, end="", markup=False, highlight=False)
