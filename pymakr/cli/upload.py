from pathlib import Path

from rich.progress import Progress

from pymakr.cli.common import AddressStr, PasswordStr, ProtocolStr, UsernameStr, connected_session, run_async


async def _upload(address, source, dst, progress_update, **kwargs):
    async with connected_session(address, **kwargs) as session:
        progress_update(description=f"Uploading to {session.name}...")
        await session.upload(source, dst)
        progress_update(description="Complete.")


def upload(
    address: AddressStr,
    source: Path,
    *,
    dst: str = "/",
    protocol: ProtocolStr = None,
    username: UsernameStr = "",
    password: PasswordStr = "",
):
    """Upload a file or folder to device.

    Unchanged files are not transferred again.

    Parameters
    ----------
    source : Path
        Path of local file or folder to upload.
    dst : str
        Destination, relative to the board's root mount.
        Folder contents are unpacked into it.
    """
    with Progress() as progress:
        task_id = progress.add_task("")

        def progress_update(description=None, **kwargs):
            return progress.update(task_id, description=description, **kwargs)

        run_async(
            _upload(address, source, dst, progress_update, protocol=protocol, username=username, password=password)
        )
