import asyncio
import sys
from pathlib import Path

from pymakr.cli.common import (
    AddressStr,
    PasswordStr,
    ProtocolStr,
    UsernameStr,
    console,
    guess_protocol,
    run_async,
)
from pymakr.config import Settings
from pymakr.device import DeviceInput
from pymakr.project import Project
from pymakr.registry import Registry
from pymakr.state import JsonStateStorage

STATE_FILENAME = ".pymakr/state.json"


def _echo(data: bytes):
    sys.stdout.write(data.decode("utf-8", errors="replace"))
    sys.stdout.flush()


async def _dev(addresses, folder, protocol, username, password):
    project = Project.from_path(folder)
    registry = Registry(settings=Settings.from_env(), storage=JsonStateStorage(project.folder / STATE_FILENAME))
    try:
        for address in addresses:
            session = registry.upsert(
                DeviceInput(
                    protocol=protocol or guess_protocol(address),
                    address=address,
                    username=username or None,
                    password=password or None,
                )
            )
            session.terminal.subscribe(_echo)
            project.add_device(session.id)

        watcher = await registry.start_dev_mode(project)
        console.print(
            f'Watching "{project.folder}" with {len(watcher.device_managers)} device(s). Press ctrl+c to exit.'
        )
        await asyncio.Event().wait()
    finally:
        await registry.close()


def dev(
    *addresses: AddressStr,
    folder: Path = Path(),
    protocol: ProtocolStr = None,
    username: UsernameStr = "",
    password: PasswordStr = "",
):
    """Redeploy a project to devices whenever a file in it changes.

    Parameters
    ----------
    addresses : str
        Ports or hostnames of the devices to develop on.
    folder : Path
        Project folder; the nearest parent holding a ``pymakr.conf`` is used.
    """
    try:
        run_async(_dev(addresses, folder, protocol, username, password))
    except KeyboardInterrupt:
        pass
