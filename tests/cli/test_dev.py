import json

from pymakr.cli.main import app
from pymakr.registry import Registry
from tests.conftest import FakeTransport, run_cli


def test_dev_without_project(tmp_cwd, capsys):
    exit_code = run_cli(app, ["dev", "/dev/ttyUSB0"])
    assert exit_code == 0
    assert "No pymakr.conf" in capsys.readouterr().err


def test_dev_until_interrupted(project_folder, board, mocker):
    transport = FakeTransport(board)
    mocker.patch(
        "pymakr.cli.dev.Registry",
        side_effect=lambda **kwargs: Registry(transport_factory=lambda identity: transport, observe=False, **kwargs),
    )
    # Ctrl+C while watching.
    mocker.patch("pymakr.cli.dev.asyncio.Event.wait", side_effect=KeyboardInterrupt)

    exit_code = run_cli(app, ["dev", "/dev/ttyUSB0", "--folder", str(project_folder)])

    assert exit_code == 0
    assert "/flash/_pymakr_dev/fake_machine.py" in board.files
    assert "# pymakr devmode" in board.files["/flash/boot.py"].decode()
    assert not transport.connected
    state = json.loads((project_folder / ".pymakr" / "state.json").read_text())
    assert state["devices.serial:///dev/ttyUSB0.state"]["connected"] is True
