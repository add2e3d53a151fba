from pathlib import Path

from pymakr.cli.main import app
from tests.conftest import run_cli


def test_upload_basic(mock_session, tmp_path):
    mock_session.patch()
    exit_code = run_cli(app, ["upload", "/dev/ttyUSB0", str(tmp_path), "--password", "password"])
    assert exit_code == 0
    mock_session.cls_assert_common()
    mock_session.inst.upload.assert_awaited_once_with(Path(tmp_path), "/")


def test_upload_dst(mock_session, tmp_path):
    mock_session.patch()
    exit_code = run_cli(app, ["upload", "/dev/ttyUSB0", str(tmp_path), "--dst", "/lib", "--password", "password"])
    assert exit_code == 0
    mock_session.inst.upload.assert_awaited_once_with(Path(tmp_path), "/lib")
