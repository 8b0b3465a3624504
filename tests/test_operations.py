"""Tests for the remote operation catalogue (operations.py)."""

import json
from pathlib import Path

import pytest

from conftest import FakeSession
from labfleet.errors import RemoteExecutionError
from labfleet.operations import (
    DefenderStatus,
    InstallApp,
    Inventory,
    PushFile,
    Reboot,
    UsbDevices,
    logged_on_user,
)


def test_logged_on_user():
    session = FakeSession("pc1")
    session.register("UserName", stdout=json.dumps({"UserName": "LAB\\alice"}))

    assert logged_on_user(session) == "LAB\\alice"


def test_nobody_logged_on():
    session = FakeSession("pc1")
    session.register("UserName", stdout=json.dumps({"UserName": None}))

    assert logged_on_user(session) is None


def test_reboot_skips_when_user_logged_on():
    session = FakeSession("pc1")
    session.register("UserName", stdout=json.dumps({"UserName": "LAB\\alice"}))

    assert Reboot().precondition(session) == "user LAB\\alice logged on"


def test_reboot_force_ignores_user():
    session = FakeSession("pc1")

    assert Reboot(force=True).precondition(session) is None
    assert session.scripts == []


def test_reboot_runs_shutdown():
    session = FakeSession("pc1")

    assert Reboot().run(session) is None
    assert "shutdown.exe /r" in session.scripts[0]
    assert Reboot.produces_result is False


def test_reboot_failure_raises():
    session = FakeSession("pc1")
    session.register("shutdown.exe", stderr="Access is denied.", status_code=5)

    with pytest.raises(RemoteExecutionError, match="Access is denied"):
        Reboot().run(session)


def test_defender_status_rows():
    session = FakeSession("pc1")
    payload = {"AntivirusEnabled": True, "ThreatsDetected": 0}
    session.register("Get-MpComputerStatus", stdout=json.dumps(payload))

    rows = DefenderStatus().run(session)

    assert rows == [payload]


def test_inventory_rows():
    session = FakeSession("pc1")
    rows = [
        {"Category": "Hardware", "Name": "Model", "Value": "OptiPlex 7090"},
        {"Category": "Software", "Name": "7-Zip", "Value": "23.01"},
    ]
    session.register("Win32_ComputerSystem", stdout=json.dumps(rows))

    assert Inventory().run(session) == rows


def test_usb_no_devices():
    session = FakeSession("pc1")

    assert UsbDevices().run(session) == []


def test_push_file_requires_source(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        PushFile(tmp_path / "missing.txt", r"C:\Temp\x.txt")


def test_push_file_uploads(tmp_path: Path):
    source = tmp_path / "motd.txt"
    source.write_bytes(b"welcome")
    session = FakeSession("pc1")

    assert PushFile(source, r"C:\Users\Public\motd.txt").run(session) is None
    assert "C:\\Users\\Public\\motd.txt" in session.scripts[0]
    assert any("FromBase64String" in s for s in session.scripts)


def test_install_msi_command(tmp_path: Path):
    installer = tmp_path / "app.msi"
    installer.write_bytes(b"msi")

    file_path, arguments = InstallApp(installer, args="ALLUSERS=1").command()

    assert file_path == "msiexec.exe"
    assert arguments == '/i "C:\\Windows\\Temp\\labfleet\\app.msi" /qn /norestart ALLUSERS=1'


def test_install_exe_command(tmp_path: Path):
    installer = tmp_path / "setup.exe"
    installer.write_bytes(b"exe")

    file_path, arguments = InstallApp(installer, args="/S").command()

    assert file_path == "C:\\Windows\\Temp\\labfleet\\setup.exe"
    assert arguments == "/S"


def test_install_reports_exit_code(tmp_path: Path):
    installer = tmp_path / "app.msi"
    installer.write_bytes(b"msi")
    session = FakeSession("pc1")
    session.register("Start-Process", stdout="3010\r\n")

    rows = InstallApp(installer).run(session)

    assert rows == [{"Installer": "app.msi", "ExitCode": 3010}]


def test_install_bad_exit_code_raises(tmp_path: Path):
    installer = tmp_path / "app.msi"
    installer.write_bytes(b"msi")
    session = FakeSession("pc1")
    session.register("Start-Process", stdout="1603\r\n")

    with pytest.raises(RemoteExecutionError, match="1603"):
        InstallApp(installer).run(session)


def test_install_precondition(tmp_path: Path):
    installer = tmp_path / "app.msi"
    installer.write_bytes(b"msi")
    session = FakeSession("pc1")
    session.register("UserName", stdout=json.dumps({"UserName": "LAB\\bob"}))

    assert InstallApp(installer).precondition(session) == "user LAB\\bob logged on"
    assert InstallApp(installer, force=True).precondition(session) is None
