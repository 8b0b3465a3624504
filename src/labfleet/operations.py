"""Remote operations: the unit of work run against each reachable host."""

from abc import ABC, abstractmethod
from pathlib import Path, PureWindowsPath
from typing import Any

from labfleet.errors import RemoteExecutionError
from labfleet.remote import RemoteSession, ps_quote, run_json, upload


Rows = list[dict[str, Any]]

# Staging directory for files pushed ahead of an install.
REMOTE_STAGING = r"C:\Windows\Temp\labfleet"

# msiexec/setup exit codes that mean the install worked.
INSTALL_OK_CODES = frozenset({0, 1641, 3010})


class RemoteOperation(ABC):
    """Shared surface for everything the dispatcher can run on a host.

    Subclasses set name and title, list the report columns, and either return
    rows from run() or, when produces_result is False, return None.
    """

    name: str = ""
    title: str = ""
    produces_result: bool = True
    columns: list[str] = []

    def precondition(self, session: RemoteSession) -> str | None:
        """Return a reason to skip this host, or None to proceed."""
        return None

    @abstractmethod
    def run(self, session: RemoteSession) -> Rows | None:
        """Perform the operation in an open session."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name})"


def logged_on_user(session: RemoteSession) -> str | None:
    """Name of the interactive user on the host, or None if nobody is logged on."""
    rows = run_json(session, "Get-CimInstance Win32_ComputerSystem | Select-Object UserName")
    if not rows:
        return None
    return rows[0].get("UserName") or None


class _DisturbingOperation(RemoteOperation):
    """Operation that must not interrupt a logged-on user unless forced."""

    def __init__(self, force: bool = False):
        self.force = force

    def precondition(self, session: RemoteSession) -> str | None:
        if self.force:
            return None
        user = logged_on_user(session)
        if user:
            return f"user {user} logged on"
        return None


class DefenderStatus(RemoteOperation):
    """Anti-malware engine and last-scan status from Microsoft Defender."""

    name = "scan"
    title = "DefenderStatus"
    columns = [
        "AntivirusEnabled",
        "RealTimeProtectionEnabled",
        "AntivirusSignatureVersion",
        "AntivirusSignatureLastUpdated",
        "QuickScanEndTime",
        "FullScanEndTime",
        "ThreatsDetected",
    ]

    SCRIPT = (
        "$s = Get-MpComputerStatus; "
        "$t = @(Get-MpThreatDetection -ErrorAction SilentlyContinue).Count; "
        "[pscustomobject]@{"
        "AntivirusEnabled = $s.AntivirusEnabled; "
        "RealTimeProtectionEnabled = $s.RealTimeProtectionEnabled; "
        "AntivirusSignatureVersion = $s.AntivirusSignatureVersion; "
        "AntivirusSignatureLastUpdated = \"$($s.AntivirusSignatureLastUpdated.ToString('s'))\"; "
        "QuickScanEndTime = \"$(if ($s.QuickScanEndTime) { $s.QuickScanEndTime.ToString('s') })\"; "
        "FullScanEndTime = \"$(if ($s.FullScanEndTime) { $s.FullScanEndTime.ToString('s') })\"; "
        "ThreatsDetected = $t}"
    )

    def run(self, session: RemoteSession) -> Rows:
        return run_json(session, self.SCRIPT)


class Inventory(RemoteOperation):
    """Hardware summary plus installed software from the Uninstall keys."""

    name = "inventory"
    title = "Inventory"
    columns = ["Category", "Name", "Value"]

    SCRIPT = (
        "$cs = Get-CimInstance Win32_ComputerSystem; "
        "$os = Get-CimInstance Win32_OperatingSystem; "
        "$bios = Get-CimInstance Win32_BIOS; "
        "$cpu = Get-CimInstance Win32_Processor | Select-Object -First 1; "
        "$hw = [ordered]@{"
        "Manufacturer = $cs.Manufacturer; Model = $cs.Model; "
        "SerialNumber = $bios.SerialNumber; Processor = $cpu.Name; "
        "MemoryGB = [math]::Round($cs.TotalPhysicalMemory / 1GB, 1); "
        "OS = $os.Caption; OSVersion = $os.Version}; "
        "$out = foreach ($k in $hw.Keys) { [pscustomobject]@{Category = 'Hardware'; Name = $k; Value = \"$($hw[$k])\"} }; "
        "$keys = 'HKLM:\\Software\\Microsoft\\Windows\\CurrentVersion\\Uninstall\\*',"
        "'HKLM:\\Software\\WOW6432Node\\Microsoft\\Windows\\CurrentVersion\\Uninstall\\*'; "
        "$sw = Get-ItemProperty $keys -ErrorAction SilentlyContinue | Where-Object DisplayName "
        "| Sort-Object DisplayName -Unique "
        "| ForEach-Object { [pscustomobject]@{Category = 'Software'; Name = $_.DisplayName; Value = \"$($_.DisplayVersion)\"} }; "
        "@($out) + @($sw)"
    )

    def run(self, session: RemoteSession) -> Rows:
        return run_json(session, self.SCRIPT)


class UsbDevices(RemoteOperation):
    """USB devices currently present on the host."""

    name = "usb"
    title = "UsbDevices"
    columns = ["FriendlyName", "Class", "Status", "InstanceId"]

    SCRIPT = (
        "Get-PnpDevice -PresentOnly | Where-Object { $_.InstanceId -like 'USB*' } "
        "| Select-Object FriendlyName, Class, Status, InstanceId"
    )

    def run(self, session: RemoteSession) -> Rows:
        return run_json(session, self.SCRIPT)


class Reboot(_DisturbingOperation):
    """Schedule a restart a few seconds out and return immediately."""

    name = "reboot"
    title = "Reboot"
    produces_result = False

    DELAY_SECONDS = 5

    def run(self, session: RemoteSession) -> None:
        result = session.run_ps(
            f"shutdown.exe /r /f /t {self.DELAY_SECONDS} /c 'Restart requested by labfleet'"
        )
        if result.status_code != 0:
            raise RemoteExecutionError(result.stderr.strip() or f"shutdown exited {result.status_code}")
        return None


class PushFile(RemoteOperation):
    """Copy a local file to the same path on every host.

    Args:
        source: Local file to send.
        destination: Absolute Windows path on the host.

    Raises:
        FileNotFoundError: If source does not exist.
    """

    name = "push"
    title = "PushFile"
    produces_result = False

    def __init__(self, source: Path, destination: str):
        self.source = Path(source)
        if not self.source.is_file():
            raise FileNotFoundError(f"Source file {self.source} does not exist.")
        self.destination = destination

    def run(self, session: RemoteSession) -> None:
        upload(session, self.source, self.destination)
        return None


class InstallApp(_DisturbingOperation):
    """Stage an installer on the host and run it silently.

    .msi packages go through msiexec /qn; anything else runs with args as
    given.

    Args:
        installer: Local installer file.
        args: Extra arguments for the installer.
        force: Install even when a user is logged on.

    Raises:
        FileNotFoundError: If installer does not exist.
    """

    name = "install"
    title = "InstallApp"
    columns = ["Installer", "ExitCode"]

    def __init__(self, installer: Path, args: str = "", force: bool = False):
        super().__init__(force=force)
        self.installer = Path(installer)
        if not self.installer.is_file():
            raise FileNotFoundError(f"Installer {self.installer} does not exist.")
        self.args = args

    @property
    def remote_path(self) -> str:
        return str(PureWindowsPath(REMOTE_STAGING) / self.installer.name)

    def command(self) -> tuple[str, str]:
        """FilePath and ArgumentList for Start-Process."""
        if self.installer.suffix.lower() == ".msi":
            arguments = f'/i "{self.remote_path}" /qn /norestart {self.args}'.strip()
            return "msiexec.exe", arguments
        return self.remote_path, self.args

    def run(self, session: RemoteSession) -> Rows:
        upload(session, self.installer, self.remote_path)
        file_path, arguments = self.command()
        script = f"$p = Start-Process -FilePath {ps_quote(file_path)} -Wait -PassThru"
        if arguments:
            script += f" -ArgumentList {ps_quote(arguments)}"
        script += "; $p.ExitCode"
        result = session.run_ps(script)
        if result.status_code != 0:
            raise RemoteExecutionError(result.stderr.strip() or f"exit code {result.status_code}")
        try:
            exit_code = int(result.stdout.strip().splitlines()[-1])
        except (IndexError, ValueError):
            raise RemoteExecutionError(f"installer returned no exit code: {result.stdout!r}") from None
        if exit_code not in INSTALL_OK_CODES:
            raise RemoteExecutionError(f"installer exited with {exit_code}")
        return [{"Installer": self.installer.name, "ExitCode": exit_code}]
