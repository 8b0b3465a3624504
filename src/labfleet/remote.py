"""Remote execution over WinRM: PowerShell sessions against lab hosts."""

import base64
import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import winrm
from loguru import logger

from labfleet.config import LabConfig
from labfleet.errors import RemoteExecutionError


PASSWORD_ENV = "LABFLEET_WINRM_PASSWORD"

# Raw bytes per PowerShell invocation. run_ps re-encodes the script as
# UTF-16 base64, which must stay under the 8191 character command line.
UPLOAD_CHUNK_SIZE = 1500


@dataclass
class PsResult:
    """Result of a PowerShell script on a host.

    Attributes:
        stdout: Decoded standard output.
        stderr: Decoded standard error (CLIXML noise included).
        status_code: Script exit code.
        host: Host the script ran on.
    """

    stdout: str
    stderr: str
    status_code: int
    host: str


class RemoteSession(Protocol):
    """An open execution context on one host."""

    host: str

    def run_ps(self, script: str) -> PsResult:
        ...

    def close(self) -> None:
        ...


class Transport(Protocol):
    """Opens remote sessions."""

    def open(self, host: str) -> RemoteSession:
        ...


def ps_quote(value: str) -> str:
    """Quote value as a PowerShell single-quoted string literal."""
    return "'" + value.replace("'", "''") + "'"


def run_json(session: RemoteSession, script: str) -> list[dict[str, Any]]:
    """Run a script piped through ConvertTo-Json and parse its output.

    ConvertTo-Json emits a bare object for one item and nothing for zero, so
    the result is normalized to a list.

    Args:
        session: Open session.
        script: PowerShell producing objects.

    Returns:
        list[dict]: One dict per emitted object.

    Raises:
        RemoteExecutionError: On non-zero exit or unparseable output.
    """
    result = session.run_ps(f"{script} | ConvertTo-Json -Depth 3 -Compress")
    if result.status_code != 0:
        raise RemoteExecutionError(_error_text(result))
    text = result.stdout.strip()
    if not text:
        return []
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise RemoteExecutionError(f"unparseable output from {session.host}: {exc}") from exc
    if isinstance(data, dict):
        return [data]
    return [item for item in data if isinstance(item, dict)]


def upload(session: RemoteSession, local_path: Path, remote_path: str) -> int:
    """Copy a local file to the host in base64 chunks over the session.

    Args:
        session: Open session.
        local_path: File to send.
        remote_path: Destination path on the host.

    Returns:
        int: Bytes written.

    Raises:
        RemoteExecutionError: If any chunk fails to write.
    """
    data = local_path.read_bytes()
    target = ps_quote(remote_path)
    prep = session.run_ps(
        f"$p = {target}; New-Item -ItemType Directory -Force -Path (Split-Path -Parent $p) | Out-Null; "
        "[IO.File]::WriteAllBytes($p, [byte[]]@())"
    )
    if prep.status_code != 0:
        raise RemoteExecutionError(_error_text(prep))

    for offset in range(0, len(data), UPLOAD_CHUNK_SIZE):
        chunk = base64.b64encode(data[offset:offset + UPLOAD_CHUNK_SIZE]).decode("ascii")
        result = session.run_ps(
            f"$b = [Convert]::FromBase64String('{chunk}'); "
            f"$f = [IO.File]::Open({target}, 'Append'); $f.Write($b, 0, $b.Length); $f.Close()"
        )
        if result.status_code != 0:
            raise RemoteExecutionError(_error_text(result))

    logger.debug(f"Uploaded {len(data)} bytes to {session.host}:{remote_path}")
    return len(data)


def _error_text(result: PsResult) -> str:
    message = result.stderr.strip() or result.stdout.strip()
    return message or f"exit code {result.status_code}"


class WinRMSession:
    """RemoteSession backed by a pywinrm Session.

    Args:
        host: Target hostname.
        session: Connected winrm.Session.
    """

    def __init__(self, host: str, session: winrm.Session):
        self.host = host
        self._session = session

    def run_ps(self, script: str) -> PsResult:
        try:
            response = self._session.run_ps(script)
        except Exception as exc:
            raise RemoteExecutionError(f"{type(exc).__name__}: {exc}") from exc
        return PsResult(
            stdout=response.std_out.decode("utf-8", errors="replace"),
            stderr=response.std_err.decode("utf-8", errors="replace"),
            status_code=response.status_code,
            host=self.host,
        )

    def close(self) -> None:
        # pywinrm opens a shell per command; only the HTTP session persists.
        transport = getattr(self._session.protocol, "transport", None)
        http = getattr(transport, "session", None)
        if http is not None:
            http.close()


class WinRMTransport:
    """Open WinRM sessions using the configured listener and auth.

    Args:
        config: Lab configuration.
    """

    def __init__(self, config: LabConfig):
        self.config = config

    def endpoint(self, host: str) -> str:
        return f"{self.config.winrm_scheme}://{host}:{self.config.winrm_port}/wsman"

    def open(self, host: str) -> RemoteSession:
        """Connect to host and verify the shell answers.

        Raises:
            RemoteExecutionError: If the session cannot be established.
        """
        timeout = self.config.remote_timeout
        try:
            session = winrm.Session(
                self.endpoint(host),
                auth=(self.config.winrm_username, os.environ.get(PASSWORD_ENV)),
                transport=self.config.winrm_transport,
                server_cert_validation="validate",
                operation_timeout_sec=timeout,
                read_timeout_sec=timeout + 10,
            )
            remote = WinRMSession(host, session)
            check = remote.run_ps("$env:COMPUTERNAME")
        except RemoteExecutionError as exc:
            raise RemoteExecutionError(f"connection error: {exc}") from exc
        except Exception as exc:
            raise RemoteExecutionError(f"connection error: {type(exc).__name__}: {exc}") from exc

        if check.status_code != 0:
            remote.close()
            raise RemoteExecutionError(f"connection error: {_error_text(check)}")
        logger.debug(f"WinRM: session open on {host} ({check.stdout.strip()})")
        return remote
