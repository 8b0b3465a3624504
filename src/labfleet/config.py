"""Lab configuration loading and validation."""

import os
from pathlib import Path

import tomllib
from pydantic import BaseModel, field_validator, model_validator


DEFAULT_CONFIG_PATH = Path.home() / ".config" / "labfleet" / "lab.toml"


class LabConfig(BaseModel):
    """Lab configuration model.

    Every component receives this object at construction; nothing else reads
    environment-derived settings.

    Attributes:
        report_root: Directory that receives per-run report folders.
        remote_timeout: Seconds a WinRM operation may take before failing.
        probe_timeout: Seconds a single liveness probe may take.
        directory_domain: AD domain (or domain controller) queried for
            prefix expansion. None falls back to known_hosts.
        known_hosts: Static host list used for prefix expansion when no
            directory domain is configured.
        liveness_threshold: Batches smaller than this skip the up-front
            liveness pass. 0 always probes.
        max_concurrent: Dispatch workers. 1 means sequential.
        max_concurrent_probes: Concurrent probes during the liveness pass.
        batch_timeout: Cap in seconds on a whole dispatch. None is unbounded.
        winrm_scheme: "http" or "https".
        winrm_port: WinRM listener port.
        winrm_transport: pywinrm auth transport (kerberos, ntlm, ...).
        winrm_username: Account used for WinRM. None uses the ambient ticket.
    """

    report_root: Path = Path("~/labfleet-reports")
    remote_timeout: int = 30
    probe_timeout: int = 2
    directory_domain: str | None = None
    known_hosts: list[str] = []
    liveness_threshold: int = 20
    max_concurrent: int = 1
    max_concurrent_probes: int = 32
    batch_timeout: float | None = None
    winrm_scheme: str = "http"
    winrm_port: int = 5985
    winrm_transport: str = "kerberos"
    winrm_username: str | None = None

    @field_validator("report_root", "directory_domain", "winrm_username", mode="before")
    @classmethod
    def expand_env_vars(cls, v):
        """Expand environment variables and ~ in string fields.

        Args:
            v: Raw value that may contain env var references.

        Returns:
            The value with env vars expanded, or v unchanged if not a string.
        """
        if isinstance(v, str):
            return os.path.expanduser(os.path.expandvars(v))
        return v

    @field_validator("winrm_scheme")
    @classmethod
    def check_scheme(cls, v: str) -> str:
        """Only plain and TLS WinRM listeners exist."""
        if v not in ("http", "https"):
            raise ValueError(f"winrm_scheme must be 'http' or 'https', not {v!r}")
        return v

    @model_validator(mode="after")
    def check_limits(self) -> "LabConfig":
        """Reject timeouts and worker counts that would never make progress.

        Returns:
            LabConfig: The validated config.
        """
        if self.remote_timeout <= 0 or self.probe_timeout <= 0:
            raise ValueError("timeouts must be positive")
        if self.max_concurrent < 1 or self.max_concurrent_probes < 1:
            raise ValueError("concurrency limits must be at least 1")
        if self.liveness_threshold < 0:
            raise ValueError("liveness_threshold cannot be negative")
        if self.batch_timeout is not None and self.batch_timeout <= 0:
            raise ValueError("batch_timeout must be positive when set")
        return self

    @property
    def reports_dir(self) -> Path:
        """report_root with ~ expanded."""
        return self.report_root.expanduser()


def load_config(path: Path | None = None) -> LabConfig:
    """Load lab configuration from TOML file.

    Reads the config from the given path (or the default
    ~/.config/labfleet/lab.toml). If the file doesn't exist,
    returns a LabConfig with default values.

    Args:
        path: Path to the config file. Defaults to ~/.config/labfleet/lab.toml.

    Returns:
        LabConfig: The loaded and validated configuration.

    Raises:
        pydantic.ValidationError: If the config file contains invalid values.
    """
    config_path = path or DEFAULT_CONFIG_PATH

    if not config_path.exists():
        return LabConfig()

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    return LabConfig(**data)
