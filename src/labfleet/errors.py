"""Exception taxonomy for labfleet.

Resolution errors abort a run before any host is contacted. Per-host errors
are raised inside the dispatcher and downgraded to outcomes.
"""


class LabFleetError(Exception):
    """Base class for all labfleet errors."""

    pass


class InvalidSpecError(LabFleetError):
    """Raised when a host specification is empty or unusable."""

    pass


class UnresolvableSpecError(LabFleetError):
    """Raised when a prefix expansion or host file yields zero hosts."""

    pass


class DirectoryError(LabFleetError):
    """Raised when the directory service cannot be queried."""

    pass


class UnreachableHostError(LabFleetError):
    """Raised when a host does not answer its liveness probe."""

    def __init__(self, host: str):
        super().__init__("unreachable")
        self.host = host


class RemoteExecutionError(LabFleetError):
    """Raised when a remote session cannot be opened or a script fails."""

    pass


class PreconditionSkipped(LabFleetError):
    """Raised when an operation declines to run on a host.

    Not strictly an error: the host is recorded as skipped.
    """

    pass


class HostAbandoned(LabFleetError):
    """Raised inside a host's session once the dispatcher has given up on it.

    Stops abandoned work at its next remote call after a batch timeout or a
    second interrupt.
    """

    def __init__(self, host: str):
        super().__init__(f"{host}: abandoned")
        self.host = host
