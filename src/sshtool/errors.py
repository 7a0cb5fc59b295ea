"""Exception hierarchy for sshtool."""


class SshtoolError(Exception):
    """Base class for every error raised by sshtool."""


class ConfigError(SshtoolError):
    """Raised for problems detected before any target is contacted."""


class TargetListError(ConfigError):
    """Raised when the target list cannot be parsed."""


class RequestError(ConfigError):
    """Raised when the execution request is inconsistent or points at missing files."""


class RemoteError(SshtoolError):
    """Base class for failures isolated to a single target."""


class LaunchError(RemoteError):
    """Raised when the ssh (or scp) executable cannot be started."""


class RemoteExitError(RemoteError):
    """Raised when a remote process exits with a non-zero status.

    Attributes:
        returncode: Exit status reported by the transport process.
    """

    def __init__(self, returncode: int, detail: str = ""):
        self.returncode = returncode
        message = f"exit status {returncode}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class CopyError(RemoteError):
    """Raised when copying a file or directory to a target fails."""


class UnsafeDestinationError(CopyError):
    """Raised when a copy destination lies outside the safe remote directory."""


class CaptureError(SshtoolError):
    """Raised when the raw output capture store cannot be set up or removed."""
