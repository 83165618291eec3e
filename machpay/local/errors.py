"""
Error types raised by the gateway lifecycle manager.

Every error derives from `GatewayError` so the console can report any
lifecycle failure with a single handler while still letting callers branch
on the specific condition (e.g. treating `NotRunningError` as a non-fatal
status message).
"""
from typing import Optional


class GatewayError(RuntimeError):
    """Base error for installer and supervisor failures."""


#* --- Installer / Registry ---
class NotInstalledError(GatewayError):
    """No gateway binary exists at the install path."""


class VersionParseError(GatewayError):
    """The installed binary printed something that is not a version."""


class RegistryError(GatewayError):
    """The release registry could not be reached or answered with an error."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(RegistryError):
    """The repository has no releases, or the requested tag does not exist."""


class ParseError(RegistryError):
    """The registry answered with a body that is not a valid release."""


class AssetNotFoundError(GatewayError):
    """The release has no asset for the local platform."""


class DownloadError(GatewayError):
    """Fetching an asset failed or was interrupted."""


class ChecksumMismatchError(GatewayError):
    """The downloaded asset does not match its checksum manifest entry."""

    def __init__(self, expected: str, actual: str) -> None:
        super().__init__(
            f"checksum mismatch:\n  expected: {expected}\n  got:      {actual}"
        )
        self.expected = expected
        self.actual = actual


class BinaryNotFoundInArchiveError(GatewayError):
    """The release archive does not contain the gateway executable."""


class InstallError(GatewayError):
    """Unpacking or moving the binary into place failed."""


#* --- Supervisor ---
class AlreadyRunningError(GatewayError):
    """A live gateway process is already recorded in the PID file."""

    def __init__(self, message: str = "gateway is already running") -> None:
        super().__init__(message)


class NotRunningError(GatewayError):
    """No live gateway process is recorded in the PID file."""

    def __init__(self, message: str = "gateway is not running") -> None:
        super().__init__(message)


class ProcessExitError(GatewayError):
    """A foreground gateway exited with a non-zero status."""

    def __init__(self, returncode: int) -> None:
        super().__init__(f"gateway exited with status {returncode}")
        self.returncode = returncode


class HealthCheckError(GatewayError):
    """A single health check failed."""


class HealthCheckTimeoutError(GatewayError):
    """The gateway did not become healthy before the deadline."""


class LogNotFoundError(GatewayError):
    """The gateway log file does not exist."""
