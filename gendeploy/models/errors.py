"""Error taxonomy for gendeploy.

Every error carries the exit code the CLI uses when it surfaces at the
command boundary.
"""
from typing import Optional


class GendeployError(Exception):
    """Base class for all gendeploy errors."""

    exit_code = 1


class ConfigError(GendeployError):
    """Raised when the deployment configuration file is invalid."""

    exit_code = 3


class ValidationError(GendeployError):
    """Raised when a configuration bundle fails validation.

    Nothing has been deployed and no remote state was touched.
    """

    exit_code = 3


class TransportError(GendeployError):
    """Raised when a target cannot be reached or a transfer fails."""

    exit_code = 4


class TransientTransportError(TransportError):
    """Failure to establish a connection (DNS race, refused, unreachable). Worth retrying."""


class AuthenticationError(TransportError):
    """Key-based authentication was rejected. Never retried."""


class CommandTimeout(TransportError):
    """A remote command did not finish within its time limit."""

    def __init__(self, command: str, timeout: float):
        super().__init__(f"Command timed out after {timeout}s: {command}")
        self.command = command
        self.timeout = timeout


class StoreCorruptionError(GendeployError):
    """Generation bookkeeping on the target is unreadable or malformed."""

    exit_code = 5


class LockError(GendeployError):
    """Raised when the per-target deployment lock cannot be acquired."""

    exit_code = 6


class ApplyError(GendeployError):
    """Remote activation failed or timed out."""

    exit_code = 2

    def __init__(
        self,
        message: str,
        generation_id: Optional[int] = None,
        exit_status: Optional[int] = None,
        stdout: str = "",
        stderr: str = "",
        timed_out: bool = False,
    ):
        super().__init__(message)
        self.generation_id = generation_id
        self.exit_status = exit_status
        self.stdout = stdout
        self.stderr = stderr
        self.timed_out = timed_out

    @property
    def diagnostics(self) -> str:
        """Captured remote output, stderr first."""
        parts = [part.strip() for part in (self.stderr, self.stdout) if part and part.strip()]
        return "\n".join(parts)


class RollbackFailure(GendeployError):
    """The previous generation could not be restored.

    The target may be running a broken configuration and needs an operator.
    """

    exit_code = 2


class DeploymentCancelled(GendeployError):
    """The session was cancelled before activation started."""

    exit_code = 130
