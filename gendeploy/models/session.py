"""Per-invocation deployment session."""
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from gendeploy.models.bundle import ConfigBundle
from gendeploy.models.errors import DeploymentCancelled


class DeploymentResult(str, Enum):
    """Every deploy ends in exactly one of these."""
    SUCCESS = "success"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"

    @property
    def exit_code(self) -> int:
        return {
            DeploymentResult.SUCCESS: 0,
            DeploymentResult.ROLLED_BACK: 1,
            DeploymentResult.FAILED: 2,
        }[self]


@dataclass
class DeploymentSession:
    """Coordinator state for one deploy call. Never persisted."""
    bundle: Optional[ConfigBundle]
    target: str
    previous_generation_id: Optional[int] = None
    new_generation_id: Optional[int] = None
    result: Optional[DeploymentResult] = None
    noop: bool = False
    apply_started: bool = False
    error: Optional[Exception] = None
    _cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)

    def cancel(self) -> bool:
        """Request cancellation.

        Returns:
            True if the request can still take effect (activation not started)
        """
        self._cancel_event.set()
        return not self.apply_started

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_event.is_set()

    def check_cancelled(self) -> None:
        """Raise if cancelled. Ignored once activation has begun."""
        if self.cancel_requested and not self.apply_started:
            raise DeploymentCancelled(
                f"Deployment to {self.target} cancelled before activation"
            )
