"""Generation records kept by the target's generation store."""
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class GenerationStatus(str, Enum):
    """Lifecycle of one applied (or attempted) configuration."""
    BUILDING = "building"
    ACTIVE = "active"
    SUPERSEDED = "superseded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


@dataclass
class Generation:
    """One numbered configuration state on a target host."""
    id: int
    bundle_fingerprint: str
    status: GenerationStatus = GenerationStatus.BUILDING
    created_at: Optional[str] = None
    activated_at: Optional[str] = None
    deactivated_at: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == GenerationStatus.ACTIVE

    @property
    def was_activated(self) -> bool:
        """True if this generation has ever been the running configuration."""
        return self.activated_at is not None
