"""Health probe and report models."""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class ProbeKind(str, Enum):
    """Supported post-deployment probes."""
    SERVICE_ACTIVE = "service-active"
    PORT_OPEN = "port-open"
    HTTP_STATUS = "http-status"
    COMMAND = "command"
    DISK_USAGE = "disk-usage"


@dataclass
class ProbeSpec:
    """A named, operator-supplied probe definition."""
    name: str
    kind: ProbeKind
    service: Optional[str] = None
    port: Optional[int] = None
    host: Optional[str] = None
    url: Optional[str] = None
    expected_codes: Tuple[int, ...] = (200,)
    command: Optional[str] = None
    path: str = "/"
    max_percent: int = 90
    timeout: Optional[float] = None

    def __post_init__(self):
        if not self.name:
            raise ValueError("Probe must have a name")

        required = {
            ProbeKind.SERVICE_ACTIVE: "service",
            ProbeKind.PORT_OPEN: "port",
            ProbeKind.HTTP_STATUS: "url",
            ProbeKind.COMMAND: "command",
        }.get(self.kind)
        if required and getattr(self, required) in (None, ""):
            raise ValueError(f"Probe '{self.name}' ({self.kind.value}) requires '{required}'")

        if not 0 < self.max_percent <= 100:
            raise ValueError(f"Probe '{self.name}': max_percent must be between 1 and 100")


@dataclass
class CheckResult:
    """Outcome of one probe."""
    name: str
    passed: bool
    detail: str = ""


@dataclass
class HealthReport:
    """Aggregated probe results for one generation."""
    generation_id: int
    checks: List[CheckResult] = field(default_factory=list)
    checked_at: str = field(default_factory=lambda: datetime.now().isoformat())

    @property
    def overall_passed(self) -> bool:
        return all(check.passed for check in self.checks)

    @property
    def failed_checks(self) -> List[CheckResult]:
        return [check for check in self.checks if not check.passed]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "generation_id": self.generation_id,
            "checked_at": self.checked_at,
            "overall_passed": self.overall_passed,
            "checks": [
                {"name": c.name, "passed": c.passed, "detail": c.detail}
                for c in self.checks
            ],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HealthReport":
        return cls(
            generation_id=int(data["generation_id"]),
            checks=[
                CheckResult(name=c["name"], passed=bool(c["passed"]), detail=c.get("detail", ""))
                for c in data.get("checks", [])
            ],
            checked_at=data.get("checked_at", ""),
        )
