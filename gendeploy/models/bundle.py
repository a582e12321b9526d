"""Configuration bundle model."""
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from types import MappingProxyType
from typing import Mapping


@dataclass(frozen=True)
class ConfigBundle:
    """A versioned, immutable snapshot of declarative configuration files.

    Attributes:
        fingerprint: SHA-256 hex digest over the sorted (path, content) pairs
        files: Relative POSIX path -> file content, in sorted path order
        created_at: When the bundle was assembled
        root: Directory the bundle was loaded from
    """
    fingerprint: str
    files: Mapping[str, bytes]
    created_at: datetime
    root: Path = field(default=Path("."))

    def __post_init__(self):
        # Freeze the mapping so a bundle can never drift from its fingerprint
        object.__setattr__(self, "files", MappingProxyType(dict(self.files)))

    @property
    def short_fingerprint(self) -> str:
        return self.fingerprint[:12]

    @property
    def total_size(self) -> int:
        return sum(len(content) for content in self.files.values())

    def __len__(self) -> int:
        return len(self.files)
