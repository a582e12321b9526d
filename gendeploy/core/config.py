"""Runtime settings for gendeploy operations."""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


@dataclass
class GendeployConfig:
    """Runtime configuration, tunable through the environment.

    Attributes:
        apply_timeout: Seconds to wait for remote activation (default: 1800)
        probe_timeout: Seconds allowed per health probe (default: 5)
        connect_timeout: SSH connect timeout in seconds (default: 10)
        transport_retries: Attempts for transient connection failures (default: 3)
        retry_delay: Initial backoff between transport attempts (default: 2.0)
        lock_dir: Directory holding per-target lock files
        lock_timeout: Seconds to wait for a target lock (0 = fail immediately)
    """

    apply_timeout: int = 1800  # remote builds can hang
    probe_timeout: float = 5.0
    connect_timeout: int = 10
    transport_retries: int = 3
    retry_delay: float = 2.0
    lock_dir: str = str(Path.home() / ".gendeploy" / "locks")
    lock_timeout: int = 0

    @classmethod
    def from_env(cls) -> "GendeployConfig":
        """Create config from GENDEPLOY_* environment variables."""
        return cls(
            apply_timeout=int(os.getenv("GENDEPLOY_APPLY_TIMEOUT", cls.apply_timeout)),
            probe_timeout=float(os.getenv("GENDEPLOY_PROBE_TIMEOUT", cls.probe_timeout)),
            connect_timeout=int(os.getenv("GENDEPLOY_CONNECT_TIMEOUT", cls.connect_timeout)),
            transport_retries=int(os.getenv("GENDEPLOY_TRANSPORT_RETRIES", cls.transport_retries)),
            retry_delay=float(os.getenv("GENDEPLOY_RETRY_DELAY", cls.retry_delay)),
            lock_dir=os.getenv("GENDEPLOY_LOCK_DIR", cls.lock_dir),
            lock_timeout=int(os.getenv("GENDEPLOY_LOCK_TIMEOUT", cls.lock_timeout)),
        )


_config: Optional[GendeployConfig] = None


def get_config() -> GendeployConfig:
    """Get the global runtime configuration (created from environment on first use)."""
    global _config
    if _config is None:
        _config = GendeployConfig.from_env()
    return _config


def set_config(config: Optional[GendeployConfig]):
    """Override the global runtime configuration. Pass None to reset."""
    global _config
    _config = config
