"""YAML deployment configuration loader.

A missing config file is not an error: every target can also be given on
the command line as ``[user@]host[:port]`` or ``local`` and then uses the
built-in defaults.
"""
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from gendeploy.config.probe_parser import ProbeParser
from gendeploy.config.validator import DeployConfigValidator
from gendeploy.core.bundle_loader import (
    DEFAULT_IGNORE,
    DEFAULT_MANIFEST,
    DEFAULT_MAX_FILE_SIZE,
    BundleLoader,
)
from gendeploy.core.config import get_config
from gendeploy.models.errors import ConfigError
from gendeploy.models.health import ProbeSpec

DEFAULT_STATE_DIR = "/var/lib/gendeploy"
DEFAULT_ACTIVATION_COMMAND = "cd {bundle_dir} && nixos-rebuild switch --flake .#nixos"


@dataclass
class TargetConfig:
    """Resolved settings for one deployment target."""
    name: str
    host: str
    user: Optional[str] = None
    port: Optional[int] = None
    identity_file: Optional[str] = None
    local: bool = False
    sudo: bool = False
    state_dir: str = DEFAULT_STATE_DIR
    activation_command: str = DEFAULT_ACTIVATION_COMMAND
    rollback_command: Optional[str] = None
    apply_timeout: float = 1800
    probe_timeout: float = 5.0
    probes: List[ProbeSpec] = field(default_factory=list)

    @property
    def display_name(self) -> str:
        if self.local:
            return self.name
        destination = f"{self.user}@{self.host}" if self.user else self.host
        return destination if destination == self.name else f"{self.name} ({destination})"


@dataclass
class DeployConfig:
    """Processed deployment configuration."""
    defaults: Dict[str, Any] = field(default_factory=dict)
    bundle: Dict[str, Any] = field(default_factory=dict)
    probes: List[Dict[str, Any]] = field(default_factory=list)
    targets: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    source: Optional[Path] = None

    def bundle_loader(self) -> BundleLoader:
        """Build a bundle loader from the 'bundle' section."""
        return BundleLoader(
            ignore=self.bundle.get('ignore', DEFAULT_IGNORE),
            manifest=self.bundle.get('manifest', DEFAULT_MANIFEST),
            required_files=self.bundle.get('required_files'),
            max_file_size=self.bundle.get('max_file_size', DEFAULT_MAX_FILE_SIZE),
        )

    def target(self, name: str) -> TargetConfig:
        """Resolve a target by configured name or raw [user@]host[:port] string."""
        runtime = get_config()
        settings: Dict[str, Any] = {
            'state_dir': DEFAULT_STATE_DIR,
            'activation_command': DEFAULT_ACTIVATION_COMMAND,
            'rollback_command': None,
            'apply_timeout': runtime.apply_timeout,
            'probe_timeout': runtime.probe_timeout,
            'sudo': False,
        }
        settings.update({k: v for k, v in self.defaults.items() if v is not None})

        configured = self.targets.get(name)
        if configured is not None:
            configured = configured or {}
            settings.update({k: v for k, v in configured.items() if k != 'probes' and v is not None})
            local = bool(configured.get('local', False))
            host = configured.get('host', name)
            user = configured.get('user')
            port = configured.get('port')
        else:
            local, host, user, port = _parse_raw_target(name)
            configured = {}

        if local:
            host = "localhost"

        probe_entries = _merge_probes(self.probes, configured.get('probes') or [])
        probes = ProbeParser().parse_all(probe_entries, host=host)

        return TargetConfig(
            name=name,
            host=host,
            user=user,
            port=port,
            identity_file=settings.get('identity_file'),
            local=local,
            sudo=bool(settings['sudo']),
            state_dir=str(Path(settings['state_dir']).expanduser()),
            activation_command=settings['activation_command'],
            rollback_command=settings['rollback_command'],
            apply_timeout=float(settings['apply_timeout']),
            probe_timeout=float(settings['probe_timeout']),
            probes=probes,
        )

    def target_names(self) -> List[str]:
        return list(self.targets.keys())


class DeployConfigLoader:
    """Loads and validates gendeploy.yml."""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = Path(config_path) if config_path else None
        self.validator = DeployConfigValidator()
        self.raw_config: Optional[Dict[str, Any]] = None

    def load(self) -> DeployConfig:
        """Load YAML configuration.

        Returns:
            DeployConfig (empty defaults when no config path was given)

        Raises:
            FileNotFoundError: An explicit config path does not exist
            ConfigError: The file is not valid YAML or fails validation
        """
        if self.config_path is None:
            return DeployConfig()

        if not self.config_path.exists():
            raise FileNotFoundError(f"Config file not found: {self.config_path}")

        try:
            with open(self.config_path) as f:
                self.raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {self.config_path}: {e}") from e

        if not self.raw_config:
            return DeployConfig(source=self.config_path)

        self.validator.validate(self.raw_config)

        return DeployConfig(
            defaults=dict(self.raw_config.get('defaults') or {}),
            bundle=dict(self.raw_config.get('bundle') or {}),
            probes=list(self.raw_config.get('probes') or []),
            targets=dict(self.raw_config.get('targets') or {}),
            source=self.config_path,
        )


def _parse_raw_target(name: str):
    """Split 'local', 'local:<label>' or '[user@]host[:port]'."""
    if name == "local" or name.startswith("local:"):
        return True, "localhost", None, None

    user = None
    host = name
    port = None
    if "@" in host:
        user, host = host.split("@", 1)
    if host.count(":") == 1:
        host, port_text = host.split(":", 1)
        if not port_text.isdigit():
            raise ConfigError(f"Invalid port in target '{name}'")
        port = int(port_text)
    if not host:
        raise ConfigError(f"Invalid target '{name}'")
    return False, host, user, port


def _merge_probes(shared: List[Dict[str, Any]], specific: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Shared probes first, target probes replace shared ones of the same name."""
    overrides = {probe.get('name'): probe for probe in specific}
    merged = [overrides.pop(probe.get('name'), probe) for probe in shared]
    merged.extend(probe for probe in specific if probe.get('name') in overrides)
    return merged
