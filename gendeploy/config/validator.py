"""Deployment configuration validation logic."""
import re
from typing import Any, Dict, List

from gendeploy.core.logger import get_logger
from gendeploy.models.errors import ConfigError
from gendeploy.models.health import ProbeKind

logger = get_logger(__name__)

KNOWN_SECTIONS = {'defaults', 'bundle', 'probes', 'targets'}
DEFAULT_KEYS = {
    'state_dir', 'activation_command', 'rollback_command',
    'apply_timeout', 'probe_timeout', 'sudo',
}
BUNDLE_KEYS = {'manifest', 'required_files', 'ignore', 'max_file_size'}
TARGET_KEYS = {'host', 'user', 'port', 'identity_file', 'probes', 'local'} | DEFAULT_KEYS
ACTIVATION_PLACEHOLDERS = {'bundle_dir', 'fingerprint', 'generation'}


class DeployConfigValidator:
    """Validates the raw YAML structure before it is turned into objects."""

    def validate(self, config: Dict[str, Any]) -> None:
        """Validate deployment configuration.

        Raises:
            ConfigError: If validation fails
        """
        errors: List[str] = []

        if not isinstance(config, dict):
            raise ConfigError("Configuration root must be a mapping")

        for section in config:
            if section not in KNOWN_SECTIONS:
                logger.warning(f"Ignoring unknown configuration section '{section}'")

        errors.extend(self._validate_mapping(config.get('defaults'), 'defaults', DEFAULT_KEYS))
        errors.extend(self._validate_defaults(config.get('defaults') or {}, 'defaults'))
        errors.extend(self._validate_bundle(config.get('bundle')))
        errors.extend(self._validate_probes(config.get('probes'), 'probes'))

        targets = config.get('targets') or {}
        if not isinstance(targets, dict):
            errors.append("'targets' must be a mapping of name -> target settings")
            targets = {}

        for name, target in targets.items():
            if not re.match(r'^[A-Za-z0-9._@:-]+$', str(name)):
                errors.append(f"Target name '{name}' contains invalid characters")
            target = target or {}
            errors.extend(self._validate_mapping(target, f"targets.{name}", TARGET_KEYS))
            if not isinstance(target, dict):
                continue
            errors.extend(self._validate_defaults(target, f"targets.{name}"))
            errors.extend(self._validate_probes(target.get('probes'), f"targets.{name}.probes"))
            port = target.get('port')
            if port is not None and (not isinstance(port, int) or not 0 < port < 65536):
                errors.append(f"targets.{name}.port must be an integer between 1 and 65535")

        if errors:
            raise ConfigError("Configuration validation failed:\n  " + "\n  ".join(errors))

    @staticmethod
    def _validate_mapping(section: Any, label: str, allowed: set) -> List[str]:
        if section is None:
            return []
        if not isinstance(section, dict):
            return [f"'{label}' must be a mapping"]
        unknown = sorted(set(section) - allowed)
        if unknown:
            return [f"'{label}' has unknown key(s): {', '.join(unknown)}"]
        return []

    @staticmethod
    def _validate_defaults(section: Dict[str, Any], label: str) -> List[str]:
        errors = []
        for key in ('apply_timeout', 'probe_timeout'):
            value = section.get(key)
            if value is not None and (not isinstance(value, (int, float)) or value <= 0):
                errors.append(f"{label}.{key} must be a positive number")

        for key in ('activation_command', 'rollback_command'):
            command = section.get(key)
            if command is None:
                continue
            if not isinstance(command, str) or not command.strip():
                errors.append(f"{label}.{key} must be a non-empty string")
                continue
            used = set(re.findall(r'{(\w+)}', command))
            unknown = used - ACTIVATION_PLACEHOLDERS
            if unknown:
                errors.append(
                    f"{label}.{key} uses unknown placeholder(s): {', '.join(sorted(unknown))}"
                )

        state_dir = section.get('state_dir')
        if state_dir is not None and not str(state_dir).startswith(('/', '~')):
            errors.append(f"{label}.state_dir must be an absolute path")
        return errors

    def _validate_bundle(self, bundle: Any) -> List[str]:
        errors = self._validate_mapping(bundle, 'bundle', BUNDLE_KEYS)
        if errors or not bundle:
            return errors

        size = bundle.get('max_file_size')
        if size is not None and (not isinstance(size, int) or size <= 0):
            errors.append("bundle.max_file_size must be a positive integer (bytes)")
        for key in ('required_files', 'ignore'):
            value = bundle.get(key)
            if value is not None and not (
                isinstance(value, list) and all(isinstance(item, str) for item in value)
            ):
                errors.append(f"bundle.{key} must be a list of strings")
        return errors

    @staticmethod
    def _validate_probes(probes: Any, label: str) -> List[str]:
        if probes is None:
            return []
        if not isinstance(probes, list):
            return [f"'{label}' must be a list"]

        errors = []
        kinds = {kind.value for kind in ProbeKind}
        seen = set()
        for index, probe in enumerate(probes):
            if not isinstance(probe, dict):
                errors.append(f"{label}[{index}] must be a mapping")
                continue
            name = probe.get('name')
            if not name:
                errors.append(f"{label}[{index}] is missing 'name'")
            elif name in seen:
                errors.append(f"{label}: duplicate probe name '{name}'")
            seen.add(name)
            if probe.get('type') not in kinds:
                errors.append(
                    f"{label}[{index}] has invalid type '{probe.get('type')}' "
                    f"(expected one of: {', '.join(sorted(kinds))})"
                )
        return errors
