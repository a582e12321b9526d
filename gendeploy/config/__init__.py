"""Deployment configuration management."""
from gendeploy.config.loader import DeployConfig, DeployConfigLoader, TargetConfig
from gendeploy.models.errors import ConfigError

__all__ = ['DeployConfig', 'DeployConfigLoader', 'TargetConfig', 'ConfigError']
