"""Data models for gendeploy."""
from gendeploy.models.bundle import ConfigBundle
from gendeploy.models.errors import (
    ApplyError,
    AuthenticationError,
    CommandTimeout,
    ConfigError,
    DeploymentCancelled,
    GendeployError,
    LockError,
    RollbackFailure,
    StoreCorruptionError,
    TransientTransportError,
    TransportError,
    ValidationError,
)
from gendeploy.models.generation import Generation, GenerationStatus
from gendeploy.models.health import CheckResult, HealthReport, ProbeKind, ProbeSpec
from gendeploy.models.session import DeploymentResult, DeploymentSession

__all__ = [
    'ConfigBundle',
    'Generation',
    'GenerationStatus',
    'CheckResult',
    'HealthReport',
    'ProbeKind',
    'ProbeSpec',
    'DeploymentResult',
    'DeploymentSession',
    'GendeployError',
    'ConfigError',
    'ValidationError',
    'TransportError',
    'TransientTransportError',
    'AuthenticationError',
    'CommandTimeout',
    'StoreCorruptionError',
    'LockError',
    'ApplyError',
    'RollbackFailure',
    'DeploymentCancelled',
]
