"""Shared test fixtures for gendeploy tests."""
from pathlib import Path

import pytest

from gendeploy.config.loader import TargetConfig
from gendeploy.core.config import GendeployConfig, set_config
from gendeploy.core.generation_store import GenerationStore
from gendeploy.services.transport import LocalTransport

# Activation used throughout: fails when the bundle carries a file named "broken"
ACTIVATION = "test ! -e {bundle_dir}/broken"

FLAKE = '{ outputs = { self }: { nixosConfigurations.nixos = {}; }; }\n'


@pytest.fixture(autouse=True)
def runtime_config(tmp_path):
    """Fast retries and a private lock directory for every test."""
    config = GendeployConfig(
        lock_dir=str(tmp_path / "locks"),
        retry_delay=0.0,
        transport_retries=3,
        apply_timeout=30,
    )
    set_config(config)
    yield config
    set_config(None)


@pytest.fixture
def state_dir(tmp_path):
    return tmp_path / "state"


@pytest.fixture
def make_bundle(tmp_path):
    """Create a bundle directory with a flake.nix plus the given files."""
    counter = {'n': 0}

    def _make(files=None, name=None, manifest=True) -> Path:
        counter['n'] += 1
        root = tmp_path / (name or f"bundle{counter['n']}")
        root.mkdir(parents=True, exist_ok=True)
        if manifest:
            (root / "flake.nix").write_text(FLAKE)
        for relative, content in (files or {}).items():
            path = root / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            if isinstance(content, bytes):
                path.write_bytes(content)
            else:
                path.write_text(content)
        return root

    return _make


@pytest.fixture
def local_target(state_dir):
    """Factory for a local TargetConfig backed by a temporary state directory."""

    def _target(probes=None, **overrides) -> TargetConfig:
        settings = dict(
            name="local",
            host="localhost",
            local=True,
            state_dir=str(state_dir),
            activation_command=ACTIVATION,
            apply_timeout=30,
            probe_timeout=2.0,
            probes=list(probes or []),
        )
        settings.update(overrides)
        return TargetConfig(**settings)

    return _target


@pytest.fixture
def local_transport():
    return LocalTransport("local")


@pytest.fixture
def store(local_transport, state_dir):
    return GenerationStore(local_transport, str(state_dir))


@pytest.fixture
def config_file(tmp_path, state_dir):
    """Write a gendeploy.yml for a local target and return its path."""

    def _write(extra: str = "") -> Path:
        path = tmp_path / "gendeploy.yml"
        path.write_text(
            "defaults:\n"
            f"  state_dir: {state_dir}\n"
            f"  activation_command: '{ACTIVATION}'\n"
            "  apply_timeout: 30\n"
            "  probe_timeout: 2\n"
            "targets:\n"
            "  box:\n"
            "    local: true\n"
            + extra
        )
        return path

    return _write
