"""End-to-end deployment sessions against a local target."""
import shutil
from unittest.mock import MagicMock, patch

import pytest

from gendeploy.core.lock import TargetLock
from gendeploy.core.orchestrator import DeploymentOrchestrator
from gendeploy.models.errors import (
    ApplyError,
    DeploymentCancelled,
    LockError,
    RollbackFailure,
    TransportError,
    ValidationError,
)
from gendeploy.models.generation import GenerationStatus
from gendeploy.models.health import ProbeKind, ProbeSpec
from gendeploy.models.session import DeploymentResult
from gendeploy.services.transport import LocalTransport

WEB_PROBE = ProbeSpec("web", ProbeKind.HTTP_STATUS, url="http://localhost/", expected_codes=(200, 301, 302))


def deploy_generations(orchestrator, make_bundle, count):
    """Deploy `count` distinct healthy bundles; returns the last session."""
    session = None
    for n in range(count):
        session = orchestrator.deploy(make_bundle({"release": str(n)}))
        assert session.result == DeploymentResult.SUCCESS
    return session


def http_status(code):
    return patch('gendeploy.core.health_checker.requests.get', return_value=MagicMock(status_code=code))


class TestScenarios:

    def test_clean_success(self, local_target, make_bundle):
        orchestrator = DeploymentOrchestrator(local_target(probes=[WEB_PROBE]))
        with http_status(200):
            deploy_generations(orchestrator, make_bundle, 5)
            session = orchestrator.deploy(make_bundle({"release": "six"}))

        assert session.result == DeploymentResult.SUCCESS
        assert session.previous_generation_id == 5
        assert session.new_generation_id == 6
        assert orchestrator.store.current().id == 6
        assert orchestrator.store.get(5).status == GenerationStatus.SUPERSEDED
        assert orchestrator.store.last_health().generation_id == 6

    def test_failed_activation_keeps_previous(self, local_target, make_bundle):
        orchestrator = DeploymentOrchestrator(local_target())
        deploy_generations(orchestrator, make_bundle, 5)

        session = orchestrator.deploy(make_bundle({"broken": "syntax error"}))

        assert session.result == DeploymentResult.ROLLED_BACK
        assert session.new_generation_id == 6
        assert orchestrator.store.current().id == 5
        assert orchestrator.store.get(6).status == GenerationStatus.FAILED
        assert session.error is not None

    def test_failed_health_check_rolls_back(self, local_target, make_bundle):
        orchestrator = DeploymentOrchestrator(local_target(probes=[WEB_PROBE]))
        with http_status(200):
            deploy_generations(orchestrator, make_bundle, 5)
        with http_status(503):
            session = orchestrator.deploy(make_bundle({"release": "six"}))

        assert session.result == DeploymentResult.ROLLED_BACK
        assert orchestrator.store.current().id == 5
        assert orchestrator.store.get(6).status == GenerationStatus.ROLLED_BACK
        assert orchestrator.store.get(6).was_activated

        report = orchestrator.store.last_health()
        assert report.generation_id == 6
        assert not report.overall_passed


class TestIdempotence:

    def test_same_bundle_twice(self, local_target, make_bundle):
        orchestrator = DeploymentOrchestrator(local_target())
        bundle = make_bundle({"release": "1"})

        first = orchestrator.deploy(bundle)
        second = orchestrator.deploy(bundle)

        assert second.result == DeploymentResult.SUCCESS
        assert second.noop
        assert second.new_generation_id == first.new_generation_id == 1
        assert len(orchestrator.store.list()) == 1

    def test_noop_skips_health_checks(self, local_target, make_bundle):
        orchestrator = DeploymentOrchestrator(local_target(probes=[WEB_PROBE]))
        bundle = make_bundle({"release": "1"})
        with http_status(200):
            orchestrator.deploy(bundle)

        with http_status(503) as mock_get:
            session = orchestrator.deploy(bundle)

        assert session.result == DeploymentResult.SUCCESS
        mock_get.assert_not_called()

    def test_redeploying_superseded_bundle_creates_new_generation(self, local_target, make_bundle):
        orchestrator = DeploymentOrchestrator(local_target())
        first = make_bundle({"release": "1"})
        orchestrator.deploy(first)
        orchestrator.deploy(make_bundle({"release": "2"}))

        session = orchestrator.deploy(first)

        assert session.new_generation_id == 3
        assert orchestrator.store.get(3).bundle_fingerprint == orchestrator.store.get(1).bundle_fingerprint


class TestNoPreviousGeneration:

    def test_first_activation_failure(self, local_target, make_bundle):
        orchestrator = DeploymentOrchestrator(local_target())

        session = orchestrator.deploy(make_bundle({"broken": ""}))

        assert session.result == DeploymentResult.ROLLED_BACK
        assert orchestrator.store.current() is None
        assert orchestrator.store.get(1).status == GenerationStatus.FAILED

    def test_first_health_failure_needs_operator(self, local_target, make_bundle):
        orchestrator = DeploymentOrchestrator(local_target(probes=[WEB_PROBE]))
        with http_status(500):
            session = orchestrator.deploy(make_bundle())

        assert session.result == DeploymentResult.FAILED
        assert isinstance(session.error, RollbackFailure)
        assert orchestrator.store.current().id == 1


class TestRollbackFailure:

    def test_previous_bundle_garbage_collected(self, local_target, make_bundle, state_dir):
        orchestrator = DeploymentOrchestrator(local_target(probes=[WEB_PROBE]))
        with http_status(200):
            orchestrator.deploy(make_bundle({"release": "1"}))
        shutil.rmtree(state_dir / "bundles" / orchestrator.store.get(1).bundle_fingerprint)

        with http_status(503):
            session = orchestrator.deploy(make_bundle({"release": "2"}))

        assert session.result == DeploymentResult.FAILED
        assert isinstance(session.error, RollbackFailure)
        assert "no longer on" in str(session.error)
        # Nothing was restored, the unhealthy generation stays where it is
        assert orchestrator.store.current().id == 2


class PointerWriteFails(LocalTransport):
    """Local transport that loses the target when `current` is set to one of the given ids."""

    def __init__(self, *generation_ids):
        super().__init__("local")
        self.generation_ids = generation_ids

    def write_text_atomic(self, path, content):
        if path.endswith("/current") and any(f'"id": {gid},' in content for gid in self.generation_ids):
            raise TransportError(f"Cannot write {path}: connection lost")
        super().write_text_atomic(path, content)


class TestPointerWriteFailure:

    def test_unrecorded_activation_rolls_back(self, local_target, make_bundle):
        orchestrator = DeploymentOrchestrator(local_target(), transport=PointerWriteFails(6))
        deploy_generations(orchestrator, make_bundle, 5)

        session = orchestrator.deploy(make_bundle({"release": "six"}))

        assert session.result == DeploymentResult.ROLLED_BACK
        assert isinstance(session.error, ApplyError)
        assert "could not be recorded as current" in str(session.error)
        assert orchestrator.store.current().id == 5
        assert orchestrator.store.get(6).status == GenerationStatus.FAILED

    def test_store_unreachable_during_rollback_fails(self, local_target, make_bundle):
        transport = PointerWriteFails(6)
        orchestrator = DeploymentOrchestrator(local_target(), transport=transport)
        deploy_generations(orchestrator, make_bundle, 5)
        transport.generation_ids = (5, 6)

        session = orchestrator.deploy(make_bundle({"release": "six"}))

        assert session.result == DeploymentResult.FAILED
        assert isinstance(session.error, RollbackFailure)
        assert orchestrator.store.get(6).status == GenerationStatus.FAILED


class TestManualRollback:

    def test_rollback_to_previous(self, local_target, make_bundle):
        orchestrator = DeploymentOrchestrator(local_target())
        deploy_generations(orchestrator, make_bundle, 2)

        session = orchestrator.rollback()

        assert session.result == DeploymentResult.ROLLED_BACK
        assert orchestrator.store.current().id == 1
        assert orchestrator.store.get(2).status == GenerationStatus.ROLLED_BACK

    def test_rollback_with_single_generation(self, local_target, make_bundle):
        from gendeploy.models.errors import GendeployError

        orchestrator = DeploymentOrchestrator(local_target())
        deploy_generations(orchestrator, make_bundle, 1)

        with pytest.raises(GendeployError, match="only known-good generation"):
            orchestrator.rollback()


class TestSessionControl:

    def test_invalid_bundle_touches_nothing(self, local_target, make_bundle, state_dir):
        orchestrator = DeploymentOrchestrator(local_target())

        with pytest.raises(ValidationError):
            orchestrator.deploy(make_bundle(manifest=False, files={"a.nix": "a"}))

        assert not state_dir.exists()

    def test_cancel_before_activation(self, local_target, make_bundle):
        orchestrator = DeploymentOrchestrator(local_target())
        session = orchestrator.new_session()
        assert session.cancel() is True

        with pytest.raises(DeploymentCancelled):
            orchestrator.deploy(make_bundle(), session=session)

        assert orchestrator.store.list() == []

    def test_cancel_after_activation_runs_to_completion(self, local_target, make_bundle):
        orchestrator = DeploymentOrchestrator(local_target())
        session = orchestrator.new_session()

        original_apply = orchestrator.engine.apply

        def apply_then_cancel(fingerprint):
            generation = original_apply(fingerprint)
            assert session.cancel() is False
            return generation

        orchestrator.engine.apply = apply_then_cancel
        orchestrator.deploy(make_bundle(), session=session)

        assert session.result == DeploymentResult.SUCCESS
        assert session.cancel_requested

    def test_concurrent_session_rejected(self, local_target, make_bundle):
        orchestrator = DeploymentOrchestrator(local_target())

        with TargetLock("local"):
            with pytest.raises(LockError, match="in progress"):
                orchestrator.deploy(make_bundle())

    def test_plan_changes_nothing(self, local_target, make_bundle, state_dir):
        orchestrator = DeploymentOrchestrator(local_target(probes=[WEB_PROBE]))

        plan = orchestrator.plan(make_bundle())

        assert plan['current'] is None
        assert plan['needs_push'] is True
        assert plan['noop'] is False
        assert [p.name for p in plan['probes']] == ["web"]
        assert not state_dir.exists()

    def test_status(self, local_target, make_bundle):
        orchestrator = DeploymentOrchestrator(local_target())
        deploy_generations(orchestrator, make_bundle, 2)

        info = orchestrator.status()

        assert info['current'].id == 2
        assert info['previous'].id == 1
        assert info['last_health'].overall_passed
        assert info['lock'] is None
