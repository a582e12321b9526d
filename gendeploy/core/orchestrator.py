"""Deployment sessions: Load -> Push -> Apply -> Health Check -> Decide."""
from pathlib import Path
from typing import Any, Dict, Optional

from gendeploy.core.apply_engine import ApplyEngine
from gendeploy.core.bundle_loader import BundleLoader
from gendeploy.core.config import get_config
from gendeploy.core.generation_store import GenerationStore
from gendeploy.core.health_checker import HealthChecker
from gendeploy.core.lock import check_lock_status, target_lock
from gendeploy.core.logger import get_logger
from gendeploy.core.rollback import RollbackController
from gendeploy.models.errors import ApplyError, TransportError
from gendeploy.models.session import DeploymentResult, DeploymentSession
from gendeploy.services.transport import LocalTransport, SSHTransport, Transport

logger = get_logger(__name__)


def create_transport(target) -> Transport:
    """Build the transport for a resolved TargetConfig."""
    if target.local:
        return LocalTransport(target.name)

    runtime = get_config()
    return SSHTransport(
        host=target.host,
        user=target.user,
        port=target.port,
        identity_file=target.identity_file,
        connect_timeout=runtime.connect_timeout,
        retries=runtime.transport_retries,
        retry_delay=runtime.retry_delay,
        sudo=target.sudo,
        target=target.name,
    )


class DeploymentOrchestrator:
    """Runs sessions against one target.

    Only one session per target at a time: the per-target lock is held for
    the whole of deploy() and rollback(). Within a session every step runs
    strictly in order.
    """

    def __init__(
        self,
        target,
        loader: Optional[BundleLoader] = None,
        transport: Optional[Transport] = None,
        lock_dir: Optional[Path] = None,
        lock_timeout: Optional[int] = None,
    ):
        self.target = target
        self.loader = loader or BundleLoader()
        self.transport = transport or create_transport(target)
        self.lock_dir = lock_dir
        self.lock_timeout = lock_timeout

        self.store = GenerationStore(self.transport, target.state_dir)
        self.engine = ApplyEngine(
            self.transport,
            self.store,
            activation_command=target.activation_command,
            rollback_command=target.rollback_command,
            timeout=target.apply_timeout,
        )
        self.checker = HealthChecker(self.transport, timeout=target.probe_timeout)
        self.controller = RollbackController(self.store, self.engine, checker=self.checker, probes=target.probes)

    def new_session(self) -> DeploymentSession:
        return DeploymentSession(bundle=None, target=self.target.name)

    def deploy(self, bundle_path, session: Optional[DeploymentSession] = None) -> DeploymentSession:
        """Deploy a bundle directory to the target.

        Returns:
            The finished session; session.result is always set

        Raises:
            ValidationError: Bad bundle (nothing touched)
            TransportError: Target unreachable before activation
            StoreCorruptionError: Generation bookkeeping unreadable
            LockError: Another session holds the target
            DeploymentCancelled: Cancelled before activation
        """
        session = session or self.new_session()

        with target_lock(self.target.name, timeout=self.lock_timeout, lock_dir=self.lock_dir):
            session.bundle = self.loader.load(bundle_path)
            fingerprint = session.bundle.fingerprint
            logger.info(f"Deploying bundle {session.bundle.short_fingerprint} to {self.target.display_name}")
            session.check_cancelled()

            current = self.store.current()
            session.previous_generation_id = current.id if current else None
            if current:
                logger.info(f"Current generation on {self.target.name}: {current.id}")

            self.transport.push(session.bundle, self.store.bundle_dir(fingerprint))
            session.check_cancelled()

            if current is not None and current.bundle_fingerprint == fingerprint:
                logger.info(f"Generation {current.id} already runs bundle {session.bundle.short_fingerprint}; nothing to do")
                session.noop = True
                session.new_generation_id = current.id
                session.result = DeploymentResult.SUCCESS
                return session

            # From here on cancellation waits until the session is decided
            session.apply_started = True
            try:
                generation = self.engine.apply(fingerprint)
            except ApplyError as e:
                session.new_generation_id = e.generation_id
                session.error = e
                self.controller.decide(session, None)
                return session

            session.new_generation_id = generation.id
            report = self.checker.check(generation, self.target.probes)
            try:
                self.store.record_health(report)
            except TransportError as e:
                logger.warning(f"Could not save health report on {self.target.name}: {e}")

            self.controller.decide(session, report)
            return session

    def plan(self, bundle_path) -> Dict[str, Any]:
        """Dry run: load the bundle and compare it with the target, changing nothing."""
        bundle = self.loader.load(bundle_path)
        current = self.store.current()
        remote_fingerprint = self.transport.remote_fingerprint(self.store.bundle_dir(bundle.fingerprint))
        return {
            'bundle': bundle,
            'current': current,
            'needs_push': remote_fingerprint != bundle.fingerprint,
            'noop': current is not None and current.bundle_fingerprint == bundle.fingerprint,
            'probes': list(self.target.probes),
        }

    def rollback(self, session: Optional[DeploymentSession] = None) -> DeploymentSession:
        """Manually roll the current generation back to the previous one."""
        session = session or self.new_session()
        with target_lock(self.target.name, timeout=self.lock_timeout, lock_dir=self.lock_dir):
            session.apply_started = True
            self.controller.rollback_current(session)
        return session

    def status(self) -> Dict[str, Any]:
        """Current/previous generation, last health report and lock holder."""
        return {
            'current': self.store.current(),
            'previous': self.store.previous(),
            'last_health': self.store.last_health(),
            'lock': check_lock_status(self.target.name, self.lock_dir),
        }
