"""Rollback controller: the single decision point after every apply."""
from typing import Optional, Sequence

from gendeploy.core.apply_engine import ApplyEngine
from gendeploy.core.generation_store import GenerationStore
from gendeploy.core.health_checker import HealthChecker
from gendeploy.core.logger import get_logger
from gendeploy.models.errors import (
    ApplyError,
    GendeployError,
    RollbackFailure,
    StoreCorruptionError,
    TransportError,
)
from gendeploy.models.generation import Generation, GenerationStatus
from gendeploy.models.health import CheckResult, HealthReport, ProbeSpec
from gendeploy.models.session import DeploymentResult, DeploymentSession

logger = get_logger(__name__)


class RollbackController:
    """Confirms a healthy generation or returns the target to the last good one.

    Applied -> Confirmed, or Applied -> RollingBack -> RolledBack. When the
    previous generation cannot be restored the result is Failed, the one
    outcome that needs an operator.
    """

    def __init__(
        self,
        store: GenerationStore,
        engine: ApplyEngine,
        checker: Optional[HealthChecker] = None,
        probes: Sequence[ProbeSpec] = (),
    ):
        self.store = store
        self.engine = engine
        self.checker = checker
        self.probes = list(probes)

    def decide(self, session: DeploymentSession, report: Optional[HealthReport]) -> DeploymentResult:
        """Decide the outcome of a session.

        Args:
            session: The running deployment session
            report: Health report, or None when activation itself failed

        Returns:
            DeploymentResult (also stored on the session)
        """
        if report is not None and report.overall_passed:
            logger.info(f"Generation {session.new_generation_id} confirmed on {session.target}")
            session.result = DeploymentResult.SUCCESS
            return session.result

        apply_failed = report is None
        reason = "activation failed" if apply_failed else "health checks failed"
        logger.warning(f"Rolling back {session.target}: {reason}")

        try:
            self._restore(session, apply_failed=apply_failed)
        except RollbackFailure as e:
            logger.critical(f"ROLLBACK FAILED on {session.target}: {e}")
            logger.critical("Manual intervention is required on the target.")
            session.error = e
            session.result = DeploymentResult.FAILED
            return session.result

        session.result = DeploymentResult.ROLLED_BACK
        return session.result

    def rollback_current(self, session: DeploymentSession) -> DeploymentResult:
        """Manually roll the current generation back to the previous known-good one.

        Raises:
            GendeployError: Nothing to roll back, or no earlier generation
        """
        current = self.store.current()
        if current is None:
            raise GendeployError(f"No active generation on {session.target}; nothing to roll back")
        previous = self.store.previous()
        if previous is None:
            raise GendeployError(
                f"Generation {current.id} is the only known-good generation on {session.target}"
            )

        session.new_generation_id = current.id
        session.previous_generation_id = previous.id
        return self.decide(session, _manual_report(current.id))

    def _restore(self, session: DeploymentSession, apply_failed: bool) -> None:
        previous_id = session.previous_generation_id
        failed_id = session.new_generation_id

        if previous_id is None:
            if apply_failed:
                # Nothing was active before this session and nothing became active
                logger.warning(f"No earlier generation on {session.target}; nothing to restore")
                return
            raise RollbackFailure(
                f"Generation {failed_id} failed its health checks and there is no earlier generation to restore"
            )

        try:
            previous = self.store.get(previous_id)
            if previous is None:
                raise RollbackFailure(f"Generation {previous_id} is missing from the generation log")

            self.engine.reactivate(previous)
            self.store.activate(previous_id)
            if failed_id is not None and failed_id != previous_id:
                self._record_failed(failed_id, apply_failed)
        except ApplyError as e:
            detail = f"\n{e.diagnostics}" if e.diagnostics else ""
            raise RollbackFailure(f"Could not reactivate generation {previous_id}: {e}{detail}") from e
        except (TransportError, StoreCorruptionError) as e:
            raise RollbackFailure(f"Could not record rollback to generation {previous_id}: {e}") from e

        logger.warning(f"Generation {previous_id} reactivated on {session.target}")
        self._check_restored(session, previous)

    def _record_failed(self, generation_id: int, apply_failed: bool) -> None:
        if not apply_failed:
            self.store.set_status(generation_id, GenerationStatus.ROLLED_BACK)
            return
        # Normally already Failed; not when the pointer moved before bookkeeping broke
        failed = self.store.get(generation_id)
        if failed is not None and failed.status != GenerationStatus.FAILED:
            self.store.set_status(generation_id, GenerationStatus.FAILED)

    def _check_restored(self, session: DeploymentSession, restored: Generation) -> None:
        """Probe the restored generation. The outcome stays RolledBack either way."""
        if self.checker is None or not self.probes:
            return
        report = self.checker.check(restored, self.probes)
        if not report.overall_passed:
            failed = ", ".join(check.name for check in report.failed_checks)
            logger.error(
                f"Generation {restored.id} is active again on {session.target} but failed health checks ({failed}); "
                "manual intervention may be needed"
            )


def _manual_report(generation_id: int) -> HealthReport:
    """A failing report standing in for an operator's manual rollback request."""
    return HealthReport(
        generation_id=generation_id,
        checks=[CheckResult("manual-rollback", False, "rollback requested by operator")],
    )
