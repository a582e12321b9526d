"""Run the target's activation step and turn a bundle into a generation.

Per attempt the generation moves Building -> Active or Building -> Failed.
The engine classifies failures and stops there; recovering from them is
the rollback controller's job.
"""
import shlex
from typing import Optional

from gendeploy.core.generation_store import GenerationStore
from gendeploy.core.logger import get_logger
from gendeploy.models.errors import ApplyError, CommandTimeout, StoreCorruptionError, TransportError
from gendeploy.models.generation import Generation, GenerationStatus
from gendeploy.services.transport import Transport

logger = get_logger(__name__)


class ApplyEngine:
    """Activates bundles on one target."""

    def __init__(
        self,
        transport: Transport,
        store: GenerationStore,
        activation_command: str,
        rollback_command: Optional[str] = None,
        timeout: float = 1800,
    ):
        self.transport = transport
        self.store = store
        self.activation_command = activation_command
        self.rollback_command = rollback_command
        self.timeout = timeout

    def render_command(self, template: str, generation: Generation) -> str:
        return template.format(
            bundle_dir=shlex.quote(self.store.bundle_dir(generation.bundle_fingerprint)),
            fingerprint=generation.bundle_fingerprint,
            generation=generation.id,
        )

    def apply(self, bundle_fingerprint: str) -> Generation:
        """Activate a pushed bundle as a new generation.

        Returns the current generation untouched when it was already built
        from this fingerprint.

        Raises:
            ApplyError: Activation exited non-zero, timed out, the target
                was lost mid-activation, or the new pointer could not be
                written. The generation is marked Failed.
        """
        current = self.store.current()
        if current is not None and current.bundle_fingerprint == bundle_fingerprint:
            logger.info(
                f"Bundle {bundle_fingerprint[:12]} is already active as generation {current.id}; nothing to apply"
            )
            return current

        generation = self.store.append(bundle_fingerprint)
        command = self.render_command(self.activation_command, generation)
        logger.info(f"Activating generation {generation.id} on {self.transport.target}")
        logger.debug(f"Activation command: {command}")

        try:
            result = self.transport.exec(command, timeout=self.timeout)
        except CommandTimeout as e:
            self._mark_failed(generation)
            raise ApplyError(
                f"Activation of generation {generation.id} timed out after {self.timeout:g}s",
                generation_id=generation.id,
                timed_out=True,
            ) from e
        except TransportError as e:
            self._mark_failed(generation)
            raise ApplyError(
                f"Lost connection to {self.transport.target} while activating generation {generation.id}: {e}",
                generation_id=generation.id,
            ) from e

        if not result.ok:
            self._mark_failed(generation)
            error = ApplyError(
                f"Activation of generation {generation.id} failed with exit code {result.exit_code}",
                generation_id=generation.id,
                exit_status=result.exit_code,
                stdout=result.stdout,
                stderr=result.stderr,
            )
            logger.error(str(error))
            if error.diagnostics:
                logger.error(error.diagnostics)
            raise error

        try:
            activated = self.store.activate(generation.id)
        except (TransportError, StoreCorruptionError) as e:
            self._mark_failed(generation)
            raise ApplyError(
                f"Generation {generation.id} was activated on {self.transport.target} "
                f"but could not be recorded as current: {e}",
                generation_id=generation.id,
            ) from e

        logger.info(f"Generation {activated.id} activated")
        return activated

    def reactivate(self, generation: Generation) -> None:
        """Switch the running system back to an earlier generation's bundle.

        Uses rollback_command when configured, otherwise re-runs activation
        against the generation's bundle directory. Does not touch the store.

        Raises:
            ApplyError: The bundle is gone (garbage-collected) or the command failed
        """
        if not self.rollback_command:
            bundle_dir = self.store.bundle_dir(generation.bundle_fingerprint)
            try:
                present = self.transport.path_exists(bundle_dir)
            except TransportError as e:
                raise ApplyError(f"Cannot reach {self.transport.target} to restore generation {generation.id}: {e}",
                                 generation_id=generation.id) from e
            if not present:
                raise ApplyError(
                    f"Bundle for generation {generation.id} is no longer on {self.transport.target} ({bundle_dir})",
                    generation_id=generation.id,
                )

        template = self.rollback_command or self.activation_command
        command = self.render_command(template, generation)
        logger.warning(f"Reactivating generation {generation.id} on {self.transport.target}")

        try:
            result = self.transport.exec(command, timeout=self.timeout)
        except CommandTimeout as e:
            raise ApplyError(
                f"Reactivation of generation {generation.id} timed out after {self.timeout:g}s",
                generation_id=generation.id,
                timed_out=True,
            ) from e
        except TransportError as e:
            raise ApplyError(
                f"Cannot reach {self.transport.target} to restore generation {generation.id}: {e}",
                generation_id=generation.id,
            ) from e

        if not result.ok:
            raise ApplyError(
                f"Reactivation of generation {generation.id} failed with exit code {result.exit_code}",
                generation_id=generation.id,
                exit_status=result.exit_code,
                stdout=result.stdout,
                stderr=result.stderr,
            )

    def _mark_failed(self, generation: Generation) -> None:
        try:
            self.store.set_status(generation.id, GenerationStatus.FAILED)
            generation.status = GenerationStatus.FAILED
        except (TransportError, StoreCorruptionError, ValueError) as e:
            # ValueError: the pointer already moved; the rollback records Failed after restoring
            logger.error(f"Could not record generation {generation.id} as failed: {e}")
