"""Generation bookkeeping kept on the target host.

Layout under the state directory::

    generations.log     append-only JSON Lines, one record per event
    current             pointer to the active generation, replaced atomically
    bundles/<sha256>/   pushed bundles, one directory per fingerprint
    last-health.json    most recent health report

The pointer is the only thing that decides which generation is Active.
A generation whose log says "active" but which the pointer no longer
references reads as Superseded, so a reader always sees exactly the old or
the new active generation, never zero or two.
"""
import json
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from gendeploy.core.logger import get_logger
from gendeploy.models.errors import StoreCorruptionError
from gendeploy.models.generation import Generation, GenerationStatus
from gendeploy.models.health import HealthReport
from gendeploy.services.transport import Transport

logger = get_logger(__name__)

LOG_NAME = "generations.log"
POINTER_NAME = "current"
HEALTH_NAME = "last-health.json"
BUNDLES_DIR = "bundles"

_EVENT_APPEND = "append"
_EVENT_STATUS = "status"


class GenerationStore:
    """Ordered history of generations on one target."""

    def __init__(self, transport: Transport, state_dir: str):
        self.transport = transport
        self.state_dir = state_dir.rstrip("/") or "/"

    @property
    def log_path(self) -> str:
        return f"{self.state_dir}/{LOG_NAME}"

    @property
    def pointer_path(self) -> str:
        return f"{self.state_dir}/{POINTER_NAME}"

    @property
    def health_path(self) -> str:
        return f"{self.state_dir}/{HEALTH_NAME}"

    def bundle_dir(self, fingerprint: str) -> str:
        return f"{self.state_dir}/{BUNDLES_DIR}/{fingerprint}"

    # Reading

    def list(self) -> List[Generation]:
        """All generations, most recent first."""
        generations, _ = self._snapshot()
        return sorted(generations.values(), key=lambda g: g.id, reverse=True)

    def get(self, generation_id: int) -> Optional[Generation]:
        generations, _ = self._snapshot()
        return generations.get(generation_id)

    def current(self) -> Optional[Generation]:
        generations, pointer = self._snapshot()
        if pointer is None:
            return None
        return generations[pointer]

    def previous(self) -> Optional[Generation]:
        """The last known-good generation before the current one.

        That is the newest Superseded generation older than the current one
        (or the newest Superseded one at all when nothing is active).
        """
        generations, pointer = self._snapshot()
        candidates = [
            g for g in generations.values()
            if g.status == GenerationStatus.SUPERSEDED and (pointer is None or g.id < pointer)
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda g: g.id)

    # Writing

    def append(self, bundle_fingerprint: str) -> Generation:
        """Record a new Building generation with id = last id + 1."""
        records = self._read_records()
        last_id = max((r["id"] for r in records), default=0)
        now = datetime.now().isoformat()
        generation = Generation(
            id=last_id + 1,
            bundle_fingerprint=bundle_fingerprint,
            status=GenerationStatus.BUILDING,
            created_at=now,
        )
        self._append_record({
            "event": _EVENT_APPEND,
            "id": generation.id,
            "bundle_fingerprint": bundle_fingerprint,
            "at": now,
        })
        logger.debug(f"Appended generation {generation.id} for bundle {bundle_fingerprint[:12]}")
        return generation

    def set_status(self, generation_id: int, status: GenerationStatus) -> None:
        """Change a generation's status.

        Setting ACTIVE performs the atomic pointer swap (see activate()).
        The generation the pointer references can only lose Active by
        activating another generation.

        Raises:
            KeyError: Unknown generation
            ValueError: Attempt to deactivate the current generation in place
        """
        status = GenerationStatus(status)
        if status == GenerationStatus.ACTIVE:
            self.activate(generation_id)
            return

        generations, pointer = self._snapshot()
        if generation_id not in generations:
            raise KeyError(f"Unknown generation {generation_id}")
        if generation_id == pointer:
            raise ValueError(
                f"Generation {generation_id} is active; activate another generation first"
            )

        self._append_record({
            "event": _EVENT_STATUS,
            "id": generation_id,
            "status": status.value,
            "at": datetime.now().isoformat(),
        })
        logger.debug(f"Generation {generation_id} -> {status.value}")

    def activate(self, generation_id: int) -> Generation:
        """Make a generation Active, demoting the previous one in the same step.

        The pointer file is replaced by write-to-temp + rename; that rename is
        the switch. Log records for both sides are appended afterwards and
        only refine timestamps.
        """
        generations, pointer = self._snapshot()
        if generation_id not in generations:
            raise KeyError(f"Unknown generation {generation_id}")

        now = datetime.now().isoformat()
        self.transport.write_text_atomic(
            self.pointer_path,
            json.dumps({"id": generation_id, "activated_at": now, "previous_id": pointer}) + "\n",
        )

        self._append_record({"event": _EVENT_STATUS, "id": generation_id, "status": GenerationStatus.ACTIVE.value, "at": now})
        if pointer is not None and pointer != generation_id:
            self._append_record({"event": _EVENT_STATUS, "id": pointer, "status": GenerationStatus.SUPERSEDED.value, "at": now})

        logger.info(f"Generation {generation_id} is now active on {self.transport.target}")
        activated = generations[generation_id]
        activated.status = GenerationStatus.ACTIVE
        activated.activated_at = now
        activated.deactivated_at = None
        return activated

    def record_health(self, report: HealthReport) -> None:
        """Keep the most recent health report (older ones are overwritten)."""
        self.transport.write_text_atomic(self.health_path, json.dumps(report.to_dict(), indent=2) + "\n")

    def last_health(self) -> Optional[HealthReport]:
        text = self.transport.read_text(self.health_path)
        if not text:
            return None
        try:
            return HealthReport.from_dict(json.loads(text))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable health report {self.health_path}: {e}")
            return None

    # Internals

    def _append_record(self, record: Dict) -> None:
        self.transport.append_text(self.log_path, json.dumps(record, sort_keys=True) + "\n")

    def _read_records(self) -> List[Dict]:
        text = self.transport.read_text(self.log_path)
        if text is None:
            return []

        records = []
        for line_no, line in enumerate(text.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                record = json.loads(line)
            except ValueError as e:
                raise StoreCorruptionError(
                    f"{self.log_path} line {line_no} is not valid JSON: {e}"
                ) from e
            if not isinstance(record, dict) or not isinstance(record.get("id"), int):
                raise StoreCorruptionError(f"{self.log_path} line {line_no} has no integer id")
            if record.get("event") not in (_EVENT_APPEND, _EVENT_STATUS):
                raise StoreCorruptionError(
                    f"{self.log_path} line {line_no} has unknown event {record.get('event')!r}"
                )
            records.append(record)
        return records

    def _read_pointer(self) -> Tuple[Optional[int], Optional[str]]:
        text = self.transport.read_text(self.pointer_path)
        if text is None or not text.strip():
            return None, None
        try:
            data = json.loads(text)
        except ValueError as e:
            raise StoreCorruptionError(f"{self.pointer_path} is not valid JSON: {e}") from e
        if not isinstance(data, dict) or not (data.get("id") is None or isinstance(data.get("id"), int)):
            raise StoreCorruptionError(f"{self.pointer_path} does not hold a generation id")
        return data.get("id"), data.get("activated_at")

    def _snapshot(self) -> Tuple[Dict[int, Generation], Optional[int]]:
        # Pointer first: a generation is appended to the log before it can be pointed at
        pointer, pointer_activated_at = self._read_pointer()
        generations = self._fold(self._read_records())

        if pointer is not None and pointer not in generations:
            raise StoreCorruptionError(
                f"{self.pointer_path} references generation {pointer}, which is not in {self.log_path}"
            )

        for generation in generations.values():
            if generation.id == pointer:
                generation.status = GenerationStatus.ACTIVE
                generation.deactivated_at = None
                if generation.activated_at is None:
                    generation.activated_at = pointer_activated_at
            elif generation.status == GenerationStatus.ACTIVE:
                generation.status = GenerationStatus.SUPERSEDED

        return generations, pointer

    def _fold(self, records: List[Dict]) -> Dict[int, Generation]:
        generations: Dict[int, Generation] = {}
        for record in records:
            generation_id = record["id"]
            if record["event"] == _EVENT_APPEND:
                if generation_id in generations:
                    raise StoreCorruptionError(f"Generation {generation_id} appended twice in {self.log_path}")
                generations[generation_id] = Generation(
                    id=generation_id,
                    bundle_fingerprint=str(record.get("bundle_fingerprint", "")),
                    status=GenerationStatus.BUILDING,
                    created_at=record.get("at"),
                )
                continue

            generation = generations.get(generation_id)
            if generation is None:
                raise StoreCorruptionError(
                    f"Status record for unknown generation {generation_id} in {self.log_path}"
                )
            try:
                status = GenerationStatus(record.get("status"))
            except ValueError as e:
                raise StoreCorruptionError(
                    f"Unknown status {record.get('status')!r} for generation {generation_id}"
                ) from e

            if status == GenerationStatus.ACTIVE:
                generation.activated_at = record.get("at")
                generation.deactivated_at = None
            elif generation.status == GenerationStatus.ACTIVE:
                generation.deactivated_at = record.get("at")
            generation.status = status

        return generations
