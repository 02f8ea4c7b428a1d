"""
Persisted run state.

Progress is recorded per stage rather than implied by how far a script got,
so an interrupted run resumes at the first stage that has not succeeded.
The state file is rewritten atomically after every transition.
"""

import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from adlab.exceptions import CorruptStateError
from adlab.util.files import write_text_atomic

if TYPE_CHECKING:
    from adlab.pipeline.plan import Plan

logger = logging.getLogger(__name__)

STATE_VERSION = 1


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class NodeState(str, Enum):
    """Milestones a managed node passes through, in order."""

    ABSENT = "absent"
    CREATED = "created"
    RUNNING = "running"
    RESPONDING = "responding"
    PROMOTED = "promoted"
    JOINED = "joined"
    CONFIGURED = "configured"
    CLONED = "cloned"

    @property
    def rank(self) -> int:
        return list(NodeState).index(self)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


@dataclass
class StageRecord:
    status: StageStatus = StageStatus.PENDING
    attempts: int = 0
    started_at: str | None = None
    finished_at: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StageRecord":
        return cls(
            status=StageStatus(data.get("status", "pending")),
            attempts=int(data.get("attempts", 0)),
            started_at=data.get("started_at"),
            finished_at=data.get("finished_at"),
            error=data.get("error"),
        )


class RunState:
    """Stage progress for one lab, backed by ``state/<lab>.state.json``."""

    def __init__(self, path: Path, lab_name: str):
        self.path = Path(path)
        self.lab_name = lab_name
        self.lab_sha256: str | None = None
        self.updated_at: str | None = None
        self.stages: dict[str, StageRecord] = {}

    @classmethod
    def load(cls, path: Path, lab_name: str) -> "RunState":
        """
        Load state from disk; a missing file yields empty state.

        Raises:
            CorruptStateError: If the file is not valid run state JSON
        """
        state = cls(path, lab_name)
        if not state.path.exists():
            return state

        try:
            data = json.loads(state.path.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                raise ValueError(f"expected an object, got {type(data).__name__}")
            stages = {
                stage_id: StageRecord.from_dict(record)
                for stage_id, record in data.get("stages", {}).items()
            }
        except (ValueError, TypeError, AttributeError) as e:
            raise CorruptStateError(str(state.path), str(e)) from e

        if data.get("lab") not in (None, lab_name):
            logger.warning(
                "State file %s belongs to lab '%s', not '%s'", state.path, data["lab"], lab_name
            )
        state.lab_sha256 = data.get("lab_sha256")
        state.updated_at = data.get("updated_at")
        state.stages = stages
        return state

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": STATE_VERSION,
            "lab": self.lab_name,
            "lab_sha256": self.lab_sha256,
            "updated_at": self.updated_at,
            "stages": {stage_id: r.to_dict() for stage_id, r in self.stages.items()},
        }

    def save(self) -> None:
        self.updated_at = _now()
        write_text_atomic(self.path, json.dumps(self.to_dict(), indent=2) + "\n")

    def record(self, stage_id: str) -> StageRecord:
        return self.stages.setdefault(stage_id, StageRecord())

    def status_of(self, stage_id: str) -> StageStatus:
        record = self.stages.get(stage_id)
        return record.status if record else StageStatus.PENDING

    def is_done(self, stage_id: str) -> bool:
        return self.status_of(stage_id) in (StageStatus.SUCCEEDED, StageStatus.SKIPPED)

    def mark(self, stage_id: str, status: StageStatus, error: str | None = None) -> None:
        """Record a status transition and persist it."""
        record = self.record(stage_id)
        record.status = status
        if status == StageStatus.RUNNING:
            record.attempts += 1
            record.started_at = _now()
            record.finished_at = None
            record.error = None
        else:
            record.finished_at = _now()
            record.error = error
        self.save()

    def reset(self, stage_ids: list[str] | None = None) -> list[str]:
        """
        Forget progress for the given stages, or for everything.

        Returns:
            Stage ids that were reset
        """
        if stage_ids is None:
            reset = list(self.stages)
            self.stages.clear()
        else:
            reset = [s for s in stage_ids if self.stages.pop(s, None) is not None]
        self.save()
        return reset

    def node_states(self, plan: "Plan") -> dict[str, NodeState]:
        """Highest milestone reached by each node in the plan."""
        nodes: dict[str, NodeState] = {}
        for stage in plan.stages:
            current = nodes.setdefault(stage.node, NodeState.ABSENT)
            if stage.milestone is None or self.status_of(stage.id) != StageStatus.SUCCEEDED:
                continue
            if stage.milestone.rank > current.rank:
                nodes[stage.node] = stage.milestone
        return nodes
