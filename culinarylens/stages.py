"""Stage bookkeeping for the orchestration pipelines.

Stages never raise for expected fallback paths. Each returns ``Ok`` or
``Degraded`` and the tracker records the ``pending -> active -> complete``
(or ``failed``) transitions as replayable progress events.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Generic, List, Optional, Sequence, TypeVar, Union
import logging
import time

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StageStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETE = "complete"
    FAILED = "failed"


class PipelineError(Exception):
    """Raised only when a pipeline cannot produce any output at all."""


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    degraded = False
    reason = ""


@dataclass(frozen=True)
class Degraded(Generic[T]):
    value: T
    reason: str

    degraded = True


StageResult = Union[Ok[T], Degraded[T]]


@dataclass(frozen=True)
class StageSpec:
    id: str
    label: str
    percent: int


@dataclass(frozen=True)
class ProgressEvent:
    stage_id: str
    status: str
    percent: int
    label: str
    timestamp: float = field(default_factory=time.time, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage_id": self.stage_id,
            "status": self.status,
            "percent": self.percent,
            "label": self.label,
        }


ProgressListener = Callable[[ProgressEvent], None]

_TRANSITIONS = {
    StageStatus.PENDING: {StageStatus.ACTIVE},
    StageStatus.ACTIVE: {StageStatus.COMPLETE, StageStatus.FAILED},
    # a failed stage completes once its compensating action has run
    StageStatus.FAILED: {StageStatus.COMPLETE},
    StageStatus.COMPLETE: set(),
}


class ProgressTracker:
    """Ordered stage states plus an append-only event log.

    Listeners are display-only; an exception in a listener is logged and never
    reaches the pipeline.
    """

    def __init__(self, stages: Sequence[StageSpec], listener: Optional[ProgressListener] = None) -> None:
        self.stages = list(stages)
        self._specs = {spec.id: spec for spec in self.stages}
        self.status: Dict[str, StageStatus] = {spec.id: StageStatus.PENDING for spec in self.stages}
        self.reasons: Dict[str, str] = {}
        self.percent = 0
        self._events: List[ProgressEvent] = []
        self._listener = listener

    @property
    def events(self) -> tuple[ProgressEvent, ...]:
        return tuple(self._events)

    def replay(self, listener: ProgressListener) -> None:
        for event in self._events:
            listener(event)

    def start(self, stage_id: str, label: Optional[str] = None) -> None:
        spec = self._specs[stage_id]
        self._move(stage_id, StageStatus.ACTIVE, label or spec.label, max(self.percent, spec.percent - 10))

    def finish(self, stage_id: str, result: StageResult[Any], label: Optional[str] = None) -> None:
        spec = self._specs[stage_id]
        if result.degraded:
            self.reasons[stage_id] = result.reason
            logger.warning("stage %s degraded: %s", stage_id, result.reason)
        self._move(stage_id, StageStatus.COMPLETE, label or spec.label, spec.percent)

    def fail(self, stage_id: str, reason: str) -> None:
        spec = self._specs[stage_id]
        self.reasons[stage_id] = reason
        logger.warning("stage %s failed: %s", stage_id, reason)
        self._move(stage_id, StageStatus.FAILED, spec.label, self.percent)

    def done(self, label: str = "Complete") -> None:
        self.percent = 100
        self._emit(ProgressEvent(stage_id="pipeline", status=StageStatus.COMPLETE.value, percent=100, label=label))

    def summary(self) -> List[Dict[str, Any]]:
        return [
            {
                "id": spec.id,
                "label": spec.label,
                "status": self.status[spec.id].value,
                "degraded": spec.id in self.reasons,
                "reason": self.reasons.get(spec.id, ""),
            }
            for spec in self.stages
        ]

    def _move(self, stage_id: str, status: StageStatus, label: str, percent: int) -> None:
        current = self.status[stage_id]
        if status not in _TRANSITIONS[current]:
            raise ValueError(f"illegal stage transition {stage_id}: {current.value} -> {status.value}")
        self.status[stage_id] = status
        self.percent = max(self.percent, percent)
        logger.debug("stage %s -> %s (%d%%)", stage_id, status.value, self.percent)
        self._emit(ProgressEvent(stage_id=stage_id, status=status.value, percent=self.percent, label=label))

    def _emit(self, event: ProgressEvent) -> None:
        self._events.append(event)
        if self._listener is None:
            return
        try:
            self._listener(event)
        except Exception:
            logger.warning("progress listener failed", exc_info=True)
