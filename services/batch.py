"""Per-item outcome reporting for batch operations."""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class OutcomeStatus(Enum):
    SUCCESS = "success"
    SKIP = "skip"
    FAIL = "fail"


@dataclass
class ItemOutcome:
    """Result of one item inside a batch."""
    item_id: str
    status: OutcomeStatus
    detail: str = ""
    data: Optional[Dict[str, Any]] = None


@dataclass
class BatchResult:
    """Structured result of a batch: one outcome per item, never atomic failure."""
    operation: str
    outcomes: List[ItemOutcome] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    def succeed(self, item_id: str, detail: str = "", data: Optional[Dict[str, Any]] = None) -> None:
        self.outcomes.append(ItemOutcome(item_id, OutcomeStatus.SUCCESS, detail, data))

    def skip(self, item_id: str, detail: str = "") -> None:
        self.outcomes.append(ItemOutcome(item_id, OutcomeStatus.SKIP, detail))

    def fail(self, item_id: str, detail: str = "") -> None:
        self.outcomes.append(ItemOutcome(item_id, OutcomeStatus.FAIL, detail))

    def finish(self) -> "BatchResult":
        self.finished_at = time.time()
        return self

    def _count(self, status: OutcomeStatus) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    @property
    def succeeded(self) -> int:
        return self._count(OutcomeStatus.SUCCESS)

    @property
    def skipped(self) -> int:
        return self._count(OutcomeStatus.SKIP)

    @property
    def failed(self) -> int:
        return self._count(OutcomeStatus.FAIL)

    @property
    def duration_seconds(self) -> float:
        end = self.finished_at or time.time()
        return end - self.started_at

    def failed_items(self) -> List[str]:
        return [o.item_id for o in self.outcomes if o.status == OutcomeStatus.FAIL]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "failed": self.failed,
            "duration_seconds": round(self.duration_seconds, 3),
            "items": [
                {"item_id": o.item_id, "status": o.status.value, "detail": o.detail}
                for o in self.outcomes
            ],
        }
