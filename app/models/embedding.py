from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Union

from app.models.entity import EntityKind


@dataclass(frozen=True)
class EmbeddingSuccess:
    entity_id: str
    dimensions: int


@dataclass(frozen=True)
class EmbeddingFailure:
    entity_id: str
    label: str
    error: str

    def describe(self) -> str:
        return f"Failed to process {self.label} ({self.entity_id}): {self.error}"


EmbeddingOutcome = Union[EmbeddingSuccess, EmbeddingFailure]


@dataclass
class BatchOutcome:
    processed: int
    total: int
    errors: List[str] = field(default_factory=list)

    @classmethod
    def from_outcomes(cls, outcomes: List[EmbeddingOutcome]) -> "BatchOutcome":
        return cls(
            processed=sum(1 for o in outcomes if isinstance(o, EmbeddingSuccess)),
            total=len(outcomes),
            errors=[o.describe() for o in outcomes if isinstance(o, EmbeddingFailure)],
        )


@dataclass
class EmbeddingBacklogStats:
    kind: EntityKind
    total: int
    embedded: int

    @property
    def pending(self) -> int:
        return max(self.total - self.embedded, 0)

    @property
    def percentage_complete(self) -> float:
        if self.total <= 0:
            return 0.0
        return round(self.embedded / self.total * 100, 2)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "total": self.total,
            "embedded": self.embedded,
            "pending": self.pending,
            "percentageComplete": self.percentage_complete,
        }


@dataclass
class BackfillReport:
    kind: EntityKind
    batches: int = 0
    total_processed: int = 0
    elapsed_seconds: float = 0.0
    last_batch_size: Optional[int] = None

    @property
    def throughput(self) -> float:
        if self.elapsed_seconds <= 0:
            return 0.0
        return self.total_processed / self.elapsed_seconds
