"""Data models for the shared memory graph."""

from dataclasses import dataclass, field
from datetime import datetime

from shared_types import AssociationKind, MemoryStatus, MemoryType


@dataclass
class Memory:
    id: str
    content: str
    memory_type: MemoryType
    importance: float = 0.5
    channels: set[str] = field(default_factory=set)
    created_at: datetime = field(default_factory=datetime.now)
    last_accessed_at: datetime | None = None
    access_count: int = 0
    exempt: bool | None = None  # identity and permanent types are always exempt
    centrality: float = 0.0
    last_decay_at: datetime | None = None
    status: MemoryStatus = MemoryStatus.ACTIVE
    merged_into: str | None = None
    metadata: dict = field(default_factory=dict)

    def __post_init__(self):
        self.exempt = bool(self.exempt) or MemoryType(self.memory_type).exempt
        self.importance = min(1.0, max(0.0, self.importance))

    @property
    def is_active(self) -> bool:
        return self.status == MemoryStatus.ACTIVE

    @property
    def rank_score(self) -> float:
        return self.importance * (1.0 + self.centrality)


@dataclass
class Association:
    id: str
    source_id: str
    target_id: str
    kind: AssociationKind
    weight: float = 1.0
    payload: dict = field(default_factory=dict)
    created_by: str = "core"
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def directed(self) -> bool:
        return AssociationKind(self.kind).directed

    def other(self, memory_id: str) -> str:
        return self.target_id if self.source_id == memory_id else self.source_id

    def edge_key(self) -> tuple[str, str, str]:
        """Identity of the edge irrespective of stored orientation for undirected kinds."""
        if self.directed:
            return (self.source_id, self.target_id, str(self.kind))
        a, b = sorted((self.source_id, self.target_id))
        return (a, b, str(self.kind))


@dataclass
class RelationVerdict:
    """Outcome of comparing two memories during consolidation."""

    action: str  # MERGE | UPDATES | CONTRADICTS | RELATED | NONE
    similarity: float
    newer_id: str | None = None
    older_id: str | None = None
    reasoning: str = ""
    source: str = "heuristic"  # heuristic | llm


@dataclass
class LedgerEntry:
    id: int
    run_id: str
    action: str
    memory_ids: list[str]
    detail: dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)
    reverted: bool = False


@dataclass
class ConsolidationReport:
    run_id: str
    started_at: datetime
    finished_at: datetime | None = None
    merged: int = 0
    associated: int = 0
    superseded: int = 0
    contradictions: int = 0
    decayed: int = 0
    pruned: int = 0
    orphans_pruned: int = 0
    observations: int = 0
    centrality_updated: int = 0
    reasoning_calls: int = 0
    abandoned: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def structural_changes(self) -> int:
        return (
            self.merged
            + self.associated
            + self.superseded
            + self.contradictions
            + self.pruned
            + self.orphans_pruned
            + self.observations
        )
