"""Data models for the supervisor: snapshots, signals, breakers, remediation results."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime

from shared_types import (
    BranchState,
    BreakerState,
    ComponentKind,
    Severity,
    SignalEvent,
    WorkerState,
)


@dataclass
class Worker:
    id: str
    channel_id: str
    state: WorkerState
    last_update: datetime
    failure_count: int = 0
    last_error_signature: str | None = None
    acknowledged: bool = False
    task_type: str | None = None


@dataclass
class Branch:
    id: str
    channel_id: str
    started_at: datetime
    state: BranchState = BranchState.ACTIVE
    completed_at: datetime | None = None

    def age(self, now: datetime) -> float:
        """Seconds since start; the branch's declared state does not matter."""
        return (now - self.started_at).total_seconds()


@dataclass
class Channel:
    id: str
    utilization: float
    compactor_rate: float  # utilization fraction reclaimed per second
    last_signal_at: datetime


@dataclass
class MemoryStats:
    count: int = 0
    by_type: dict[str, int] = field(default_factory=dict)
    importance_histogram: dict[str, int] = field(default_factory=dict)


@dataclass
class SystemSnapshot:
    """Point-in-time, read-only view of the runtime."""

    taken_at: datetime
    workers: list[Worker] = field(default_factory=list)
    branches: list[Branch] = field(default_factory=list)
    channels: list[Channel] = field(default_factory=list)
    memory: MemoryStats = field(default_factory=MemoryStats)


@dataclass
class Signal:
    kind: ComponentKind
    component_id: str
    severity: Severity
    event: SignalEvent = SignalEvent.FAILURE
    signature: str | None = None
    channel_id: str | None = None
    topic: str | None = None
    task_type: str | None = None
    created_at: datetime = field(default_factory=datetime.now)
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])


@dataclass
class CircuitBreaker:
    kind: ComponentKind
    component_id: str
    consecutive_failures: int = 0
    state: BreakerState = BreakerState.CLOSED
    opened_at: datetime | None = None
    last_signature: str | None = None
    last_failure_at: datetime | None = None
    total_failures: int = 0

    @property
    def is_open(self) -> bool:
        return self.state == BreakerState.OPEN


@dataclass
class Remediation:
    """A command the supervisor issued to a collaborator."""

    action: str  # nudge | kill | reap | disable
    kind: ComponentKind
    component_id: str
    reason: str
    issued_at: datetime = field(default_factory=datetime.now)


@dataclass
class ChannelFlag:
    channel_id: str
    reason: str  # utilization_outpacing_compactor | liveness_timeout
    detail: dict = field(default_factory=dict)


@dataclass
class TickReport:
    tick_id: str
    started_at: datetime
    remediations: list[Remediation] = field(default_factory=list)
    channel_flags: list[ChannelFlag] = field(default_factory=list)
    latency_degraded: bool = False
    signals_processed: int = 0
    patterns: list = field(default_factory=list)
    consolidation: object | None = None
    errors: list[str] = field(default_factory=list)

    def actions(self, action: str) -> list[Remediation]:
        return [r for r in self.remediations if r.action == action]
