"""Shared enums and types for the cortex supervisor."""

from enum import StrEnum


class ComponentKind(StrEnum):
    WORKER = "worker"
    BRANCH = "branch"
    CHANNEL = "channel"
    TOOL = "tool"
    PROVIDER = "provider"


class Severity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @property
    def is_urgent(self) -> bool:
        return self.rank >= _SEVERITY_RANK[Severity.HIGH]


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class SignalEvent(StrEnum):
    FAILURE = "failure"
    SUCCESS = "success"
    COMPLETION = "completion"
    CRASH = "crash"
    SPAWN = "spawn"
    TOPIC = "topic"


class WorkerState(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    WAITING_FOR_INPUT = "waiting_for_input"
    STUCK = "stuck"
    FAILED = "failed"
    COMPLETED = "completed"
    KILLED = "killed"
    REAPED = "reaped"


class BranchState(StrEnum):
    ACTIVE = "active"
    COMPLETED = "completed"
    KILLED = "killed"


class BreakerState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"


class MemoryType(StrEnum):
    FACT = "fact"
    DECISION = "decision"
    IDENTITY = "identity"
    PERMANENT = "permanent"
    OBSERVATION = "observation"
    PREFERENCE = "preference"
    EVENT = "event"
    GOAL = "goal"

    @property
    def exempt(self) -> bool:
        return self in (MemoryType.IDENTITY, MemoryType.PERMANENT)


class MemoryStatus(StrEnum):
    ACTIVE = "active"
    MERGED = "merged"
    PRUNED = "pruned"


class AssociationKind(StrEnum):
    RELATED_TO = "related_to"
    UPDATES = "updates"
    CONTRADICTS = "contradicts"
    CAUSED_BY = "caused_by"
    PART_OF = "part_of"

    @property
    def directed(self) -> bool:
        return self in (AssociationKind.UPDATES, AssociationKind.CAUSED_BY, AssociationKind.PART_OF)
