"""Collaborator interfaces consumed by the supervisor, plus an in-process implementation.

The supervisor never executes workers or branches itself. It reads snapshots
from a SystemMonitor and issues fire-and-forget commands to the runtimes.
"""

import threading
from dataclasses import replace
from datetime import datetime
from typing import Callable, Protocol

import structlog

from shared_types import BranchState, ComponentKind, WorkerState

from .models import Branch, Channel, MemoryStats, SystemSnapshot, Worker

logger = structlog.get_logger().bind(source="monitor")


class SystemMonitor(Protocol):
    def snapshot(self) -> SystemSnapshot:
        """Return a point-in-time view of workers, branches, channels and memory stats."""


class WorkerRuntime(Protocol):
    def nudge(self, worker_id: str) -> None:
        """Send a follow-up prompt asking the worker to resume. Idempotent."""

    def kill(self, worker_id: str) -> None:
        """Terminate the worker. Idempotent, confirmation arrives via snapshot."""

    def release(self, worker_id: str) -> None:
        """Drop a completed worker and free its resources. Idempotent."""


class BranchRuntime(Protocol):
    def kill(self, branch_id: str) -> None:
        """Terminate the branch. Idempotent."""


class DispatchControl(Protocol):
    def disable(self, kind: ComponentKind, component_id: str) -> None:
        """Stop dispatching new work to a component whose breaker opened."""


class InMemoryRuntime:
    """Thread-safe in-process registry implementing every collaborator protocol.

    Channels running in the same process report their workers, branches and
    liveness here. Commands are applied to the registry and recorded in
    ``commands`` so callers can audit what the supervisor asked for.
    """

    def __init__(
        self,
        clock: Callable[[], datetime] = datetime.now,
        memory_stats: Callable[[], MemoryStats] | None = None,
    ):
        self._clock = clock
        self._memory_stats = memory_stats
        self._lock = threading.Lock()
        self._workers: dict[str, Worker] = {}
        self._branches: dict[str, Branch] = {}
        self._channels: dict[str, Channel] = {}
        self.disabled: set[tuple[str, str]] = set()
        self.commands: list[tuple[str, str]] = []

    # --- reporting (channel side) ---

    def upsert_worker(self, worker: Worker) -> None:
        with self._lock:
            self._workers[worker.id] = worker

    def upsert_branch(self, branch: Branch) -> None:
        with self._lock:
            self._branches[branch.id] = branch

    def upsert_channel(self, channel: Channel) -> None:
        with self._lock:
            self._channels[channel.id] = channel

    def acknowledge(self, worker_id: str) -> None:
        with self._lock:
            worker = self._workers.get(worker_id)
            if worker:
                self._workers[worker_id] = replace(worker, acknowledged=True)

    def is_dispatchable(self, kind: ComponentKind, component_id: str) -> bool:
        return (str(kind), component_id) not in self.disabled

    # --- SystemMonitor ---

    def snapshot(self) -> SystemSnapshot:
        with self._lock:
            workers = [replace(w) for w in self._workers.values()]
            branches = [replace(b) for b in self._branches.values()]
            channels = [replace(c) for c in self._channels.values()]
        stats = self._memory_stats() if self._memory_stats else MemoryStats()
        return SystemSnapshot(
            taken_at=self._clock(),
            workers=workers,
            branches=branches,
            channels=channels,
            memory=stats,
        )

    # --- WorkerRuntime / BranchRuntime ---

    def nudge(self, worker_id: str) -> None:
        with self._lock:
            self.commands.append(("nudge", worker_id))
            worker = self._workers.get(worker_id)
            if worker and worker.state == WorkerState.RUNNING:
                self._workers[worker_id] = replace(worker, state=WorkerState.STUCK)

    def kill(self, component_id: str) -> None:
        with self._lock:
            self.commands.append(("kill", component_id))
            worker = self._workers.get(component_id)
            if worker:
                self._workers[component_id] = replace(worker, state=WorkerState.KILLED)
                return
            branch = self._branches.get(component_id)
            if branch:
                self._branches[component_id] = replace(branch, state=BranchState.KILLED)

    def release(self, worker_id: str) -> None:
        with self._lock:
            self.commands.append(("release", worker_id))
            self._workers.pop(worker_id, None)

    # --- DispatchControl ---

    def disable(self, kind: ComponentKind, component_id: str) -> None:
        with self._lock:
            self.commands.append(("disable", f"{kind}:{component_id}"))
            self.disabled.add((str(kind), component_id))
        logger.info("dispatch_disabled", kind=str(kind), component_id=component_id)

    def enable(self, kind: ComponentKind, component_id: str) -> None:
        with self._lock:
            self.disabled.discard((str(kind), component_id))

    def commands_for(self, action: str) -> list[str]:
        return [cid for act, cid in self.commands if act == action]
