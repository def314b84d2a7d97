"""Health supervision: remediation policy for workers, branches and channels.

Everything here is programmatic and cheap. Remediations are issued as
fire-and-forget commands to the runtimes; confirmation is expected on a
later snapshot. Each entity is evaluated in isolation so one bad record
cannot stop evaluation of the rest.
"""

import statistics
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

import structlog

from observability import metrics
from shared_types import BranchState, ComponentKind, Severity, SignalEvent, WorkerState

from .breaker import CircuitBreakerRegistry
from .models import Branch, Channel, ChannelFlag, Remediation, Signal, SystemSnapshot, Worker
from .monitor import BranchRuntime, DispatchControl, WorkerRuntime

logger = structlog.get_logger().bind(source="health")

_STALLABLE = (WorkerState.RUNNING, WorkerState.STUCK)
_GONE = (WorkerState.KILLED, WorkerState.REAPED)


@dataclass
class HealthThresholds:
    worker_stall_seconds: float = 60.0
    worker_kill_seconds: float = 120.0
    nudge_grace_seconds: float = 30.0
    completion_grace_seconds: float = 300.0
    kill_retry_seconds: float = 60.0
    branch_stall_seconds: float = 30.0
    latency_window: int = 20
    degradation_factor: float = 2.0
    baseline_latency_seconds: float | None = None
    channel_liveness_seconds: float = 300.0

    def __post_init__(self):
        if self.worker_kill_seconds <= self.worker_stall_seconds:
            raise ValueError("worker_kill_seconds must exceed worker_stall_seconds")


@dataclass
class HealthReport:
    remediations: list[Remediation] = field(default_factory=list)
    channel_flags: list[ChannelFlag] = field(default_factory=list)
    latency_degraded: bool = False
    errors: list[str] = field(default_factory=list)


@dataclass
class _WorkerTrack:
    seen_update: datetime | None = None
    last_signature: str | None = None
    nudged_at: datetime | None = None
    nudged_update: datetime | None = None
    killed_at: datetime | None = None
    reaped: bool = False


class LatencyTracker:
    """Rolling median of completed-branch latency against a baseline.

    The baseline is either configured or frozen from the first full window of
    samples. Degradation is reported, never remediated.
    """

    def __init__(self, window: int = 20, factor: float = 2.0, baseline: float | None = None):
        self.window = window
        self.factor = factor
        self.baseline = baseline
        self._samples: deque[float] = deque(maxlen=window)
        self.degraded = False

    def add(self, seconds: float) -> None:
        self._samples.append(max(0.0, seconds))
        if self.baseline is None and len(self._samples) >= self.window:
            self.baseline = statistics.median(self._samples)
            logger.info("branch_latency_baseline", baseline_seconds=round(self.baseline, 3))

    @property
    def median(self) -> float | None:
        return statistics.median(self._samples) if self._samples else None

    def check(self) -> bool:
        """Recompute the degradation flag; warn once per transition into degradation."""
        if not self.baseline or len(self._samples) < self.window:
            return self.degraded
        current = statistics.median(self._samples)
        degraded = current > self.factor * self.baseline
        if degraded and not self.degraded:
            logger.warning(
                "branch_latency_degraded",
                median_seconds=round(current, 3),
                baseline_seconds=round(self.baseline, 3),
                factor=self.factor,
            )
        elif self.degraded and not degraded:
            logger.info("branch_latency_recovered", median_seconds=round(current, 3))
        self.degraded = degraded
        return degraded


class HealthSupervisor:
    """Applies remediation policy using snapshots and the breaker registry."""

    def __init__(
        self,
        breakers: CircuitBreakerRegistry,
        worker_runtime: WorkerRuntime,
        branch_runtime: BranchRuntime,
        dispatch: DispatchControl | None = None,
        thresholds: HealthThresholds | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.breakers = breakers
        self.workers = worker_runtime
        self.branches = branch_runtime
        self.dispatch = dispatch
        self.thresholds = thresholds or HealthThresholds()
        self._clock = clock
        self._lock = threading.RLock()
        self._worker_tracks: dict[str, _WorkerTrack] = {}
        self._branch_kills: dict[str, datetime] = {}
        self._latency_seen: set[str] = set()
        self._channel_samples: dict[str, tuple[float, datetime]] = {}
        self._active_flags: set[tuple[str, str]] = set()
        self._crashed_at: dict[str, datetime] = {}
        self._pending: list[Remediation] = []
        self.latency = LatencyTracker(
            window=self.thresholds.latency_window,
            factor=self.thresholds.degradation_factor,
            baseline=self.thresholds.baseline_latency_seconds,
        )
        if dispatch is not None and breakers.on_open is None:
            breakers.on_open = self._disable_dispatch

    # --- entry points ---

    def evaluate(self, snapshot: SystemSnapshot, now: datetime | None = None) -> HealthReport:
        """Run worker, branch and channel policy against one snapshot."""
        now = now or snapshot.taken_at or self._clock()
        report = HealthReport()
        with self._lock:
            for worker in snapshot.workers:
                self._isolated(report, "worker", worker.id, self._evaluate_worker, worker, now)
            self._forget_missing_workers({w.id for w in snapshot.workers})

            for branch in snapshot.branches:
                self._isolated(report, "branch", branch.id, self._evaluate_branch, branch, now)
            present = {b.id for b in snapshot.branches}
            for bid in [b for b in self._branch_kills if b not in present]:
                del self._branch_kills[bid]
            self._latency_seen &= present
            report.latency_degraded = self.latency.check()

            for channel in snapshot.channels:
                self._isolated(report, "channel", channel.id, self._evaluate_channel, channel, now)
            self._forget_missing_channels({c.id for c in snapshot.channels})

            report.channel_flags.extend(
                ChannelFlag(channel_id=cid, reason=reason)
                for cid, reason in sorted(self._active_flags)
                if not any(f.channel_id == cid and f.reason == reason for f in report.channel_flags)
            )
            report.remediations.extend(self._take_pending())
        return report

    def handle_signals(self, signals: list[Signal], now: datetime | None = None) -> HealthReport:
        """Classify drained signals: breaker bookkeeping, crashes, provider outages."""
        now = now or self._clock()
        report = HealthReport()
        with self._lock:
            for signal in signals:
                self._isolated(report, "signal", signal.id, self._handle_signal, signal, now)
            report.remediations.extend(self._take_pending())
        return report

    # --- workers ---

    def _evaluate_worker(self, w: Worker, now: datetime, report: HealthReport) -> None:
        t = self._worker_tracks.setdefault(w.id, _WorkerTrack())
        if w.state in _GONE:
            return

        if t.seen_update is None or w.last_update > t.seen_update:
            repeated = (
                w.last_error_signature is not None
                and t.seen_update is not None
                and t.last_signature == w.last_error_signature
            )
            t.last_signature = w.last_error_signature
            t.seen_update = w.last_update
            if repeated:
                self._kill_worker(w, t, now, "repeated_failure_signature", report)
                return
            if t.nudged_update is not None and w.last_update > t.nudged_update:
                logger.info("worker_resumed", worker_id=w.id, channel_id=w.channel_id)
                t.nudged_at = None
                t.nudged_update = None

        if w.state == WorkerState.COMPLETED:
            grace = timedelta(seconds=self.thresholds.completion_grace_seconds)
            if not w.acknowledged and not t.reaped and now - w.last_update > grace:
                self._reap_worker(w, t, now, report)
            return

        if w.state not in _STALLABLE:
            return

        age = (now - w.last_update).total_seconds()
        if age <= self.thresholds.worker_stall_seconds:
            return

        if t.nudged_at is None:
            self._nudge_worker(w, t, now, age, report)
            return

        since_nudge = (now - t.nudged_at).total_seconds()
        if age > self.thresholds.worker_kill_seconds and since_nudge >= self.thresholds.nudge_grace_seconds:
            self._kill_worker(w, t, now, "stalled_after_nudge", report)

    def _nudge_worker(self, w: Worker, t: _WorkerTrack, now: datetime, age: float, report: HealthReport):
        try:
            self.workers.nudge(w.id)
        except Exception as e:
            logger.warning("remediation_failed", action="nudge", worker_id=w.id, error=str(e))
            return
        t.nudged_at = now
        t.nudged_update = w.last_update
        metrics.counter("nudges")
        logger.info("worker_nudged", worker_id=w.id, channel_id=w.channel_id, stalled_seconds=round(age, 1))
        report.remediations.append(
            Remediation("nudge", ComponentKind.WORKER, w.id, reason="stalled", issued_at=now)
        )

    def _kill_worker(self, w: Worker, t: _WorkerTrack, now: datetime, reason: str, report: HealthReport):
        if t.killed_at and (now - t.killed_at).total_seconds() < self.thresholds.kill_retry_seconds:
            return
        try:
            self.workers.kill(w.id)
        except Exception as e:
            logger.warning("remediation_failed", action="kill", worker_id=w.id, error=str(e))
            return
        t.killed_at = now
        metrics.counter("kills")
        logger.info(
            "worker_killed",
            worker_id=w.id,
            channel_id=w.channel_id,
            reason=reason,
            signature=w.last_error_signature,
        )
        report.remediations.append(
            Remediation("kill", ComponentKind.WORKER, w.id, reason=reason, issued_at=now)
        )

    def _reap_worker(self, w: Worker, t: _WorkerTrack, now: datetime, report: HealthReport):
        try:
            self.workers.release(w.id)
        except Exception as e:
            logger.warning("remediation_failed", action="reap", worker_id=w.id, error=str(e))
            return
        t.reaped = True
        metrics.counter("reaps")
        logger.info("worker_reaped", worker_id=w.id, channel_id=w.channel_id)
        report.remediations.append(
            Remediation("reap", ComponentKind.WORKER, w.id, reason="unacknowledged_completion", issued_at=now)
        )

    def _forget_missing_workers(self, present: set[str]) -> None:
        for wid in [w for w in self._worker_tracks if w not in present]:
            del self._worker_tracks[wid]

    # --- branches ---

    def _evaluate_branch(self, b: Branch, now: datetime, report: HealthReport) -> None:
        if b.state == BranchState.COMPLETED and b.completed_at and b.id not in self._latency_seen:
            self._latency_seen.add(b.id)
            self.latency.add((b.completed_at - b.started_at).total_seconds())

        age = b.age(now)
        if age <= self.thresholds.branch_stall_seconds:
            return
        last_kill = self._branch_kills.get(b.id)
        if last_kill and (now - last_kill).total_seconds() < self.thresholds.kill_retry_seconds:
            return
        self._kill_branch(b.id, now, f"age {age:.0f}s exceeds stall threshold", report)

    def _kill_branch(self, branch_id: str, now: datetime, reason: str, report: HealthReport):
        try:
            self.branches.kill(branch_id)
        except Exception as e:
            logger.warning("remediation_failed", action="kill", branch_id=branch_id, error=str(e))
            return
        self._branch_kills[branch_id] = now
        metrics.counter("kills")
        logger.info("branch_killed", branch_id=branch_id, reason=reason)
        report.remediations.append(
            Remediation("kill", ComponentKind.BRANCH, branch_id, reason=reason, issued_at=now)
        )

    # --- channels ---

    def _evaluate_channel(self, c: Channel, now: datetime, report: HealthReport) -> None:
        prev = self._channel_samples.get(c.id)
        self._channel_samples[c.id] = (c.utilization, now)

        outpacing = False
        growth = None
        if prev:
            dt = (now - prev[1]).total_seconds()
            if dt > 0:
                growth = (c.utilization - prev[0]) / dt
                outpacing = growth > c.compactor_rate
        self._set_flag(
            c.id,
            "utilization_outpacing_compactor",
            outpacing,
            report,
            growth_rate=growth,
            compactor_rate=c.compactor_rate,
            utilization=c.utilization,
        )

        crashed_at = self._crashed_at.get(c.id)
        if crashed_at and c.last_signal_at > crashed_at:
            del self._crashed_at[c.id]
            self._set_flag(c.id, "crashed", False, report)

        silent = (now - c.last_signal_at).total_seconds()
        self._set_flag(
            c.id,
            "liveness_timeout",
            silent > self.thresholds.channel_liveness_seconds,
            report,
            silent_seconds=round(silent, 1),
        )

    def _set_flag(self, channel_id: str, reason: str, active: bool, report: HealthReport, **detail):
        key = (channel_id, reason)
        if active:
            if key not in self._active_flags:
                self._active_flags.add(key)
                logger.warning("channel_flagged", channel_id=channel_id, reason=reason, **detail)
            report.channel_flags.append(ChannelFlag(channel_id, reason, detail))
        elif key in self._active_flags:
            self._active_flags.discard(key)
            logger.info("channel_flag_cleared", channel_id=channel_id, reason=reason)

    def _forget_missing_channels(self, present: set[str]) -> None:
        for cid in [c for c in self._channel_samples if c not in present]:
            del self._channel_samples[cid]
        for cid in [c for c in self._crashed_at if c not in present]:
            del self._crashed_at[cid]
        self._active_flags = {(cid, reason) for cid, reason in self._active_flags if cid in present}

    # --- signals ---

    def _handle_signal(self, s: Signal, now: datetime, report: HealthReport) -> None:
        if s.event == SignalEvent.FAILURE:
            if s.kind == ComponentKind.PROVIDER and s.severity == Severity.CRITICAL:
                # infrastructure outage: logged for an operator, no failover
                logger.error(
                    "provider_unavailable",
                    provider=s.component_id,
                    signature=s.signature,
                )
            self.breakers.record_failure(s.kind, s.component_id, s.signature)
        elif s.event in (SignalEvent.SUCCESS, SignalEvent.COMPLETION):
            self.breakers.record_success(s.kind, s.component_id)
        elif s.event == SignalEvent.CRASH:
            if s.kind == ComponentKind.CHANNEL:
                self._crashed_at[s.component_id] = s.created_at
                self._set_flag(s.component_id, "crashed", True, report, signature=s.signature)
            else:
                self.breakers.record_failure(s.kind, s.component_id, s.signature or "crash")
                if s.kind == ComponentKind.WORKER:
                    t = self._worker_tracks.setdefault(s.component_id, _WorkerTrack())
                    worker = Worker(
                        id=s.component_id,
                        channel_id=s.channel_id or "",
                        state=WorkerState.FAILED,
                        last_update=now,
                        last_error_signature=s.signature,
                    )
                    self._kill_worker(worker, t, now, "crashed", report)
                elif s.kind == ComponentKind.BRANCH:
                    self._kill_branch(s.component_id, now, "crashed", report)

    def _disable_dispatch(self, kind: ComponentKind, component_id: str) -> None:
        self.dispatch.disable(kind, component_id)
        self._pending.append(
            Remediation("disable", kind, component_id, reason="breaker_open", issued_at=self._clock())
        )

    def _take_pending(self) -> list[Remediation]:
        pending, self._pending = self._pending, []
        return pending

    def _isolated(self, report: HealthReport, entity: str, entity_id: str, fn, *args) -> None:
        try:
            fn(*args, report)
        except Exception as e:
            logger.exception(f"{entity}_evaluation_failed", entity_id=entity_id)
            report.errors.append(f"{entity}:{entity_id}: {e}")
