"""Cortex tick loop.

Every tick: snapshot → health policy → drain and classify signals → maybe
consolidate. Ticks are programmatic and never call a reasoning provider;
only the consolidation pass may, and the tick waits on it for at most
``consolidation_timeout`` seconds before abandoning it.

Urgent signals (high/critical) are drained out of band on the scheduler's
thread pool (or a dedicated worker thread when the scheduler is not
running), concurrently with a running tick. Producers never wait on the
drain. Everything it triggers (breaker bookkeeping, kills) is idempotent
with the tick's own work.
"""

import contextvars
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime, timedelta
from typing import Callable

import structlog
import structlog.contextvars
from apscheduler.events import EVENT_JOB_ERROR
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from memory.bulletin import MemoryBulletin
from memory.consolidation import MemoryConsolidationEngine
from memory.models import ConsolidationReport
from observability import metrics
from supervisor.health import HealthReport, HealthSupervisor
from supervisor.models import Signal, TickReport
from supervisor.monitor import SystemMonitor
from supervisor.patterns import PatternDetector
from supervisor.signals import SignalBuffer

logger = structlog.get_logger().bind(source="cortex")


class Cortex:
    """Owns the heartbeat and decides when the expensive memory pass runs."""

    def __init__(
        self,
        monitor: SystemMonitor,
        supervisor: HealthSupervisor,
        signals: SignalBuffer,
        patterns: PatternDetector | None = None,
        engine: MemoryConsolidationEngine | None = None,
        bulletin: MemoryBulletin | None = None,
        tick_interval: float = 5.0,
        consolidation_interval: float = 3600.0,
        consolidation_timeout: float = 60.0,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.monitor = monitor
        self.supervisor = supervisor
        self.signals = signals
        self.patterns = patterns or PatternDetector()
        self.engine = engine
        self.bulletin = bulletin
        self.tick_interval = tick_interval
        self.consolidation_interval = timedelta(seconds=consolidation_interval)
        self.consolidation_timeout = consolidation_timeout
        self._clock = clock

        self.scheduler = BackgroundScheduler()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="consolidation")
        self._urgent_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="urgent")
        self._tick_lock = threading.Lock()
        self._signal_lock = threading.Lock()
        self._last_consolidation = clock()
        self._running_pass: Future | None = None
        self._cancel = threading.Event()
        self._pending_patterns: list = []
        self._carry = HealthReport()
        self._carry_signals = 0
        self.last_report: TickReport | None = None

        if self.signals.on_urgent is None:
            self.signals.on_urgent = self._on_urgent

    # --- scheduling ---

    def start(self) -> None:
        self.scheduler.add_job(
            self.tick,
            trigger=IntervalTrigger(seconds=self.tick_interval),
            id="cortex_tick",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        self.scheduler.add_listener(self._on_job_error, EVENT_JOB_ERROR)
        self.scheduler.start()
        logger.info("cortex_started", tick_interval=self.tick_interval)

    def stop(self) -> None:
        self._cancel.set()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self._executor.shutdown(wait=False, cancel_futures=True)
        self._urgent_executor.shutdown(wait=False, cancel_futures=True)
        logger.info("cortex_stopped")

    def _on_job_error(self, event):
        logger.error(
            "job_error",
            job_id=event.job_id,
            exception=str(event.exception),
            traceback=event.traceback,
        )

    def _on_urgent(self, signal: Signal) -> None:
        """Buffer callback: schedule an immediate drain without blocking the producer."""
        if self.scheduler.running:
            self.scheduler.add_job(self.drain_urgent, id=f"urgent_{signal.id}")
        else:
            future = self._urgent_executor.submit(self.drain_urgent)
            future.add_done_callback(self._on_urgent_done)

    def _on_urgent_done(self, future: Future) -> None:
        if future.cancelled():
            return
        e = future.exception()
        if e is not None:
            logger.error("urgent_drain_failed", error=str(e))

    # --- tick ---

    def tick(self) -> TickReport:
        """Run one supervisory tick. Never raises."""
        tick_id = uuid.uuid4().hex[:8]
        now = self._clock()
        report = TickReport(tick_id=tick_id, started_at=now)

        with self._tick_lock, structlog.contextvars.bound_contextvars(tick_id=tick_id), metrics.timer("tick"):
            metrics.counter("ticks")
            self._phase(report, "health", self._run_health, report, now)
            self._phase(report, "signals", self._run_signals, report, now)
            self._phase(report, "consolidation", self._maybe_consolidate, report, now)
            metrics.gauge("signal_buffer_size", len(self.signals))

        self.last_report = report
        logger.debug(
            "tick_complete",
            remediations=len(report.remediations),
            flags=len(report.channel_flags),
            signals=report.signals_processed,
            consolidated=report.consolidation is not None,
        )
        return report

    def _phase(self, report: TickReport, name: str, fn, *args) -> None:
        try:
            fn(*args)
        except Exception as e:
            logger.exception("tick_phase_failed", phase=name)
            report.errors.append(f"{name}: {e}")

    def _run_health(self, report: TickReport, now: datetime) -> None:
        snapshot = self.monitor.snapshot()
        health = self.supervisor.evaluate(snapshot, now)
        report.remediations.extend(health.remediations)
        report.channel_flags.extend(health.channel_flags)
        report.latency_degraded = health.latency_degraded
        report.errors.extend(health.errors)

    def _run_signals(self, report: TickReport, now: datetime) -> None:
        health, patterns, count = self._process_signals(now)
        with self._signal_lock:
            carried, self._carry = self._carry, HealthReport()
            carried_count, self._carry_signals = self._carry_signals, 0
        report.remediations.extend(carried.remediations + health.remediations)
        report.errors.extend(carried.errors + health.errors)
        report.signals_processed = count + carried_count
        report.patterns.extend(patterns)

    def drain_urgent(self) -> None:
        """Out-of-band drain triggered by a high-severity signal."""
        health, _, count = self._process_signals(self._clock())
        with self._signal_lock:
            self._carry.remediations.extend(health.remediations)
            self._carry.errors.extend(health.errors)
            self._carry_signals += count
        if count:
            logger.info("urgent_drain", signals=count, remediations=len(health.remediations))

    def _process_signals(self, now: datetime) -> tuple[HealthReport, list, int]:
        with self._signal_lock:
            batch = self.signals.drain()
            if not batch:
                return HealthReport(), [], 0
            health = self.supervisor.handle_signals(batch, now)
            try:
                patterns = self.patterns.observe(batch, now)
            except Exception as e:
                logger.exception("pattern_detection_failed")
                health.errors.append(f"patterns: {e}")
                patterns = []
            self._pending_patterns.extend(patterns)
        return health, patterns, len(batch)

    # --- consolidation ---

    def consolidation_due(self, now: datetime) -> bool:
        return now - self._last_consolidation >= self.consolidation_interval

    def _maybe_consolidate(self, report: TickReport, now: datetime) -> None:
        if self.engine is None:
            return
        with self._signal_lock:
            triggered = bool(self._pending_patterns)
        if not (triggered or self.consolidation_due(now)):
            return
        report.consolidation = self.consolidate(now)

    def consolidate(self, now: datetime | None = None) -> ConsolidationReport | None:
        """Run a consolidation pass under the timeout. Returns None if one is still running."""
        if self.engine is None:
            return None
        if self._running_pass is not None and not self._running_pass.done():
            logger.info("consolidation_still_running")
            return None

        now = now or self._clock()
        with self._signal_lock:
            patterns, self._pending_patterns = self._pending_patterns, []
        self._last_consolidation = now
        self._cancel = cancel = threading.Event()
        ctx = contextvars.copy_context()
        self._running_pass = future = self._executor.submit(ctx.run, self._consolidation_pass, patterns, cancel)

        with metrics.timer("consolidation"):
            try:
                result = future.result(timeout=self.consolidation_timeout)
            except FutureTimeout:
                cancel.set()
                logger.warning(
                    "consolidation_abandoned",
                    timeout_seconds=self.consolidation_timeout,
                    patterns=len(patterns),
                )
                return ConsolidationReport(run_id="timeout", started_at=now, finished_at=self._clock(), abandoned=True)
        metrics.counter("consolidations")
        return result

    def _consolidation_pass(self, patterns: list, cancel: threading.Event) -> ConsolidationReport:
        result = self.engine.run(patterns=patterns, cancel_event=cancel)
        if self.bulletin is not None and not result.abandoned and not cancel.is_set():
            try:
                self.bulletin.build()
            except Exception as e:
                logger.warning("bulletin_failed", error=str(e))
                result.errors.append(f"bulletin: {e}")
        return result
