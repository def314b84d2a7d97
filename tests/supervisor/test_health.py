"""Tests for HealthSupervisor — worker, branch and channel policy plus signal handling."""

from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from shared_types import BranchState, ComponentKind, Severity, SignalEvent, WorkerState
from supervisor.health import HealthSupervisor, HealthThresholds, LatencyTracker
from supervisor.models import Branch, Channel, Signal, SystemSnapshot, Worker


@pytest.fixture
def supervisor(breakers, runtime, clock):
    return HealthSupervisor(
        breakers,
        worker_runtime=runtime,
        branch_runtime=runtime,
        dispatch=runtime,
        thresholds=HealthThresholds(
            worker_stall_seconds=60,
            worker_kill_seconds=120,
            nudge_grace_seconds=30,
            completion_grace_seconds=300,
            branch_stall_seconds=30,
            channel_liveness_seconds=300,
        ),
        clock=clock,
    )


def _worker(clock, wid="w1", age=0.0, state=WorkerState.RUNNING, signature=None, **kw) -> Worker:
    return Worker(
        id=wid,
        channel_id="chan-1",
        state=state,
        last_update=clock() - timedelta(seconds=age),
        last_error_signature=signature,
        **kw,
    )


def _tick(supervisor, runtime):
    return supervisor.evaluate(runtime.snapshot())


class TestThresholds:
    def test_kill_must_exceed_stall(self):
        with pytest.raises(ValueError):
            HealthThresholds(worker_stall_seconds=60, worker_kill_seconds=60)


class TestWorkerStall:
    def test_nudge_then_kill(self, supervisor, runtime, clock):
        runtime.upsert_worker(_worker(clock, age=90))

        report = _tick(supervisor, runtime)
        assert [r.action for r in report.remediations] == ["nudge"]
        assert runtime.commands_for("nudge") == ["w1"]

        clock.advance(70)
        report = _tick(supervisor, runtime)
        assert [r.action for r in report.remediations] == ["kill"]
        assert report.remediations[0].reason == "stalled_after_nudge"
        assert runtime.commands_for("kill") == ["w1"]

    def test_single_nudge_while_stalled(self, supervisor, runtime, clock):
        runtime.upsert_worker(_worker(clock, age=61))
        _tick(supervisor, runtime)
        for _ in range(3):
            clock.advance(10)
            _tick(supervisor, runtime)
        assert runtime.commands_for("nudge") == ["w1"]
        assert runtime.commands_for("kill") == []

    def test_never_killed_before_nudge(self, supervisor, runtime, clock):
        runtime.upsert_worker(_worker(clock, age=500))
        report = _tick(supervisor, runtime)
        assert [r.action for r in report.remediations] == ["nudge"]

    def test_kill_waits_for_grace_after_nudge(self, supervisor, runtime, clock):
        runtime.upsert_worker(_worker(clock, age=500))
        _tick(supervisor, runtime)
        clock.advance(10)
        assert _tick(supervisor, runtime).remediations == []
        clock.advance(25)
        assert [r.action for r in _tick(supervisor, runtime).remediations] == ["kill"]

    def test_resume_clears_nudge(self, supervisor, runtime, clock):
        runtime.upsert_worker(_worker(clock, age=90))
        _tick(supervisor, runtime)
        clock.advance(5)
        runtime.upsert_worker(_worker(clock, age=0))
        assert _tick(supervisor, runtime).remediations == []

        clock.advance(61)
        report = _tick(supervisor, runtime)
        assert [r.action for r in report.remediations] == ["nudge"]
        assert runtime.commands_for("nudge") == ["w1", "w1"]

    def test_fresh_worker_untouched(self, supervisor, runtime, clock):
        runtime.upsert_worker(_worker(clock, age=10))
        assert _tick(supervisor, runtime).remediations == []

    def test_waiting_for_input_not_stalled(self, supervisor, runtime, clock):
        runtime.upsert_worker(_worker(clock, age=1000, state=WorkerState.WAITING_FOR_INPUT))
        assert _tick(supervisor, runtime).remediations == []


class TestRepeatedFailure:
    def test_same_signature_twice_kills_immediately(self, supervisor, runtime, clock):
        runtime.upsert_worker(_worker(clock, state=WorkerState.FAILED, signature="KeyError: 'id'"))
        assert _tick(supervisor, runtime).remediations == []

        clock.advance(2)
        runtime.upsert_worker(_worker(clock, state=WorkerState.FAILED, signature="KeyError: 'id'"))
        report = _tick(supervisor, runtime)
        assert [(r.action, r.reason) for r in report.remediations] == [("kill", "repeated_failure_signature")]

    def test_different_signatures_do_not_kill(self, supervisor, runtime, clock):
        runtime.upsert_worker(_worker(clock, state=WorkerState.FAILED, signature="a"))
        _tick(supervisor, runtime)
        clock.advance(2)
        runtime.upsert_worker(_worker(clock, state=WorkerState.FAILED, signature="b"))
        assert _tick(supervisor, runtime).remediations == []

    def test_same_update_seen_twice_is_not_a_repeat(self, supervisor, runtime, clock):
        runtime.upsert_worker(_worker(clock, state=WorkerState.FAILED, signature="a"))
        _tick(supervisor, runtime)
        clock.advance(2)
        assert _tick(supervisor, runtime).remediations == []


class TestCompletionReap:
    def test_unacknowledged_completion_reaped(self, supervisor, runtime, clock):
        runtime.upsert_worker(_worker(clock, state=WorkerState.COMPLETED))
        clock.advance(301)
        report = _tick(supervisor, runtime)
        assert [r.action for r in report.remediations] == ["reap"]
        assert runtime.commands_for("release") == ["w1"]
        assert runtime.snapshot().workers == []

    def test_acknowledged_completion_left_alone(self, supervisor, runtime, clock):
        runtime.upsert_worker(_worker(clock, state=WorkerState.COMPLETED))
        runtime.acknowledge("w1")
        clock.advance(1000)
        assert _tick(supervisor, runtime).remediations == []

    def test_within_grace(self, supervisor, runtime, clock):
        runtime.upsert_worker(_worker(clock, state=WorkerState.COMPLETED))
        clock.advance(100)
        assert _tick(supervisor, runtime).remediations == []


class TestBranches:
    def test_old_branch_killed_on_next_tick(self, supervisor, runtime, clock):
        runtime.upsert_branch(Branch("b1", "chan-1", started_at=clock() - timedelta(seconds=45)))
        report = _tick(supervisor, runtime)
        assert [(r.action, r.kind) for r in report.remediations] == [("kill", ComponentKind.BRANCH)]
        assert runtime.commands_for("kill") == ["b1"]

    def test_killed_regardless_of_state(self, supervisor, runtime, clock):
        runtime.upsert_branch(
            Branch(
                "b1",
                "chan-1",
                started_at=clock() - timedelta(seconds=45),
                state=BranchState.COMPLETED,
                completed_at=clock() - timedelta(seconds=40),
            )
        )
        report = _tick(supervisor, runtime)
        assert [r.component_id for r in report.actions("kill")] == ["b1"]

    def test_young_branch_untouched(self, supervisor, runtime, clock):
        runtime.upsert_branch(Branch("b1", "chan-1", started_at=clock() - timedelta(seconds=10)))
        assert _tick(supervisor, runtime).remediations == []

    def test_kill_not_repeated_within_retry_window(self, supervisor, runtime, clock):
        runtime.upsert_branch(Branch("b1", "chan-1", started_at=clock() - timedelta(seconds=45)))
        _tick(supervisor, runtime)
        clock.advance(5)
        assert _tick(supervisor, runtime).remediations == []
        assert runtime.commands_for("kill") == ["b1"]


class TestLatency:
    def test_tracker_flags_sustained_increase(self):
        tracker = LatencyTracker(window=4, factor=2.0, baseline=1.0)
        for s in (1.0, 1.0, 1.0, 1.0):
            tracker.add(s)
        assert tracker.check() is False
        for s in (3.0, 3.0, 3.0):
            tracker.add(s)
        assert tracker.check() is True

    def test_degradation_reported_not_remediated(self, breakers, runtime, clock):
        sup = HealthSupervisor(
            breakers,
            runtime,
            runtime,
            thresholds=HealthThresholds(latency_window=3, degradation_factor=2.0, baseline_latency_seconds=1.0),
            clock=clock,
        )
        for i in range(3):
            start = clock() - timedelta(seconds=10)
            runtime.upsert_branch(
                Branch(f"b{i}", "c", started_at=start, state=BranchState.COMPLETED, completed_at=start + timedelta(seconds=5))
            )
        report = sup.evaluate(runtime.snapshot())
        assert report.latency_degraded is True
        assert report.remediations == []


class TestChannels:
    def test_utilization_outpacing_compactor(self, supervisor, runtime, clock):
        runtime.upsert_channel(Channel("c1", utilization=0.2, compactor_rate=0.001, last_signal_at=clock()))
        _tick(supervisor, runtime)
        clock.advance(10)
        runtime.upsert_channel(Channel("c1", utilization=0.5, compactor_rate=0.001, last_signal_at=clock()))
        report = _tick(supervisor, runtime)
        assert [f.reason for f in report.channel_flags] == ["utilization_outpacing_compactor"]

    def test_liveness_timeout(self, supervisor, runtime, clock):
        runtime.upsert_channel(Channel("c1", utilization=0.1, compactor_rate=0.01, last_signal_at=clock()))
        clock.advance(301)
        report = _tick(supervisor, runtime)
        assert [f.reason for f in report.channel_flags] == ["liveness_timeout"]

    def test_flag_warning_logged_once(self, supervisor, runtime, clock):
        runtime.upsert_channel(Channel("c1", utilization=0.1, compactor_rate=0.01, last_signal_at=clock()))
        clock.advance(301)
        with patch("supervisor.health.logger") as log:
            _tick(supervisor, runtime)
            clock.advance(5)
            _tick(supervisor, runtime)
        flagged = [c for c in log.warning.call_args_list if c.args[0] == "channel_flagged"]
        assert len(flagged) == 1

    def test_crash_flag_cleared_by_new_activity(self, supervisor, runtime, clock):
        runtime.upsert_channel(Channel("c1", utilization=0.1, compactor_rate=0.01, last_signal_at=clock()))
        supervisor.handle_signals(
            [Signal(ComponentKind.CHANNEL, "c1", Severity.HIGH, SignalEvent.CRASH, created_at=clock())]
        )
        assert "crashed" in [f.reason for f in _tick(supervisor, runtime).channel_flags]

        clock.advance(5)
        runtime.upsert_channel(Channel("c1", utilization=0.1, compactor_rate=0.01, last_signal_at=clock()))
        assert "crashed" not in [f.reason for f in _tick(supervisor, runtime).channel_flags]


    def test_state_dropped_when_channel_leaves(self, supervisor, runtime, clock):
        runtime.upsert_channel(Channel("c1", utilization=0.1, compactor_rate=0.01, last_signal_at=clock()))
        supervisor.handle_signals(
            [Signal(ComponentKind.CHANNEL, "c1", Severity.HIGH, SignalEvent.CRASH, created_at=clock())]
        )
        _tick(supervisor, runtime)

        report = supervisor.evaluate(SystemSnapshot(taken_at=clock()))

        assert report.channel_flags == []
        assert supervisor._active_flags == set()
        assert supervisor._crashed_at == {}
        assert supervisor._channel_samples == {}


class TestSignals:
    def test_three_failures_open_breaker_and_disable_dispatch(self, supervisor, runtime):
        failures = [
            Signal(ComponentKind.TOOL, "search_tool", Severity.MEDIUM, signature="timeout") for _ in range(3)
        ]
        with patch("supervisor.breaker.logger") as log:
            report = supervisor.handle_signals(failures)
        assert supervisor.breakers.is_open(ComponentKind.TOOL, "search_tool")
        assert not runtime.is_dispatchable(ComponentKind.TOOL, "search_tool")
        assert [r.action for r in report.remediations] == ["disable"]
        opened = [c for c in log.warning.call_args_list if c.args[0] == "breaker_opened"]
        assert len(opened) == 1
        assert opened[0].kwargs["component_id"] == "search_tool"

    def test_success_resets_breaker_count(self, supervisor):
        sigs = [
            Signal(ComponentKind.TOOL, "t", Severity.LOW),
            Signal(ComponentKind.TOOL, "t", Severity.LOW),
            Signal(ComponentKind.TOOL, "t", Severity.LOW, SignalEvent.SUCCESS),
            Signal(ComponentKind.TOOL, "t", Severity.LOW),
        ]
        supervisor.handle_signals(sigs)
        assert supervisor.breakers.get(ComponentKind.TOOL, "t").consecutive_failures == 1

    def test_provider_outage_logged_as_error(self, supervisor):
        with patch("supervisor.health.logger") as log:
            supervisor.handle_signals(
                [Signal(ComponentKind.PROVIDER, "anthropic", Severity.CRITICAL, signature="503")]
            )
        log.error.assert_called_once()
        assert log.error.call_args.args[0] == "provider_unavailable"

    def test_worker_crash_kills(self, supervisor, runtime, clock):
        runtime.upsert_worker(_worker(clock))
        report = supervisor.handle_signals(
            [Signal(ComponentKind.WORKER, "w1", Severity.HIGH, SignalEvent.CRASH, signature="segfault")]
        )
        assert [(r.action, r.reason) for r in report.remediations] == [("kill", "crashed")]


class TestIsolation:
    def test_one_bad_entity_does_not_block_others(self, breakers, clock):
        workers = MagicMock()
        branches = MagicMock()
        sup = HealthSupervisor(breakers, workers, branches, clock=clock)
        broken = _worker(clock, "w1")
        broken.last_update = None
        snapshot = SystemSnapshot(
            taken_at=clock(),
            workers=[broken, _worker(clock, "w2", age=90)],
            branches=[Branch("b1", "c", started_at=clock() - timedelta(seconds=45))],
        )
        report = sup.evaluate(snapshot)
        assert len(report.errors) == 1
        assert report.errors[0].startswith("worker:w1")
        assert [(r.action, r.component_id) for r in report.remediations] == [("nudge", "w2"), ("kill", "b1")]
        branches.kill.assert_called_once_with("b1")

    def test_failed_command_retried_next_tick(self, breakers, clock):
        workers = MagicMock()
        workers.nudge.side_effect = [RuntimeError("runtime down"), None]
        sup = HealthSupervisor(breakers, workers, MagicMock(), clock=clock)
        snap = SystemSnapshot(taken_at=clock(), workers=[_worker(clock, age=90)])
        assert sup.evaluate(snap).remediations == []
        clock.advance(5)
        snap = SystemSnapshot(taken_at=clock(), workers=[_worker(clock, age=95)])
        assert [r.action for r in sup.evaluate(snap).remediations] == ["nudge"]
