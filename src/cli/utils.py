"""Shared CLI utilities."""

from datetime import timedelta
from pathlib import Path

from rich.console import Console

console = Console()


def memory_stats_provider(store):
    """Adapt MemoryStore.get_stats() to the snapshot's MemoryStats shape."""
    from supervisor.models import MemoryStats

    def _stats() -> MemoryStats:
        stats = store.get_stats()
        return MemoryStats(
            count=stats["total_active"],
            by_type=stats["by_type"],
            importance_histogram=stats["importance_histogram"],
        )

    return _stats


def get_components(config_path: Path | None = None, with_cortex: bool = True):
    """Build every component from config.

    Args:
        config_path: Explicit config file (None = discover).
        with_cortex: If False, skip the supervisor/loop (for store-only commands).
    """
    from cli.config import get_paths, load_config, load_config_model
    from llm import create_reasoning_provider
    from memory import (
        ConsolidationSettings,
        MemoryBulletin,
        MemoryConsolidationEngine,
        MemoryStore,
        RelationResolver,
    )
    from supervisor import CircuitBreakerRegistry

    config = load_config(config_path)
    config_model = load_config_model(config_path)
    paths = get_paths(config)

    store = MemoryStore(paths["db_path"], chroma_dir=paths["chroma_dir"])
    breakers = CircuitBreakerRegistry(paths["db_path"], threshold=config_model.breaker.threshold)
    components = {
        "config": config,
        "config_model": config_model,
        "paths": paths,
        "store": store,
        "breakers": breakers,
    }
    if not with_cortex:
        return components

    from cortex import Cortex
    from supervisor import HealthSupervisor, HealthThresholds, InMemoryRuntime, PatternDetector, SignalBuffer

    provider = create_reasoning_provider(config["llm"])
    mem = config_model.memory
    resolver = RelationResolver(
        provider=provider,
        merge_threshold=mem.merge_threshold,
        update_threshold=mem.update_threshold,
        related_threshold=mem.related_threshold,
        budget=config_model.loop.reasoning_budget,
    )
    engine = MemoryConsolidationEngine(
        store,
        resolver=resolver,
        settings=ConsolidationSettings(
            supersede_decrement=mem.supersede_decrement,
            decay_age=timedelta(days=mem.decay_age_days),
            decay_half_life=timedelta(days=mem.decay_half_life_days),
            prune_floor=mem.prune_floor,
            orphan_threshold=mem.orphan_threshold,
            orphan_min_age=timedelta(hours=mem.orphan_min_age_hours),
            observation_importance=mem.observation_importance,
            max_candidates=mem.max_candidates,
            centrality_damping=mem.centrality_damping,
            centrality_iterations=mem.centrality_iterations,
        ),
    )
    bulletin = None
    if config_model.bulletin.enabled:
        bulletin = MemoryBulletin(store, provider=provider, max_words=config_model.bulletin.max_words)

    runtime = InMemoryRuntime(memory_stats=memory_stats_provider(store))
    workers, branches = config_model.workers, config_model.branches
    supervisor = HealthSupervisor(
        breakers,
        worker_runtime=runtime,
        branch_runtime=runtime,
        dispatch=runtime,
        thresholds=HealthThresholds(
            worker_stall_seconds=workers.stall_seconds,
            worker_kill_seconds=workers.kill_seconds,
            nudge_grace_seconds=workers.nudge_grace_seconds,
            completion_grace_seconds=workers.completion_grace_seconds,
            kill_retry_seconds=workers.kill_retry_seconds,
            branch_stall_seconds=branches.stall_seconds,
            latency_window=branches.latency_window,
            degradation_factor=branches.degradation_factor,
            baseline_latency_seconds=branches.baseline_seconds,
            channel_liveness_seconds=config_model.channels.liveness_timeout_seconds,
        ),
    )
    signals = SignalBuffer(capacity=config_model.signals.capacity)
    patterns = config_model.patterns
    loop = config_model.loop
    cortex = Cortex(
        monitor=runtime,
        supervisor=supervisor,
        signals=signals,
        patterns=PatternDetector(
            window_seconds=patterns.window_seconds,
            min_channels=patterns.min_channels,
            task_repeat_threshold=patterns.task_repeat_threshold,
        ),
        engine=engine,
        bulletin=bulletin,
        tick_interval=loop.tick_interval_seconds,
        consolidation_interval=loop.consolidation_interval_seconds,
        consolidation_timeout=loop.consolidation_timeout_seconds,
    )
    components.update(
        runtime=runtime,
        supervisor=supervisor,
        signals=signals,
        engine=engine,
        bulletin=bulletin,
        cortex=cortex,
    )
    return components
