"""Memory consolidation — the sole structural writer of the shared memory graph.

A pass runs inside ``MemoryStore.structural_pass()`` and walks these phases:
merge/associate/supersede/contradict over candidate pairs, observation
creation from detected patterns, decay, prune, orphan prune, and finally a
centrality recompute when anything structural changed. Each phase can also
be invoked on its own through ``run(operations=...)``.

Cancellation is cooperative: the engine checks the cancel event between
pairs and between phases and raises ``ConsolidationAbandoned``. Work already
committed stays committed; every step is in the ledger and individually
reversible.
"""

import threading
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Iterable

import structlog

from shared_types import AssociationKind

from .centrality import compute_centrality
from .models import ConsolidationReport, Memory
from .resolver import RelationResolver
from .store import ExemptMemoryError, MemoryStore, StructuralSession

logger = structlog.get_logger()

PHASES = ("relations", "observations", "decay", "prune", "orphans", "centrality")


class ConsolidationAbandoned(RuntimeError):
    """Raised at a cancel checkpoint when the pass exceeded its time budget."""


@dataclass
class ConsolidationSettings:
    supersede_decrement: float = 0.2
    decay_age: timedelta = timedelta(days=30)
    decay_half_life: timedelta = timedelta(days=30)
    prune_floor: float = 0.05
    orphan_threshold: float = 0.15
    orphan_min_age: timedelta = timedelta(hours=24)
    observation_importance: float = 0.2
    max_candidates: int = 5
    centrality_damping: float = 0.85
    centrality_iterations: int = 30

    def __post_init__(self):
        if self.orphan_threshold < self.prune_floor:
            raise ValueError("orphan_threshold must be >= prune_floor")
        if self.decay_half_life.total_seconds() <= 0:
            raise ValueError("decay_half_life must be positive")


class MemoryConsolidationEngine:
    def __init__(
        self,
        store: MemoryStore,
        resolver: RelationResolver | None = None,
        settings: ConsolidationSettings | None = None,
    ):
        self.store = store
        self.resolver = resolver or RelationResolver()
        self.settings = settings or ConsolidationSettings()
        self._lock = threading.Lock()

    def run(
        self,
        patterns: Iterable | None = None,
        cancel_event: threading.Event | None = None,
        operations: Iterable[str] | None = None,
    ) -> ConsolidationReport:
        """Run one consolidation pass and return its report.

        Args:
            patterns: Detected cross-channel patterns (objects with
                ``pattern_key``, ``summary``, ``channels``, ``confidence``).
            cancel_event: Set by the caller to abandon the pass.
            operations: Subset of PHASES to run; defaults to all.
        """
        ops = set(operations) if operations is not None else set(PHASES)
        unknown = ops - set(PHASES)
        if unknown:
            raise ValueError(f"Unknown consolidation operations: {sorted(unknown)}")

        run_id = uuid.uuid4().hex[:12]
        report = ConsolidationReport(run_id=run_id, started_at=self.store.now())
        self.resolver.begin_run()

        with structlog.contextvars.bound_contextvars(run_id=run_id), self._lock:
            try:
                with self.store.structural_pass(run_id) as session:
                    if "relations" in ops:
                        self._checkpoint(cancel_event)
                        self.consolidate_relations(session, report, cancel_event)
                    if "observations" in ops and patterns:
                        self._checkpoint(cancel_event)
                        self.create_observations(session, patterns, report)
                    if "decay" in ops:
                        self._checkpoint(cancel_event)
                        report.decayed = session.decay(self.settings.decay_age, self.settings.decay_half_life)
                    if "prune" in ops:
                        self._checkpoint(cancel_event)
                        report.pruned = len(session.prune(self.settings.prune_floor))
                    if "orphans" in ops:
                        self._checkpoint(cancel_event)
                        report.orphans_pruned = len(
                            session.prune_orphans(self.settings.orphan_threshold, self.settings.orphan_min_age)
                        )
                    if "centrality" in ops and (report.structural_changes or operations is not None):
                        self._checkpoint(cancel_event)
                        report.centrality_updated = self.recompute_centrality(session)
            except ConsolidationAbandoned:
                report.abandoned = True
                logger.info(
                    "consolidation_stopped",
                    merged=report.merged,
                    associated=report.associated,
                    pruned=report.pruned,
                )
            finally:
                report.reasoning_calls = self.resolver.calls_made
                report.finished_at = self.store.now()

        if not report.abandoned:
            logger.info(
                "consolidation_complete",
                merged=report.merged,
                associated=report.associated,
                superseded=report.superseded,
                contradictions=report.contradictions,
                decayed=report.decayed,
                pruned=report.pruned,
                orphans=report.orphans_pruned,
                observations=report.observations,
                reasoning_calls=report.reasoning_calls,
            )
        return report

    @staticmethod
    def _checkpoint(cancel_event: threading.Event | None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise ConsolidationAbandoned("Consolidation cancelled")

    def consolidate_relations(
        self,
        session: StructuralSession,
        report: ConsolidationReport,
        cancel_event: threading.Event | None = None,
    ) -> None:
        """Compare each active memory with its nearest candidates and act on the verdict."""
        pool = session.active()
        gone: set[str] = set()
        seen: set[frozenset[str]] = set()

        for memory in pool:
            if memory.id in gone:
                continue
            current = memory
            live = [m for m in pool if m.id not in gone]
            for candidate, sim in session.candidates(current, live, limit=self.settings.max_candidates):
                self._checkpoint(cancel_event)
                pair = frozenset((current.id, candidate.id))
                if candidate.id in gone or pair in seen:
                    continue
                seen.add(pair)
                try:
                    survivor = self._apply_verdict(session, report, current, candidate, sim)
                except ExemptMemoryError:
                    logger.info("merge_skipped_exempt", a=current.id, b=candidate.id)
                    continue
                except Exception as e:
                    logger.exception("consolidation_pair_failed", a=current.id, b=candidate.id)
                    report.errors.append(f"{current.id}/{candidate.id}: {e}")
                    continue
                if survivor is None:
                    continue
                discarded = candidate.id if survivor == current.id else current.id
                gone.add(discarded)
                if discarded == current.id:
                    break
                current = session.get(survivor) or current

    def _apply_verdict(
        self,
        session: StructuralSession,
        report: ConsolidationReport,
        a: Memory,
        b: Memory,
        sim: float,
    ) -> str | None:
        """Apply one verdict. Returns the survivor id when a merge happened."""
        verdict = self.resolver.classify(a, b, sim)
        cross_channel = bool(a.channels and b.channels and not (a.channels & b.channels))

        if verdict.action == "MERGE":
            if a.exempt or b.exempt:
                verdict.action = "RELATED"
            else:
                survivor = session.merge(a.id, b.id)
                if survivor:
                    report.merged += 1
                return survivor

        if verdict.action == "UPDATES":
            if session.supersede(verdict.newer_id, verdict.older_id, self.settings.supersede_decrement):
                report.superseded += 1
        elif verdict.action == "CONTRADICTS":
            if session.flag_contradiction(a.id, b.id, verdict.reasoning):
                report.contradictions += 1
        elif verdict.action == "RELATED":
            edge = session.associate(
                a.id,
                b.id,
                AssociationKind.RELATED_TO,
                weight=round(sim, 4),
                payload={"cross_channel": cross_channel, "source": verdict.source},
            )
            if edge:
                report.associated += 1
        return None

    def create_observations(self, session: StructuralSession, patterns: Iterable, report: ConsolidationReport) -> None:
        for pattern in patterns:
            try:
                created = session.create_observation(
                    content=pattern.summary,
                    channels=set(pattern.channels),
                    importance=self.settings.observation_importance,
                    pattern_key=pattern.pattern_key,
                    metadata={"confidence": pattern.confidence, "occurrences": pattern.occurrences},
                )
            except Exception as e:
                logger.exception("observation_failed", pattern=getattr(pattern, "pattern_key", None))
                report.errors.append(f"observation: {e}")
                continue
            if created:
                report.observations += 1

    def recompute_centrality(self, session: StructuralSession) -> int:
        node_ids = [m.id for m in session.active()]
        scores = compute_centrality(
            node_ids,
            session.edges(),
            damping=self.settings.centrality_damping,
            iterations=self.settings.centrality_iterations,
        )
        return session.update_centrality(scores)
