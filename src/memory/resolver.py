"""Relation classification for candidate memory pairs during consolidation."""

import json

import structlog

from .models import Memory, RelationVerdict
from .similarity import negation_mismatch, text_similarity

logger = structlog.get_logger()

ACTIONS = ("MERGE", "UPDATES", "CONTRADICTS", "RELATED", "NONE")

_RELATION_SYSTEM = """You compare two memories held by an assistant and classify how they relate.

Choose ONE action:
- UPDATES: The newer memory replaces or revises the older one.
- CONTRADICTS: The two memories cannot both be true.
- RELATED: Same topic, both remain valid.
- NONE: Unrelated.
- MERGE: They state the same thing.

Respond as JSON: {"action": "UPDATES|CONTRADICTS|RELATED|NONE|MERGE", "reasoning": "<one sentence>"}
Output ONLY JSON. No preamble."""


class RelationResolver:
    """Classifies memory pairs as merge / supersede / contradiction / association.

    Heuristics decide the clear cases. Pairs in the ambiguous band between the
    update and merge thresholds go to the reasoning provider while the per-run
    budget lasts. A provider never turns a pair below the merge threshold into
    a merge: ambiguous similarity becomes an association instead.
    """

    def __init__(
        self,
        provider=None,
        merge_threshold: float = 0.9,
        update_threshold: float = 0.6,
        related_threshold: float = 0.3,
        budget: int = 10,
    ):
        if not related_threshold < update_threshold <= merge_threshold:
            raise ValueError("Thresholds must satisfy related < update <= merge")
        self._provider = provider
        self.merge_threshold = merge_threshold
        self.update_threshold = update_threshold
        self.related_threshold = related_threshold
        self.budget = budget
        self.calls_remaining = budget
        self.calls_made = 0

    def begin_run(self) -> None:
        self.calls_remaining = self.budget
        self.calls_made = 0

    def classify(self, a: Memory, b: Memory, similarity: float | None = None) -> RelationVerdict:
        """Classify one pair. ``newer_id``/``older_id`` are set for UPDATES."""
        sim = text_similarity(a.content, b.content) if similarity is None else similarity
        newer, older = (a, b) if a.created_at >= b.created_at else (b, a)
        verdict = self._heuristic(newer, older, sim)

        if (
            self._provider is not None
            and self.calls_remaining > 0
            and self.update_threshold <= sim < self.merge_threshold
        ):
            self.calls_remaining -= 1
            self.calls_made += 1
            try:
                verdict = self._llm_classify(newer, older, sim)
            except Exception as e:
                logger.warning("relation_reasoning_failed", error=str(e), newer=newer.id, older=older.id)
        return verdict

    def _heuristic(self, newer: Memory, older: Memory, sim: float) -> RelationVerdict:
        contradicts = negation_mismatch(newer.content, older.content)
        if sim >= self.merge_threshold and not contradicts and newer.memory_type == older.memory_type:
            return RelationVerdict(action="MERGE", similarity=sim, reasoning="Near-duplicate content")
        if sim >= self.update_threshold:
            if contradicts:
                return RelationVerdict(
                    action="CONTRADICTS", similarity=sim, reasoning="Negation differs on shared content"
                )
            if newer.created_at > older.created_at:
                return RelationVerdict(
                    action="UPDATES",
                    similarity=sim,
                    newer_id=newer.id,
                    older_id=older.id,
                    reasoning="Newer memory revises older content",
                )
            return RelationVerdict(action="RELATED", similarity=sim, reasoning="Same-age overlap")
        if sim >= self.related_threshold:
            return RelationVerdict(action="RELATED", similarity=sim, reasoning="Shared topic")
        return RelationVerdict(action="NONE", similarity=sim)

    def _llm_classify(self, newer: Memory, older: Memory, sim: float) -> RelationVerdict:
        lines = [
            f'Newer memory ({newer.created_at:%Y-%m-%d}, {newer.memory_type}): "{newer.content}"',
            f'Older memory ({older.created_at:%Y-%m-%d}, {older.memory_type}): "{older.content}"',
        ]
        response = self._provider.generate(
            messages=[{"role": "user", "content": "\n".join(lines)}],
            system=_RELATION_SYSTEM,
            max_tokens=200,
        )
        return self._parse_response(response, newer, older, sim)

    def _parse_response(self, response: str, newer: Memory, older: Memory, sim: float) -> RelationVerdict:
        text = response.strip()
        if text.startswith("```"):
            text = text.split("\n", 1)[-1]
        if text.endswith("```"):
            text = text.rsplit("```", 1)[0]
        text = text.strip()

        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            return self._heuristic(newer, older, sim)

        action = str(data.get("action", "RELATED")).upper()
        if action not in ACTIONS:
            action = "RELATED"
        if action == "MERGE" and sim < self.merge_threshold:
            action = "RELATED"

        verdict = RelationVerdict(
            action=action,
            similarity=sim,
            reasoning=data.get("reasoning", ""),
            source="llm",
        )
        if action == "UPDATES":
            verdict.newer_id = newer.id
            verdict.older_id = older.id
        return verdict
