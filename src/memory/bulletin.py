"""Memory bulletin — a short ranked digest of the graph that channels read instead of the graph itself."""

from dataclasses import dataclass, field
from datetime import datetime

import structlog

from shared_types import AssociationKind, MemoryType

from .store import MemoryStore

logger = structlog.get_logger()

_CONDENSE_SYSTEM = """You condense an assistant's memory digest into a briefing for its conversation channels.
Keep every identity and permanent item. Prefer decisions and open contradictions over plain facts.
Plain prose, no headings, no preamble."""

# (title, memory types) in render order
_SECTIONS = (
    ("Identity", (MemoryType.IDENTITY, MemoryType.PERMANENT)),
    ("Decisions", (MemoryType.DECISION,)),
    ("Facts", (MemoryType.FACT, MemoryType.PREFERENCE, MemoryType.GOAL, MemoryType.EVENT)),
    ("Observations", (MemoryType.OBSERVATION,)),
)


@dataclass
class Bulletin:
    text: str
    generated_at: datetime
    sections: dict[str, list[str]] = field(default_factory=dict)
    condensed: bool = False


class MemoryBulletin:
    """Build a bulletin from the store, optionally condensed by a reasoning provider."""

    def __init__(self, store: MemoryStore, provider=None, max_words: int = 500, per_section: int = 5):
        self.store = store
        self._provider = provider
        self.max_words = max_words
        self.per_section = per_section
        self.latest: Bulletin | None = None

    def gather(self) -> dict[str, list[str]]:
        active = self.store.list_active()
        by_id = {m.id: m for m in active}
        sections: dict[str, list[str]] = {}
        for title, types in _SECTIONS:
            members = [m for m in active if m.memory_type in types]
            if title == "Observations":
                members.sort(key=lambda m: m.created_at, reverse=True)
            else:
                members.sort(key=lambda m: m.rank_score, reverse=True)
            limit = None if title == "Identity" else self.per_section
            sections[title] = [m.content for m in members[:limit]]

        open_items = []
        for edge in self.store.edges_by_kind(AssociationKind.CONTRADICTS):
            if edge.payload.get("resolved"):
                continue
            a, b = by_id.get(edge.source_id), by_id.get(edge.target_id)
            if a and b:
                open_items.append(f'"{a.content}" vs "{b.content}"')
        sections["Open contradictions"] = open_items[: self.per_section]
        return sections

    def build(self) -> Bulletin:
        sections = self.gather()
        raw = render(sections)
        bulletin = Bulletin(text=raw, generated_at=datetime.now(), sections=sections)
        if self._provider is not None and raw:
            try:
                condensed = self._provider.generate(
                    messages=[{"role": "user", "content": f"Condense to at most {self.max_words} words:\n\n{raw}"}],
                    system=_CONDENSE_SYSTEM,
                    max_tokens=max(200, self.max_words * 2),
                )
                bulletin.text = _truncate_words(condensed.strip(), self.max_words)
                bulletin.condensed = True
            except Exception as e:
                logger.warning("bulletin_condense_failed", error=str(e))
        if not bulletin.condensed:
            bulletin.text = _truncate_words(raw, self.max_words)
        self.latest = bulletin
        logger.info("bulletin_built", words=len(bulletin.text.split()), condensed=bulletin.condensed)
        return bulletin


def render(sections: dict[str, list[str]]) -> str:
    parts = []
    for title, lines in sections.items():
        if not lines:
            continue
        parts.append(f"## {title}")
        parts.extend(f"- {line}" for line in lines)
        parts.append("")
    return "\n".join(parts).strip()


def _truncate_words(text: str, max_words: int) -> str:
    words = text.split(" ")
    if len([w for w in words if w.strip()]) <= max_words:
        return text
    kept, count = [], 0
    for w in words:
        if w.strip():
            count += 1
        if count > max_words:
            break
        kept.append(w)
    return " ".join(kept).rstrip() + " ..."
