"""Shared memory graph — store, consolidation engine, bulletin."""

from .bulletin import Bulletin, MemoryBulletin
from .consolidation import ConsolidationAbandoned, ConsolidationSettings, MemoryConsolidationEngine
from .models import Association, ConsolidationReport, LedgerEntry, Memory, RelationVerdict
from .resolver import RelationResolver
from .store import ExemptMemoryError, MemoryNotFoundError, MemoryStore, StructuralAccessError, StructuralSession

__all__ = [
    "Association",
    "Bulletin",
    "ConsolidationAbandoned",
    "ConsolidationReport",
    "ConsolidationSettings",
    "ExemptMemoryError",
    "LedgerEntry",
    "Memory",
    "MemoryBulletin",
    "MemoryConsolidationEngine",
    "MemoryNotFoundError",
    "MemoryStore",
    "RelationResolver",
    "RelationVerdict",
    "StructuralAccessError",
    "StructuralSession",
]
