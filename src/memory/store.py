"""Persistent storage for the shared memory graph — SQLite metadata + optional ChromaDB index.

Two write paths exist. The append path (``add``, ``associate``,
``record_access``) may be used by any channel at any time. The structural
path (merge, supersede, decay, prune, centrality, observations) is only
reachable through a ``StructuralSession`` obtained from ``structural_pass()``,
which admits one writer at a time. Reads block only while a merge or prune
step holds the write side of the graph lock.
"""

import json
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Iterator

import structlog

from cli.retry import db_retry
from db import read_connection, transaction
from shared_types import AssociationKind, MemoryStatus, MemoryType

from .locks import ReadWriteLock
from .models import Association, LedgerEntry, Memory
from .similarity import richness, text_similarity

logger = structlog.get_logger()

_IMPORTANCE_BUCKETS = ("0.0-0.2", "0.2-0.4", "0.4-0.6", "0.6-0.8", "0.8-1.0")
_NOT_EXEMPT = "exempt = 0 AND memory_type NOT IN ('identity', 'permanent')"


class MemoryNotFoundError(LookupError):
    """Memory id does not exist (even after following merge redirects)."""


class ExemptMemoryError(PermissionError):
    """Structural change attempted on an identity/permanent memory."""


class StructuralAccessError(RuntimeError):
    """Structural method used outside an active consolidation pass."""


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


def _ts(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt else None


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class MemoryStore:
    """SQLite + ChromaDB persistence for the memory graph."""

    def __init__(
        self,
        db_path: str | Path,
        chroma_dir: str | Path | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._chroma_dir = Path(chroma_dir).expanduser() if chroma_dir else None
        self._collection = None
        self._clock = clock
        self._graph_lock = ReadWriteLock()
        self._structural = threading.Lock()
        self._init_db()

    def now(self) -> datetime:
        return self._clock()

    def _init_db(self):
        with transaction(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS memories (
                    id TEXT PRIMARY KEY,
                    content TEXT NOT NULL,
                    memory_type TEXT NOT NULL,
                    importance REAL NOT NULL DEFAULT 0.5,
                    channels TEXT NOT NULL DEFAULT '[]',
                    created_at TIMESTAMP NOT NULL,
                    last_accessed_at TIMESTAMP,
                    access_count INTEGER NOT NULL DEFAULT 0,
                    exempt INTEGER NOT NULL DEFAULT 0,
                    centrality REAL NOT NULL DEFAULT 0,
                    last_decay_at TIMESTAMP,
                    status TEXT NOT NULL DEFAULT 'active',
                    merged_into TEXT,
                    metadata TEXT NOT NULL DEFAULT '{}'
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS associations (
                    id TEXT PRIMARY KEY,
                    source_id TEXT NOT NULL,
                    target_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    weight REAL NOT NULL DEFAULT 1.0,
                    payload TEXT NOT NULL DEFAULT '{}',
                    created_by TEXT NOT NULL DEFAULT 'core',
                    created_at TIMESTAMP NOT NULL,
                    UNIQUE (source_id, target_id, kind)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS consolidation_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    memory_ids TEXT NOT NULL,
                    detail TEXT NOT NULL DEFAULT '{}',
                    created_at TIMESTAMP NOT NULL,
                    reverted INTEGER NOT NULL DEFAULT 0
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_memories_status ON memories(status, memory_type)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_assoc_source ON associations(source_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_assoc_target ON associations(target_id)")

    @property
    def _chroma(self):
        """Lazy-init ChromaDB collection."""
        if self._collection is None and self._chroma_dir:
            try:
                import chromadb
                from chromadb.config import Settings

                self._chroma_dir.mkdir(parents=True, exist_ok=True)
                client = chromadb.PersistentClient(
                    path=str(self._chroma_dir),
                    settings=Settings(anonymized_telemetry=False),
                )
                self._collection = client.get_or_create_collection(
                    name="cortex_memories",
                    metadata={"hnsw:space": "cosine"},
                )
            except Exception as e:
                logger.warning("chroma_init_failed", error=str(e))
        return self._collection

    def _index(self, memory: Memory) -> None:
        coll = self._chroma
        if coll:
            try:
                coll.upsert(
                    ids=[memory.id],
                    documents=[memory.content],
                    metadatas=[{"memory_type": str(memory.memory_type)}],
                )
            except Exception as e:
                logger.warning("chroma_upsert_failed", memory_id=memory.id, error=str(e))

    def _unindex(self, memory_ids: list[str]) -> None:
        coll = self._chroma
        if coll and memory_ids:
            try:
                coll.delete(ids=memory_ids)
            except Exception as e:
                logger.warning("chroma_delete_failed", count=len(memory_ids), error=str(e))

    # ------------------ append path ------------------

    @db_retry()
    def add(self, memory: Memory) -> Memory:
        """Append a memory written by a channel."""
        if MemoryType(memory.memory_type) == MemoryType.OBSERVATION:
            raise ValueError("Observation memories are created by consolidation only")
        return self._insert_memory(memory)

    def _insert_memory(self, memory: Memory) -> Memory:
        if not memory.id:
            memory.id = _new_id()
        with transaction(self.db_path) as conn:
            self._write_memory(conn, memory, insert=True)
        self._index(memory)
        return memory

    @db_retry()
    def associate(
        self,
        source_id: str,
        target_id: str,
        kind: AssociationKind,
        created_by: str,
        weight: float = 1.0,
        payload: dict | None = None,
    ) -> Association | None:
        """Append an association from a channel. Never deletes; Updates edges are core-only."""
        kind = AssociationKind(kind)
        if kind == AssociationKind.UPDATES:
            raise ValueError("Updates edges are created by consolidation only")
        with transaction(self.db_path) as conn:
            assoc, _ = self._insert_edge(conn, source_id, target_id, kind, created_by, weight, payload)
        return assoc

    @db_retry()
    def record_access(self, memory_ids: list[str]) -> None:
        """Recall bookkeeping for the retrieval path."""
        now = _ts(self._clock())
        with transaction(self.db_path) as conn:
            for mid in memory_ids:
                resolved = self._resolve(conn, mid)
                if resolved:
                    conn.execute(
                        "UPDATE memories SET access_count = access_count + 1, last_accessed_at = ? "
                        "WHERE id = ?",
                        (now, resolved),
                    )

    # ------------------ read path ------------------

    def get(self, memory_id: str, follow_redirects: bool = True) -> Memory | None:
        with self._graph_lock.read(), read_connection(self.db_path) as conn:
            if follow_redirects:
                memory_id = self._resolve(conn, memory_id)
                if memory_id is None:
                    return None
            return self._fetch(conn, memory_id)

    def resolve(self, memory_id: str) -> str | None:
        """Follow merge redirects to the surviving memory id."""
        with self._graph_lock.read(), read_connection(self.db_path) as conn:
            return self._resolve(conn, memory_id)

    def associations(self, memory_id: str) -> list[Association]:
        with self._graph_lock.read(), read_connection(self.db_path) as conn:
            resolved = self._resolve(conn, memory_id)
            if resolved is None:
                return []
            return self._edges_of(conn, resolved)

    def list_active(self, memory_type: MemoryType | None = None, limit: int | None = None) -> list[Memory]:
        with self._graph_lock.read(), read_connection(self.db_path) as conn:
            return self._active(conn, memory_type, limit)

    def edges_by_kind(self, kind: AssociationKind) -> list[Association]:
        with self._graph_lock.read(), read_connection(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM associations WHERE kind = ? ORDER BY created_at", (str(AssociationKind(kind)),)
            ).fetchall()
            return [self._row_to_assoc(r) for r in rows]

    def search(self, query: str, limit: int = 10) -> list[Memory]:
        """Keyword search over active memories, best rank first."""
        with self._graph_lock.read(), read_connection(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM memories WHERE status = 'active' AND content LIKE ? "
                "ORDER BY importance * (1 + centrality) DESC LIMIT ?",
                (f"%{query}%", limit),
            ).fetchall()
            return [self._row_to_memory(r) for r in rows]

    def get_stats(self) -> dict:
        """Counts by type, importance histogram, merged/pruned totals."""
        with self._graph_lock.read(), read_connection(self.db_path) as conn:
            by_type = {
                r["memory_type"]: r["cnt"]
                for r in conn.execute(
                    "SELECT memory_type, COUNT(*) AS cnt FROM memories "
                    "WHERE status = 'active' GROUP BY memory_type"
                ).fetchall()
            }
            by_status = {
                r["status"]: r["cnt"]
                for r in conn.execute(
                    "SELECT status, COUNT(*) AS cnt FROM memories GROUP BY status"
                ).fetchall()
            }
            histogram = dict.fromkeys(_IMPORTANCE_BUCKETS, 0)
            for (importance,) in conn.execute(
                "SELECT importance FROM memories WHERE status = 'active'"
            ).fetchall():
                histogram[_IMPORTANCE_BUCKETS[min(int(importance * 5), 4)]] += 1
            edges = conn.execute("SELECT COUNT(*) FROM associations").fetchone()[0]
        return {
            "total_active": by_status.get(MemoryStatus.ACTIVE.value, 0),
            "total_merged": by_status.get(MemoryStatus.MERGED.value, 0),
            "total_pruned": by_status.get(MemoryStatus.PRUNED.value, 0),
            "by_type": by_type,
            "importance_histogram": histogram,
            "associations": edges,
        }

    def ledger(self, limit: int = 50, run_id: str | None = None) -> list[LedgerEntry]:
        sql = "SELECT * FROM consolidation_log"
        params: list = []
        if run_id:
            sql += " WHERE run_id = ?"
            params.append(run_id)
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        with read_connection(self.db_path) as conn:
            rows = conn.execute(sql, params).fetchall()
        return [
            LedgerEntry(
                id=r["id"],
                run_id=r["run_id"],
                action=r["action"],
                memory_ids=json.loads(r["memory_ids"]),
                detail=json.loads(r["detail"]),
                created_at=datetime.fromisoformat(r["created_at"]),
                reverted=bool(r["reverted"]),
            )
            for r in rows
        ]

    # ------------------ structural path ------------------

    @contextmanager
    def structural_pass(self, run_id: str, timeout: float = -1) -> Iterator["StructuralSession"]:
        """Acquire exclusive access to structural mutation for one consolidation pass."""
        if not self._structural.acquire(timeout=timeout):
            raise StructuralAccessError("Another structural pass is in progress")
        session = StructuralSession(self, run_id)
        try:
            yield session
        finally:
            session._open = False
            self._structural.release()

    def restore(self, memory_id: str) -> bool:
        """Operator instruction: bring a pruned memory back."""
        with self.structural_pass(run_id="operator") as session:
            return session.restore(memory_id)

    def revert(self, entry_id: int) -> bool:
        """Operator instruction: undo one ledger entry."""
        with self.structural_pass(run_id="operator") as session:
            return session.revert(entry_id)

    # ------------------ internals ------------------

    def _resolve(self, conn: sqlite3.Connection, memory_id: str) -> str | None:
        seen = set()
        current = memory_id
        while current and current not in seen:
            seen.add(current)
            row = conn.execute(
                "SELECT status, merged_into FROM memories WHERE id = ?", (current,)
            ).fetchone()
            if row is None:
                return None
            if row["status"] == MemoryStatus.MERGED.value and row["merged_into"]:
                current = row["merged_into"]
                continue
            return current
        logger.error("redirect_cycle", memory_id=memory_id)
        return None

    def _fetch(self, conn: sqlite3.Connection, memory_id: str) -> Memory | None:
        row = conn.execute("SELECT * FROM memories WHERE id = ?", (memory_id,)).fetchone()
        return self._row_to_memory(row) if row else None

    def _active(
        self, conn: sqlite3.Connection, memory_type: MemoryType | None = None, limit: int | None = None
    ) -> list[Memory]:
        sql = "SELECT * FROM memories WHERE status = 'active'"
        params: list = []
        if memory_type:
            sql += " AND memory_type = ?"
            params.append(str(memory_type))
        sql += " ORDER BY created_at"
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        return [self._row_to_memory(r) for r in conn.execute(sql, params).fetchall()]

    def _edges_of(self, conn: sqlite3.Connection, memory_id: str) -> list[Association]:
        rows = conn.execute(
            "SELECT * FROM associations WHERE source_id = ? OR target_id = ? ORDER BY created_at",
            (memory_id, memory_id),
        ).fetchall()
        return [self._row_to_assoc(r) for r in rows]

    def _insert_edge(
        self,
        conn: sqlite3.Connection,
        source_id: str,
        target_id: str,
        kind: AssociationKind,
        created_by: str,
        weight: float = 1.0,
        payload: dict | None = None,
    ) -> tuple[Association | None, bool]:
        """Insert an edge between resolved endpoints. Returns (edge, created)."""
        src = self._resolve(conn, source_id)
        tgt = self._resolve(conn, target_id)
        if src is None or tgt is None:
            raise MemoryNotFoundError(f"Unknown memory: {source_id if src is None else target_id}")
        if src == tgt:
            return None, False
        if not kind.directed:
            src, tgt = sorted((src, tgt))
        existing = conn.execute(
            "SELECT * FROM associations WHERE source_id = ? AND target_id = ? AND kind = ?",
            (src, tgt, str(kind)),
        ).fetchone()
        if existing:
            return self._row_to_assoc(existing), False
        assoc = Association(
            id=_new_id(),
            source_id=src,
            target_id=tgt,
            kind=kind,
            weight=weight,
            payload=payload or {},
            created_by=created_by,
            created_at=self._clock(),
        )
        conn.execute(
            "INSERT INTO associations (id, source_id, target_id, kind, weight, payload, created_by, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                assoc.id,
                assoc.source_id,
                assoc.target_id,
                str(assoc.kind),
                assoc.weight,
                json.dumps(assoc.payload),
                assoc.created_by,
                _ts(assoc.created_at),
            ),
        )
        return assoc, True

    def _write_memory(self, conn: sqlite3.Connection, m: Memory, insert: bool = False) -> None:
        values = (
            m.content,
            str(m.memory_type),
            m.importance,
            json.dumps(sorted(m.channels)),
            _ts(m.created_at),
            _ts(m.last_accessed_at),
            m.access_count,
            int(bool(m.exempt)),
            m.centrality,
            _ts(m.last_decay_at),
            str(m.status),
            m.merged_into,
            json.dumps(m.metadata),
        )
        if insert:
            conn.execute(
                "INSERT INTO memories (content, memory_type, importance, channels, created_at, "
                "last_accessed_at, access_count, exempt, centrality, last_decay_at, status, "
                "merged_into, metadata, id) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (*values, m.id),
            )
        else:
            conn.execute(
                "UPDATE memories SET content = ?, memory_type = ?, importance = ?, channels = ?, "
                "created_at = ?, last_accessed_at = ?, access_count = ?, exempt = ?, centrality = ?, "
                "last_decay_at = ?, status = ?, merged_into = ?, metadata = ? WHERE id = ?",
                (*values, m.id),
            )

    @staticmethod
    def _row_to_memory(row: sqlite3.Row) -> Memory:
        d = dict(row)
        return Memory(
            id=d["id"],
            content=d["content"],
            memory_type=MemoryType(d["memory_type"]),
            importance=d["importance"],
            channels=set(json.loads(d["channels"] or "[]")),
            created_at=datetime.fromisoformat(d["created_at"]),
            last_accessed_at=_dt(d["last_accessed_at"]),
            access_count=d["access_count"],
            exempt=bool(d["exempt"]),
            centrality=d["centrality"],
            last_decay_at=_dt(d["last_decay_at"]),
            status=MemoryStatus(d["status"]),
            merged_into=d["merged_into"],
            metadata=json.loads(d["metadata"] or "{}"),
        )

    @staticmethod
    def _row_to_assoc(row: sqlite3.Row) -> Association:
        d = dict(row)
        return Association(
            id=d["id"],
            source_id=d["source_id"],
            target_id=d["target_id"],
            kind=AssociationKind(d["kind"]),
            weight=d["weight"],
            payload=json.loads(d["payload"] or "{}"),
            created_by=d["created_by"],
            created_at=datetime.fromisoformat(d["created_at"]),
        )


def _memory_state(m: Memory) -> dict:
    """Serializable copy of the fields a merge or decay may overwrite."""
    return {
        "content": m.content,
        "importance": m.importance,
        "channels": sorted(m.channels),
        "created_at": _ts(m.created_at),
        "last_accessed_at": _ts(m.last_accessed_at),
        "access_count": m.access_count,
        "last_decay_at": _ts(m.last_decay_at),
        "metadata": m.metadata,
    }


def _apply_state(m: Memory, state: dict) -> None:
    m.content = state["content"]
    m.importance = state["importance"]
    m.channels = set(state["channels"])
    m.created_at = _dt(state["created_at"]) or m.created_at
    m.last_accessed_at = _dt(state["last_accessed_at"])
    m.access_count = state["access_count"]
    m.last_decay_at = _dt(state["last_decay_at"])
    m.metadata = state["metadata"]


class StructuralSession:
    """Exclusive structural-mutation handle for one consolidation pass.

    Every mutating call writes one ledger entry so it can be reverted on its
    own. Exempt memories are never decayed, pruned, merged or re-weighted
    here.
    """

    def __init__(self, store: MemoryStore, run_id: str):
        self.store = store
        self.run_id = run_id
        self._open = True

    def _require(self) -> None:
        if not self._open:
            raise StructuralAccessError("Structural session is closed")

    @property
    def _now(self) -> datetime:
        return self.store._clock()

    def _log(self, conn: sqlite3.Connection, action: str, memory_ids: list[str], detail: dict) -> int:
        cur = conn.execute(
            "INSERT INTO consolidation_log (run_id, action, memory_ids, detail, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (self.run_id, action, json.dumps(memory_ids), json.dumps(detail, default=str), _ts(self._now)),
        )
        return cur.lastrowid

    # --- reads for the engine (no graph lock; the session already excludes other writers) ---

    def get(self, memory_id: str) -> Memory | None:
        self._require()
        with read_connection(self.store.db_path) as conn:
            resolved = self.store._resolve(conn, memory_id)
            return self.store._fetch(conn, resolved) if resolved else None

    def active(self, memory_type: MemoryType | None = None, limit: int | None = None) -> list[Memory]:
        self._require()
        with read_connection(self.store.db_path) as conn:
            return self.store._active(conn, memory_type, limit)

    def edges(self) -> list[Association]:
        """All edges whose endpoints are both active."""
        self._require()
        with read_connection(self.store.db_path) as conn:
            rows = conn.execute(
                "SELECT a.* FROM associations a "
                "JOIN memories s ON s.id = a.source_id AND s.status = 'active' "
                "JOIN memories t ON t.id = a.target_id AND t.status = 'active'"
            ).fetchall()
            return [self.store._row_to_assoc(r) for r in rows]

    def edges_of(self, memory_id: str) -> list[Association]:
        self._require()
        with read_connection(self.store.db_path) as conn:
            return self.store._edges_of(conn, memory_id)

    def candidates(self, memory: Memory, pool: list[Memory], limit: int = 5) -> list[tuple[Memory, float]]:
        """Most similar active memories to ``memory``, best first.

        Uses the ChromaDB index to narrow the pool when available, then scores
        lexically so thresholds mean the same thing with or without it.
        """
        self._require()
        by_id = {m.id: m for m in pool if m.id != memory.id}
        coll = self.store._chroma
        if coll and by_id:
            try:
                results = coll.query(
                    query_texts=[memory.content],
                    n_results=min(limit * 3, len(by_id)),
                    include=["distances"],
                )
                ids = results["ids"][0] if results["ids"] else []
                narrowed = {i: by_id[i] for i in ids if i in by_id}
                if narrowed:
                    by_id = narrowed
            except Exception as e:
                logger.warning("chroma_query_failed", error=str(e))
        scored = [(m, text_similarity(memory.content, m.content)) for m in by_id.values()]
        scored.sort(key=lambda pair: pair[1], reverse=True)
        return scored[:limit]

    # --- graph mutations ---

    def associate(
        self,
        source_id: str,
        target_id: str,
        kind: AssociationKind,
        weight: float = 1.0,
        payload: dict | None = None,
    ) -> Association | None:
        """Create a typed edge (idempotent). Returns the edge only when newly created."""
        self._require()
        kind = AssociationKind(kind)
        if kind == AssociationKind.UPDATES:
            raise ValueError("Use supersede() to create Updates edges")
        with transaction(self.store.db_path) as conn:
            assoc, created = self.store._insert_edge(conn, source_id, target_id, kind, "core", weight, payload)
            if not created:
                return None
            self._log(conn, "associate", [assoc.source_id, assoc.target_id], {"edge_id": assoc.id, "kind": str(kind)})
        return assoc

    def flag_contradiction(self, a_id: str, b_id: str, reasoning: str = "") -> Association | None:
        """Record mutual inconsistency as data. Neither endpoint is touched."""
        self._require()
        with transaction(self.store.db_path) as conn:
            assoc, created = self.store._insert_edge(
                conn, a_id, b_id, AssociationKind.CONTRADICTS, "core", 1.0, {"reasoning": reasoning, "resolved": False}
            )
            if not created:
                return None
            self._log(conn, "contradiction", [assoc.source_id, assoc.target_id], {"edge_id": assoc.id})
        return assoc

    def supersede(self, newer_id: str, older_id: str, decrement: float) -> bool:
        """Create newer→older Updates edge and lower the older memory's importance.

        Re-running on an existing edge is a no-op. The decrement floors at zero
        and is skipped for exempt memories.
        """
        self._require()
        with transaction(self.store.db_path) as conn:
            assoc, created = self.store._insert_edge(
                conn, newer_id, older_id, AssociationKind.UPDATES, "core"
            )
            if not created:
                return False
            older = self.store._fetch(conn, assoc.target_id)
            previous = older.importance
            if not older.exempt:
                older.importance = max(0.0, older.importance - decrement)
                conn.execute("UPDATE memories SET importance = ? WHERE id = ?", (older.importance, older.id))
            self._log(
                conn,
                "supersede",
                [assoc.source_id, assoc.target_id],
                {"edge_id": assoc.id, "previous_importance": previous, "importance": older.importance},
            )
        return True

    def merge(self, a_id: str, b_id: str) -> str | None:
        """Fold two memories into one; the discarded id redirects to the survivor.

        Returns the survivor id, or None when the pair is already one memory
        or is held apart by a Contradicts edge.
        """
        self._require()
        with self.store._graph_lock.write(), transaction(self.store.db_path) as conn:
            a_res = self.store._resolve(conn, a_id)
            b_res = self.store._resolve(conn, b_id)
            if a_res is None or b_res is None:
                raise MemoryNotFoundError(f"Unknown memory: {a_id if a_res is None else b_id}")
            if a_res == b_res:
                return None
            a = self.store._fetch(conn, a_res)
            b = self.store._fetch(conn, b_res)
            if not (a.is_active and b.is_active):
                return None
            if a.exempt or b.exempt:
                raise ExemptMemoryError(f"Cannot merge exempt memory ({a.id}, {b.id})")
            contradiction = conn.execute(
                "SELECT id FROM associations WHERE kind = ? AND "
                "((source_id = ? AND target_id = ?) OR (source_id = ? AND target_id = ?))",
                (AssociationKind.CONTRADICTS.value, a.id, b.id, b.id, a.id),
            ).fetchone()
            if contradiction:
                logger.info("merge_skipped_contradiction", a=a.id, b=b.id, edge_id=contradiction["id"])
                return None

            survivor, discarded = sorted(
                (a, b),
                key=lambda m: (richness(m.content), m.importance, -m.created_at.timestamp()),
                reverse=True,
            )
            before = _memory_state(survivor)

            moved, removed = [], []
            for edge in self.store._edges_of(conn, discarded.id):
                other = edge.other(discarded.id)
                row = conn.execute("SELECT * FROM associations WHERE id = ?", (edge.id,)).fetchone()
                if other == survivor.id:
                    removed.append(dict(row))
                    conn.execute("DELETE FROM associations WHERE id = ?", (edge.id,))
                    continue
                src = survivor.id if edge.source_id == discarded.id else edge.source_id
                tgt = survivor.id if edge.target_id == discarded.id else edge.target_id
                if not edge.directed:
                    src, tgt = sorted((src, tgt))
                clash = conn.execute(
                    "SELECT id FROM associations WHERE source_id = ? AND target_id = ? AND kind = ?",
                    (src, tgt, str(edge.kind)),
                ).fetchone()
                if clash:
                    removed.append(dict(row))
                    conn.execute("DELETE FROM associations WHERE id = ?", (edge.id,))
                else:
                    moved.append({"id": edge.id, "source_id": edge.source_id, "target_id": edge.target_id})
                    conn.execute(
                        "UPDATE associations SET source_id = ?, target_id = ? WHERE id = ?",
                        (src, tgt, edge.id),
                    )

            if richness(discarded.content) > richness(survivor.content):
                survivor.content = discarded.content
            survivor.importance = max(survivor.importance, discarded.importance)
            survivor.access_count += discarded.access_count
            survivor.channels |= discarded.channels
            survivor.created_at = min(survivor.created_at, discarded.created_at)
            accessed = [t for t in (survivor.last_accessed_at, discarded.last_accessed_at) if t]
            survivor.last_accessed_at = max(accessed) if accessed else None
            survivor.metadata = {
                **discarded.metadata,
                **survivor.metadata,
                "merged_from": sorted(set(survivor.metadata.get("merged_from", [])) | {discarded.id}),
            }
            self.store._write_memory(conn, survivor)
            conn.execute(
                "UPDATE memories SET status = ?, merged_into = ? WHERE id = ?",
                (MemoryStatus.MERGED.value, survivor.id, discarded.id),
            )
            self._log(
                conn,
                "merge",
                [survivor.id, discarded.id],
                {"survivor_before": before, "moved_edges": moved, "removed_edges": removed},
            )
        self.store._unindex([discarded.id])
        self.store._index(survivor)
        return survivor.id

    def decay(self, age_window: timedelta, half_life: timedelta) -> int:
        """Exponential decay for memories unaccessed longer than ``age_window``.

        Importance halves every ``half_life`` of elapsed time past the later of
        (last access + window) and the previous decay. Applying it twice over
        the same interval yields the same result as applying it once.
        """
        self._require()
        now = self._now
        half = half_life.total_seconds()
        changed: dict[str, dict] = {}
        with transaction(self.store.db_path) as conn:
            rows = conn.execute(
                f"SELECT * FROM memories WHERE status = 'active' AND {_NOT_EXEMPT}"
            ).fetchall()
            for row in rows:
                m = self.store._row_to_memory(row)
                eligible_from = (m.last_accessed_at or m.created_at) + age_window
                start = max(eligible_from, m.last_decay_at) if m.last_decay_at else eligible_from
                elapsed = (now - start).total_seconds()
                if elapsed <= 0:
                    continue
                new_importance = m.importance * 0.5 ** (elapsed / half)
                conn.execute(
                    "UPDATE memories SET importance = ?, last_decay_at = ? WHERE id = ?",
                    (new_importance, _ts(now), m.id),
                )
                changed[m.id] = {"importance": m.importance, "last_decay_at": _ts(m.last_decay_at)}
            if changed:
                self._log(conn, "decay", sorted(changed), {"previous": changed})
        return len(changed)

    def prune(self, floor: float) -> list[str]:
        """Prune active, non-exempt memories whose importance fell below ``floor``."""
        self._require()
        return self._prune_where(
            "importance < ?", (floor,), action="prune", reason=f"importance<{floor}"
        )

    def prune_orphans(self, threshold: float, min_age: timedelta) -> list[str]:
        """Prune unconnected, never-recalled, low-importance memories."""
        self._require()
        cutoff = _ts(self._now - min_age)
        return self._prune_where(
            "importance < ? AND access_count = 0 AND created_at < ? "
            "AND NOT EXISTS (SELECT 1 FROM associations a WHERE a.source_id = memories.id "
            "OR a.target_id = memories.id)",
            (threshold, cutoff),
            action="orphan",
            reason="orphan",
        )

    def _prune_where(self, clause: str, params: tuple, action: str, reason: str) -> list[str]:
        with self.store._graph_lock.write(), transaction(self.store.db_path) as conn:
            rows = conn.execute(
                f"SELECT id, importance FROM memories WHERE status = 'active' AND {_NOT_EXEMPT} AND {clause}",
                params,
            ).fetchall()
            ids = [r["id"] for r in rows]
            for r in rows:
                conn.execute(
                    "UPDATE memories SET status = ? WHERE id = ?", (MemoryStatus.PRUNED.value, r["id"])
                )
                self._log(conn, action, [r["id"]], {"reason": reason, "importance": r["importance"]})
        self.store._unindex(ids)
        return ids

    def update_centrality(self, scores: dict[str, float]) -> int:
        self._require()
        with transaction(self.store.db_path) as conn:
            conn.execute("UPDATE memories SET centrality = 0 WHERE status = 'active'")
            conn.executemany(
                "UPDATE memories SET centrality = ? WHERE id = ? AND status = 'active'",
                [(score, mid) for mid, score in scores.items()],
            )
        return len(scores)

    def create_observation(
        self,
        content: str,
        channels: set[str],
        importance: float,
        pattern_key: str,
        metadata: dict | None = None,
    ) -> Memory | None:
        """The only path that creates observation memories. One active observation per pattern."""
        self._require()
        with transaction(self.store.db_path) as conn:
            for row in conn.execute(
                "SELECT metadata FROM memories WHERE memory_type = ? AND status = 'active'",
                (MemoryType.OBSERVATION.value,),
            ).fetchall():
                if json.loads(row["metadata"] or "{}").get("pattern_key") == pattern_key:
                    return None
            memory = Memory(
                id=_new_id(),
                content=content,
                memory_type=MemoryType.OBSERVATION,
                importance=importance,
                channels=set(channels),
                created_at=self._now,
                metadata={**(metadata or {}), "pattern_key": pattern_key},
            )
            self.store._write_memory(conn, memory, insert=True)
            self._log(conn, "observation", [memory.id], {"pattern_key": pattern_key})
        self.store._index(memory)
        return memory

    # --- operator reversal ---

    def restore(self, memory_id: str) -> bool:
        self._require()
        with transaction(self.store.db_path) as conn:
            cur = conn.execute(
                "UPDATE memories SET status = 'active' WHERE id = ? AND status = 'pruned'", (memory_id,)
            )
            if cur.rowcount == 0:
                return False
            self._log(conn, "restore", [memory_id], {})
        memory = self.get(memory_id)
        if memory:
            self.store._index(memory)
        return True

    def revert(self, entry_id: int) -> bool:
        """Undo a single ledger entry. Returns False if missing or already reverted."""
        self._require()
        with self.store._graph_lock.write(), transaction(self.store.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM consolidation_log WHERE id = ? AND reverted = 0", (entry_id,)
            ).fetchone()
            if row is None:
                return False
            action = row["action"]
            ids = json.loads(row["memory_ids"])
            detail = json.loads(row["detail"])

            if action in ("prune", "orphan"):
                conn.execute("UPDATE memories SET status = 'active' WHERE id = ?", (ids[0],))
            elif action in ("associate", "contradiction"):
                conn.execute("DELETE FROM associations WHERE id = ?", (detail["edge_id"],))
            elif action == "supersede":
                conn.execute("DELETE FROM associations WHERE id = ?", (detail["edge_id"],))
                conn.execute(
                    "UPDATE memories SET importance = ? WHERE id = ?", (detail["previous_importance"], ids[1])
                )
            elif action == "decay":
                for mid, prev in detail["previous"].items():
                    conn.execute(
                        "UPDATE memories SET importance = ?, last_decay_at = ? WHERE id = ?",
                        (prev["importance"], prev["last_decay_at"], mid),
                    )
            elif action == "observation":
                conn.execute("UPDATE memories SET status = 'pruned' WHERE id = ?", (ids[0],))
            elif action == "merge":
                survivor_id, discarded_id = ids
                survivor = self.store._fetch(conn, survivor_id)
                _apply_state(survivor, detail["survivor_before"])
                self.store._write_memory(conn, survivor)
                conn.execute(
                    "UPDATE memories SET status = 'active', merged_into = NULL WHERE id = ?", (discarded_id,)
                )
                for edge in detail["moved_edges"]:
                    conn.execute(
                        "UPDATE associations SET source_id = ?, target_id = ? WHERE id = ?",
                        (edge["source_id"], edge["target_id"], edge["id"]),
                    )
                for edge in detail["removed_edges"]:
                    conn.execute(
                        "INSERT OR IGNORE INTO associations (id, source_id, target_id, kind, weight, "
                        "payload, created_by, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                        (
                            edge["id"],
                            edge["source_id"],
                            edge["target_id"],
                            edge["kind"],
                            edge["weight"],
                            edge["payload"],
                            edge["created_by"],
                            edge["created_at"],
                        ),
                    )
            else:
                return False

            conn.execute("UPDATE consolidation_log SET reverted = 1 WHERE id = ?", (entry_id,))
        logger.info("ledger_reverted", entry_id=entry_id, action=action, memory_ids=ids)
        return True
