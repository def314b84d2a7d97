"""Circuit breakers keyed by (component kind, component id), persisted in SQLite."""

import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Callable

import structlog

from cli.retry import db_retry
from db import read_connection, transaction
from shared_types import BreakerState, ComponentKind

from .models import CircuitBreaker

logger = structlog.get_logger().bind(source="circuit_breaker")

DEFAULT_THRESHOLD = 3

_BREAKER_DDL = """
CREATE TABLE IF NOT EXISTS circuit_breakers (
    kind TEXT NOT NULL,
    component_id TEXT NOT NULL,
    consecutive_failures INTEGER NOT NULL DEFAULT 0,
    state TEXT NOT NULL DEFAULT 'closed',
    opened_at TIMESTAMP,
    last_signature TEXT,
    last_failure_at TIMESTAMP,
    total_failures INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (kind, component_id)
)
"""


class CircuitBreakerRegistry:
    """Track consecutive failures per component and open breakers at the threshold.

    Failures count per component, not per error string: differing signatures
    still accumulate on the same breaker. An open breaker stays open until
    ``reset()`` is called by an operator; there is no time-based recovery.
    """

    def __init__(
        self,
        db_path: str | Path,
        threshold: int = DEFAULT_THRESHOLD,
        on_open: Callable[[ComponentKind, str], None] | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        if threshold < 1:
            raise ValueError(f"Breaker threshold must be >= 1, got {threshold}")
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.threshold = threshold
        self.on_open = on_open
        self._clock = clock
        with transaction(self.db_path) as conn:
            conn.execute(_BREAKER_DDL)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_breakers_state ON circuit_breakers(state)"
            )

    @db_retry()
    def record_failure(
        self, kind: ComponentKind, component_id: str, signature: str | None = None
    ) -> BreakerState:
        """Increment the consecutive-failure count and return the breaker state."""
        now = self._clock().isoformat()
        sig = signature[:500] if signature else None
        with transaction(self.db_path) as conn:
            row = conn.execute(
                "SELECT consecutive_failures, state FROM circuit_breakers "
                "WHERE kind = ? AND component_id = ?",
                (str(kind), component_id),
            ).fetchone()
            prev_count = row["consecutive_failures"] if row else 0
            prev_state = BreakerState(row["state"]) if row else BreakerState.CLOSED
            count = prev_count + 1

            opened = prev_state == BreakerState.CLOSED and count >= self.threshold
            state = BreakerState.OPEN if opened else prev_state

            conn.execute(
                """
                INSERT INTO circuit_breakers (kind, component_id, consecutive_failures,
                    state, opened_at, last_signature, last_failure_at, total_failures)
                VALUES (?, ?, ?, ?, ?, ?, ?, 1)
                ON CONFLICT(kind, component_id) DO UPDATE SET
                    consecutive_failures = excluded.consecutive_failures,
                    state = excluded.state,
                    opened_at = COALESCE(excluded.opened_at, circuit_breakers.opened_at),
                    last_signature = excluded.last_signature,
                    last_failure_at = excluded.last_failure_at,
                    total_failures = circuit_breakers.total_failures + 1
                """,
                (
                    str(kind),
                    component_id,
                    count,
                    state.value,
                    now if opened else None,
                    sig,
                    now,
                ),
            )

        if opened:
            logger.warning(
                "breaker_opened",
                kind=str(kind),
                component_id=component_id,
                failures=count,
                signature=sig,
            )
            if self.on_open:
                try:
                    self.on_open(kind, component_id)
                except Exception as e:
                    logger.error(
                        "breaker_open_hook_failed",
                        kind=str(kind),
                        component_id=component_id,
                        error=str(e),
                    )
        else:
            logger.debug(
                "breaker_failure_recorded",
                kind=str(kind),
                component_id=component_id,
                failures=count,
                state=state.value,
            )
        return state

    @db_retry()
    def record_success(self, kind: ComponentKind, component_id: str) -> BreakerState:
        """Reset the consecutive-failure count.

        A closed breaker stays closed. An open breaker keeps its state: only an
        operator reset closes it.
        """
        with transaction(self.db_path) as conn:
            conn.execute(
                "UPDATE circuit_breakers SET consecutive_failures = 0 "
                "WHERE kind = ? AND component_id = ?",
                (str(kind), component_id),
            )
            row = conn.execute(
                "SELECT state FROM circuit_breakers WHERE kind = ? AND component_id = ?",
                (str(kind), component_id),
            ).fetchone()
        return BreakerState(row["state"]) if row else BreakerState.CLOSED

    def is_open(self, kind: ComponentKind, component_id: str) -> bool:
        with read_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT state FROM circuit_breakers WHERE kind = ? AND component_id = ?",
                (str(kind), component_id),
            ).fetchone()
        return bool(row) and row["state"] == BreakerState.OPEN.value

    @db_retry()
    def reset(self, kind: ComponentKind, component_id: str) -> bool:
        """Administrative reset: close the breaker and zero its count."""
        with transaction(self.db_path) as conn:
            cur = conn.execute(
                "UPDATE circuit_breakers SET consecutive_failures = 0, state = ?, opened_at = NULL "
                "WHERE kind = ? AND component_id = ?",
                (BreakerState.CLOSED.value, str(kind), component_id),
            )
            changed = cur.rowcount > 0
        if changed:
            logger.info("breaker_reset", kind=str(kind), component_id=component_id)
        return changed

    def get(self, kind: ComponentKind, component_id: str) -> CircuitBreaker | None:
        with read_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM circuit_breakers WHERE kind = ? AND component_id = ?",
                (str(kind), component_id),
            ).fetchone()
        return self._row_to_breaker(row) if row else None

    def list_all(self, state: BreakerState | None = None) -> list[CircuitBreaker]:
        sql = "SELECT * FROM circuit_breakers"
        params: list = []
        if state:
            sql += " WHERE state = ?"
            params.append(state.value)
        sql += " ORDER BY kind, component_id"
        with read_connection(self.db_path) as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_breaker(r) for r in rows]

    @staticmethod
    def _row_to_breaker(row: sqlite3.Row) -> CircuitBreaker:
        d = dict(row)
        return CircuitBreaker(
            kind=ComponentKind(d["kind"]),
            component_id=d["component_id"],
            consecutive_failures=d["consecutive_failures"],
            state=BreakerState(d["state"]),
            opened_at=datetime.fromisoformat(d["opened_at"]) if d["opened_at"] else None,
            last_signature=d["last_signature"],
            last_failure_at=(
                datetime.fromisoformat(d["last_failure_at"]) if d["last_failure_at"] else None
            ),
            total_failures=d["total_failures"],
        )
