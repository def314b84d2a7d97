"""Signal buffer: bounded, severity-aware ingestion queue drained by the cortex."""

import threading
from collections import deque
from typing import Callable

import structlog

from observability import metrics
from shared_types import Severity

from .models import Signal

logger = structlog.get_logger().bind(source="signal_buffer")

DEFAULT_CAPACITY = 1000


class SignalBuffer:
    """Lossless up to ``capacity``; on overflow drops the oldest low-severity signal.

    High and critical signals are never dropped. When the buffer holds only
    urgent signals a new low-severity arrival is the one discarded, and an
    urgent arrival is admitted past capacity.

    ``on_urgent`` is invoked (outside the lock) for every urgent push so the
    owner can drain immediately instead of waiting for the next tick. The
    callback must not block.
    """

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        on_urgent: Callable[[Signal], None] | None = None,
    ):
        if capacity < 1:
            raise ValueError(f"Signal buffer capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self.on_urgent = on_urgent
        self._lock = threading.Lock()
        self._items: deque[Signal] = deque()
        self.dropped = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def push(self, signal: Signal) -> bool:
        """Buffer a signal without blocking. Returns False if it was the one dropped."""
        accepted = True
        with self._lock:
            if len(self._items) >= self.capacity:
                victim = self._evict_candidate()
                if victim is not None:
                    self._items.remove(victim)
                    self._note_drop(victim)
                elif not signal.severity.is_urgent:
                    self._note_drop(signal)
                    accepted = False
            if accepted:
                self._items.append(signal)

        if accepted and signal.severity.is_urgent and self.on_urgent:
            try:
                self.on_urgent(signal)
            except Exception as e:
                logger.error("urgent_callback_failed", signal_id=signal.id, error=str(e))
        return accepted

    def drain(self) -> list[Signal]:
        """Return every buffered signal in arrival order and clear the buffer."""
        with self._lock:
            items = list(self._items)
            self._items.clear()
        return items

    def _evict_candidate(self) -> Signal | None:
        """Oldest LOW signal, else oldest MEDIUM; never an urgent one."""
        for severity in (Severity.LOW, Severity.MEDIUM):
            for item in self._items:
                if item.severity == severity:
                    return item
        return None

    def _note_drop(self, signal: Signal) -> None:
        self.dropped += 1
        metrics.counter("signals_dropped")
        logger.debug(
            "signal_dropped",
            signal_id=signal.id,
            kind=str(signal.kind),
            severity=str(signal.severity),
        )
