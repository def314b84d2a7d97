"""Cross-channel pattern detection over the signal stream."""

from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import structlog

from shared_types import SignalEvent

from .models import Signal

logger = structlog.get_logger()


@dataclass
class Pattern:
    type: str  # recurring_topic | repeated_task
    key: str
    confidence: float  # 0-1
    summary: str
    channels: set[str] = field(default_factory=set)
    evidence: list[str] = field(default_factory=list)
    occurrences: int = 0

    @property
    def pattern_key(self) -> str:
        return f"{self.type}:{self.key}"


class PatternDetector:
    """Detects topics recurring across channels and task types spawned repeatedly.

    Keeps a rolling window of observations. A pattern is reported once, then
    suppressed until a full window has passed without it being reported.
    """

    def __init__(
        self,
        window_seconds: float = 3600,
        min_channels: int = 3,
        task_repeat_threshold: int = 5,
    ):
        self.window = timedelta(seconds=window_seconds)
        self.min_channels = min_channels
        self.task_repeat_threshold = task_repeat_threshold
        self._topics: dict[str, deque[tuple[datetime, str, str]]] = defaultdict(deque)
        self._tasks: dict[str, deque[tuple[datetime, str, str]]] = defaultdict(deque)
        self._reported: dict[str, datetime] = {}

    def observe(self, signals: list[Signal], now: datetime) -> list[Pattern]:
        """Fold a batch of drained signals into the window and return newly detected patterns."""
        for s in signals:
            channel = s.channel_id or ""
            if s.topic:
                self._topics[_normalize(s.topic)].append((s.created_at, channel, s.id))
            if s.task_type and s.event in (SignalEvent.SPAWN, SignalEvent.COMPLETION):
                self._tasks[_normalize(s.task_type)].append((s.created_at, channel, s.id))

        self._expire(now)

        patterns = []
        detectors = [self._detect_recurring_topics, self._detect_repeated_tasks]
        for detector in detectors:
            try:
                patterns.extend(detector())
            except Exception as e:
                logger.warning("pattern_detector_error", detector=detector.__name__, error=str(e))

        fresh = []
        for p in patterns:
            last = self._reported.get(p.pattern_key)
            if last is not None and now - last < self.window:
                continue
            self._reported[p.pattern_key] = now
            fresh.append(p)
            logger.info(
                "pattern_detected",
                pattern=p.pattern_key,
                channels=len(p.channels),
                occurrences=p.occurrences,
            )
        return sorted(fresh, key=lambda p: p.confidence, reverse=True)

    def _detect_recurring_topics(self) -> list[Pattern]:
        found = []
        for topic, events in self._topics.items():
            channels = {c for _, c, _ in events if c}
            if len(channels) < self.min_channels:
                continue
            confidence = min(1.0, 0.4 + 0.15 * (len(channels) - self.min_channels + 1))
            found.append(
                Pattern(
                    type="recurring_topic",
                    key=topic,
                    confidence=confidence,
                    summary=f"Topic '{topic}' recurred across {len(channels)} channels",
                    channels=channels,
                    evidence=[sid for _, _, sid in events][-10:],
                    occurrences=len(events),
                )
            )
        return found

    def _detect_repeated_tasks(self) -> list[Pattern]:
        found = []
        for task_type, events in self._tasks.items():
            if len(events) < self.task_repeat_threshold:
                continue
            channels = {c for _, c, _ in events if c}
            confidence = min(1.0, 0.3 + 0.1 * (len(events) - self.task_repeat_threshold + 1))
            found.append(
                Pattern(
                    type="repeated_task",
                    key=task_type,
                    confidence=confidence,
                    summary=f"Task type '{task_type}' spawned {len(events)} times",
                    channels=channels,
                    evidence=[sid for _, _, sid in events][-10:],
                    occurrences=len(events),
                )
            )
        return found

    def _expire(self, now: datetime) -> None:
        cutoff = now - self.window
        for table in (self._topics, self._tasks):
            for key in list(table):
                events = table[key]
                while events and events[0][0] < cutoff:
                    events.popleft()
                if not events:
                    del table[key]
        for key in [k for k, t in self._reported.items() if t < cutoff]:
            del self._reported[key]


def _normalize(text: str) -> str:
    return " ".join(text.lower().split())
