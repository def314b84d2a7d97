"""Supervisor — health policy, circuit breakers and signal ingestion."""

from .breaker import CircuitBreakerRegistry
from .health import HealthReport, HealthSupervisor, HealthThresholds
from .models import (
    Branch,
    Channel,
    ChannelFlag,
    CircuitBreaker,
    MemoryStats,
    Remediation,
    Signal,
    SystemSnapshot,
    TickReport,
    Worker,
)
from .monitor import InMemoryRuntime
from .patterns import Pattern, PatternDetector
from .signals import SignalBuffer

__all__ = [
    "Branch",
    "Channel",
    "ChannelFlag",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "HealthReport",
    "HealthSupervisor",
    "HealthThresholds",
    "InMemoryRuntime",
    "MemoryStats",
    "Pattern",
    "PatternDetector",
    "Remediation",
    "Signal",
    "SignalBuffer",
    "SystemSnapshot",
    "TickReport",
    "Worker",
]
