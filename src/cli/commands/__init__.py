"""CLI command modules."""

from .breaker import breaker
from .memory import memory
from .run import run, tick

__all__ = [
    "breaker",
    "memory",
    "run",
    "tick",
]
