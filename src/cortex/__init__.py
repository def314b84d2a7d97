"""Cortex — the supervisory loop tying health, signals and memory consolidation together."""

from .loop import Cortex

__all__ = ["Cortex"]
