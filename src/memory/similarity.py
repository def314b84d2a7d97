"""Cheap lexical similarity used to pick and classify consolidation candidates."""

import re

_TOKEN_RE = re.compile(r"[a-z0-9][a-z0-9_\-']*")
_NEGATIONS = {"not", "no", "never", "none", "cannot", "without", "isn't", "doesn't", "don't",
              "won't", "wasn't", "aren't", "shouldn't", "can't", "didn't", "stopped"}


def tokens(text: str) -> set[str]:
    return set(_TOKEN_RE.findall(text.lower()))


def text_similarity(a: str, b: str) -> float:
    """Token-set Jaccard similarity in [0, 1]."""
    tokens_a = tokens(a)
    tokens_b = tokens(b)
    if not tokens_a or not tokens_b:
        return 0.0
    return len(tokens_a & tokens_b) / len(tokens_a | tokens_b)


def negation_mismatch(a: str, b: str) -> bool:
    """True when exactly one side carries a negation marker."""
    neg_a = bool(tokens(a) & _NEGATIONS) or "no longer" in a.lower()
    neg_b = bool(tokens(b) & _NEGATIONS) or "no longer" in b.lower()
    return neg_a != neg_b


def richness(text: str) -> tuple[int, int]:
    """Ordering key for 'richer content': distinct tokens, then length."""
    return (len(tokens(text)), len(text))
