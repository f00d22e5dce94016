"""Subject normalization for grouping stray root messages.

Reply/forward markers are a policy choice: the marker list comes from
``ThreadingConfig.subject_prefixes``. A marker may carry a counter
(``Re[2]:``, ``AW(3):``) and may be followed by an ASCII or full-width colon.

Usage:
    from mailweave.engine.subjects import normalize_subject

    normalize_subject("RE: Fwd:  Quarterly   Results")  # "quarterly results"
"""

from __future__ import annotations

from functools import lru_cache

import regex

from mailweave.config_schema import DEFAULT_SUBJECT_PREFIXES
from mailweave.core.logging import get_logger

logger = get_logger(__name__)

# Regex timeout for security (used in match operations)
REGEX_TIMEOUT = 1.0

WHITESPACE_PATTERN = regex.compile(r"\s+")
TOKEN_PATTERN = regex.compile(r"\w+")


@lru_cache(maxsize=32)
def subject_prefix_pattern(prefixes: tuple[str, ...]) -> regex.Pattern:
    """Compile the leading-marker pattern for a set of prefixes.

    Longer prefixes are tried first so ``fwd`` wins over ``fw``.
    """
    alternatives = "|".join(
        regex.escape(prefix) for prefix in sorted(prefixes, key=len, reverse=True)
    )
    # Note: timeout is passed at match time (sub, search), not compile time
    return regex.compile(
        rf"^\s*(?:{alternatives})\s*(?:\[\d+\]|\(\d+\))?\s*[:：]\s*",
        regex.IGNORECASE,
    )


def normalize_subject(
    subject: str | None,
    prefixes: list[str] | tuple[str, ...] | None = None,
    timeout: float = REGEX_TIMEOUT,
) -> str:
    """Normalize a subject for stray-root comparison.

    Strips repeated leading reply/forward markers, collapses whitespace and
    casefolds.

    Args:
        subject: Email subject
        prefixes: Marker list (None for the built-in policy, empty to keep
            markers)
        timeout: Regex timeout in seconds

    Returns:
        Normalized subject, or "" if nothing is left
    """
    if not subject:
        return ""

    if prefixes is None:
        prefixes = DEFAULT_SUBJECT_PREFIXES
    pattern = subject_prefix_pattern(tuple(prefixes)) if prefixes else None

    try:
        # Remove all markers (can be chained)
        normalized = subject
        while pattern is not None:
            new_normalized = pattern.sub("", normalized, count=1, timeout=timeout)
            if new_normalized == normalized:
                break
            normalized = new_normalized
        normalized = WHITESPACE_PATTERN.sub(" ", normalized, timeout=timeout)
        return normalized.strip().casefold()
    except (regex.error, TimeoutError):
        logger.warning("Subject normalization timed out", subject_length=len(subject))
        return " ".join(subject.split()).casefold()


def snippet_similarity(left: str, right: str) -> float:
    """Jaccard similarity of the word tokens of two snippets.

    Returns:
        Value in [0, 1]; 0.0 when either snippet has no tokens
    """
    left_tokens = {token.casefold() for token in TOKEN_PATTERN.findall(left or "")}
    right_tokens = {token.casefold() for token in TOKEN_PATTERN.findall(right or "")}
    if not left_tokens or not right_tokens:
        return 0.0
    return len(left_tokens & right_tokens) / len(left_tokens | right_tokens)
