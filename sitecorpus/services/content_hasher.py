"""Content normalization, hashing and fuzzy change detection."""

import hashlib
import re
from collections import Counter
from dataclasses import dataclass

from sitecorpus.constants import DEFAULT_SIMILARITY_THRESHOLD

_EXCESS_BLANK_LINES = re.compile(r"\n{3,}")
_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class ChangeCheck:
    """Result of comparing freshly captured text with stored text."""

    changed: bool
    digest: str
    similarity: float


def normalize(text: str) -> str:
    """Normalize text so formatting-only edits hash identically.

    Line endings become LF, runs of blank lines collapse to one blank line,
    each line is trimmed, the whole text is trimmed and case-folded.
    """
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _EXCESS_BLANK_LINES.sub("\n\n", text)
    text = "\n".join(line.strip() for line in text.split("\n"))
    return text.strip().lower()


def sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def content_hash(text: str) -> str:
    """SHA-256 hex digest of the normalized text."""
    return sha256(normalize(text))


def _bigrams(text: str) -> Counter:
    return Counter(text[i : i + 2] for i in range(len(text) - 1))


def similarity(text_a: str, text_b: str) -> float:
    """Dice coefficient over character bigrams, whitespace ignored.

    Returns a value in [0, 1]; 1.0 for identical input.
    """
    a = _WHITESPACE.sub("", text_a)
    b = _WHITESPACE.sub("", text_b)

    if a == b:
        return 1.0
    if len(a) < 2 or len(b) < 2:
        return 0.0

    bigrams_a = _bigrams(a)
    bigrams_b = _bigrams(b)
    overlap = sum((bigrams_a & bigrams_b).values())
    return (2.0 * overlap) / (len(a) + len(b) - 2)


def has_changed_significantly(
    new_text: str,
    old_text: str | None,
    threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
) -> ChangeCheck:
    """Decide whether new text differs enough from old text to re-index.

    Identical normalized digests short-circuit as unchanged. Otherwise the
    raw texts are compared and only similarity below ``threshold`` counts
    as a change.
    """
    digest = content_hash(new_text)

    if old_text is None:
        return ChangeCheck(changed=True, digest=digest, similarity=0.0)

    if digest == content_hash(old_text):
        return ChangeCheck(changed=False, digest=digest, similarity=1.0)

    score = similarity(old_text, new_text)
    return ChangeCheck(changed=score < threshold, digest=digest, similarity=score)
