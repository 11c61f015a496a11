"""Deterministic, lazy enumeration of candidate labels."""

import itertools
import logging
import re
from dataclasses import dataclass
from typing import Iterator

logger = logging.getLogger(__name__)

LETTERS = "abcdefghijklmnopqrstuvwxyz"
DIGITS = "0123456789"
HYPHEN = "-"
MAX_LENGTH = 4

LABEL_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")


@dataclass(frozen=True)
class ScanMode:
    """Selects which candidates a run generates."""

    full_scan: bool = False
    letters_only: bool = False
    hyphens: bool = True
    alphabet: str | None = None
    max_length: int = MAX_LENGTH

    @property
    def chars(self) -> str:
        if self.alphabet is not None:
            return self.alphabet
        if self.letters_only:
            return LETTERS
        return LETTERS + DIGITS + (HYPHEN if self.hyphens else "")

    @property
    def exhaustive_lengths(self) -> range:
        """Lengths for which every valid label is generated."""
        top = self.max_length if self.full_scan else min(self.max_length, 3)
        return range(1, top + 1)

    @property
    def repeat_patterns(self) -> bool:
        return not self.full_scan and self.max_length >= 4


def is_valid_label(label: str) -> bool:
    """Check hostname label rules: no edge hyphens and no ``--``."""
    return bool(LABEL_RE.match(label)) and "--" not in label


def iter_labels(chars: str, length: int) -> Iterator[str]:
    """Yield every valid label of ``length`` in alphabet order."""
    for combo in itertools.product(chars, repeat=length):
        label = "".join(combo)
        if is_valid_label(label):
            yield label


def iter_repeat_patterns(chars: str) -> Iterator[str]:
    """Yield length-4 repetition patterns, each arrangement exactly once.

    Patterns are all-identical (``AAAA``), three-plus-one with the odd
    character in each of the four positions, and the two-pair arrangements
    ``AABB``, ``ABAB`` and ``ABBA``.
    """
    chars = chars.replace(HYPHEN, "")
    for a in chars:
        yield a * 4
    for a in chars:
        for b in chars:
            if a != b:
                yield a + a + a + b
                yield a + a + b + a
                yield a + b + a + a
                yield b + a + a + a
    for a in chars:
        for b in chars:
            if a != b:
                yield a + a + b + b
                yield a + b + a + b
                yield a + b + b + a


def iter_candidates(mode: ScanMode, start: int = 0) -> Iterator[str]:
    """Yield the candidates of ``mode`` in their fixed order.

    Args:
        mode: Scan mode to enumerate.
        start: Number of leading candidates to skip.
    """
    def _all() -> Iterator[str]:
        for length in mode.exhaustive_lengths:
            yield from iter_labels(mode.chars, length)
        if mode.repeat_patterns:
            yield from iter_repeat_patterns(mode.chars)

    return itertools.islice(_all(), start, None)


def _count_valid(chars: str, length: int) -> int:
    n = len(chars.replace(HYPHEN, ""))
    if HYPHEN not in chars:
        return n ** length
    # ends_char: labels ending in a letter/digit, ends_hyphen: ending in '-'
    ends_char, ends_hyphen = n, 0
    for _ in range(length - 1):
        ends_char, ends_hyphen = (ends_char + ends_hyphen) * n, ends_char
    return ends_char


def count_repeat_patterns(chars: str) -> int:
    n = len(chars.replace(HYPHEN, ""))
    return n + 4 * n * (n - 1) + 3 * n * (n - 1)


def count_candidates(mode: ScanMode) -> int:
    """Return the number of candidates ``iter_candidates(mode)`` yields."""
    total = sum(_count_valid(mode.chars, length) for length in mode.exhaustive_lengths)
    if mode.repeat_patterns:
        total += count_repeat_patterns(mode.chars)
    return total
