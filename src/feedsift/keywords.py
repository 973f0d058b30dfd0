"""
User Keywords
=============

Keywords are terms entered by the user to conclusively classify documents
without asking the matching service: a document containing a positive
keyword is kept, one containing only negative keywords is discarded.

A `KeywordSet` is consulted by background fetch jobs while the user is
editing it, so every access goes through a single lock and the compiled
disjunction is rebuilt lazily after each membership change.
"""

from __future__ import annotations

import enum
import re
import threading
from typing import Iterable, Iterator

KEYWORD_SEPARATOR = "\t"


class KeywordType(enum.Enum):
    """Polarity of a user keyword."""

    POSITIVE = "positive"
    NEGATIVE = "negative"

    @property
    def opposite(self) -> "KeywordType":
        return KeywordType.NEGATIVE if self is KeywordType.POSITIVE else KeywordType.POSITIVE


def _term_regex(term: str) -> str:
    """
    Escape a term and anchor it on word boundaries.

    A boundary is only added on an edge whose character is alphabetic so that
    terms such as ``#tag`` or ``@user`` still match.
    """
    parts = []
    if term[0].isalpha():
        parts.append(r"\b")
    parts.append(re.escape(term))
    if term[-1].isalpha():
        parts.append(r"\b")
    return "".join(parts)


def keyword_pattern(term: str) -> re.Pattern:
    """Return a case-insensitive pattern matching a single keyword."""
    if not term:
        raise ValueError("Keyword must not be empty")
    return re.compile(_term_regex(term), re.IGNORECASE)


def keywords_to_string(terms: Iterable[str]) -> str | None:
    """Serialize keywords as a tab-separated string, None when there are none."""
    terms = list(terms)
    if not terms:
        return None
    return KEYWORD_SEPARATOR.join(terms)


def keywords_from_string(value: str | None) -> list[str]:
    """Inverse of `keywords_to_string`."""
    if not value:
        return []
    return [term for term in value.split(KEYWORD_SEPARATOR) if term]


class KeywordSet:
    """
    Case-insensitive set of user keywords with a cached matcher.

    Terms keep the spelling they were first added with; membership and
    ordering ignore case.
    """

    def __init__(self, terms: Iterable[str] = ()):
        self._lock = threading.Lock()
        self._terms: dict[str, str] = {}
        self._pattern: re.Pattern | None = None
        self._term_patterns: list[tuple[str, re.Pattern]] = []
        self.add_all(terms)

    def add(self, term: str) -> bool:
        """Add a term. Returns True when it was not already present."""
        term = term.strip()
        if not term:
            raise ValueError("Keyword must not be empty")
        with self._lock:
            key = term.lower()
            if key in self._terms:
                return False
            self._terms[key] = term
            self._invalidate()
            return True

    def add_all(self, terms: Iterable[str]) -> bool:
        """Add several terms. Returns True when at least one was new."""
        added = False
        for term in terms:
            if self.add(term):
                added = True
        return added

    def remove(self, term: str) -> bool:
        """Remove a term. Returns True when it was present."""
        with self._lock:
            removed = self._terms.pop(term.strip().lower(), None)
            if removed is None:
                return False
            self._invalidate()
            return True

    def terms(self) -> list[str]:
        """Return the terms in case-insensitive alphabetical order."""
        with self._lock:
            return [self._terms[key] for key in sorted(self._terms)]

    def is_empty(self) -> bool:
        with self._lock:
            return not self._terms

    def matcher(self) -> re.Pattern | None:
        """
        Return a compiled disjunction of every term, or None when empty.

        The pattern is case-insensitive and cached until the set changes.
        """
        with self._lock:
            return self._compile()

    def find_in(self, text: str) -> list[str]:
        """
        Return every term occurring in ``text``, in alphabetical order.

        Overlapping terms such as ``apple`` and ``apple pie`` are all reported;
        the disjunction is only used to skip texts containing no term at all.
        """
        with self._lock:
            pattern = self._compile()
            if pattern is None or not pattern.search(text):
                return []
            return [term for term, term_pattern in self._term_patterns if term_pattern.search(text)]

    def _invalidate(self) -> None:
        self._pattern = None
        self._term_patterns = []

    def _compile(self) -> re.Pattern | None:
        if self._pattern is None and self._terms:
            terms = [self._terms[key] for key in sorted(self._terms)]
            alternatives = "|".join(_term_regex(term) for term in terms)
            self._pattern = re.compile(f"({alternatives})", re.IGNORECASE)
            self._term_patterns = [(term, keyword_pattern(term)) for term in terms]
        return self._pattern

    def __contains__(self, term: object) -> bool:
        if not isinstance(term, str):
            return False
        with self._lock:
            return term.strip().lower() in self._terms

    def __len__(self) -> int:
        with self._lock:
            return len(self._terms)

    def __iter__(self) -> Iterator[str]:
        return iter(self.terms())

    def __repr__(self) -> str:
        return f"KeywordSet({self.terms()!r})"
