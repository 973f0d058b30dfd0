"""
Feeds
=====

A search splits its documents into two feeds: documents kept because they
match the search expression (or are inconclusive) and documents that were
conclusively discarded. Clients pull documents from a feed; background jobs
and keyword edits push documents into it.

Each `Feed` guards its documents with its own lock. The historical
"assigned" counter is a statistics signal kept outside that lock: it counts
routing decisions (including documents dropped because the feed was full)
and can be corrected by the UI independently of the stored documents.
"""

from __future__ import annotations

import bisect
import enum
import threading
from typing import Iterable

from .documents import Document
from .keywords import KeywordType, keyword_pattern

UNBOUNDED = -1


class FeedType(enum.Enum):
    """Outcome represented by a feed."""

    KEPT = "kept"
    DISCARDED = "discarded"

    @property
    def opposite(self) -> "FeedType":
        return FeedType.DISCARDED if self is FeedType.KEPT else FeedType.KEPT


class Status(enum.Enum):
    """How a document ended up in its feed."""

    UNCLASSIFIED = "unclassified"
    KEPT = "kept"
    REJECTED = "rejected"
    USER_KEYWORD_KEPT = "user_keyword_kept"
    USER_KEYWORD_REJECTED = "user_keyword_rejected"


class ClassifiedDocument:
    """
    A document placed in a feed, with the user keywords found in its text.

    Tracking the keywords lets a document move back to its previous feed when
    the keyword that moved it is removed.
    """

    def __init__(self, document: Document):
        self.document = document
        self.status = Status.UNCLASSIFIED
        self._positive: dict[str, str] = {}
        self._negative: dict[str, str] = {}

    @property
    def id(self) -> str:
        return self.document.id

    @property
    def text(self) -> str:
        return self.document.text

    def _keywords(self, kw_type: KeywordType) -> dict[str, str]:
        return self._positive if kw_type is KeywordType.POSITIVE else self._negative

    def add_keyword(self, kw_type: KeywordType, term: str) -> bool:
        """Record a keyword found in the text. Case-insensitive."""
        keywords = self._keywords(kw_type)
        key = term.lower()
        if key in keywords:
            return False
        keywords[key] = term
        return True

    def remove_keyword(self, kw_type: KeywordType, term: str) -> bool:
        """Forget a recorded keyword. Returns True when it was recorded."""
        return self._keywords(kw_type).pop(term.lower(), None) is not None

    @property
    def positive_keywords(self) -> list[str]:
        return [self._positive[key] for key in sorted(self._positive)]

    @property
    def negative_keywords(self) -> list[str]:
        return [self._negative[key] for key in sorted(self._negative)]

    @property
    def sign(self) -> int:
        """
        Classification from user keywords: +1 if any positive keyword was
        found, -1 if only negative keywords were found, 0 otherwise.
        """
        if self._positive:
            return 1
        if self._negative:
            return -1
        return 0

    @property
    def is_classified_by_keywords(self) -> bool:
        return self.sign != 0

    def __repr__(self) -> str:
        return f"ClassifiedDocument(id={self.id!r}, status={self.status.name})"


def _disagrees(feed_type: FeedType, sign: int) -> bool:
    """True when a document with ``sign`` does not belong in ``feed_type``."""
    return (feed_type is FeedType.KEPT and sign < 0) or (
        feed_type is FeedType.DISCARDED and sign > 0
    )


class Feed:
    """
    Bounded, ordered collection of classified documents.

    Documents are returned newest first, i.e. in descending order of their
    id. A ``max_size`` of -1 (or any value <= 0) means unbounded.
    """

    def __init__(self, feed_type: FeedType, max_size: int = UNBOUNDED):
        self.feed_type = feed_type
        self.max_size = max_size
        self._lock = threading.Lock()
        self._docs: dict[str, ClassifiedDocument] = {}
        self._ids: list[str] = []  # ascending; the feed front is the end
        self._assigned_lock = threading.Lock()
        self._num_assigned = 0

    @property
    def num_assigned(self) -> int:
        """Historical number of documents routed to this feed."""
        with self._assigned_lock:
            return self._num_assigned

    def adjust_assigned(self, diff: int) -> int:
        """Add ``diff`` (possibly negative) to the assigned counter."""
        with self._assigned_lock:
            self._num_assigned += diff
            return self._num_assigned

    @property
    def num_available(self) -> int:
        """Number of documents currently stored."""
        with self._lock:
            return len(self._docs)

    def is_bounded(self) -> bool:
        return self.max_size > 0

    def is_full(self) -> bool:
        with self._lock:
            return self._is_full()

    def _is_full(self) -> bool:
        return self.is_bounded() and len(self._docs) >= self.max_size

    def _store(self, doc: ClassifiedDocument) -> None:
        if doc.id not in self._docs:
            bisect.insort(self._ids, doc.id)
        self._docs[doc.id] = doc

    def _discard(self, doc_id: str) -> None:
        del self._docs[doc_id]
        index = bisect.bisect_left(self._ids, doc_id)
        del self._ids[index]

    def add(self, doc: ClassifiedDocument) -> None:
        """
        Store a document unless the feed is full. The assigned counter is
        incremented either way.
        """
        with self._lock:
            if not self._is_full():
                self._store(doc)
        self.adjust_assigned(1)

    def add_all(self, docs: Iterable[ClassifiedDocument]) -> None:
        """Store documents while there is room; count all of them as assigned."""
        docs = list(docs)
        with self._lock:
            for doc in docs:
                if self._is_full():
                    break
                self._store(doc)
        self.adjust_assigned(len(docs))

    def take_next(self, max_count: int) -> list[ClassifiedDocument]:
        """
        Remove and return up to ``max_count`` documents from the front.

        Returns fewer documents, or none, when not enough are available.
        """
        with self._lock:
            taken = []
            while self._ids and len(taken) < max_count:
                doc_id = self._ids.pop()
                taken.append(self._docs.pop(doc_id))
            return taken

    def _in_order(self) -> list[ClassifiedDocument]:
        return [self._docs[doc_id] for doc_id in reversed(self._ids)]

    def find_matching(self, term: str) -> list[ClassifiedDocument]:
        """Return the stored documents whose text contains ``term``, without removing them."""
        pattern = keyword_pattern(term)
        with self._lock:
            return [doc for doc in self._in_order() if pattern.search(doc.text)]

    def apply_keyword(self, kw_type: KeywordType, term: str) -> list[ClassifiedDocument]:
        """
        Record a newly added user keyword on every document containing it.

        Documents whose keyword classification now contradicts this feed are
        removed and returned so the caller can route them to the other feed.
        Documents that stay get the user-keyword status of this feed.
        """
        pattern = keyword_pattern(term)
        status = (
            Status.USER_KEYWORD_KEPT
            if self.feed_type is FeedType.KEPT
            else Status.USER_KEYWORD_REJECTED
        )
        moved = []
        with self._lock:
            for doc in self._in_order():
                if not pattern.search(doc.text):
                    continue
                if not doc.add_keyword(kw_type, term):
                    continue
                if _disagrees(self.feed_type, doc.sign):
                    self._discard(doc.id)
                    moved.append(doc)
                else:
                    doc.status = status
        if moved:
            self.adjust_assigned(-len(moved))
        return moved

    def remove_keyword(self, kw_type: KeywordType, term: str) -> list[ClassifiedDocument]:
        """
        Forget a removed user keyword on every document that recorded it.

        Documents that become neutral, or whose classification now contradicts
        this feed, are removed and returned. Only the recorded keywords are
        consulted, not the text.
        """
        moved = []
        with self._lock:
            for doc in self._in_order():
                if not doc.remove_keyword(kw_type, term):
                    continue
                sign = doc.sign
                if sign == 0 or _disagrees(self.feed_type, sign):
                    self._discard(doc.id)
                    moved.append(doc)
        if moved:
            self.adjust_assigned(-len(moved))
        return moved

    def reset(self) -> None:
        """Drop every document and zero the assigned counter."""
        with self._lock:
            self._docs.clear()
            self._ids.clear()
        with self._assigned_lock:
            self._num_assigned = 0

    def __repr__(self) -> str:
        return (
            f"Feed({self.feed_type.name}, available={self.num_available}, "
            f"assigned={self.num_assigned})"
        )
