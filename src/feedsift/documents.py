"""
Document Source Interfaces
==========================

The search engine pulls candidate documents from an external source. This
module defines the small surface it relies on: an immutable `Document`, an
opaque `PaginationToken` owned by the source, and the `DocumentSource`
abstract base class. Concrete sources (see `feedsift.source`) hide their
transport, pagination and rate limiting behind it.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class Document:
    """A candidate document. Only ``id`` and ``text`` are used by the engine."""

    id: str
    text: str
    metadata: dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class SearchParameters:
    """Parameters describing a search for the document source."""

    query: str
    filters: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class FilteringOptions:
    """Options sent to the matching service alongside the documents."""

    # Documents the matching service cannot decide on go to the discarded feed.
    discard_inconclusive: bool = False
    # Documents missing mandatory words of the expression are rejected.
    discard_on_missing_words: bool = True


class PaginationToken(ABC):
    """Cursor and exhaustion marker for a search, mutated by its source."""

    @abstractmethod
    def is_finished(self) -> bool:
        """Return True when the source has no more documents for the search."""
        raise NotImplementedError


class DocumentSource(ABC):
    """Abstract base class for services providing candidate documents."""

    @abstractmethod
    def get_next_documents(
        self, token: PaginationToken, max_count: int
    ) -> Future[list[Document]]:
        """Fetch up to ``max_count`` documents following ``token``."""
        raise NotImplementedError

    @abstractmethod
    def create_token(self, parameters: SearchParameters) -> PaginationToken:
        """Create the token for the first page of a search."""
        raise NotImplementedError

    @abstractmethod
    def extend_search(
        self,
        parameters: SearchParameters,
        token: PaginationToken,
        expression: str,
    ) -> PaginationToken:
        """
        Create a token for ``expression`` that resumes after the documents
        already returned for ``token``.
        """
        raise NotImplementedError
