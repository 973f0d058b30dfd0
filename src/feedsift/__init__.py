"""
feedsift package.

This package contains:

- the in-memory search engine (keyword sets, feeds, fetch jobs, sessions)
- the document source and matching service interfaces
- an HTTP document source and an LLM matching service
- configuration, logging and the command line entrypoint
"""

from .documents import (
    Document,
    DocumentSource,
    FilteringOptions,
    PaginationToken,
    SearchParameters,
)
from .feed import ClassifiedDocument, Feed, FeedType, Status
from .keywords import KeywordSet, KeywordType
from .matching import (
    LlmMatchingService,
    MatchingService,
    MatchingServiceError,
    MatchResult,
    Sense,
    SenseStatus,
)
from .search import FeedStats, RequestPendingError, SearchSession
from .source import HttpDocumentSource, HttpSearchToken

__all__ = [
    "ClassifiedDocument",
    "Document",
    "DocumentSource",
    "Feed",
    "FeedStats",
    "FeedType",
    "FilteringOptions",
    "HttpDocumentSource",
    "HttpSearchToken",
    "KeywordSet",
    "KeywordType",
    "LlmMatchingService",
    "MatchResult",
    "MatchingService",
    "MatchingServiceError",
    "PaginationToken",
    "RequestPendingError",
    "SearchParameters",
    "SearchSession",
    "Sense",
    "SenseStatus",
    "Status",
]
