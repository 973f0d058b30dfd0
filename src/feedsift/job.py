"""
Fetch-Classify Job
==================

One invocation of the background pipeline that grows a search's feeds:

1. pull a batch of documents from the document source,
2. drop documents not matching the optional document filter,
3. classify what it can with the user keywords,
4. send the remaining documents to the matching service,
5. route every document of the batch to the kept or discarded feed.

Steps 1 to 4 run in `FetchClassifyJob.run`, which only reads shared state
and returns a `JobOutcome`. Step 5 runs in `FetchClassifyJob.distribute` so
the caller can decide, atomically, whether the outcome is still wanted.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Sequence

import structlog

from .documents import DocumentSource, FilteringOptions, PaginationToken
from .feed import ClassifiedDocument, Feed, Status
from .keywords import KeywordSet, KeywordType
from .matching import MatchingService, MatchingServiceError, Sense, SenseStatus

log = structlog.get_logger(__name__)

DEFAULT_BATCH_SIZE = 100


@dataclass
class JobOutcome:
    """Classified batch waiting to be distributed to the feeds."""

    documents: list[ClassifiedDocument]
    signs: list[int]
    scores: list[float]
    sense_status: list[SenseStatus] = field(default_factory=list)


def classify_with_keywords(
    doc: ClassifiedDocument,
    positive: KeywordSet,
    negative: KeywordSet,
) -> int:
    """Record every keyword found in the document and return its sign."""
    for kw_type, keywords in ((KeywordType.POSITIVE, positive), (KeywordType.NEGATIVE, negative)):
        for term in keywords.find_in(doc.text):
            doc.add_keyword(kw_type, term)
    return doc.sign


class FetchClassifyJob:
    """A single fetch, classify and distribute pass for a search."""

    def __init__(
        self,
        source: DocumentSource,
        matcher: MatchingService,
        token: PaginationToken,
        senses: Sequence[Sense],
        filtering: FilteringOptions,
        positive: KeywordSet,
        negative: KeywordSet,
        kept: Feed,
        discarded: Feed,
        customer_id: str | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        document_filter: re.Pattern | None = None,
    ):
        self.source = source
        self.matcher = matcher
        self.token = token
        self.senses = list(senses)
        self.filtering = filtering
        self.positive = positive
        self.negative = negative
        self.kept = kept
        self.discarded = discarded
        self.customer_id = customer_id
        self.batch_size = batch_size
        self.document_filter = document_filter

    def run(self) -> JobOutcome:
        """
        Fetch and classify one batch without touching the feeds.

        Raises whatever the document source or the matching service raised,
        and MatchingServiceError when the number of scores does not match the
        number of documents submitted.
        """
        fetched = self.source.get_next_documents(self.token, self.batch_size).result()
        log.debug("Got documents from document source", count=len(fetched))

        docs = [
            ClassifiedDocument(d)
            for d in fetched
            if self.document_filter is None or self.document_filter.search(d.text)
        ]

        signs = [classify_with_keywords(doc, self.positive, self.negative) for doc in docs]

        for_service = [doc.document for doc, sign in zip(docs, signs) if sign == 0]
        result = self.matcher.classify(
            self.senses, self.filtering, for_service, self.customer_id
        ).result()
        if len(result.scores) != len(for_service):
            raise MatchingServiceError(
                f"Matching service returned {len(result.scores)} scores "
                f"for {len(for_service)} documents"
            )
        log.debug("Classified documents", count=len(for_service))

        return JobOutcome(
            documents=docs,
            signs=signs,
            scores=list(result.scores),
            sense_status=list(result.sense_status),
        )

    def distribute(self, outcome: JobOutcome) -> None:
        """Route a classified batch to the feeds, preserving batch order."""
        scores = iter(outcome.scores)
        for doc, sign in zip(outcome.documents, outcome.signs):
            if sign < 0:
                doc.status = Status.USER_KEYWORD_REJECTED
                self.discarded.add(doc)
            elif sign > 0:
                doc.status = Status.USER_KEYWORD_KEPT
                self.kept.add(doc)
            else:
                route_by_score(doc, next(scores), self.filtering, self.kept, self.discarded)


def route_by_score(
    doc: ClassifiedDocument,
    score: float,
    filtering: FilteringOptions,
    kept: Feed,
    discarded: Feed,
) -> None:
    """
    Place a document scored by the matching service in its feed.

    An inconclusive score (0) follows the ``discard_inconclusive`` option.
    """
    if score < 0 or (score == 0 and filtering.discard_inconclusive):
        doc.status = Status.REJECTED
        discarded.add(doc)
    else:
        doc.status = Status.KEPT
        kept.add(doc)
