"""
Search Session
==============

A `SearchSession` turns one search expression into two classified feeds,
kept and discarded, that grow in the background as clients pull from them.

Pull protocol
-------------
`SearchSession.request_documents` never blocks. It returns a future that is
either already resolved from the documents available in the feed, or that
is resolved later by the background job loop. At most one request may be
outstanding at a time; a second one raises `RequestPendingError`.

Job loop
--------
At most one `FetchClassifyJob` runs per session. When it completes, the
pending request is resolved if its feed now holds enough documents (or the
search is exhausted); otherwise, or when the feed already runs low again,
another job is started. The loop ends when the pagination token reports
that the document source has nothing more for the search.

Restarting the search bumps a generation counter. Jobs of an earlier
generation may still complete but their outcome is discarded.

Keyword edits
-------------
`add_keyword` and `remove_keyword` migrate already-classified documents
between the feeds. Documents that no keyword classifies any more are sent
back to the matching service synchronously; if that fails they are dropped.
"""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Iterable, Sequence

import structlog

from .documents import DocumentSource, FilteringOptions, PaginationToken, SearchParameters
from .feed import UNBOUNDED, ClassifiedDocument, Feed, FeedType, Status
from .job import DEFAULT_BATCH_SIZE, FetchClassifyJob, JobOutcome, route_by_score
from .keywords import (
    KeywordSet,
    KeywordType,
    keyword_pattern,
    keywords_from_string,
    keywords_to_string,
)
from .matching import MatchingService, MatchingServiceError, Sense

log = structlog.get_logger(__name__)


class RequestPendingError(RuntimeError):
    """Raised when documents are requested while a request is still pending."""


@dataclass
class PendingRequest:
    """A pull request waiting for the job loop to fill its feed."""

    future: Future
    feed: Feed
    min_count: int
    max_count: int

    def is_done(self) -> bool:
        return self.future.done()


@dataclass(frozen=True)
class FeedStats:
    """Historical routing counts and the kept percentage for display."""

    kept: int
    discarded: int
    snr: str


class SearchSession:
    """
    Background classification of the documents found for one expression.

    The session owns its two feeds and two keyword sets. Its executor runs
    the fetch jobs; pass one in to share it, otherwise the session creates a
    single-worker pool and shuts it down in `close`.
    """

    def __init__(
        self,
        expression: str,
        source: DocumentSource,
        matcher: MatchingService,
        *,
        parameters: SearchParameters | None = None,
        customer_id: str | None = None,
        positive_keywords: Iterable[str] = (),
        negative_keywords: Iterable[str] = (),
        senses: Sequence[Sense] | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_feed_size: int = UNBOUNDED,
        reclassify_timeout: float | None = None,
        executor: ThreadPoolExecutor | None = None,
    ):
        self.expression = expression
        self.source = source
        self.matcher = matcher
        self.parameters = parameters or SearchParameters(query=expression)
        self.customer_id = customer_id
        self.batch_size = batch_size
        self.reclassify_timeout = reclassify_timeout
        self.filtering = FilteringOptions()

        self._senses = (
            list(senses)
            if senses is not None
            else [Sense(word) for word in expression.split()]
        )
        self._positive = KeywordSet(positive_keywords)
        self._negative = KeywordSet(negative_keywords)
        self._kept = Feed(FeedType.KEPT, max_feed_size)
        self._discarded = Feed(FeedType.DISCARDED, max_feed_size)

        self._lock = threading.RLock()
        self._token: PaginationToken | None = None
        self._document_filter = None
        self._pending: PendingRequest | None = None
        self._job_running = False
        self._generation = 0
        self._sense_status: Future = Future()

        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="search"
        )

    @classmethod
    def from_saved(
        cls,
        expression: str,
        saved: dict,
        source: DocumentSource,
        matcher: MatchingService,
        **kwargs,
    ) -> "SearchSession":
        """Rebuild a session from the keywords returned by `export_keywords`."""
        return cls(
            expression,
            source,
            matcher,
            positive_keywords=keywords_from_string(saved.get("positive")),
            negative_keywords=keywords_from_string(saved.get("negative")),
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Accessors

    def get_feed(self, feed_type: FeedType) -> Feed:
        return self._discarded if feed_type is FeedType.DISCARDED else self._kept

    def get_keyword_set(self, kw_type: KeywordType) -> KeywordSet:
        return self._negative if kw_type is KeywordType.NEGATIVE else self._positive

    @property
    def token(self) -> PaginationToken | None:
        return self._token

    @property
    def senses(self) -> list[Sense]:
        with self._lock:
            return list(self._senses)

    @property
    def sense_status(self) -> Future:
        """
        Future resolved with the `SenseStatus` list of the first successful
        job, or failed with the error of a job that failed before that.
        """
        with self._lock:
            return self._sense_status

    def signal_to_noise_ratio(self) -> float:
        """Documents ever kept per document ever discarded (1.0 when none discarded)."""
        discarded = self._discarded.num_assigned
        if discarded > 0:
            return self._kept.num_assigned / discarded
        return 1.0

    def feed_stats(self) -> FeedStats:
        kept = self._kept.num_assigned
        discarded = self._discarded.num_assigned
        if discarded > 0:
            snr = f"{round(100 * kept / (kept + discarded))}%"
        else:
            snr = "100%"
        return FeedStats(kept=kept, discarded=discarded, snr=snr)

    def correct_assigned(self, feed_type: FeedType, diff: int) -> FeedStats:
        """
        Move ``diff`` documents from the other feed's counter to this one.

        Used when the user reclassifies a document by hand.
        """
        self.get_feed(feed_type).adjust_assigned(diff)
        self.get_feed(feed_type.opposite).adjust_assigned(-diff)
        return self.feed_stats()

    def export_keywords(self) -> dict[str, str | None]:
        return {
            "positive": keywords_to_string(self._positive.terms()),
            "negative": keywords_to_string(self._negative.terms()),
        }

    # ------------------------------------------------------------------
    # Search lifecycle

    def set_document_filter(self, term: str | None) -> None:
        """Only keep fetched documents containing ``term`` (None to disable)."""
        with self._lock:
            self._document_filter = keyword_pattern(term.strip()) if term else None

    def set_expression_senses(self, senses: Sequence[Sense]) -> bool:
        """
        Change the meanings used to classify documents.

        When they differ from the current ones, the keyword sets are cleared,
        the outcome of any running job is ignored, any pending request is
        cancelled and a fresh `sense_status` future is created. Call `start`
        afterwards to refetch. Returns True when the senses changed.
        """
        senses = list(senses)
        with self._lock:
            if senses == self._senses:
                return False
            self._senses = senses
            self._sense_status = Future()
            self._positive = KeywordSet()
            self._negative = KeywordSet()
            self._invalidate_jobs()
            log.info("Expression senses changed", expression=self.expression)
            return True

    def start(
        self,
        token: PaginationToken | None = None,
        filtering: FilteringOptions | None = None,
    ) -> None:
        """
        (Re)start the search from scratch and launch the first fetch job.

        Without a ``token`` one is created from the document source.
        """
        with self._lock:
            self._invalidate_jobs()
            self._kept.reset()
            self._discarded.reset()
            if filtering is not None:
                self.filtering = filtering
            self._token = (
                token if token is not None else self.source.create_token(self.parameters)
            )
            log.info(
                "Starting search",
                expression=self.expression,
                generation=self._generation,
            )
            self._start_job()

    def close(self) -> None:
        with self._lock:
            self._invalidate_jobs()
        if self._owns_executor:
            self._executor.shutdown(wait=False)

    def _invalidate_jobs(self) -> None:
        self._generation += 1
        self._job_running = False
        if self._pending is not None and not self._pending.is_done():
            self._pending.future.cancel()
        self._pending = None

    # ------------------------------------------------------------------
    # Pull API

    def request_documents(
        self, feed_type: FeedType, min_count: int, max_count: int
    ) -> Future:
        """
        Ask for between ``min_count`` and ``max_count`` documents of a feed.

        The returned future resolves with a list of `ClassifiedDocument`,
        which is shorter than ``min_count`` (possibly empty) only once the
        search is exhausted. It fails with the error of the job that was
        filling it.
        """
        if min_count < 0 or max_count < min_count:
            raise ValueError(
                f"Invalid document count range: min={min_count}, max={max_count}"
            )
        with self._lock:
            if self._token is None:
                raise RuntimeError("Search has not been started")
            if self._pending is not None and not self._pending.is_done():
                raise RequestPendingError(
                    "A document request is already pending for this search"
                )

            future: Future = Future()
            feed = self.get_feed(feed_type)
            if self._token.is_finished():
                future.set_result(feed.take_next(max_count))
            elif feed.num_available >= min_count:
                future.set_result(feed.take_next(max_count))
                if feed.num_available < min_count and not self._job_running:
                    self._start_job()
            else:
                self._pending = PendingRequest(future, feed, min_count, max_count)
                if not self._job_running:
                    self._start_job()
            return future

    def get_documents(
        self,
        feed_type: FeedType,
        min_count: int,
        max_count: int,
        timeout: float | None = None,
    ) -> list[ClassifiedDocument]:
        """Blocking version of `request_documents`."""
        return self.request_documents(feed_type, min_count, max_count).result(timeout)

    def _start_job(self) -> None:
        job = FetchClassifyJob(
            self.source,
            self.matcher,
            self._token,
            self._senses,
            self.filtering,
            self._positive,
            self._negative,
            self._kept,
            self._discarded,
            customer_id=self.customer_id,
            batch_size=self.batch_size,
            document_filter=self._document_filter,
        )
        generation = self._generation
        self._job_running = True
        future = self._executor.submit(job.run)
        future.add_done_callback(
            lambda done: self._on_job_done(job, generation, done)
        )

    def _on_job_done(self, job: FetchClassifyJob, generation: int, done: Future) -> None:
        with self._lock:
            if generation != self._generation:
                log.debug(
                    "Ignoring outcome of a stale job",
                    expression=self.expression,
                    generation=generation,
                )
                return
            self._job_running = False
            if done.cancelled():
                return

            error = done.exception()
            if error is not None:
                log.warning(
                    "Fetch job failed", expression=self.expression, error=str(error)
                )
                if not self._sense_status.done():
                    self._sense_status.set_exception(error)
                if self._pending is not None and not self._pending.is_done():
                    if self._pending.future.set_running_or_notify_cancel():
                        self._pending.future.set_exception(error)
                return

            outcome: JobOutcome = done.result()
            job.distribute(outcome)
            if not self._sense_status.done():
                self._sense_status.set_result(outcome.sense_status)
            log.debug(
                "Finished fetch job",
                expression=self.expression,
                documents=len(outcome.documents),
                kept=self._kept.num_available,
                discarded=self._discarded.num_available,
            )

            pending = self._pending
            if pending is None:
                return
            if (not pending.is_done() and not self._signal_pending()) or (
                not self._token.is_finished()
                and pending.feed.num_available < pending.min_count
            ):
                self._start_job()

    def _signal_pending(self) -> bool:
        """Resolve the pending request if it can be; return True when done."""
        pending = self._pending
        if pending.feed.num_available >= pending.min_count or self._token.is_finished():
            if pending.future.set_running_or_notify_cancel():
                pending.future.set_result(pending.feed.take_next(pending.max_count))
            return True
        return False

    # ------------------------------------------------------------------
    # Keyword edits

    def add_keyword(self, kw_type: KeywordType, term: str) -> bool:
        """
        Add a user keyword and move the documents it reclassifies.

        The term is removed from the opposite keyword set first. Returns
        False when the keyword was already present.
        """
        term = term.strip()
        if not self.get_keyword_set(kw_type).add(term):
            return False

        self.remove_keyword(kw_type.opposite, term)

        with self._lock:
            from_discarded = self._discarded.apply_keyword(kw_type, term)
            from_kept = self._kept.apply_keyword(kw_type, term)
            for doc in from_kept:
                doc.status = Status.USER_KEYWORD_REJECTED
            for doc in from_discarded:
                doc.status = Status.USER_KEYWORD_KEPT
            self._discarded.add_all(from_kept)
            self._kept.add_all(from_discarded)

        log.info(
            "Added keyword",
            kw_type=kw_type.value,
            term=term,
            to_kept=len(from_discarded),
            to_discarded=len(from_kept),
        )
        return True

    def remove_keyword(self, kw_type: KeywordType, term: str) -> bool:
        """
        Remove a user keyword and move the documents it no longer classifies.

        Documents left without any keyword classification are sent back to
        the matching service; this call blocks until it answers. If it fails
        those documents are dropped. Returns False when the keyword was not
        present.
        """
        term = term.strip()
        if not self.get_keyword_set(kw_type).remove(term):
            return False

        to_reclassify: list[ClassifiedDocument] = []
        with self._lock:
            from_discarded = self._discarded.remove_keyword(kw_type, term)
            from_kept = self._kept.remove_keyword(kw_type, term)
            for doc in from_discarded:
                if doc.sign == 0:
                    to_reclassify.append(doc)
                else:
                    doc.status = Status.USER_KEYWORD_KEPT
                    self._kept.add(doc)
            for doc in from_kept:
                if doc.sign == 0:
                    to_reclassify.append(doc)
                else:
                    doc.status = Status.USER_KEYWORD_REJECTED
                    self._discarded.add(doc)
            senses = list(self._senses)
            filtering = self.filtering
            generation = self._generation

        log.info(
            "Removed keyword",
            kw_type=kw_type.value,
            term=term,
            moved=len(from_discarded) + len(from_kept) - len(to_reclassify),
            reclassify=len(to_reclassify),
        )
        if to_reclassify:
            self._reclassify(to_reclassify, senses, filtering, generation)
        return True

    def _reclassify(
        self,
        docs: list[ClassifiedDocument],
        senses: list[Sense],
        filtering: FilteringOptions,
        generation: int,
    ) -> None:
        try:
            result = self.matcher.classify(
                senses, filtering, [doc.document for doc in docs], self.customer_id
            ).result(timeout=self.reclassify_timeout)
            if len(result.scores) != len(docs):
                raise MatchingServiceError(
                    f"Matching service returned {len(result.scores)} scores "
                    f"for {len(docs)} documents"
                )
        except Exception:
            log.exception(
                "Failed to reclassify documents; dropping them",
                expression=self.expression,
                count=len(docs),
            )
            return

        with self._lock:
            if generation != self._generation:
                return
            for doc, score in zip(docs, result.scores):
                route_by_score(doc, score, filtering, self._kept, self._discarded)

    # ------------------------------------------------------------------
    # Keyword preview

    def keyword_search(
        self, term: str, filtering: FilteringOptions | None = None
    ) -> "SearchSession":
        """
        Start a preview search for this expression plus the quoted ``term``.

        The preview shares this search's senses, only keeps documents
        containing ``term`` and resumes from this search's position in the
        document source.
        """
        term = term.strip()
        with self._lock:
            if self._token is None:
                raise RuntimeError("Search has not been started")
            expression = f'{self.expression} "{term}"'
            token = self.source.extend_search(self.parameters, self._token, expression)
            senses = list(self._senses)
            filtering = filtering or self.filtering

        preview = SearchSession(
            expression,
            self.source,
            self.matcher,
            parameters=SearchParameters(query=expression, filters=dict(self.parameters.filters)),
            customer_id=self.customer_id,
            senses=senses,
            batch_size=self.batch_size,
            max_feed_size=self._kept.max_size,
            reclassify_timeout=self.reclassify_timeout,
        )
        preview.set_document_filter(term)
        preview.start(token, filtering)
        log.info("Started keyword preview search", expression=expression)
        return preview

    def __repr__(self) -> str:
        return (
            f"SearchSession(expression={self.expression!r}, "
            f"kept={self._kept!r}, discarded={self._discarded!r})"
        )
