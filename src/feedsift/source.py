"""
HTTP Document Source
====================

A reference `DocumentSource` that pages through a JSON search API.

The first request for a search is ``GET {DOCUMENT_SOURCE_URL}/search`` with
the query, the page size and the search filters as query parameters. Each
response has the shape::

    {"results": [{"id": "...", "text": "...", ...}], "next": "<url>" | null}

Following pages are fetched from the ``next`` link until the server stops
returning one or the per-search page cap (``SEARCH_MAX_PAGES``) is reached.
The cap bounds how long a search with a poor keep rate keeps fetching.
"""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor

import requests
import structlog

from .config import Settings
from .documents import Document, DocumentSource, PaginationToken, SearchParameters
from .utils import retry

log = structlog.get_logger(__name__)

DEFAULT_MAX_ITERATIONS = 50


class HttpSearchToken(PaginationToken):
    """Pagination state for one search on an `HttpDocumentSource`."""

    def __init__(
        self,
        parameters: SearchParameters,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        before: str | None = None,
    ):
        self.parameters = parameters
        self.max_iterations = max_iterations
        self.iterations = 0
        self.next_url: str | None = None
        self.before = before
        self.oldest_id: str | None = None

    @property
    def query(self) -> str:
        return self.parameters.query

    def record_id(self, doc_id: str) -> None:
        """Remember the oldest document id returned so far."""
        if self.oldest_id is None or doc_id < self.oldest_id:
            self.oldest_id = doc_id

    def set_finished(self) -> None:
        self.iterations = self.max_iterations

    def is_finished(self) -> bool:
        return self.iterations >= self.max_iterations

    def __repr__(self) -> str:
        return (
            f"HttpSearchToken(query={self.query!r}, "
            f"iterations={self.iterations}/{self.max_iterations})"
        )


def _to_document(item: dict) -> Document:
    metadata = {key: value for key, value in item.items() if key not in ("id", "text")}
    return Document(id=str(item["id"]), text=item.get("text") or "", metadata=metadata)


class HttpDocumentSource(DocumentSource):
    """Document source backed by a paginated JSON search endpoint."""

    def __init__(self, settings: Settings, executor: ThreadPoolExecutor | None = None):
        self.settings = settings
        self._session = requests.Session()
        if settings.DOCUMENT_SOURCE_TOKEN:
            self._session.headers.update(
                {"Authorization": f"Bearer {settings.DOCUMENT_SOURCE_TOKEN}"}
            )
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="document-source"
        )

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False)
        self._session.close()

    @retry(retryable_exceptions=(requests.exceptions.RequestException,))
    def _get(self, *args, **kwargs) -> requests.Response:
        """A retriable version of session.get."""
        return self._session.get(*args, timeout=self.settings.REQUEST_TIMEOUT, **kwargs)

    def create_token(self, parameters: SearchParameters) -> HttpSearchToken:
        return HttpSearchToken(parameters, max_iterations=self.settings.SEARCH_MAX_PAGES)

    def extend_search(
        self,
        parameters: SearchParameters,
        token: PaginationToken,
        expression: str,
    ) -> HttpSearchToken:
        """
        Start a search for ``expression`` limited to documents older than the
        ones ``token`` has already returned.
        """
        before = token.oldest_id if isinstance(token, HttpSearchToken) else None
        extended = SearchParameters(query=expression, filters=dict(parameters.filters))
        return HttpSearchToken(
            extended, max_iterations=self.settings.SEARCH_MAX_PAGES, before=before
        )

    def get_next_documents(
        self, token: PaginationToken, max_count: int
    ) -> Future[list[Document]]:
        if token.is_finished():
            future: Future[list[Document]] = Future()
            future.set_result([])
            return future
        return self._executor.submit(self.fetch_page, token, max_count)

    def fetch_page(self, token: HttpSearchToken, max_count: int) -> list[Document]:
        """Fetch the next page for ``token`` synchronously and advance it."""
        if token.is_finished():
            return []

        if token.next_url:
            response = self._get(token.next_url)
        else:
            params = {"q": token.query, "count": max_count, **token.parameters.filters}
            if token.before:
                params["before"] = token.before
            response = self._get(f"{self.settings.DOCUMENT_SOURCE_URL}/search", params=params)
        response.raise_for_status()

        page = response.json()
        documents = [_to_document(item) for item in page.get("results", [])]
        for doc in documents:
            token.record_id(doc.id)

        token.iterations += 1
        token.next_url = page.get("next")
        if not token.next_url:
            token.set_finished()

        log.debug(
            "Fetched documents",
            query=token.query,
            count=len(documents),
            iteration=token.iterations,
            finished=token.is_finished(),
        )
        return documents
