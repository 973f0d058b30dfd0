"""
Semantic Matching Service
=========================

Documents that the user keywords cannot classify are sent in batches to a
semantic matching service. For each document the service returns a score
whose sign says whether the document matches the meaning of the search
expression (> 0), does not match it (< 0) or is inconclusive (0). It also
reports, once per search, which of the expression's word meanings it could
actually use.

`MatchingService` is the interface the search engine consumes.
`LlmMatchingService` implements it on top of an OpenAI-compatible chat
completion API, trying each configured model in turn.
"""

from __future__ import annotations

import json
import math
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Sequence

import openai
import structlog

from .config import Settings
from .documents import Document, FilteringOptions
from .utils import retry

log = structlog.get_logger(__name__)

RETRYABLE_OPENAI_EXCEPTIONS = (
    openai.APIConnectionError,
    openai.APITimeoutError,
    openai.RateLimitError,
    openai.InternalServerError,
)

MATCHING_PROMPT = """
You are a relevance classifier in a document filtering pipeline.

You receive a search expression, the intended meaning of some of its words,
and a numbered list of short documents. For every document decide whether it
is about the search expression *with the intended meanings* (for example
"apple" the company versus "apple" the fruit).

- Always reply only with a single, valid JSON object that matches the schema below.
Do not wrap it in markdown or add explanations. Do not wrap in ``` or similar.

----------  JSON schema  ----------
{
  "scores": number[],   # one entry per document, same order as given
  "senses": [           # one entry per word meaning you were given
    {"text": string, "used": boolean}
  ]
}
-----------------------------------

Scoring rules
-------------
- 1 when the document uses the words with the intended meanings.
- -1 when the document uses the words with a different meaning, or is unrelated.
- 0 when the document is too short or ambiguous to decide.
- If "discard on missing words" is true, score -1 any document that does not
  contain every word of the search expression.
- "used" is false for a meaning you could not apply (unknown, or too vague).

Return exactly as many scores as there are documents.
""".strip()


class MatchingServiceError(RuntimeError):
    """Raised when the matching service cannot classify a batch."""


@dataclass(frozen=True)
class Sense:
    """The intended meaning of one word of the search expression."""

    text: str
    meaning: str = ""


@dataclass(frozen=True)
class SenseStatus:
    """Whether the matching service could use the meaning given for a word."""

    text: str
    used: bool


@dataclass(frozen=True)
class MatchResult:
    """Scores in submission order, plus the per-sense usage report."""

    scores: list[float]
    sense_status: list[SenseStatus] = field(default_factory=list)


def sense_status_message(statuses: Sequence[SenseStatus]) -> str | None:
    """
    Build a user-facing warning for meanings the service could not use.

    Returns None when every meaning was used.
    """
    unused = [status.text for status in statuses if not status.used]
    if not unused:
        return None
    if len(unused) == 1:
        return (
            f'Meaning-based search is unavailable for "{unused[0]}". '
            "Falling back to the word itself."
        )
    return (
        f'Meaning-based search is unavailable for "{", ".join(unused)}". '
        "Falling back to the words."
    )


class MatchingService(ABC):
    """Abstract base class for semantic matching services."""

    @abstractmethod
    def classify(
        self,
        senses: Sequence[Sense],
        filtering: FilteringOptions,
        documents: Sequence[Document],
        customer_id: str | None = None,
    ) -> Future[MatchResult]:
        """
        Score ``documents`` against the search meanings.

        The future resolves to a `MatchResult` with one score per document in
        the order submitted, or fails with the transport/service error.
        """
        raise NotImplementedError


def _extract_json(text: str) -> dict:
    """Parse JSON from raw model output, trimming surrounding text if needed."""
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        start = text.find("{")
        end = text.rfind("}")
        if start == -1 or end == -1 or end <= start:
            raise
        return json.loads(text[start : end + 1])


def _parse_score(value) -> float:
    if isinstance(value, bool):
        raise ValueError(f"Score is not a number: {value!r}")
    score = float(value)
    if math.isnan(score):
        raise ValueError("Score is NaN")
    return score


def _parse_used(value) -> bool | None:
    """Read a sense "used" flag; None when it is neither a boolean nor true/false text."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return {"true": True, "false": False}.get(value.strip().lower())
    return None


def parse_matching_response(text: str, expected_count: int) -> MatchResult:
    """
    Parse and validate a matching response.

    Raises ValueError (or json.JSONDecodeError) when the response is not a
    JSON object with exactly ``expected_count`` numeric scores.
    """
    raw = text.strip()
    if not raw:
        raise ValueError("Matching response is empty.")

    data = _extract_json(raw)
    if not isinstance(data, dict):
        raise ValueError("Matching response is not a JSON object.")

    scores_value = data.get("scores")
    if not isinstance(scores_value, list):
        raise ValueError("Matching response has no scores list.")
    if len(scores_value) != expected_count:
        raise ValueError(
            f"Expected {expected_count} scores, got {len(scores_value)}."
        )
    scores = [_parse_score(value) for value in scores_value]

    statuses = []
    senses_value = data.get("senses", [])
    if isinstance(senses_value, list):
        for item in senses_value:
            if not isinstance(item, dict):
                continue
            text_value = str(item.get("text", "")).strip()
            if not text_value:
                continue
            used = _parse_used(item.get("used", True))
            if used is None:
                continue
            statuses.append(SenseStatus(text=text_value, used=used))

    return MatchResult(scores=scores, sense_status=statuses)


class LlmMatchingService(MatchingService):
    """
    Matching service backed by an OpenAI-compatible chat completion API.

    Calls run on a small thread pool so `classify` returns immediately.
    """

    def __init__(self, settings: Settings, executor: ThreadPoolExecutor | None = None):
        self.settings = settings
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=settings.MATCHING_WORKERS,
            thread_name_prefix="matching",
        )

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False)

    def classify(
        self,
        senses: Sequence[Sense],
        filtering: FilteringOptions,
        documents: Sequence[Document],
        customer_id: str | None = None,
    ) -> Future[MatchResult]:
        if not documents:
            future: Future[MatchResult] = Future()
            future.set_result(
                MatchResult(scores=[], sense_status=[SenseStatus(s.text, True) for s in senses])
            )
            return future
        return self._executor.submit(
            self.classify_documents, list(senses), filtering, list(documents), customer_id
        )

    @retry(retryable_exceptions=RETRYABLE_OPENAI_EXCEPTIONS)
    def _create_completion(self, **kwargs):
        """Call the OpenAI-compatible chat completion API with retries."""
        return openai.chat.completions.create(**kwargs)

    def _build_user_content(
        self,
        senses: Sequence[Sense],
        filtering: FilteringOptions,
        documents: Sequence[Document],
    ) -> str:
        expression = " ".join(sense.text for sense in senses)
        meanings = [
            {"text": sense.text, "meaning": sense.meaning} for sense in senses
        ]
        limit = self.settings.MATCHING_MAX_CHARS
        lines = []
        for index, doc in enumerate(documents, 1):
            text = " ".join(doc.text.split())
            if limit > 0:
                text = text[:limit]
            lines.append(f"{index}. {text}")
        return (
            f"Search expression: {expression}\n"
            f"Word meanings:\n{json.dumps(meanings, ensure_ascii=True)}\n"
            f"Discard on missing words: {str(filtering.discard_on_missing_words).lower()}\n\n"
            f"Documents ({len(documents)}):\n" + "\n".join(lines)
        )

    def classify_documents(
        self,
        senses: Sequence[Sense],
        filtering: FilteringOptions,
        documents: Sequence[Document],
        customer_id: str | None = None,
    ) -> MatchResult:
        """
        Classify a batch synchronously, trying each configured model in turn.

        Raises MatchingServiceError when no model produced a valid answer.
        """
        messages = [
            {"role": "system", "content": MATCHING_PROMPT},
            {"role": "user", "content": self._build_user_content(senses, filtering, documents)},
        ]

        for model in self.settings.AI_MODELS:
            params = {
                "model": model,
                "messages": messages,
                "timeout": self.settings.REQUEST_TIMEOUT,
            }
            if customer_id:
                params["user"] = customer_id
            try:
                response = self._create_completion(**params)
                content = response.choices[0].message.content or ""
                result = parse_matching_response(content, len(documents))
            except (json.JSONDecodeError, ValueError) as e:
                log.warning("Matching response invalid", model=model, error=str(e))
                continue
            except openai.APIError as e:
                log.warning("Matching model failed", model=model, error=str(e))
                continue
            log.debug(
                "Classified documents",
                model=model,
                document_count=len(documents),
            )
            return result

        log.error("All matching models failed", document_count=len(documents))
        raise MatchingServiceError(
            f"No model could classify {len(documents)} documents"
        )
