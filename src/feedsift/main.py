"""
feedsift command line
=====================

Runs one search against the configured document source and matching
service and prints the documents of the requested feed as they are
classified, followed by the feed statistics.
"""

from __future__ import annotations

import argparse
from typing import Sequence

import structlog

from .config import Settings, setup_libraries
from .documents import FilteringOptions
from .feed import FeedType
from .logging_config import configure_logging
from .matching import LlmMatchingService, sense_status_message
from .search import SearchSession
from .source import HttpDocumentSource

PAGE_SIZE = 5


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="feedsift",
        description="Split the documents found for an expression into kept and discarded feeds.",
    )
    parser.add_argument("expression", help="Search expression")
    parser.add_argument(
        "--feed",
        choices=[feed_type.value for feed_type in FeedType],
        default=FeedType.KEPT.value,
        help="Feed to print (default: kept)",
    )
    parser.add_argument(
        "--count", type=int, default=20, help="Maximum number of documents to print"
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Run a single search from the command line. Returns the exit status."""
    log = structlog.get_logger(__name__)
    args = _parse_args(argv)

    try:
        settings = Settings()
        configure_logging(settings)
        setup_libraries(settings)
    except ValueError as e:
        log.error("Configuration error", error=e)
        return 1

    log.info(
        "Starting search",
        expression=args.expression,
        feed=args.feed,
        document_source=settings.DOCUMENT_SOURCE_URL,
        llm_provider=settings.LLM_PROVIDER,
        ai_models=settings.AI_MODELS,
    )

    source = HttpDocumentSource(settings)
    matcher = LlmMatchingService(settings)
    session = SearchSession(
        args.expression,
        source,
        matcher,
        batch_size=settings.FETCH_BATCH_SIZE,
        max_feed_size=settings.FEED_MAX_SIZE,
        reclassify_timeout=settings.REQUEST_TIMEOUT,
    )
    feed_type = FeedType(args.feed)
    try:
        session.start(
            filtering=FilteringOptions(discard_inconclusive=settings.DISCARD_INCONCLUSIVE)
        )
        printed = 0
        while printed < args.count:
            docs = session.get_documents(
                feed_type, 1, min(PAGE_SIZE, args.count - printed)
            )
            if not docs:
                break
            for doc in docs:
                print(f"[{doc.status.value}] {doc.id}: {' '.join(doc.text.split())}")
            printed += len(docs)

        message = sense_status_message(
            session.sense_status.result(timeout=settings.REQUEST_TIMEOUT)
        )
        if message:
            log.warning(message)
    except Exception:
        log.exception("Search failed", expression=args.expression)
        return 1
    finally:
        session.close()
        matcher.close()
        source.close()

    stats = session.feed_stats()
    log.info(
        "Search finished",
        expression=args.expression,
        printed=printed,
        kept=stats.kept,
        discarded=stats.discarded,
        snr=stats.snr,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
