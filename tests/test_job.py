from concurrent.futures import Future

import pytest

from feedsift.documents import Document, FilteringOptions
from feedsift.feed import ClassifiedDocument, Feed, FeedType, Status
from feedsift.job import FetchClassifyJob, classify_with_keywords
from feedsift.keywords import KeywordSet, KeywordType, keyword_pattern
from feedsift.matching import MatchingServiceError, MatchResult, Sense, SenseStatus


def resolved(value) -> Future:
    future = Future()
    future.set_result(value)
    return future


def failed(error) -> Future:
    future = Future()
    future.set_exception(error)
    return future


@pytest.fixture
def documents():
    return [
        Document(id="5", text="apple pie recipe"),
        Document(id="4", text="apple stock rises"),
        Document(id="3", text="banana bread"),
        Document(id="2", text="new apple phone"),
        Document(id="1", text="orchard tour"),
    ]


def make_job(mocker, documents, scores, positive=(), negative=(), **kwargs):
    source = mocker.MagicMock()
    source.get_next_documents.return_value = resolved(documents)
    matcher = mocker.MagicMock()
    matcher.classify.return_value = resolved(
        MatchResult(scores=scores, sense_status=[SenseStatus("apple", True)])
    )
    kept = Feed(FeedType.KEPT)
    discarded = Feed(FeedType.DISCARDED)
    job = FetchClassifyJob(
        source,
        matcher,
        token=mocker.MagicMock(),
        senses=[Sense("apple", "company")],
        filtering=kwargs.pop("filtering", FilteringOptions()),
        positive=KeywordSet(positive),
        negative=KeywordSet(negative),
        kept=kept,
        discarded=discarded,
        customer_id="user-1",
        **kwargs,
    )
    return job, source, matcher, kept, discarded


def test_run_sends_only_unclassified_documents(mocker, documents):
    job, source, matcher, kept, discarded = make_job(
        mocker, documents, scores=[1.0, -1.0, 0.0], positive=["stock"], negative=["pie"]
    )

    outcome = job.run()

    source.get_next_documents.assert_called_once_with(job.token, 100)
    args = matcher.classify.call_args.args
    assert [doc.id for doc in args[2]] == ["3", "2", "1"]
    assert args[3] == "user-1"
    assert outcome.signs == [-1, 1, 0, 0, 0]
    assert outcome.sense_status == [SenseStatus("apple", True)]
    assert kept.num_assigned == 0
    assert discarded.num_assigned == 0


def test_distribute_preserves_order_and_consumes_scores_in_order(mocker, documents):
    job, _, _, kept, discarded = make_job(
        mocker, documents, scores=[-1.0, 1.0, 0.0], positive=["stock"], negative=["pie"]
    )

    job.distribute(job.run())

    kept_docs = kept.take_next(10)
    discarded_docs = discarded.take_next(10)
    assert {doc.id: doc.status for doc in kept_docs} == {
        "4": Status.USER_KEYWORD_KEPT,
        "2": Status.KEPT,
        "1": Status.KEPT,
    }
    assert {doc.id: doc.status for doc in discarded_docs} == {
        "5": Status.USER_KEYWORD_REJECTED,
        "3": Status.REJECTED,
    }
    assert kept.num_assigned == 3
    assert discarded.num_assigned == 2


def test_inconclusive_documents_follow_filtering_option(mocker, documents):
    job, _, _, kept, discarded = make_job(
        mocker,
        documents[:2],
        scores=[0.0, 0.0],
        filtering=FilteringOptions(discard_inconclusive=True),
    )

    job.distribute(job.run())

    assert kept.num_available == 0
    assert discarded.num_available == 2


def test_document_filter_drops_documents(mocker, documents):
    job, _, matcher, kept, discarded = make_job(
        mocker, documents, scores=[1.0, 1.0, 1.0], document_filter=keyword_pattern("apple")
    )

    job.distribute(job.run())

    assert [doc.id for doc in matcher.classify.call_args.args[2]] == ["5", "4", "2"]
    assert kept.num_assigned == 3
    assert discarded.num_assigned == 0


def test_run_propagates_source_failure(mocker, documents):
    job, source, matcher, kept, _ = make_job(mocker, documents, scores=[])
    source.get_next_documents.return_value = failed(ConnectionError("down"))

    with pytest.raises(ConnectionError, match="down"):
        job.run()

    matcher.classify.assert_not_called()
    assert kept.num_assigned == 0


def test_run_propagates_matching_failure(mocker, documents):
    job, _, matcher, _, _ = make_job(mocker, documents, scores=[])
    matcher.classify.return_value = failed(MatchingServiceError("no model"))

    with pytest.raises(MatchingServiceError, match="no model"):
        job.run()


def test_run_rejects_score_count_mismatch(mocker, documents):
    job, _, _, kept, discarded = make_job(mocker, documents, scores=[1.0])

    with pytest.raises(MatchingServiceError, match="1 scores for 5 documents"):
        job.run()

    assert kept.num_assigned == 0
    assert discarded.num_assigned == 0


def test_classify_with_keywords_records_every_match():
    doc = ClassifiedDocument(Document(id="1", text="Apple and apple pie, Pear"))

    sign = classify_with_keywords(doc, KeywordSet(["apple", "pear"]), KeywordSet(["pie"]))

    assert sign == 1
    assert doc.positive_keywords == ["apple", "pear"]
    assert doc.negative_keywords == ["pie"]


def test_overlapping_keywords_survive_removal_of_one_term():
    doc = ClassifiedDocument(Document(id="1", text="great apple pie"))
    classify_with_keywords(doc, KeywordSet(["apple", "apple pie"]), KeywordSet())
    doc.status = Status.USER_KEYWORD_KEPT
    kept = Feed(FeedType.KEPT)
    kept.add(doc)

    assert doc.positive_keywords == ["apple", "apple pie"]
    assert kept.remove_keyword(KeywordType.POSITIVE, "apple") == []
    assert doc.sign == 1
    assert kept.num_available == 1
