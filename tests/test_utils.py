from types import SimpleNamespace
from unittest.mock import call

import pytest

from feedsift.utils import _sleep_backoff, retry


class DummyClient:
    def __init__(self, max_retries: int):
        self.settings = SimpleNamespace(
            MAX_RETRIES=max_retries, MAX_RETRY_BACKOFF_SECONDS=30
        )
        self.calls = 0

    @retry(retryable_exceptions=(ConnectionError,))
    def flaky(self) -> str:
        self.calls += 1
        if self.calls < 3:
            raise ConnectionError("boom")
        return "ok"

    @retry(retryable_exceptions=(ConnectionError,))
    def always_fails(self) -> None:
        self.calls += 1
        raise ConnectionError("nope")

    @retry(retryable_exceptions=(ConnectionError,))
    def wrong_error(self) -> None:
        self.calls += 1
        raise KeyError("not retried")


def test_retry_succeeds_after_retries(mocker):
    sleep_spy = mocker.patch("feedsift.utils._sleep_backoff")
    client = DummyClient(max_retries=3)

    assert client.flaky() == "ok"
    assert client.calls == 3
    sleep_spy.assert_has_calls(
        [call(1, client.settings), call(2, client.settings)]
    )


def test_retry_raises_after_max_retries(mocker):
    sleep_spy = mocker.patch("feedsift.utils._sleep_backoff")
    client = DummyClient(max_retries=2)

    with pytest.raises(ConnectionError, match="nope"):
        client.always_fails()

    assert client.calls == 2
    sleep_spy.assert_called_once_with(1, client.settings)


def test_retry_does_not_catch_other_exceptions(mocker):
    sleep_spy = mocker.patch("feedsift.utils._sleep_backoff")
    client = DummyClient(max_retries=3)

    with pytest.raises(KeyError):
        client.wrong_error()

    assert client.calls == 1
    sleep_spy.assert_not_called()


def test_retry_zero_retries_raises_value_error():
    client = DummyClient(max_retries=0)

    with pytest.raises(ValueError, match="MAX_RETRIES must be >= 1"):
        client.always_fails()

    assert client.calls == 0


def test_sleep_backoff_uses_exponential_delay(mocker):
    settings = SimpleNamespace(MAX_RETRIES=5, MAX_RETRY_BACKOFF_SECONDS=30)
    mocker.patch("feedsift.utils.random.uniform", return_value=1.0)
    sleep_mock = mocker.patch("feedsift.utils.time.sleep")

    _sleep_backoff(2, settings)

    sleep_mock.assert_called_once_with(4.0)


def test_sleep_backoff_caps_delay(mocker):
    settings = SimpleNamespace(MAX_RETRIES=5, MAX_RETRY_BACKOFF_SECONDS=10)
    mocker.patch("feedsift.utils.random.uniform", return_value=1.0)
    sleep_mock = mocker.patch("feedsift.utils.time.sleep")

    _sleep_backoff(6, settings)

    sleep_mock.assert_called_once_with(10)
