"""Tests for the upstream price feed client."""
import pytest
import requests

from flipper.feed import FeedError, FeedNotReadyError, PriceFeedClient


class FakeResponse:
    def __init__(self, status_code, payload=None):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.headers = {}
        self.calls = []

    def get(self, url, params=None, timeout=None):
        self.calls.append((url, params))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _client(responses, **kwargs):
    session = FakeSession(responses)
    client = PriceFeedClient(session=session, backoff_base_seconds=0, user_agent="flipper-tests", **kwargs)
    return client, session


def test_sets_user_agent():
    _, session = _client([])
    assert session.headers["User-Agent"] == "flipper-tests"


def test_fetch_latest_keys_by_int_id():
    client, session = _client([FakeResponse(200, {"data": {"4151": {"high": 2, "highTime": 1, "low": None, "lowTime": None}}})])
    assert client.fetch_latest() == {4151: {"high": 2, "highTime": 1, "low": None, "lowTime": None}}
    assert session.calls[0][0].endswith("/latest")


def test_fetch_timeseries_passes_timestamp():
    client, session = _client([FakeResponse(200, {"timestamp": 1700000000, "data": {"2": {"avgHighPrice": 5}}})])
    api_ts, data = client.fetch_timeseries("5m", timestamp=1700000000)

    assert api_ts == 1700000000
    assert data == {2: {"avgHighPrice": 5}}
    assert session.calls == [("https://prices.runescape.wiki/api/v1/osrs/5m", {"timestamp": 1700000000})]


def test_retries_server_errors():
    client, session = _client(
        [FakeResponse(502), requests.ConnectionError("reset"), FakeResponse(200, {"data": {}})],
        max_retries=3,
    )
    assert client.fetch_latest() == {}
    assert len(session.calls) == 3


def test_gives_up_after_max_retries():
    client, session = _client([FakeResponse(503), FakeResponse(429)], max_retries=2)
    with pytest.raises(FeedError, match="429"):
        client.fetch_latest()
    assert len(session.calls) == 2


def test_client_errors_are_not_retried():
    client, session = _client([FakeResponse(400), FakeResponse(200, {"data": {}})], max_retries=3)
    with pytest.raises(FeedError, match="Not retrying"):
        client.fetch_latest()
    assert len(session.calls) == 1


def test_not_found_means_not_ready():
    client, _ = _client([FakeResponse(404)])
    with pytest.raises(FeedNotReadyError):
        client.fetch_timeseries("1h", timestamp=1700000000)


def test_unknown_granularity():
    client, _ = _client([])
    with pytest.raises(ValueError, match="Unknown granularity"):
        client.fetch_timeseries("2h")
