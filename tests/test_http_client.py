import json
from typing import List

import pytest
import requests

from isbn_enricher.errors import PermanentProviderError, QuotaExhaustedError, TransientProviderError
from isbn_enricher.integrations import http_client
from isbn_enricher.integrations.http_client import ISBNdbQuotaError, request_json


class FakeResponse:
    def __init__(self, status_code: int, payload=None, *, raw: str = None, headers=None) -> None:
        self.status_code = status_code
        if raw is not None:
            self.text = raw
        else:
            self.text = json.dumps(payload) if payload is not None else ""
        self.content = self.text.encode("utf-8")
        self.headers = {"Content-Type": "application/json", **(headers or {})}

    def json(self):
        return json.loads(self.text)


class FakeSession:
    def __init__(self, responses: List) -> None:
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, params=None, data=None, timeout=None):
        self.calls.append((method, url, params, data))
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    sleeps = []
    monkeypatch.setattr(http_client, "_sleep_jitter", lambda base, jitter=0.25: sleeps.append(base))
    return sleeps


def test_retries_5xx_then_succeeds(no_sleep) -> None:
    sess = FakeSession([FakeResponse(503, {"error": "busy"}), FakeResponse(200, {"ok": True})])
    assert request_json(sess, "GET", "https://x/api", provider="openlibrary", retries=2) == {"ok": True}
    assert len(sess.calls) == 2
    assert no_sleep == [1.0]


def test_retry_after_is_honoured(no_sleep) -> None:
    sess = FakeSession([FakeResponse(429, {}, headers={"Retry-After": "7"}), FakeResponse(200, {"ok": 1})])
    request_json(sess, "GET", "https://x/api", provider="google_books", retries=1)
    assert no_sleep == [7.0]


def test_retries_exhausted_is_transient() -> None:
    sess = FakeSession([FakeResponse(500, {}), FakeResponse(502, {}), FakeResponse(503, {})])
    with pytest.raises(TransientProviderError) as exc:
        request_json(sess, "GET", "https://x/api", provider="archive_org", retries=2)
    assert exc.value.status_code == 503


def test_network_errors_are_transient() -> None:
    sess = FakeSession([requests.ConnectionError("reset"), requests.Timeout("slow")])
    with pytest.raises(TransientProviderError):
        request_json(sess, "GET", "https://x/api", provider="wikidata", retries=1)
    assert len(sess.calls) == 2


def test_404_and_4xx_are_permanent_and_not_retried() -> None:
    sess = FakeSession([FakeResponse(404, {"message": "Not Found"})])
    with pytest.raises(PermanentProviderError) as exc:
        request_json(sess, "GET", "https://x/book/1", provider="isbndb", retries=3)
    assert exc.value.status_code == 404
    assert len(sess.calls) == 1

    sess = FakeSession([FakeResponse(403, {"message": "bad key"})])
    with pytest.raises(PermanentProviderError):
        request_json(sess, "GET", "https://x/book/1", provider="isbndb", retries=3)
    assert len(sess.calls) == 1


def test_isbndb_quota_message_raises_immediately() -> None:
    sess = FakeSession([FakeResponse(403, {"message": "Daily quota of 15000 requests reached"})])
    with pytest.raises(ISBNdbQuotaError) as exc:
        request_json(sess, "GET", "https://x/book/1", provider="isbndb", retries=3, detect_isbndb_quota=True)
    assert isinstance(exc.value, QuotaExhaustedError)
    assert len(sess.calls) == 1


def test_invalid_json_is_retried_then_transient() -> None:
    sess = FakeSession([FakeResponse(200, raw="<html>"), FakeResponse(200, raw="<html>")])
    with pytest.raises(TransientProviderError):
        request_json(sess, "GET", "https://x/api", provider="openlibrary", retries=1)


def test_list_payload_is_wrapped_and_hook_runs_per_attempt() -> None:
    hooks = []
    sess = FakeSession([FakeResponse(503, {}), FakeResponse(200, [1, 2])])
    out = request_json(sess, "GET", "https://x/api", provider="x", retries=1, before_request=lambda: hooks.append(1))
    assert out == {"data": [1, 2]}
    assert hooks == [1, 1]
