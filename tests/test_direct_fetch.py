from typing import Any, List

import pytest
import requests

from app.capture import config
from app.capture.direct_fetch import DirectLookup, ThreadMessageClient, VirtualNavigator, is_persisted_query_not_found
from app.capture.error_codes import ErrorCode, TransportError
from app.capture.evidence_pool import EvidencePool
from app.capture.rows import Row
from app.capture.sources import EvidenceHub

NOT_FOUND = {"errors": [{"message": "PersistedQueryNotFound"}]}
ROW = Row.from_link(
    {
        "sequence_id": "7",
        "prospect_id": "42",
        "message_id_encoded": "%3CAbC%40mail.example%3E",
        "message_url": "https://app.outreach.io/prospects/42/emails/thread/%3CAbC%40mail.example%3E",
    }
)


class FakeResponse:
    def __init__(self, status_code: int, body: Any) -> None:
        self.status_code = status_code
        self._body = body

    def json(self) -> Any:
        if isinstance(self._body, Exception):
            raise self._body
        return self._body


class FakeSession:
    def __init__(self, responses: List[Any]) -> None:
        self.responses = list(responses)
        self.calls: List[dict] = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _client(session: FakeSession, sleeps: list) -> ThreadMessageClient:
    return ThreadMessageClient("token-123", session=session, url="https://x.outreach.io/graphql", sleep=sleeps.append)


def test_persisted_query_miss_retries_without_extension_then_hash() -> None:
    session = FakeSession(
        [
            FakeResponse(200, NOT_FOUND),
            FakeResponse(200, NOT_FOUND),
            FakeResponse(200, {"data": {"threadMessages": {"collection": []}}}),
        ]
    )
    sleeps: list = []

    response = _client(session, sleeps).fetch("42", "<AbC@mail.example>")

    assert response.attempt == "hash_retry_once"
    assert ["extensions" in call["json"] for call in session.calls] == [True, False, True]
    assert sleeps == [0.2]
    headers = session.calls[0]["headers"]
    assert headers["Authorization"] == "Bearer token-123"
    assert headers["apollographql-client-name"] == "giraffe"
    assert session.calls[0]["json"]["variables"]["prospectId"] == 42


def test_http_error_and_network_failure_raise_transport_error() -> None:
    with pytest.raises(TransportError) as excinfo:
        _client(FakeSession([FakeResponse(401, {"errors": []})]), []).fetch("42", "m")
    assert excinfo.value.http_status == 401
    assert excinfo.value.error_code == ErrorCode.TRANSPORT

    with pytest.raises(TransportError):
        _client(FakeSession([requests.ConnectionError("refused")]), []).fetch("42", "m")

    with pytest.raises(TransportError):
        _client(FakeSession([FakeResponse(200, ValueError("not json"))]), []).fetch("42", "m")


def test_client_without_bearer_is_disabled(monkeypatch) -> None:
    monkeypatch.setattr(config, "DIRECT_FETCH_BEARER", "")
    client = ThreadMessageClient(session=FakeSession([]))

    assert client.enabled is False
    with pytest.raises(TransportError):
        client.fetch("42", "m")


def test_direct_lookup_feeds_deterministic_evidence() -> None:
    payload = {
        "data": {
            "threadMessages": {
                "collection": [
                    {"id": "<AbC@mail.example>", "prospect": {"id": "42"}, "bodyText": "Hello Dana"},
                    {"id": "<zzz@mail.example>", "prospect": {"id": "42"}, "bodyText": "Other"},
                ]
            }
        }
    }
    session = FakeSession([FakeResponse(200, payload)])
    pool = EvidencePool()
    navigator = VirtualNavigator()
    navigator.navigate(ROW.target_url)
    hub = EvidenceHub(pool, page_context=navigator.current_context)

    inserted = DirectLookup(_client(session, []), hub)(ROW)

    assert inserted == 1
    assert session.calls[0]["json"]["variables"]["messageId"] == "<AbC@mail.example>"
    evidence = pool.query_alive()[0]
    assert evidence.is_deterministic
    assert evidence.request_operation == config.THREAD_MESSAGES_OPERATION
    assert evidence.page_context == ROW.target_url


def test_is_persisted_query_not_found() -> None:
    assert is_persisted_query_not_found(NOT_FOUND)
    assert not is_persisted_query_not_found({"errors": [{"message": "Unauthorized"}]})
    assert not is_persisted_query_not_found({"data": {}})
    assert not is_persisted_query_not_found(None)
