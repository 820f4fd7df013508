"""Browserless lookup of a message through the thread-messages query.

Used before each capture in fast mode (and optionally in ui mode); results
enter the evidence hub as correlated network exchanges.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
from urllib.parse import unquote

import requests

from . import config
from .error_codes import TransportError
from .extraction import RequestMeta
from .logging_utils import _capture_event
from .rows import Row
from .sources import EvidenceHub

CLIENT_NAME_HEADER = {"apollographql-client-name": "giraffe"}
PERSISTED_RETRY_DELAY_MS = 200


@dataclass
class GraphQLResponse:
    status: int
    ok: bool
    json: Any
    elapsed_ms: int
    attempt: str


def is_persisted_query_not_found(payload: Any) -> bool:
    if not isinstance(payload, dict):
        return False
    errors = payload.get("errors")
    if not isinstance(errors, list) or not errors:
        return False
    first = errors[0] if isinstance(errors[0], dict) else {}
    message = first.get("message")
    return isinstance(message, str) and "persistedquerynotfound" in message.lower()


def thread_message_payload(prospect_id: str, message_id: str, sha256: str) -> Dict[str, Any]:
    try:
        prospect_value: Any = int(prospect_id)
    except (TypeError, ValueError):
        prospect_value = prospect_id
    return {
        "operationName": config.THREAD_MESSAGES_OPERATION,
        "variables": {
            "duplicateEnabled": False,
            "messageId": message_id,
            "prospectId": prospect_value,
            "shouldRequestOldMailing": False,
            "loadBodyHtmlDiff": True,
        },
        "extensions": {"persistedQuery": {"version": 1, "sha256Hash": sha256}},
    }


class ThreadMessageClient:
    """POST the thread-messages query for one message.

    A persisted-query miss is retried once without the extension (so the
    server can register it) and, if it still misses, the hash request is
    retried once after a short pause.
    """

    def __init__(
        self,
        bearer: Optional[str] = None,
        *,
        session: Optional[requests.Session] = None,
        url: Optional[str] = None,
        sha256: Optional[str] = None,
        timeout: Optional[int] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        self.bearer = config.DIRECT_FETCH_BEARER if bearer is None else bearer
        self.session = session or requests.Session()
        self.url = url or config.DIRECT_FETCH_URL
        self.sha256 = sha256 or config.DIRECT_FETCH_SHA256
        self.timeout = timeout or config.DIRECT_FETCH_TIMEOUT_SECONDS
        self._sleep = sleep or time.sleep

    @property
    def enabled(self) -> bool:
        return bool(self.bearer)

    def _headers(self) -> Dict[str, str]:
        headers = dict(config.COMMON_HEADERS)
        headers.update(CLIENT_NAME_HEADER)
        headers["Authorization"] = f"Bearer {self.bearer}"
        return headers

    def _post(self, payload: Dict[str, Any], attempt: str) -> GraphQLResponse:
        variables = payload.get("variables") or {}
        _capture_event(
            "direct",
            kind="request",
            attempt=attempt,
            prospect_id=variables.get("prospectId"),
            message_id_prefix=str(variables.get("messageId") or "")[:24],
            has_persisted_query="extensions" in payload,
        )
        started = time.monotonic()
        try:
            response = self.session.post(
                self.url,
                json=payload,
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            _capture_event("error", phase="direct", attempt=attempt, error=repr(exc))
            raise TransportError(f"{type(exc).__name__}: {exc}") from exc

        elapsed_ms = int((time.monotonic() - started) * 1000)
        try:
            body = response.json()
        except ValueError:
            body = None
        ok = 200 <= response.status_code < 300
        first_error = ""
        if isinstance(body, dict) and isinstance(body.get("errors"), list) and body["errors"]:
            first_error = str((body["errors"][0] or {}).get("message") or "")[:200]
        _capture_event(
            "direct",
            kind="response",
            attempt=attempt,
            http_status=response.status_code,
            ok=ok,
            ms=elapsed_ms,
            has_data=isinstance(body, dict) and bool(body.get("data")),
            error0=first_error,
        )
        return GraphQLResponse(status=response.status_code, ok=ok, json=body, elapsed_ms=elapsed_ms, attempt=attempt)

    def fetch(self, prospect_id: str, message_id: str) -> GraphQLResponse:
        """Return the final response; raise :class:`TransportError` on failure."""

        if not self.enabled:
            raise TransportError("Direct lookup has no bearer token configured.")

        payload = thread_message_payload(prospect_id, message_id, self.sha256)
        response = self._post(payload, "hash_only")
        if response.ok and is_persisted_query_not_found(response.json):
            bare = {k: v for k, v in payload.items() if k != "extensions"}
            response = self._post(bare, "no_persisted_extension")
            if response.ok and is_persisted_query_not_found(response.json):
                self._sleep(PERSISTED_RETRY_DELAY_MS / 1000.0)
                response = self._post(payload, "hash_retry_once")

        if not response.ok:
            raise TransportError(f"HTTP {response.status}", http_status=response.status)
        if response.json is None:
            raise TransportError("Response body is not JSON.", http_status=response.status)
        return response


class DirectLookup:
    """Prime the evidence pool for a row with a direct thread-messages fetch."""

    def __init__(self, client: ThreadMessageClient, hub: EvidenceHub) -> None:
        self.client = client
        self.hub = hub

    def __call__(self, row: Row) -> int:
        if not self.client.enabled:
            return 0
        message_id = unquote(row.message_id_encoded) if row.message_id_encoded else row.target_message_id
        response = self.client.fetch(row.prospect_id, message_id)
        meta = RequestMeta(
            method="POST",
            url=self.client.url,
            operation_name=config.THREAD_MESSAGES_OPERATION,
            message_id=message_id,
            prospect_id=row.prospect_id,
            sha256=self.client.sha256,
        )
        return self.hub.on_network_exchange(meta, response.json, url=self.client.url, method="POST")


class VirtualNavigator:
    """Navigation controller for runs without a browser.

    "Navigating" just records the target, so the job machine proceeds to
    capture immediately and relies on the direct lookup for evidence.
    """

    def __init__(self) -> None:
        self.url = ""

    def current_context(self) -> str:
        return self.url

    def navigate(self, url: str) -> None:
        self.url = url


__all__ = [
    "ThreadMessageClient",
    "DirectLookup",
    "VirtualNavigator",
    "GraphQLResponse",
    "is_persisted_query_not_found",
    "thread_message_payload",
]
