"""Evidence source fan-in.

``EvidenceHub`` is the single entry point the browser adapters (or tests)
push observations into. Each callback normalises the observation and inserts
the resulting records into the shared pool; a failure inside one observation
is logged and dropped so a malformed payload never reaches the matcher loop.
"""

from __future__ import annotations

from typing import Any, Callable, List, Optional

from . import config
from .evidence import Evidence
from .evidence_pool import EvidencePool
from .extraction import RequestMeta
from .logging_utils import _capture_event
from .normalizer import EvidenceNormalizer
from .rows import Row

StateRootProvider = Callable[[], Any]


class EvidenceHub:
    def __init__(
        self,
        pool: EvidencePool,
        normalizer: Optional[EvidenceNormalizer] = None,
        *,
        page_context: Optional[Callable[[], str]] = None,
    ) -> None:
        self.pool = pool
        self.normalizer = normalizer or EvidenceNormalizer()
        self._page_context = page_context or (lambda: "")
        self.ingested = 0
        self.dropped = 0

    def _context(self) -> str:
        try:
            return str(self._page_context() or "")
        except Exception:  # noqa: BLE001
            return ""

    def _insert(self, records: List[Evidence]) -> int:
        count = self.pool.insert_many(records)
        self.ingested += count
        return count

    def _drop(self, channel: str, exc: BaseException) -> int:
        self.dropped += 1
        _capture_event("error", phase="ingest", channel=channel, error=repr(exc))
        return 0

    # ------------------------------------------------------------------
    # Source contract
    # ------------------------------------------------------------------

    def on_request(self, method: str, url: str, body: Any) -> Optional[RequestMeta]:
        try:
            return self.normalizer.register_request(method, url, body)
        except Exception as exc:  # noqa: BLE001
            self._drop("request", exc)
            return None

    def on_network_exchange(
        self,
        request_meta: Optional[RequestMeta],
        response_body: Any,
        *,
        url: str = "",
        method: str = "GET",
    ) -> int:
        try:
            records = self.normalizer.from_network_exchange(
                request_meta,
                response_body,
                url=url,
                method=method,
                page_context=self._context(),
            )
        except Exception as exc:  # noqa: BLE001
            return self._drop("network", exc)
        return self._insert(records)

    def on_state_snapshot(self, root: Any, *, root_name: Optional[str] = None) -> int:
        if root is None:
            return 0
        try:
            records = self.normalizer.from_state_snapshot(
                root,
                root_name=root_name or config.STATE_ROOT_KEY,
                page_context=self._context(),
            )
        except Exception as exc:  # noqa: BLE001
            return self._drop("state", exc)
        return self._insert(records)

    def on_markup_snapshot(self, document: str, *, frame_label: str = "") -> int:
        try:
            records = self.normalizer.from_markup_snapshot(
                document,
                page_context=self._context(),
                frame_label=frame_label,
            )
        except Exception as exc:  # noqa: BLE001
            return self._drop("markup", exc)
        return self._insert(records)

    # ------------------------------------------------------------------

    def state_lookup(
        self,
        root_provider: StateRootProvider,
        *,
        root_name: Optional[str] = None,
    ) -> Callable[[Row], List[Evidence]]:
        """Build a matcher state lookup reading a fresh root on every poll."""

        name = root_name or config.STATE_ROOT_KEY

        def lookup(row: Row) -> List[Evidence]:
            try:
                root = root_provider()
            except Exception as exc:  # noqa: BLE001
                self._drop("state-lookup", exc)
                return []
            if root is None:
                return []
            return self.normalizer.from_state_lookup(
                root,
                target_message_id=row.target_message_id,
                target_prospect_id=row.prospect_id,
                root_name=name,
                page_context=self._context(),
            )

        return lookup


__all__ = ["EvidenceHub", "StateRootProvider"]
