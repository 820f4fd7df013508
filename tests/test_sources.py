from app.capture.evidence_pool import EvidencePool
from app.capture.rows import Row
from app.capture.sources import EvidenceHub


def test_malformed_observation_is_dropped_not_raised(monkeypatch) -> None:
    hub = EvidenceHub(EvidencePool())

    def broken(*args, **kwargs):
        raise RuntimeError("unexpected payload shape")

    monkeypatch.setattr(hub.normalizer, "from_network_exchange", broken)

    assert hub.on_network_exchange(None, {"data": {}}, url="https://x.outreach.io/graphql") == 0
    assert hub.dropped == 1
    assert len(hub.pool) == 0


def test_state_snapshot_and_page_context() -> None:
    pool = EvidencePool()
    hub = EvidenceHub(pool, page_context=lambda: "https://app.outreach.io/prospects/1/emails/thread/a")
    root = {"Message:1": {"id": "a", "bodyText": "Hello from the cache"}}

    assert hub.on_state_snapshot(root, root_name="cache") == 1

    evidence = pool.query_alive()[0]
    assert evidence.source_detail == "state:cache"
    assert not evidence.is_deterministic
    assert evidence.page_context.endswith("/thread/a")
    assert hub.ingested == 1


def test_state_lookup_survives_provider_errors() -> None:
    hub = EvidenceHub(EvidencePool())
    row = Row.from_link({"prospect_id": "1", "message_id_encoded": "a", "message_url": "u"})

    def provider():
        raise RuntimeError("page closed")

    assert hub.state_lookup(provider)(row) == []
    assert hub.dropped == 1

    lookup = hub.state_lookup(lambda: {"m": {"id": "A", "prospectId": "1", "bodyText": "Hi"}}, root_name="cache")
    found = lookup(row)
    assert len(found) == 1
    assert found[0].is_deterministic
