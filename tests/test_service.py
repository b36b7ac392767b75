"""
Unit tests for the ingestion/retrieval façade.

Uses counting test doubles to check call ordering and that no anchor is
ever attempted without stored content.
"""
import asyncio
import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

from spice_gateway.app.content_store import ContentStore, MemoryContentStore
from spice_gateway.app.errors import AnchorError, BatchNotFound, StoreError, TelemetryNotReady
from spice_gateway.app.ledger.adapter import LedgerClient, StubLedger
from spice_gateway.app.ledger.registry import AnchorReceipt, BatchRecord
from spice_gateway.app.metrics import MetricsCollector
from spice_gateway.app.service import ProvenanceService
from spice_gateway.app.telemetry import TelemetryFeed


def run(coro):
    return asyncio.run(coro)


class FixedStore(ContentStore):
    backend = "fixed"

    def __init__(self, cid="C1", fail=False):
        self.cid = cid
        self.fail = fail
        self.docs = {}
        self.store_calls = 0

    async def store(self, document):
        self.store_calls += 1
        if self.fail:
            raise StoreError("IPFS upload failed: connection refused")
        self.docs[self.cid] = document
        return self.cid

    async def retrieve(self, content_id):
        return self.docs[content_id]

    async def is_available(self):
        return not self.fail


class RecordingLedger(LedgerClient):
    backend = "recording"

    def __init__(self, fail=False):
        super().__init__()
        self.fail = fail
        self.anchor_calls = []
        self.records = {}

    async def anchor(self, batch_id, spice_kind, content_id):
        self.anchor_calls.append((batch_id, spice_kind, content_id))
        if self.fail:
            raise AnchorError("tx reverted: 0xdead")
        self.records[batch_id] = BatchRecord(batch_id, spice_kind, content_id,
                                             anchored_at="2025-01-01T00:00:00+00:00")
        return AnchorReceipt(transaction_ref="T1", block_ref="B1",
                             anchored_at="2025-01-01T00:00:00+00:00")

    async def resolve(self, batch_id):
        return self.records.get(batch_id)

    async def fetch_events(self):
        return []

    async def is_connected(self):
        return True


@pytest.fixture
def metrics(tmp_path):
    return MetricsCollector(results_dir=str(tmp_path))


def test_turmeric_scenario(metrics):
    store, ledger = FixedStore("C1"), RecordingLedger()
    service = ProvenanceService(store, ledger, metrics)

    committed = run(service.submit_batch("TURM2025-01", "Turmeric", {"purity": 92}))
    assert committed["content_id"] == "C1"
    assert committed["transaction_ref"] == "T1"
    assert committed["block_ref"] == "B1"
    assert ledger.anchor_calls == [("TURM2025-01", "Turmeric", "C1")]

    fetched = run(service.fetch_batch("TURM2025-01"))
    assert fetched["spice_kind"] == "Turmeric"
    assert fetched["content_id"] == "C1"
    assert fetched["document"] == {"purity": 92}


def test_store_failure_never_anchors(metrics):
    store, ledger = FixedStore(fail=True), RecordingLedger()
    service = ProvenanceService(store, ledger, metrics)

    with pytest.raises(StoreError):
        run(service.submit_batch("TURM2025-01", "Turmeric", {"purity": 92}))

    assert store.store_calls == 1
    assert ledger.anchor_calls == []
    summary = metrics.summary()
    assert summary.total_failed == 1
    assert metrics.recent()[0].error.startswith("STORE_FAILED")


def test_anchor_failure_leaves_content_unanchored(metrics):
    store, ledger = FixedStore("C1"), RecordingLedger(fail=True)
    service = ProvenanceService(store, ledger, metrics)

    with pytest.raises(AnchorError):
        run(service.submit_batch("TURM2025-01", "Turmeric", {"purity": 92}))

    assert store.docs["C1"] == {"purity": 92}
    assert run(ledger.resolve("TURM2025-01")) is None
    assert metrics.recent()[0].content_id == "C1"
    assert metrics.recent()[0].success is False


def test_roundtrip_with_memory_store_and_stub_ledger(metrics):
    service = ProvenanceService(MemoryContentStore(), StubLedger(), metrics)
    document = {
        "batch_id": "CHIL2025-07",
        "spice": "Chilli",
        "sensor_data": {"purity": 81.5, "grade": "B", "measurements": {"temp": 27.1}},
    }

    committed = run(service.submit_batch("CHIL2025-07", "Chilli", document))
    fetched = run(service.fetch_batch("CHIL2025-07"))

    assert fetched["document"] == document
    assert fetched["content_id"] == committed["content_id"]
    assert fetched["transaction_ref"] == committed["transaction_ref"]
    assert [r.batch_id for r in run(service.list_batches())] == ["CHIL2025-07"]
    assert metrics.summary().total_success == 1


def test_fetch_unknown_batch_raises_not_found(metrics):
    service = ProvenanceService(FixedStore(), RecordingLedger(), metrics)
    with pytest.raises(BatchNotFound) as info:
        run(service.fetch_batch("NOPE"))
    assert info.value.batch_id == "NOPE"


def test_promote_latest_requires_a_ready_sample(metrics):
    service = ProvenanceService(FixedStore(), RecordingLedger(), metrics)
    feed = TelemetryFeed()

    with pytest.raises(TelemetryNotReady):
        run(service.promote_latest("TURM2025-02", "Turmeric", feed))

    feed.accept({"deviceId": "esp32-01", "available": False, "purity": None})
    with pytest.raises(TelemetryNotReady):
        run(service.promote_latest("TURM2025-02", "Turmeric", feed))


def test_promote_latest_builds_provenance_document(metrics):
    store, ledger = FixedStore("C7"), RecordingLedger()
    service = ProvenanceService(store, ledger, metrics)
    feed = TelemetryFeed()
    feed.accept({"deviceId": "esp32-01", "available": True, "purity": 93.2, "grade": "A",
                 "temp": 26.4, "rel_hum": 51.0, "gas_kohm": 47.2,
                 "mq3_rsr0": 0.81, "mq135_rsr0": 0.9, "firmware": "1.4.2"})

    result = run(service.promote_latest("TURM2025-02", "Turmeric", feed))

    assert result["purity"] == 93.2
    assert result["grade"] == "A"
    doc = store.docs["C7"]
    assert doc["batch_id"] == "TURM2025-02"
    assert doc["spice"] == "Turmeric"
    assert doc["sensor_data"]["deviceId"] == "esp32-01"
    assert doc["sensor_data"]["timestamp"] == feed.latest["_serverTs"]
    assert doc["sensor_data"]["measurements"] == {
        "temp": 26.4, "rel_hum": 51.0, "gas_kohm": 47.2, "mq3_rsr0": 0.81, "mq135_rsr0": 0.9,
    }
    assert ledger.anchor_calls == [("TURM2025-02", "Turmeric", "C7")]


def test_metrics_export_writes_run_files(metrics, tmp_path):
    service = ProvenanceService(FixedStore(fail=True), RecordingLedger(), metrics)
    with pytest.raises(StoreError):
        run(service.submit_batch("B1", "Cumin", {}))

    out = metrics.export()

    assert metrics.summary().errors_by_code == {"STORE_FAILED": 1}
    assert os.path.exists(os.path.join(out, "commits.csv"))
    assert os.path.exists(os.path.join(out, "metrics.csv"))
    assert out.startswith(str(tmp_path))
