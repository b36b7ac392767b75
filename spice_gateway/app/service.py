"""
service.py - Ingestion/retrieval façade.

  write:  document -> content store (cid) -> ledger anchor -> receipt
  read:   batch id -> ledger resolve -> content store hydrate -> merged view

If the store step fails nothing is written to the ledger. If the anchor
step fails after a successful store, the document stays in the content
store unreferenced. Content stores are append-only, so there is no
compensating delete; the dangling cid is logged.
"""
import logging
import time
from typing import Optional

from .content_store import ContentStore, get_content_store
from .errors import AnchorError, BatchNotFound, TelemetryNotReady
from .hashing import utc_now_iso
from .ledger.adapter import LedgerClient, get_ledger
from .ledger.registry import BatchRecord
from .metrics import CommitMetric, MetricsCollector, collector
from .telemetry import TelemetryFeed

log = logging.getLogger("spice.service")

MEASUREMENT_FIELDS = ("temp", "rel_hum", "gas_kohm", "mq3_rsr0", "mq135_rsr0")


def _elapsed_ms(t0: float) -> float:
    return round((time.monotonic() - t0) * 1000, 2)


class ProvenanceService:

    def __init__(self, store: ContentStore, ledger: LedgerClient,
                 metrics: MetricsCollector = collector):
        self.store = store
        self.ledger = ledger
        self.metrics = metrics

    async def submit_batch(self, batch_id: str, spice_kind: str, document: dict) -> dict:
        """Store the document, then anchor its cid. Raises StoreError or AnchorError."""
        content_id: Optional[str] = None
        store_ms = anchor_ms = 0.0
        error: Optional[str] = None

        try:
            t0 = time.monotonic()
            try:
                content_id = await self.store.store(document)
            finally:
                store_ms = _elapsed_ms(t0)

            t1 = time.monotonic()
            try:
                receipt = await self.ledger.anchor(batch_id, spice_kind, content_id)
            except AnchorError:
                log.error("batch_id=%s: cid=%s stored but not anchored", batch_id, content_id)
                raise
            finally:
                anchor_ms = _elapsed_ms(t1)
        except Exception as exc:
            error = f"{getattr(exc, 'code', type(exc).__name__)}: {exc}"
            raise
        finally:
            self.metrics.record(CommitMetric(
                ts=utc_now_iso(), batch_id=batch_id, spice_kind=spice_kind,
                content_id=content_id, store_ms=store_ms, anchor_ms=anchor_ms,
                success=error is None, error=error,
            ))

        log.info("committed batch_id=%s spice=%s cid=%s tx=%s store_ms=%.1f anchor_ms=%.1f",
                 batch_id, spice_kind, content_id, receipt.transaction_ref, store_ms, anchor_ms)
        return {
            "batch_id": batch_id,
            "spice_kind": spice_kind,
            "content_id": content_id,
            **receipt.to_dict(),
        }

    async def fetch_batch(self, batch_id: str) -> dict:
        """Resolve on-chain metadata and hydrate the document. Raises BatchNotFound."""
        record = await self.ledger.resolve(batch_id)
        if record is None:
            raise BatchNotFound(batch_id)
        document = await self.store.retrieve(record.content_id)
        return {**record.to_dict(), "document": document}

    async def list_batches(self) -> list[BatchRecord]:
        return await self.ledger.list_all()

    async def promote_latest(self, batch_id: str, spice_kind: str, feed: TelemetryFeed) -> dict:
        """Commit the current live sample as a batch. Explicit, never automatic."""
        sample = feed.latest
        if sample is None:
            raise TelemetryNotReady("no sensor data to commit")
        if not sample.get("available") or not sample.get("purity"):
            raise TelemetryNotReady("sensor data not ready (warming up or invalid)")

        document = {
            "batch_id": batch_id,
            "spice": spice_kind,
            "sensor_data": {
                "deviceId": sample["deviceId"],
                "timestamp": sample.get("_serverTs"),
                "measurements": {k: sample.get(k) for k in MEASUREMENT_FIELDS},
                "purity": sample["purity"],
                "grade": sample.get("grade"),
            },
        }
        result = await self.submit_batch(batch_id, spice_kind, document)
        return {**result, "purity": sample["purity"], "grade": sample.get("grade")}


_service: Optional[ProvenanceService] = None


def get_service() -> ProvenanceService:
    global _service
    if _service is None:
        _service = ProvenanceService(get_content_store(), get_ledger())
    return _service
