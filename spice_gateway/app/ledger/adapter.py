"""
ledger/adapter.py - Abstract ledger interface.

The façade calls anchor()/resolve()/list_all() without knowing whether the
backend is an EVM registry or the in-memory stub. Swapping backends requires
only changing the LEDGER_BACKEND env var.

list_all() is shared by every backend: the registry exposes point lookups
but no enumeration, so ids are discovered from the event log and then
confirmed against current state.
"""
import logging
import os
from dataclasses import replace
from typing import Optional

from ..errors import ListingError
from ..hashing import utc_now_iso
from .registry import AnchorReceipt, BatchRecord, RegistryEvent

log = logging.getLogger("spice.ledger")

BACKEND = os.getenv("LEDGER_BACKEND", "stub")  # stub | evm
LIST_FAILURES = os.getenv("LEDGER_LIST_FAILURES", "empty")  # empty | raise


class LedgerClient:
    backend = "abstract"

    def __init__(self, list_failures: str = LIST_FAILURES):
        if list_failures not in ("empty", "raise"):
            raise ValueError(f"LEDGER_LIST_FAILURES must be 'empty' or 'raise', got {list_failures!r}")
        self._strict_listing = list_failures == "raise"

    async def anchor(self, batch_id: str, spice_kind: str, content_id: str) -> AnchorReceipt:
        """Write one record and wait for confirmation. Raises AnchorError."""
        raise NotImplementedError

    async def resolve(self, batch_id: str) -> Optional[BatchRecord]:
        """Current on-chain record, or None. Raises ResolveTransportError."""
        raise NotImplementedError

    async def fetch_events(self) -> list[RegistryEvent]:
        """All BatchAdded events in chain order."""
        raise NotImplementedError

    async def is_connected(self) -> bool:
        raise NotImplementedError

    async def list_all(self) -> list[BatchRecord]:
        """Rebuild the set of anchored batches from the event log.

        Ids keep the position of their first event; content comes from the
        current state (last write wins) and tx/block refs from the latest
        event for that id. Ids that fail to resolve are left out.
        """
        try:
            events = await self.fetch_events()
        except Exception as exc:
            if self._strict_listing:
                raise ListingError(f"event query failed: {exc}") from exc
            log.error("event query failed, returning empty listing: %s", exc)
            return []

        if not events:
            log.info("no %s events on the registry", self.backend)
            return []

        # Re-assigning an existing key keeps its original insertion slot.
        latest: dict[str, RegistryEvent] = {}
        for ev in events:
            if ev.batch_id:
                latest[ev.batch_id] = ev

        records = []
        for batch_id, ev in latest.items():
            try:
                record = await self.resolve(batch_id)
            except Exception as exc:
                if self._strict_listing:
                    raise ListingError(f"resolve({batch_id}) failed: {exc}") from exc
                log.warning("resolve failed batch_id=%s, omitted from listing: %s", batch_id, exc)
                continue
            if record is None:
                log.warning("event for batch_id=%s has no current state, omitted", batch_id)
                continue
            if ev.transaction_ref:
                record.transaction_ref = ev.transaction_ref
                record.block_ref = ev.block_ref
            records.append(record)

        log.info("listed %d batches from %d events", len(records), len(events))
        return records


#  Stub backend

class StubLedger(LedgerClient):
    """In-memory registry with the same write/read/event semantics as the contract."""

    backend = "stub"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._state: dict[str, BatchRecord] = {}
        self._events: list[RegistryEvent] = []
        self._block = 0

    async def anchor(self, batch_id: str, spice_kind: str, content_id: str) -> AnchorReceipt:
        self._block += 1
        tx_ref = f"0xstub{self._block:08x}{'a' * 52}"
        anchored_at = utc_now_iso()
        self._state[batch_id] = BatchRecord(
            batch_id=batch_id, spice_kind=spice_kind, content_id=content_id,
            anchored_at=anchored_at, transaction_ref=tx_ref, block_ref=self._block,
        )
        self._events.append(RegistryEvent(
            batch_id=batch_id, spice_kind=spice_kind, content_id=content_id,
            transaction_ref=tx_ref, block_ref=self._block,
        ))
        log.info("stub anchor batch_id=%s cid=%s tx=%s", batch_id, content_id, tx_ref[:16])
        return AnchorReceipt(transaction_ref=tx_ref, block_ref=self._block, anchored_at=anchored_at)

    async def resolve(self, batch_id: str) -> Optional[BatchRecord]:
        record = self._state.get(batch_id)
        return replace(record) if record else None

    async def fetch_events(self) -> list[RegistryEvent]:
        return list(self._events)

    async def is_connected(self) -> bool:
        return True


_client: Optional[LedgerClient] = None


def get_ledger() -> LedgerClient:
    global _client
    if _client is None:
        if BACKEND == "evm":
            from .evm import EvmLedger
            _client = EvmLedger()
        elif BACKEND == "stub":
            _client = StubLedger()
        else:
            raise RuntimeError(f"unknown LEDGER_BACKEND={BACKEND!r} (expected stub or evm)")
        log.info("ledger backend=%s", _client.backend)
    return _client
