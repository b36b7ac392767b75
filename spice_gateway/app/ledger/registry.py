"""
ledger/registry.py - Canonical SpiceRegistry contract schema.

The gateway depends on exactly one function/event layout. It is versioned
through REGISTRY_SCHEMA_VERSION and checked against deployed.json, instead of
probing for alternate names at runtime. A layout change means a new schema
version and a new deployment.

  addBatch(string batchId, string spice, string cid)
  getBatch(string batchId) -> (string spice, string cid, uint256 timestamp)
  event BatchAdded(string batchId, string spice, string cid)
"""
import json
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Optional

from ..hashing import epoch_to_iso

REGISTRY_SCHEMA_VERSION = "1"

WRITE_FUNCTION = "addBatch"
READ_FUNCTION = "getBatch"
EVENT_NAME = "BatchAdded"

_STRING_INPUTS = [
    {"internalType": "string", "name": "batchId", "type": "string"},
    {"internalType": "string", "name": "spice", "type": "string"},
    {"internalType": "string", "name": "cid", "type": "string"},
]

REGISTRY_ABI = [
    {
        "type": "function",
        "name": WRITE_FUNCTION,
        "stateMutability": "nonpayable",
        "inputs": _STRING_INPUTS,
        "outputs": [],
    },
    {
        "type": "function",
        "name": READ_FUNCTION,
        "stateMutability": "view",
        "inputs": [{"internalType": "string", "name": "batchId", "type": "string"}],
        "outputs": [
            {"internalType": "string", "name": "spice", "type": "string"},
            {"internalType": "string", "name": "cid", "type": "string"},
            {"internalType": "uint256", "name": "timestamp", "type": "uint256"},
        ],
    },
    {
        "type": "event",
        "name": EVENT_NAME,
        "anonymous": False,
        "inputs": [dict(i, indexed=False) for i in _STRING_INPUTS],
    },
]


@dataclass
class BatchRecord:
    """One anchored batch as seen on the ledger."""
    batch_id: str
    spice_kind: str
    content_id: str
    anchored_at: Optional[str] = None
    transaction_ref: Optional[str] = None
    block_ref: Optional[int] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class AnchorReceipt:
    transaction_ref: str
    block_ref: int
    anchored_at: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class RegistryEvent:
    """Decoded BatchAdded log entry."""
    batch_id: str
    spice_kind: str
    content_id: str
    transaction_ref: Optional[str] = None
    block_ref: Optional[int] = None


def to_hex(value: Any) -> Optional[str]:
    """Render a tx hash as 0x-prefixed hex. HexBytes.hex() drops the prefix on newer releases."""
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return str(value)


def decode_event(entry: Any) -> RegistryEvent:
    """Map a BatchAdded log entry (web3 AttributeDict or plain dict) to a RegistryEvent."""
    args = entry["args"]
    return RegistryEvent(
        batch_id=str(args["batchId"]),
        spice_kind=args["spice"],
        content_id=args["cid"],
        transaction_ref=to_hex(entry.get("transactionHash")),
        block_ref=entry.get("blockNumber"),
    )


def decode_state(batch_id: str, result) -> Optional[BatchRecord]:
    """Map a getBatch() tuple to a BatchRecord, or None for the default (empty) record."""
    spice, cid, ts = result
    if not cid:
        return None
    return BatchRecord(
        batch_id=batch_id,
        spice_kind=spice,
        content_id=cid,
        anchored_at=epoch_to_iso(ts) if ts else None,
    )


def load_deployment(path: Path) -> dict:
    """Read deployed.json and refuse a registry built for another schema version."""
    deployed = json.loads(Path(path).read_text())
    version = str(deployed.get("schema_version", ""))
    if version != REGISTRY_SCHEMA_VERSION:
        raise RuntimeError(
            f"{path} declares registry schema {version or '?'}, "
            f"gateway expects {REGISTRY_SCHEMA_VERSION}"
        )
    return deployed
