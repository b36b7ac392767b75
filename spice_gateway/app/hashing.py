"""
Canonical serialisation for documents sent to the content store.

Every document goes through canonical_bytes() before upload, so two
semantically identical documents always map to the same bytes and hence
the same content id.

Canonicalisation rules:
  - String keys and values normalised to NFC, then keys sorted (recursive)
  - No extra whitespace
  - Encoding: UTF-8

An object whose keys collide after normalisation is rejected with ValueError
rather than serialised with a duplicate key.
"""
import hashlib
import json
import unicodedata
from datetime import datetime, timezone


def _nfc(value):
    return unicodedata.normalize("NFC", value) if isinstance(value, str) else value


def _canonicalise(obj):
    """NFC-normalise every string key and value, then sort keys (recursive).

    Raises ValueError if two keys of one object become equal after
    normalisation.
    """
    if isinstance(obj, dict):
        normalised = {}
        for key, value in obj.items():
            nkey = _nfc(key)
            if nkey in normalised:
                raise ValueError(f"keys collide after NFC normalisation: {nkey!r}")
            normalised[nkey] = _canonicalise(value)
        return {k: normalised[k] for k in sorted(normalised)}
    if isinstance(obj, (list, tuple)):
        return [_canonicalise(v) for v in obj]
    return _nfc(obj)


def canonical_json(document: dict) -> str:
    """Return the canonical JSON string of a document."""
    return json.dumps(_canonicalise(document), separators=(",", ":"), ensure_ascii=False)


def canonical_bytes(document: dict) -> bytes:
    return canonical_json(document).encode("utf-8")


def compute_document_hash(document: dict) -> str:
    """Return the SHA-256 hex digest of the canonical JSON of a document."""
    return hashlib.sha256(canonical_bytes(document)).hexdigest()


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def epoch_to_iso(ts: int) -> str:
    return datetime.fromtimestamp(int(ts), tz=timezone.utc).isoformat(timespec="seconds")
