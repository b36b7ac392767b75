"""
content_store.py - Content-addressed storage for batch documents.

Two backends, selected by CONTENT_BACKEND:
  ipfs    - local Kubo daemon over its HTTP RPC API, with public gateway
            fallback on reads
  memory  - in-process dict keyed by a sha256-derived id (dev / tests)

Documents are serialised with hashing.canonical_bytes() so the same document
always produces the same bytes.

Environment variables:
  IPFS_API_URL          - Kubo RPC endpoint (default: http://127.0.0.1:5001)
  IPFS_TIMEOUT          - seconds for add/pin/cat against the daemon
  IPFS_GATEWAYS         - comma separated fallback gateway hosts, tried in order
  IPFS_GATEWAY_TIMEOUT  - total seconds allowed per gateway attempt, body included
"""
import asyncio
import hashlib
import json
import logging
import os
import time
from typing import Optional

import requests

from .errors import RetrievalError, StoreError
from .hashing import canonical_bytes

log = logging.getLogger("spice.ipfs")

BACKEND = os.getenv("CONTENT_BACKEND", "memory")  # memory | ipfs
IPFS_API_URL = os.getenv("IPFS_API_URL", "http://127.0.0.1:5001")
IPFS_TIMEOUT = float(os.getenv("IPFS_TIMEOUT", "30"))
GATEWAY_TIMEOUT = float(os.getenv("IPFS_GATEWAY_TIMEOUT", "10"))
GATEWAY_CHUNK = 64 * 1024
PUBLIC_GATEWAYS = [
    h.strip() for h in os.getenv(
        "IPFS_GATEWAYS",
        "ipfs.io,gateway.pinata.cloud,cloudflare-ipfs.com,dweb.link",
    ).split(",") if h.strip()
]


async def _in_executor(fn, *args):
    return await asyncio.get_running_loop().run_in_executor(None, lambda: fn(*args))


class ContentStore:
    backend = "abstract"

    async def store(self, document: dict) -> str:
        raise NotImplementedError

    async def retrieve(self, content_id: str) -> dict:
        raise NotImplementedError

    async def is_available(self) -> bool:
        raise NotImplementedError


class IpfsContentStore(ContentStore):
    """Kubo RPC client: add + pin on write, cat then public gateways on read."""

    backend = "ipfs"

    def __init__(self, api_url: str = IPFS_API_URL, gateways: Optional[list[str]] = None,
                 timeout: float = IPFS_TIMEOUT, gateway_timeout: float = GATEWAY_TIMEOUT,
                 session: Optional[requests.Session] = None):
        self._api = api_url.rstrip("/")
        self._gateways = list(PUBLIC_GATEWAYS if gateways is None else gateways)
        self._timeout = timeout
        self._gateway_timeout = gateway_timeout
        self._session = session or requests.Session()

    def _rpc(self, command: str, **kwargs) -> requests.Response:
        # Kubo only accepts POST on /api/v0
        resp = self._session.post(f"{self._api}/api/v0/{command}", timeout=self._timeout, **kwargs)
        resp.raise_for_status()
        return resp

    #  Write path

    async def store(self, document: dict) -> str:
        return await _in_executor(self._store_blocking, document)

    def _store_blocking(self, document: dict) -> str:
        try:
            payload = canonical_bytes(document)
        except ValueError as exc:
            raise StoreError(f"document cannot be canonicalised: {exc}") from exc
        try:
            resp = self._rpc("add", params={"pin": "false", "cid-version": "1"},
                             files={"file": ("batch.json", payload, "application/json")})
            cid = resp.json()["Hash"]
        except (requests.RequestException, ValueError, KeyError) as exc:
            log.error("IPFS add failed (%d bytes): %s", len(payload), exc)
            raise StoreError(f"IPFS upload failed: {exc}") from exc

        try:
            self._rpc("pin/add", params={"arg": cid})
            log.info("stored and pinned cid=%s bytes=%d", cid, len(payload))
        except requests.RequestException as exc:
            log.warning("stored cid=%s but pin failed, content may be garbage-collected: %s", cid, exc)

        return cid

    #  Read path

    async def retrieve(self, content_id: str) -> dict:
        return await _in_executor(self._retrieve_blocking, content_id)

    def _retrieve_blocking(self, content_id: str) -> dict:
        try:
            resp = self._rpc("cat", params={"arg": content_id})
            return json.loads(resp.content)
        except (requests.RequestException, ValueError) as exc:
            log.warning("local IPFS fetch failed cid=%s: %s", content_id, exc)

        for host in self._gateways:
            url = f"https://{host}/ipfs/{content_id}"
            try:
                document = json.loads(self._fetch_within_deadline(url))
            except (requests.RequestException, ValueError) as exc:
                log.warning("gateway %s failed cid=%s: %s", host, content_id, exc)
                continue
            log.info("fetched cid=%s from gateway %s", content_id, host)
            return document

        raise RetrievalError(
            f"could not fetch {content_id} from the local node or {len(self._gateways)} gateways"
        )

    def _fetch_within_deadline(self, url: str) -> bytes:
        # the requests timeout bounds each socket read, not the whole body
        deadline = time.monotonic() + self._gateway_timeout
        resp = self._session.get(url, timeout=self._gateway_timeout, stream=True)
        try:
            resp.raise_for_status()
            chunks = []
            for chunk in resp.iter_content(chunk_size=GATEWAY_CHUNK):
                if time.monotonic() > deadline:
                    raise requests.Timeout(f"{url} exceeded {self._gateway_timeout:.0f}s")
                chunks.append(chunk)
            return b"".join(chunks)
        finally:
            resp.close()

    async def is_available(self) -> bool:
        try:
            resp = await _in_executor(self._rpc, "version")
            log.debug("IPFS node version %s", resp.json().get("Version"))
            return True
        except (requests.RequestException, ValueError) as exc:
            log.warning("IPFS node is not available: %s", exc)
            return False


class MemoryContentStore(ContentStore):
    """Deterministic in-process store. Ids are sha256 of the canonical bytes."""

    backend = "memory"

    def __init__(self):
        self._blobs: dict[str, bytes] = {}

    async def store(self, document: dict) -> str:
        try:
            payload = canonical_bytes(document)
        except ValueError as exc:
            raise StoreError(f"document cannot be canonicalised: {exc}") from exc
        cid = f"mem-{hashlib.sha256(payload).hexdigest()}"
        self._blobs[cid] = payload
        log.info("stored cid=%s in memory", cid)
        return cid

    async def retrieve(self, content_id: str) -> dict:
        blob = self._blobs.get(content_id)
        if blob is None:
            raise RetrievalError(f"{content_id} not in memory store")
        return json.loads(blob)

    async def is_available(self) -> bool:
        return True


_store: Optional[ContentStore] = None


def get_content_store() -> ContentStore:
    global _store
    if _store is None:
        if BACKEND == "ipfs":
            _store = IpfsContentStore()
        elif BACKEND == "memory":
            _store = MemoryContentStore()
        else:
            raise RuntimeError(f"unknown CONTENT_BACKEND={BACKEND!r} (expected memory or ipfs)")
        log.info("content backend=%s", _store.backend)
    return _store
