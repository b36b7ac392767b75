"""
Unit tests for the content store clients.

The IPFS client is driven through a fake requests session, so no daemon or
network access is needed.
"""
import asyncio
import json
import time
import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest
import requests

from spice_gateway.app.content_store import IpfsContentStore, MemoryContentStore
from spice_gateway.app.errors import RetrievalError, StoreError
from spice_gateway.app.hashing import canonical_bytes


class FakeResponse:
    def __init__(self, status=200, body=None, content=b"", chunk_delay=0.0):
        self.status_code = status
        self._body = body
        self.content = content if body is None else json.dumps(body).encode("utf-8")
        self.chunk_delay = chunk_delay
        self.closed = False

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        if self._body is None:
            return json.loads(self.content)
        return self._body

    def iter_content(self, chunk_size=1):
        # one byte per chunk, so chunk_delay models a gateway that trickles
        for i in range(len(self.content)):
            time.sleep(self.chunk_delay)
            yield self.content[i:i + 1]

    def close(self):
        self.closed = True


class FakeSession:
    """Routes by URL suffix; a handler value may be a response or an exception."""

    def __init__(self, routes):
        self.routes = routes
        self.calls = []

    def _dispatch(self, method, url, timeout, kwargs):
        self.calls.append((method, url, timeout, kwargs))
        for suffix, outcome in self.routes.items():
            if url.endswith(suffix):
                if isinstance(outcome, Exception):
                    raise outcome
                return outcome
        raise requests.ConnectionError(f"no route for {url}")

    def post(self, url, timeout=None, **kwargs):
        return self._dispatch("POST", url, timeout, kwargs)

    def get(self, url, timeout=None, **kwargs):
        return self._dispatch("GET", url, timeout, kwargs)


GATEWAYS = ["gw-one.example", "gw-two.example", "gw-three.example"]


def _store(routes, **kwargs):
    session = FakeSession(routes)
    client = IpfsContentStore(api_url="http://ipfs:5001", gateways=GATEWAYS,
                              timeout=5, gateway_timeout=2, session=session, **kwargs)
    return client, session


def test_store_uploads_canonical_bytes_and_pins():
    client, session = _store({
        "/api/v0/add": FakeResponse(body={"Hash": "bafyC1", "Size": "20"}),
        "/api/v0/pin/add": FakeResponse(body={"Pins": ["bafyC1"]}),
    })
    doc = {"purity": 92, "batch_id": "TURM2025-01"}

    cid = asyncio.run(client.store(doc))

    assert cid == "bafyC1"
    add_call, pin_call = session.calls
    assert add_call[1] == "http://ipfs:5001/api/v0/add"
    assert add_call[3]["files"]["file"][1] == canonical_bytes(doc)
    assert pin_call[1] == "http://ipfs:5001/api/v0/pin/add"
    assert pin_call[3]["params"] == {"arg": "bafyC1"}


def test_store_succeeds_when_pin_fails():
    client, _ = _store({
        "/api/v0/add": FakeResponse(body={"Hash": "bafyC1"}),
        "/api/v0/pin/add": FakeResponse(status=500),
    })
    assert asyncio.run(client.store({"purity": 92})) == "bafyC1"


def test_store_failure_raises_store_error():
    client, _ = _store({"/api/v0/add": requests.ConnectionError("daemon down")})
    with pytest.raises(StoreError):
        asyncio.run(client.store({"purity": 92}))


def test_retrieve_prefers_local_node():
    client, session = _store({
        "/api/v0/cat": FakeResponse(content=b'{"purity":92}'),
    })
    assert asyncio.run(client.retrieve("bafyC1")) == {"purity": 92}
    assert [c[0] for c in session.calls] == ["POST"]


def test_retrieve_falls_back_past_timed_out_gateway():
    client, session = _store({
        "/api/v0/cat": requests.ConnectionError("daemon down"),
        "gw-one.example/ipfs/bafyC1": requests.Timeout("read timed out"),
        "gw-two.example/ipfs/bafyC1": FakeResponse(body={"purity": 92}),
    })

    assert asyncio.run(client.retrieve("bafyC1")) == {"purity": 92}

    gets = [c for c in session.calls if c[0] == "GET"]
    assert [c[1] for c in gets] == [
        "https://gw-one.example/ipfs/bafyC1",
        "https://gw-two.example/ipfs/bafyC1",
    ]
    assert all(c[2] == 2 for c in gets)


def test_retrieve_skips_gateway_returning_non_json():
    client, _ = _store({
        "/api/v0/cat": FakeResponse(status=500),
        "gw-one.example/ipfs/bafyC1": FakeResponse(content=b"<html>rate limited</html>"),
        "gw-two.example/ipfs/bafyC1": FakeResponse(status=504),
        "gw-three.example/ipfs/bafyC1": FakeResponse(body={"purity": 88}),
    })
    assert asyncio.run(client.retrieve("bafyC1")) == {"purity": 88}


def test_retrieve_raises_when_everything_fails():
    client, session = _store({})
    with pytest.raises(RetrievalError):
        asyncio.run(client.retrieve("bafyC1"))
    assert len(session.calls) == 1 + len(GATEWAYS)


def test_is_available_probes_version():
    up, _ = _store({"/api/v0/version": FakeResponse(body={"Version": "0.29.0"})})
    down, _ = _store({})
    assert asyncio.run(up.is_available()) is True
    assert asyncio.run(down.is_available()) is False


def test_memory_store_is_content_addressed():
    store = MemoryContentStore()
    a = asyncio.run(store.store({"b": 1, "a": 2}))
    b = asyncio.run(store.store({"a": 2, "b": 1}))
    assert a == b
    assert asyncio.run(store.retrieve(a)) == {"a": 2, "b": 1}
    with pytest.raises(RetrievalError):
        asyncio.run(store.retrieve("mem-missing"))


def test_retrieve_abandons_gateway_that_trickles_past_deadline():
    slow = FakeResponse(content=b'{"purity":92,"grade":"A"}', chunk_delay=0.01)
    session = FakeSession({
        "/api/v0/cat": requests.ConnectionError("daemon down"),
        "gw-one.example/ipfs/bafyC1": slow,
        "gw-two.example/ipfs/bafyC1": FakeResponse(body={"purity": 88}),
    })
    client = IpfsContentStore(api_url="http://ipfs:5001", gateways=GATEWAYS,
                              timeout=5, gateway_timeout=0.05, session=session)

    assert asyncio.run(client.retrieve("bafyC1")) == {"purity": 88}
    assert slow.closed
    gets = [c for c in session.calls if c[0] == "GET"]
    assert all(c[3].get("stream") is True for c in gets)


def test_memory_store_ids_ignore_unicode_normal_form():
    store = MemoryContentStore()
    composed = asyncio.run(store.store({"\u00e9tat": "Caf\u00e9", "f": 1}))
    decomposed = asyncio.run(store.store({"e\u0301tat": "Cafe\u0301", "f": 1}))

    assert composed == decomposed
    assert asyncio.run(store.retrieve(composed)) == {"\u00e9tat": "Caf\u00e9", "f": 1}


def test_store_rejects_keys_colliding_after_normalisation():
    doc = {"e\u0301": 1, "\u00e9": 2}
    with pytest.raises(StoreError):
        asyncio.run(MemoryContentStore().store(doc))

    client, session = _store({"/api/v0/add": FakeResponse(body={"Hash": "bafyC1"})})
    with pytest.raises(StoreError):
        asyncio.run(client.store(doc))
    assert session.calls == []
