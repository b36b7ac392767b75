"""
Unit tests for the live telemetry feed and broadcast.
"""
import asyncio
import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

from spice_gateway.app.telemetry import EVENT_NAME, TelemetryFeed


class Observer:
    def __init__(self, broken=False):
        self.messages = []
        self.broken = broken

    async def send_json(self, data):
        if self.broken:
            raise RuntimeError("socket closed")
        self.messages.append(data)


def test_history_keeps_last_capacity_samples_in_order():
    feed = TelemetryFeed(capacity=100)
    for i in range(105):
        feed.accept({"deviceId": "esp32-01", "seq": i})

    history = feed.history()
    assert len(history) == 100
    assert [s["seq"] for s in history] == list(range(5, 105))
    assert feed.latest["seq"] == 104


def test_accept_stamps_server_time_without_mutating_input():
    feed = TelemetryFeed()
    raw = {"deviceId": "esp32-01", "purity": 90}
    sample = feed.accept(raw)
    assert isinstance(sample["_serverTs"], int)
    assert "_serverTs" not in raw


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        TelemetryFeed(capacity=0)


def test_publish_reaches_every_observer():
    feed = TelemetryFeed()
    a, b = Observer(), Observer()

    async def scenario():
        await feed.connect(a)
        await feed.connect(b)
        sample = feed.accept({"deviceId": "esp32-01", "purity": 91})
        return await feed.publish(sample)

    assert asyncio.run(scenario()) == 2
    for obs in (a, b):
        assert obs.messages[-1]["event"] == EVENT_NAME
        assert obs.messages[-1]["data"]["purity"] == 91


def test_late_observer_gets_latest_only():
    feed = TelemetryFeed()
    for i in range(3):
        feed.accept({"deviceId": "esp32-01", "seq": i})
    late = Observer()

    asyncio.run(feed.connect(late))

    assert len(late.messages) == 1
    assert late.messages[0]["data"]["seq"] == 2


def test_observer_on_empty_feed_gets_nothing():
    obs = Observer()
    asyncio.run(TelemetryFeed().connect(obs))
    assert obs.messages == []


def test_failed_observer_is_dropped():
    feed = TelemetryFeed()
    good, bad = Observer(), Observer(broken=True)

    async def scenario():
        await feed.connect(good)
        await feed.connect(bad)
        return await feed.publish(feed.accept({"deviceId": "esp32-01"}))

    assert asyncio.run(scenario()) == 1
    assert feed.observer_count == 1

    feed.disconnect(good)
    feed.disconnect(good)
    assert feed.observer_count == 0


def test_observer_failing_initial_send_is_not_registered():
    feed = TelemetryFeed()
    feed.accept({"deviceId": "esp32-01", "purity": 90})

    with pytest.raises(RuntimeError):
        asyncio.run(feed.connect(Observer(broken=True)))

    assert feed.observer_count == 0
