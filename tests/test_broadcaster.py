"""Tests for the in-process broadcaster."""

import orjson
import pytest

from transit_eta.api.ws import filter_payload
from transit_eta.core.broadcaster import Broadcaster


@pytest.mark.anyio
async def test_publish_fans_out_and_keeps_latest_state():
    broadcaster = Broadcaster()
    q = broadcaster.subscribe()
    await broadcaster.publish([{"id": 1}])

    payload = q.get_nowait()
    assert orjson.loads(payload) == {"type": "update", "vehicles": [{"id": 1}]}
    assert broadcaster.get_current_state() == payload


@pytest.mark.anyio
async def test_slow_subscribers_are_dropped():
    broadcaster = Broadcaster(queue_size=1)
    slow = broadcaster.subscribe()
    await broadcaster.publish([])
    await broadcaster.publish([])
    assert broadcaster.subscriber_count == 0
    assert slow.qsize() == 1


def test_unsubscribe():
    broadcaster = Broadcaster()
    q = broadcaster.subscribe()
    broadcaster.unsubscribe(q)
    broadcaster.unsubscribe(q)
    assert broadcaster.subscriber_count == 0
    assert broadcaster.get_current_state() is None


def test_ws_payload_filtering():
    payload = orjson.dumps({"type": "update", "vehicles": [{"id": 1, "route_id": 5}, {"id": 2, "route_id": 6}]})
    assert filter_payload(payload, None) == payload

    snapshot = orjson.loads(filter_payload(payload, 6, "snapshot"))
    assert snapshot == {"type": "snapshot", "vehicles": [{"id": 2, "route_id": 6}]}
