"""Gateway tests — per-connection control protocol and lifecycle.

Learn: gateway.serve() runs as a background task over a FakeTransport.
The test plays the client: client_sends() queues an inbound frame,
transport.frames holds everything the server wrote back.
"""

import asyncio

import pytest
from structlog.testing import capture_logs

from conftest import FakeTransport, settle, wait_for
from compliance_realtime.realtime.connection import (
    CLOSE_GOING_AWAY,
    CLOSE_TRY_AGAIN_LATER,
)
from compliance_realtime.realtime.gateway import WELCOME_MESSAGE, RealTimeGateway
from compliance_realtime.realtime.messages import MessageType, RealTimeMessage


async def connect(gateway, user_id=None):
    transport = FakeTransport()
    task = asyncio.create_task(gateway.serve(transport, user_id=user_id))
    await wait_for(lambda: len(transport.sent) == 1)
    return transport, task


def only_connection(gateway):
    (conn,) = gateway.registry.find_all()
    return conn


@pytest.mark.asyncio
async def test_welcome_frame_on_connect(gateway):
    transport, task = await connect(gateway, user_id="user-7")

    (welcome,) = transport.frames
    assert welcome["type"] == "STATUS_UPDATE"
    assert welcome["data"]["message"] == WELCOME_MESSAGE
    conn = only_connection(gateway)
    assert welcome["data"]["connectionId"] == conn.id
    assert conn.user_id == "user-7"

    transport.client_disconnects()
    await task
    assert gateway.connection_count() == 0


@pytest.mark.asyncio
async def test_ping_gets_pong_with_same_id(gateway):
    transport, task = await connect(gateway)
    conn = only_connection(gateway)
    conn.is_alive = False

    transport.client_sends({"type": "PING", "messageId": "abc-123"})
    await wait_for(lambda: len(transport.sent) == 2)

    pong = transport.frames[1]
    assert pong["type"] == "PONG"
    assert pong["messageId"] == "abc-123"
    assert conn.is_alive is True

    transport.client_disconnects()
    await task


@pytest.mark.asyncio
async def test_pong_keeps_connection_alive_through_sweeps(gateway):
    transport, task = await connect(gateway)
    conn = only_connection(gateway)

    for _ in range(3):
        await gateway.monitor.sweep()
        transport.client_sends({"type": "PONG"})
        await wait_for(lambda: conn.is_alive)

    assert conn.id in gateway.registry
    transport.client_disconnects()
    await task


@pytest.mark.asyncio
async def test_silent_client_evicted_and_serve_returns(gateway):
    transport, task = await connect(gateway)

    await gateway.monitor.sweep()
    await gateway.monitor.sweep()

    await asyncio.wait_for(task, 1.0)
    assert gateway.connection_count() == 0
    assert transport.close_calls[0][0] == 4000


@pytest.mark.asyncio
async def test_subscribe_scopes_connection(gateway):
    transport, task = await connect(gateway)

    transport.client_sends({"type": "SUBSCRIBE", "projectId": "proj-1"})
    await wait_for(lambda: len(transport.sent) == 2)

    ack = transport.frames[1]
    assert ack["type"] == "STATUS_UPDATE"
    assert ack["projectId"] == "proj-1"
    assert ack["data"] == {"message": "Subscribed to project proj-1", "subscribed": "proj-1"}
    assert [c.id for c in gateway.connections_for_project("proj-1")] == [only_connection(gateway).id]

    transport.client_disconnects()
    await task


@pytest.mark.asyncio
async def test_legacy_metric_update_subscribes(gateway):
    transport, task = await connect(gateway)

    transport.client_sends({"type": "METRIC_UPDATE", "projectId": "proj-legacy"})
    await wait_for(lambda: len(transport.sent) == 2)

    assert only_connection(gateway).project_id == "proj-legacy"
    transport.client_disconnects()
    await task


@pytest.mark.asyncio
async def test_resubscribe_replaces_scope_and_unsubscribe_clears(gateway):
    transport, task = await connect(gateway)
    conn = only_connection(gateway)

    transport.client_sends({"type": "SUBSCRIBE", "projectId": "proj-1"})
    transport.client_sends({"type": "SUBSCRIBE", "projectId": "proj-2"})
    await wait_for(lambda: len(transport.sent) == 3)
    assert conn.project_id == "proj-2"
    assert gateway.connections_for_project("proj-1") == []

    transport.client_sends({"type": "UNSUBSCRIBE"})
    await wait_for(lambda: len(transport.sent) == 4)
    assert conn.project_id is None
    assert transport.frames[3]["data"] == {"message": "Unsubscribed", "subscribed": None}

    transport.client_disconnects()
    await task


@pytest.mark.asyncio
async def test_malformed_frame_gets_error_and_connection_survives(gateway):
    transport, task = await connect(gateway)

    transport.client_sends("{not json")
    await wait_for(lambda: len(transport.sent) == 2)
    assert transport.frames[1]["data"] == {"error": "Invalid message format"}

    # Still usable afterwards
    transport.client_sends({"type": "PING", "messageId": "after"})
    await wait_for(lambda: len(transport.sent) == 3)
    assert transport.frames[2]["type"] == "PONG"

    transport.client_disconnects()
    await task


@pytest.mark.asyncio
async def test_unknown_and_incomplete_frames_are_dropped(gateway):
    transport, task = await connect(gateway)

    transport.client_sends({"type": "DROP_TABLES"})
    transport.client_sends({"type": "SUBSCRIBE"})  # no projectId
    transport.client_sends({"type": "ISSUE_UPDATE", "projectId": "proj-1"})
    transport.client_sends({"type": "PING", "messageId": "marker"})
    await wait_for(lambda: len(transport.sent) == 2)
    await settle()

    # Only the welcome and the PONG were written; scope untouched
    assert [f["type"] for f in transport.frames] == ["STATUS_UPDATE", "PONG"]
    assert only_connection(gateway).project_id is None

    transport.client_disconnects()
    await task


@pytest.mark.asyncio
async def test_typed_broadcasts_are_project_scoped(gateway):
    t1, task1 = await connect(gateway)
    t2, task2 = await connect(gateway)
    t1.client_sends({"type": "SUBSCRIBE", "projectId": "proj-1"})
    t2.client_sends({"type": "SUBSCRIBE", "projectId": "proj-2"})
    await wait_for(lambda: len(t1.sent) == 2 and len(t2.sent) == 2)

    assert await gateway.broadcast_metric_update("proj-1", {"score": 70}) == 1
    assert await gateway.broadcast_issue_update("proj-2", {"open": 4}) == 1
    assert await gateway.broadcast_quality_update("proj-3", {"grade": "B"}) == 0

    assert [f["type"] for f in t1.frames[2:]] == ["METRIC_UPDATE"]
    assert [f["type"] for f in t2.frames[2:]] == ["ISSUE_UPDATE"]

    t1.client_disconnects()
    t2.client_disconnects()
    await asyncio.gather(task1, task2)


@pytest.mark.asyncio
async def test_status_update_unscoped_goes_to_everyone(gateway):
    t1, task1 = await connect(gateway)
    t2, task2 = await connect(gateway)
    t1.client_sends({"type": "SUBSCRIBE", "projectId": "proj-1"})
    await wait_for(lambda: len(t1.sent) == 2)

    assert await gateway.broadcast_status_update("Maintenance at 18:00") == 2
    assert await gateway.broadcast_status_update("Rescored", project_id="proj-1") == 1

    assert t1.frames[-1]["data"] == {"message": "Rescored"}
    assert t2.frames[-1]["data"] == {"message": "Maintenance at 18:00"}

    t1.client_disconnects()
    t2.client_disconnects()
    await asyncio.gather(task1, task2)


@pytest.mark.asyncio
async def test_publish_routes_prebuilt_frames(gateway):
    transport, task = await connect(gateway)
    transport.client_sends({"type": "SUBSCRIBE", "projectId": "proj-1"})
    await wait_for(lambda: len(transport.sent) == 2)

    scoped = RealTimeMessage(type=MessageType.QUALITY_UPDATE, project_id="proj-1", data={})
    other = RealTimeMessage(type=MessageType.QUALITY_UPDATE, project_id="proj-2", data={})
    assert await gateway.publish(scoped) == 1
    assert await gateway.publish(other) == 0

    transport.client_disconnects()
    await task


@pytest.mark.asyncio
async def test_refuses_connections_when_not_accepting():
    gateway = RealTimeGateway(ping_interval=3600)
    transport = FakeTransport()

    await gateway.serve(transport)

    assert transport.close_calls == [(CLOSE_TRY_AGAIN_LATER, "Service unavailable")]
    assert gateway.connection_count() == 0


@pytest.mark.asyncio
async def test_shutdown_closes_every_connection():
    gateway = RealTimeGateway(ping_interval=3600)
    await gateway.start()
    clients = [await connect(gateway) for _ in range(3)]

    await gateway.stop()
    await asyncio.wait_for(asyncio.gather(*(task for _, task in clients)), 1.0)

    assert not gateway.accepting
    assert gateway.connection_count() == 0
    for transport, _ in clients:
        assert transport.close_calls == [(CLOSE_GOING_AWAY, "Server shutting down")]

    # New connections are refused once stopped
    late = FakeTransport()
    await gateway.serve(late)
    assert late.close_calls[0][0] == CLOSE_TRY_AGAIN_LATER


@pytest.mark.asyncio
async def test_health_reports_connections(gateway):
    transport, task = await connect(gateway)
    health = gateway.health()
    assert health["accepting"] is True
    assert health["connections"] == 1
    assert health["feeds"] == {}
    assert health["degraded"] is False

    transport.client_disconnects()
    await task


@pytest.mark.asyncio
async def test_binary_frames_are_handled(gateway):
    transport, task = await connect(gateway)

    transport.client_sends(b'{"type": "SUBSCRIBE", "projectId": "proj-b"}')
    await wait_for(lambda: len(transport.sent) == 2)
    assert only_connection(gateway).project_id == "proj-b"

    transport.client_sends(b"\x00\x01")
    await wait_for(lambda: len(transport.sent) == 3)
    assert transport.frames[2]["data"] == {"error": "Invalid message format"}
    assert gateway.connection_count() == 1

    transport.client_disconnects()
    await task


@pytest.mark.asyncio
async def test_eviction_logged_apart_from_client_disconnect(gateway):
    with capture_logs() as logs:
        evicted, evicted_task = await connect(gateway)
        await gateway.monitor.sweep()
        await gateway.monitor.sweep()
        await asyncio.wait_for(evicted_task, 1.0)

        leaver, leaver_task = await connect(gateway)
        leaver.client_disconnects(code=1001)
        await asyncio.wait_for(leaver_task, 1.0)

    events = [(e["event"], e.get("code")) for e in logs if e["event"] in (
        "realtime.closed_by_server", "realtime.disconnected"
    )]
    assert events == [("realtime.closed_by_server", 4000), ("realtime.disconnected", 1001)]
