# test_notification_channel.py

import asyncio
import json

import pytest
import socketio
from unittest.mock import AsyncMock, MagicMock, patch

from conftest import DONOR_ID
from notification_channel import (
    HEARTBEAT_EVENT,
    NOTIFICATION_EVENT,
    SUBSCRIBE_EVENT,
    UNSUBSCRIBE_EVENT,
    ChannelState,
    MalformedMessage,
    NotificationChannel,
    notification_destination,
    parse_notification,
)

WS_URL = "http://localhost:8086/ws"


def payload(notification_id="n-1", **overrides):
    data = {
        'id': notification_id,
        'userId': DONOR_ID,
        'type': "MATCH_FOUND",
        'title': "Match found",
        'message': "A compatible donor was found",
        'isRead': False,
        'createdAt': "2024-05-01T12:00:00",
    }
    data.update(overrides)
    return data


@pytest.fixture
def mock_sio():
    with patch("notification_channel.socketio.AsyncClient") as client_cls:
        sio = client_cls.return_value
        sio.connect = AsyncMock()
        sio.emit = AsyncMock()
        sio.disconnect = AsyncMock()
        sio.connected = False
        yield sio


@pytest.fixture
def received():
    return []


@pytest.fixture
def channel(mock_sio, received):
    return NotificationChannel(
        ws_url=WS_URL,
        on_notification=received.append,
        heartbeat_outgoing_ms=4000,
        heartbeat_timeout_ms=8000,
        reconnect_delay_ms=10,
    )


# Parsing

def test_parse_normalizes_legacy_read_flag():
    record = parse_notification(json.dumps({'id': 42, 'read': True, 'title': "Hello"}))
    assert record.id == "42"
    assert record.is_read is True


def test_parse_prefers_is_read():
    record = parse_notification({'id': "n-1", 'isRead': False, 'read': True})
    assert record.is_read is False


def test_parse_missing_read_flag_defaults_unread():
    assert parse_notification({'id': "n-1"}).is_read is False


def test_parse_frame_with_body():
    frame = {
        'destination': notification_destination(DONOR_ID),
        'body': json.dumps(payload()),
    }
    record = parse_notification(frame)
    assert record.id == "n-1"
    assert record.created_at.tzinfo is not None


def test_parse_bytes():
    assert parse_notification(json.dumps(payload()).encode('utf-8')).title == "Match found"


def test_parse_unknown_type_is_kept():
    assert parse_notification(payload(type="SOMETHING_NEW")).type == "SOMETHING_NEW"


@pytest.mark.parametrize("bad", ["not json", "[1, 2]", {'title': "no id"}, b"\xff\xfe", 17])
def test_parse_malformed(bad):
    with pytest.raises(MalformedMessage):
        parse_notification(bad)


def test_destination():
    assert notification_destination("u-7") == "/user/u-7/queue/notifications"


# Lifecycle

def test_client_uses_own_reconnect_loop(mock_sio, channel):
    from notification_channel import socketio as channel_socketio
    channel_socketio.AsyncClient.assert_called_once_with(reconnection=False, logger=False)
    handlers = {c.args[0] for c in mock_sio.on.call_args_list}
    assert {'connect', 'disconnect', HEARTBEAT_EVENT, NOTIFICATION_EVENT} <= handlers


@pytest.mark.asyncio
async def test_start_connects_with_credentials(channel, mock_sio, donor_session):
    channel.start(donor_session)
    await asyncio.sleep(0)

    assert channel.active
    assert channel.state == ChannelState.CONNECTING
    mock_sio.connect.assert_awaited_once()
    args, kwargs = mock_sio.connect.call_args
    assert args[0] == WS_URL
    assert kwargs['headers']['Authorization'] == "Bearer donor-token"
    assert kwargs['auth'] == {'userId': DONOR_ID, 'token': "donor-token"}
    assert kwargs['transports'] == ['websocket', 'polling']
    await channel.stop()


@pytest.mark.asyncio
async def test_start_is_reentrant(channel, mock_sio, donor_session):
    channel.start(donor_session)
    task = channel._connection_task
    channel.start(donor_session)
    await asyncio.sleep(0)

    assert channel._connection_task is task
    assert mock_sio.connect.await_count == 1
    await channel.stop()


@pytest.mark.asyncio
async def test_start_for_other_user_replaces_subscription(channel, mock_sio, donor_session, recipient_session):
    channel.start(donor_session)
    first = channel._connection_task
    channel.start(recipient_session)
    await asyncio.sleep(0)

    assert first.cancelled() or first.done()
    assert channel.user_id == recipient_session.user_id
    await channel.stop()


def test_start_requires_session(channel):
    with pytest.raises(ValueError):
        channel.start(None)


@pytest.mark.asyncio
async def test_connect_subscribes_to_user_destination(channel, mock_sio, donor_session):
    states = []
    channel.add_state_listener(states.append)
    channel.start(donor_session)
    await asyncio.sleep(0)

    await channel._on_connect()

    assert channel.connected
    assert states == [ChannelState.CONNECTING, ChannelState.CONNECTED]
    mock_sio.emit.assert_any_await(SUBSCRIBE_EVENT, {
        'destination': f"/user/{DONOR_ID}/queue/notifications",
        'userId': DONOR_ID,
        'heartbeat': [4000, 8000],
    })
    await channel.stop()


@pytest.mark.asyncio
async def test_notification_delivered(channel, received, donor_session):
    channel.start(donor_session)
    await asyncio.sleep(0)

    await channel._on_notification(payload(read=True, isRead=None))

    assert [r.id for r in received] == ["n-1"]
    assert received[0].is_read is True
    assert channel.get_stats()['messages_received'] == 1
    await channel.stop()


@pytest.mark.asyncio
async def test_malformed_message_dropped(channel, received, donor_session):
    channel.start(donor_session)
    await asyncio.sleep(0)

    await channel._on_notification("{broken")
    await channel._on_notification(payload("n-2"))

    assert [r.id for r in received] == ["n-2"]
    assert channel.messages_dropped == 1
    await channel.stop()


@pytest.mark.asyncio
async def test_message_for_other_user_dropped(channel, received, donor_session):
    channel.start(donor_session)
    await asyncio.sleep(0)

    await channel._on_notification(payload(userId="someone-else"))

    assert received == []
    await channel.stop()


@pytest.mark.asyncio
async def test_handler_failure_does_not_stop_channel(mock_sio, donor_session):
    handler = MagicMock(side_effect=[RuntimeError("boom"), None])
    channel = NotificationChannel(ws_url=WS_URL, on_notification=handler, reconnect_delay_ms=10)
    channel.start(donor_session)
    await asyncio.sleep(0)

    await channel._on_notification(payload("n-1"))
    await channel._on_notification(payload("n-2"))

    assert handler.call_count == 2
    assert channel.active
    await channel.stop()


@pytest.mark.asyncio
async def test_teardown_is_synchronous(channel, mock_sio, received, donor_session):
    channel.start(donor_session)
    await asyncio.sleep(0)
    await channel._on_connect()
    task = channel._connection_task
    heartbeat = channel._heartbeat_task

    channel.teardown()

    assert channel.state == ChannelState.DISCONNECTED
    assert channel.user_id is None
    assert not channel.active
    await asyncio.sleep(0)
    assert task.cancelled()
    assert heartbeat.cancelled()

    await channel._on_notification(payload())
    assert received == []


@pytest.mark.asyncio
async def test_stop_unsubscribes_and_disconnects(channel, mock_sio, donor_session):
    channel.start(donor_session)
    await asyncio.sleep(0)
    await channel._on_connect()
    mock_sio.connected = True

    await channel.stop()

    mock_sio.emit.assert_any_await(UNSUBSCRIBE_EVENT, {'destination': notification_destination(DONOR_ID)})
    mock_sio.disconnect.assert_awaited()


@pytest.mark.asyncio
async def test_server_disconnect_reconnects_after_delay(channel, mock_sio, donor_session):
    channel.start(donor_session)
    await asyncio.sleep(0)
    await channel._on_connect()

    await channel._on_disconnect("transport close")
    assert channel.state == ChannelState.CONNECTING

    await asyncio.sleep(0.05)
    assert mock_sio.connect.await_count >= 2
    await channel.stop()


@pytest.mark.asyncio
async def test_server_disconnect_keeps_close_task(channel, mock_sio, donor_session):
    channel.start(donor_session)
    await asyncio.sleep(0)
    await channel._on_connect()
    mock_sio.connected = True

    await channel._on_disconnect("transport close")

    closing = channel._closing_task
    assert closing is not None
    await closing
    mock_sio.disconnect.assert_awaited_once()
    mock_sio.connected = False
    await channel.stop()


@pytest.mark.asyncio
async def test_new_session_connects_after_previous_transport_closes(mock_sio, donor_session, recipient_session):
    channel = NotificationChannel(ws_url=WS_URL, reconnect_delay_ms=60000)
    calls = []
    closed = asyncio.Event()

    async def connect(*args, **kwargs):
        calls.append("connect")

    async def disconnect():
        await closed.wait()
        calls.append("disconnect")
        mock_sio.connected = False

    mock_sio.connect.side_effect = connect
    mock_sio.disconnect.side_effect = disconnect
    channel.start(donor_session)
    await asyncio.sleep(0)
    await channel._on_connect()
    mock_sio.connected = True

    channel.start(recipient_session)
    for _ in range(10):
        await asyncio.sleep(0)
    assert calls == ["connect"]

    closed.set()
    for _ in range(10):
        await asyncio.sleep(0)

    assert calls == ["connect", "disconnect", "connect"]
    assert channel.user_id == recipient_session.user_id
    await channel.stop()


@pytest.mark.asyncio
async def test_failed_connect_is_retried(channel, mock_sio, donor_session):
    mock_sio.connect.side_effect = [socketio.exceptions.ConnectionError("refused"), None]
    channel.start(donor_session)

    await asyncio.sleep(0.05)

    assert mock_sio.connect.await_count == 2
    assert channel.connection_attempts == 2
    await channel.stop()


@pytest.mark.asyncio
async def test_missing_heartbeat_marks_connection_lost(mock_sio, donor_session):
    channel = NotificationChannel(
        ws_url=WS_URL,
        heartbeat_outgoing_ms=10,
        heartbeat_timeout_ms=30,
        reconnect_delay_ms=60000,
    )
    channel.start(donor_session)
    await asyncio.sleep(0)
    await channel._on_connect()
    assert channel.connected

    await asyncio.sleep(0.2)

    assert channel.state == ChannelState.CONNECTING
    mock_sio.emit.assert_any_await(HEARTBEAT_EVENT, {'userId': DONOR_ID})
    await channel.stop()


@pytest.mark.asyncio
async def test_manual_reconnect_after_stop_restarts(channel, mock_sio, donor_session):
    channel.start(donor_session)
    await asyncio.sleep(0)
    channel._connection_task.cancel()
    await asyncio.sleep(0)

    channel.reconnect()
    await asyncio.sleep(0)

    assert channel.active
    assert mock_sio.connect.await_count == 2
    await channel.stop()
