# test_match_sync_client.py

import pytest
from unittest.mock import AsyncMock, MagicMock

from api.models.schemas import MatchStatus
from conftest import build_confirmed_match, build_notification
from errors import TransientError
from match_sync_client import MatchSyncClient, session_from_config
from notification_channel import ChannelState


@pytest.fixture
def gateway():
    gateway = MagicMock()
    gateway.fetch_notifications = AsyncMock(return_value=[build_notification("n-1", minutes_ago=10)])
    gateway.fetch_unread_count = AsyncMock(return_value=1)
    gateway.close = AsyncMock()
    return gateway


@pytest.fixture
def channel():
    channel = MagicMock()
    channel.state = ChannelState.DISCONNECTED
    channel.stop = AsyncMock()
    return channel


@pytest.fixture
def client(gateway, channel):
    return MatchSyncClient(gateway=gateway, channel=channel)


@pytest.mark.asyncio
async def test_login_starts_channel_and_store(client, channel, donor_session):
    await client.login(donor_session)

    assert client.session is donor_session
    channel.start.assert_called_once_with(donor_session)
    assert client.store.unread_count == 1


@pytest.mark.asyncio
async def test_login_survives_failed_initial_load(client, gateway, channel, donor_session):
    gateway.fetch_notifications.side_effect = TransientError()

    await client.login(donor_session)

    assert client.session is donor_session
    channel.start.assert_called_once()


@pytest.mark.asyncio
async def test_logout_tears_everything_down(client, channel, donor_session, confirmed_match):
    await client.login(donor_session)
    client.registry.put_local(confirmed_match)

    client.logout()

    channel.teardown.assert_called()
    assert client.store.notifications == []
    assert len(client.registry) == 0
    assert client.store.ingest_push(build_notification("n-2")) is False


@pytest.mark.asyncio
async def test_pushed_server_status_is_applied(client, donor_session):
    await client.login(donor_session)
    client.registry.put_local(build_confirmed_match())

    client.store.ingest_push(build_notification(
        "n-2", metadata={'matchId': "m-1", 'status': "EXPIRED", 'reason': "No response"},
    ))

    match = client.registry.get("m-1")
    assert match.status == MatchStatus.EXPIRED
    assert match.expiry_reason == "No response"


@pytest.mark.asyncio
async def test_pushed_client_status_is_not_applied(client, donor_session):
    await client.login(donor_session)
    client.registry.put_local(build_confirmed_match())

    client.store.ingest_push(build_notification("n-2", metadata={'matchId': "m-1", 'status': "COMPLETED"}))

    assert client.registry.get("m-1").status == MatchStatus.CONFIRMED


@pytest.mark.asyncio
async def test_close_stops_channel_and_gateway(client, gateway, channel, donor_session):
    await client.login(donor_session)

    await client.close()

    assert client.session is None
    channel.stop.assert_awaited_once()
    gateway.close.assert_awaited_once()


def test_session_from_config():
    session = session_from_config({'access_token': "t", 'user_id': "u-1", 'roles': "donor, recipient"})
    assert session.user_id == "u-1"
    assert session.roles == frozenset({"DONOR", "RECIPIENT"})
    assert session_from_config({'access_token': None, 'user_id': "u-1"}) is None
