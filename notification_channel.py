# notification_channel.py

"""
Real-time notification channel.

Keeps one push subscription per signed-in user on the per-user destination
``/user/{userId}/queue/notifications``. The connection is opened when a
session starts and torn down when it ends; while the session lasts, a lost
connection is retried after a fixed delay and liveness is watched through
heartbeats in both directions. Every inbound message is parsed into a
NotificationRecord before anything else sees it. Messages that fail to parse
are logged and dropped; they never stop the channel.
"""

import asyncio
import json
import logging
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional

import socketio
from pydantic import ValidationError

from api.models.schemas import NotificationRecord
from config import SYNC_CONFIG
from session_state import Session
from utils import utc_now

logger = logging.getLogger(__name__)

NOTIFICATION_EVENT = 'notification'
HEARTBEAT_EVENT = 'heartbeat'
SUBSCRIBE_EVENT = 'subscribe'
UNSUBSCRIBE_EVENT = 'unsubscribe'


class ChannelState(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"


class MalformedMessage(ValueError):
    pass


def notification_destination(user_id):
    return f"/user/{user_id}/queue/notifications"


def parse_notification(payload) -> NotificationRecord:
    """
    Turn one push message into a NotificationRecord.

    Accepts the JSON text of the record, the decoded dict, or a frame of the
    form ``{"destination": ..., "body": ...}``. Raises MalformedMessage.
    """
    try:
        if isinstance(payload, (bytes, bytearray)):
            payload = payload.decode('utf-8')
        if isinstance(payload, str):
            payload = json.loads(payload)
        if isinstance(payload, dict) and 'body' in payload and 'id' not in payload:
            return parse_notification(payload['body'])
        if not isinstance(payload, dict):
            raise MalformedMessage(f"Expected an object, got {type(payload).__name__}")
        return NotificationRecord.model_validate(payload)
    except (UnicodeDecodeError, json.JSONDecodeError, ValidationError) as e:
        raise MalformedMessage(str(e)) from e


class NotificationChannel:
    """
    Manages the push connection for the current session.

    State moves DISCONNECTED -> CONNECTING -> CONNECTED and back to
    CONNECTING on a lost connection, or to DISCONNECTED on teardown.
    """

    def __init__(
        self,
        ws_url: Optional[str] = None,
        on_notification: Optional[Callable[[NotificationRecord], None]] = None,
        heartbeat_outgoing_ms: Optional[int] = None,
        heartbeat_timeout_ms: Optional[int] = None,
        reconnect_delay_ms: Optional[int] = None,
    ):
        self.ws_url = ws_url or SYNC_CONFIG['ws_url']
        self.on_notification = on_notification
        self.heartbeat_interval = (heartbeat_outgoing_ms or SYNC_CONFIG['heartbeat_outgoing_ms']) / 1000.0
        self.heartbeat_timeout = (heartbeat_timeout_ms or SYNC_CONFIG['heartbeat_timeout_ms']) / 1000.0
        self.reconnect_delay = (reconnect_delay_ms or SYNC_CONFIG['reconnect_delay_ms']) / 1000.0

        # Reconnection is driven by our own loop so the delay stays fixed and
        # teardown can stop it synchronously.
        self.sio = socketio.AsyncClient(reconnection=False, logger=False)

        self.state = ChannelState.DISCONNECTED
        self._session: Optional[Session] = None
        self._generation = 0
        self._connection_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._closing_task: Optional[asyncio.Task] = None
        self._lost: Optional[asyncio.Event] = None
        self._last_inbound = 0.0
        self._state_listeners: List[Callable[[ChannelState], None]] = []

        # Stats for logging
        self.connection_attempts = 0
        self.messages_received = 0
        self.messages_dropped = 0
        self.last_message_time: Optional[datetime] = None

        self._setup_handlers()

    def _setup_handlers(self):
        """Set up Socket.IO event handlers."""
        self.sio.on('connect', self._on_connect)
        self.sio.on('disconnect', self._on_disconnect)
        self.sio.on('connect_error', self._on_connect_error)
        self.sio.on(HEARTBEAT_EVENT, self._on_heartbeat)
        self.sio.on(NOTIFICATION_EVENT, self._on_notification)

    @property
    def active(self):
        return self._connection_task is not None and not self._connection_task.done()

    @property
    def connected(self):
        return self.state == ChannelState.CONNECTED

    @property
    def user_id(self):
        return self._session.user_id if self._session else None

    def add_state_listener(self, listener: Callable[[ChannelState], None]):
        self._state_listeners.append(listener)

    def _set_state(self, state):
        if state == self.state:
            return
        logger.debug(f"Notification channel {self.state.value} -> {state.value}")
        self.state = state
        for listener in list(self._state_listeners):
            listener(state)

    def _touch(self):
        self._last_inbound = asyncio.get_running_loop().time()

    # Lifecycle

    def start(self, session: Session):
        """Open the subscription for ``session``. Calling again while active is a no-op."""
        if session is None:
            raise ValueError("Cannot start the notification channel without a session")
        if self.active:
            if self._session is not None and self._session.user_id == session.user_id:
                logger.debug("Notification channel already active")
                return
            self.teardown()

        self._session = session
        self._generation += 1
        self._lost = asyncio.Event()
        self._connection_task = asyncio.create_task(self._connection_loop(self._generation))
        logger.info(f"Started notification channel for user {session.user_id}")

    def teardown(self):
        """
        Stop everything bound to the current session, synchronously.

        Pending reconnect timers and heartbeats are cancelled before this
        returns; any message that still arrives afterwards is dropped because
        the session is gone. Closing the transport itself finishes in the
        background (see ``stop``).
        """
        self._generation += 1
        session, self._session = self._session, None

        for task in (self._connection_task, self._heartbeat_task):
            if task is not None and not task.done():
                task.cancel()
        self._connection_task = None
        self._heartbeat_task = None
        self._set_state(ChannelState.DISCONNECTED)

        if session is not None and self.sio.connected:
            self._closing_task = asyncio.ensure_future(self._close_transport(session.user_id))
        if session is not None:
            logger.info(f"Notification channel torn down for user {session.user_id}")

    async def stop(self):
        """Tear down and wait for the transport to close."""
        self.teardown()
        if self._closing_task is not None:
            await asyncio.gather(self._closing_task, return_exceptions=True)
            self._closing_task = None

    def reconnect(self):
        """Drop the current connection and let the loop open a fresh one."""
        if self._session is None:
            return
        if not self.active:
            self.start(self._session)
            return
        self._mark_lost("manual reconnect")

    async def _close_transport(self, user_id):
        try:
            await self.sio.emit(UNSUBSCRIBE_EVENT, {'destination': notification_destination(user_id)})
        except socketio.exceptions.SocketIOError as e:
            logger.debug(f"Unsubscribe skipped: {e}")
        await self.sio.disconnect()

    async def _connection_loop(self, generation):
        """Background task to keep the subscription open."""
        while generation == self._generation:
            await self._wait_for_close()
            if generation != self._generation:
                break
            self._set_state(ChannelState.CONNECTING)
            if await self._connect_once():
                await self._lost.wait()
                if generation != self._generation:
                    break
                logger.warning(f"Notification channel lost, reconnecting in {self.reconnect_delay:.0f}s")
            await asyncio.sleep(self.reconnect_delay)

    async def _wait_for_close(self):
        # The client is shared across sessions; a previous disconnect must
        # finish before connect() is called again.
        closing = self._closing_task
        if closing is not None and not closing.done():
            logger.debug("Waiting for the previous connection to close")
            await asyncio.wait([closing])

    async def _connect_once(self):
        session = self._session
        self._lost.clear()
        self.connection_attempts += 1
        try:
            logger.info(f"Connecting notification channel to {self.ws_url} (attempt #{self.connection_attempts})")
            headers = session.auth_headers()
            headers['User-Agent'] = f"MatchSync-Client/{SYNC_CONFIG['client_version']}"
            await self.sio.connect(
                self.ws_url,
                headers=headers,
                auth={'userId': session.user_id, 'token': session.credential},
                transports=['websocket', 'polling'],
                wait_timeout=10,
            )
            return True
        except (socketio.exceptions.ConnectionError, ValueError) as e:
            logger.error(f"Failed to connect notification channel: {e}")
            return False

    def _mark_lost(self, why):
        if self._session is None:
            return
        logger.warning(f"Notification channel marked lost: {why}")
        if self._heartbeat_task is not None and self._heartbeat_task is not asyncio.current_task():
            self._heartbeat_task.cancel()
        self._heartbeat_task = None
        self._set_state(ChannelState.CONNECTING)
        if self._lost is not None:
            self._lost.set()
        if self.sio.connected:
            self._closing_task = asyncio.ensure_future(self.sio.disconnect())

    async def _heartbeat_loop(self, generation):
        loop = asyncio.get_running_loop()
        while generation == self._generation and self.state == ChannelState.CONNECTED:
            await asyncio.sleep(self.heartbeat_interval)
            if generation != self._generation:
                return
            silent_for = loop.time() - self._last_inbound
            if silent_for > self.heartbeat_timeout:
                self._mark_lost(f"no heartbeat for {silent_for:.1f}s")
                return
            try:
                await self.sio.emit(HEARTBEAT_EVENT, {'userId': self.user_id})
            except socketio.exceptions.SocketIOError as e:
                self._mark_lost(f"heartbeat send failed: {e}")
                return

    # Socket.IO handlers

    async def _on_connect(self):
        session = self._session
        if session is None:
            return
        self._touch()
        self._set_state(ChannelState.CONNECTED)
        destination = notification_destination(session.user_id)
        await self.sio.emit(SUBSCRIBE_EVENT, {
            'destination': destination,
            'userId': session.user_id,
            'heartbeat': [int(self.heartbeat_interval * 1000), int(self.heartbeat_timeout * 1000)],
        })
        logger.info(f"Subscribed to {destination}")
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(self._generation))

    async def _on_disconnect(self, reason=None):
        if self._session is None:
            return
        logger.warning(f"Notification channel disconnected ({reason or 'no reason given'})")
        self._mark_lost("server disconnect")

    async def _on_connect_error(self, data=None):
        logger.error(f"Notification channel connection error: {data}")

    async def _on_heartbeat(self, data=None):
        if self._session is not None:
            self._touch()

    async def _on_notification(self, data):
        session = self._session
        if session is None:
            logger.debug("Dropping notification delivered after teardown")
            return
        self._touch()
        try:
            record = parse_notification(data)
        except MalformedMessage as e:
            self.messages_dropped += 1
            logger.warning(f"Dropping malformed notification: {e}")
            return

        if record.user_id is not None and record.user_id != session.user_id:
            self.messages_dropped += 1
            logger.warning(f"Dropping notification {record.id} addressed to another user")
            return

        self.messages_received += 1
        self.last_message_time = utc_now()
        if self.on_notification is None:
            return
        try:
            self.on_notification(record)
        except Exception:
            logger.exception(f"Notification handler failed for {record.id}")

    def get_stats(self) -> Dict:
        """Get statistics about channel operations."""
        return {
            'state': self.state.value,
            'user_id': self.user_id,
            'connection_attempts': self.connection_attempts,
            'messages_received': self.messages_received,
            'messages_dropped': self.messages_dropped,
            'last_message_time': self.last_message_time.isoformat() if self.last_message_time else None,
        }
