# notification_store.py

"""
Notification state for the signed-in user.

Pushed notifications are prepended as they arrive; a REST refresh replaces
the whole list and the unread count, which repairs anything the push channel
missed while it was down. The notification id is the only de-duplication key
across both sources.
"""

import asyncio
import logging
from typing import Callable, List, Optional, Set

from api.models.schemas import NotificationRecord
from api.utils.api_client import ApiGateway
from errors import NOTIFICATION_NOT_FOUND, AuthRequiredError, MatchSyncError, NotFoundError
from notification_channel import ChannelState, NotificationChannel
from optimistic import apply_optimistically
from session_state import Session

logger = logging.getLogger(__name__)


def _newest_first(records):
    dated = [r for r in records if r.created_at is not None]
    undated = [r for r in records if r.created_at is None]
    return sorted(dated, key=lambda r: r.created_at, reverse=True) + undated


class NotificationStore:
    def __init__(self, gateway: ApiGateway, channel: Optional[NotificationChannel] = None):
        self.gateway = gateway
        self.channel = channel
        self.loading = False
        self._session: Optional[Session] = None
        self._generation = 0
        self._notifications: List[NotificationRecord] = []
        self._ids: Set[str] = set()
        self._unread_count = 0
        self._listeners: List[Callable[["NotificationStore"], None]] = []
        self._push_listeners: List[Callable[[NotificationRecord], None]] = []

        self._seen_connected = False
        self._refresh_task: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Future] = set()

        if channel is not None:
            channel.on_notification = self.ingest_push
            channel.add_state_listener(self._on_channel_state)

    # Read side

    @property
    def notifications(self) -> List[NotificationRecord]:
        return list(self._notifications)

    @property
    def unread_count(self) -> int:
        return self._unread_count

    @property
    def connected(self):
        return self.channel is not None and self.channel.state == ChannelState.CONNECTED

    @property
    def reconnecting(self):
        return self.channel is not None and self.channel.state == ChannelState.CONNECTING

    def get(self, notification_id) -> Optional[NotificationRecord]:
        for record in self._notifications:
            if record.id == notification_id:
                return record
        return None

    def add_listener(self, listener):
        """Called with the store after every change."""
        self._listeners.append(listener)

    def add_push_listener(self, listener):
        """Called with each newly ingested pushed record."""
        self._push_listeners.append(listener)

    def _changed(self):
        for listener in list(self._listeners):
            listener(self)

    def _on_channel_state(self, state):
        if self._session is None:
            return
        if state == ChannelState.CONNECTED:
            # Anything pushed while the channel was down is only visible via REST.
            if self._seen_connected:
                self._refresh_task = asyncio.ensure_future(self._refresh_after_reconnect())
            self._seen_connected = True
        self._changed()

    async def _refresh_after_reconnect(self):
        try:
            await self.refresh()
        except MatchSyncError as e:
            logger.warning(f"Notification refresh after reconnect failed: {e}")

    # Lifecycle

    async def start(self, session: Session):
        self._session = session
        self._generation += 1
        self._seen_connected = False
        if self.channel is not None:
            self.channel.start(session)
        await self.refresh()

    def stop(self):
        """Forget everything belonging to the ended session."""
        self._session = None
        if self.channel is not None:
            self.channel.teardown()
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_task.cancel()
        self._refresh_task = None
        for task in list(self._inflight):
            task.cancel()
        self._inflight.clear()
        self._generation += 1
        self._notifications = []
        self._ids = set()
        self._unread_count = 0
        self.loading = False
        self._changed()

    # Mutations

    def ingest_push(self, record: NotificationRecord) -> bool:
        """Prepend a pushed record unless its id is already held."""
        if self._session is None:
            logger.debug(f"Ignoring pushed notification {record.id}: no session")
            return False
        if record.id in self._ids:
            logger.debug(f"Duplicate notification {record.id} ignored")
            return False

        self._notifications.insert(0, record)
        self._ids.add(record.id)
        if not record.is_read:
            self._unread_count += 1
        self._changed()
        for listener in list(self._push_listeners):
            listener(record)
        return True

    async def refresh(self):
        """Replace the list and unread count with the server's snapshot."""
        generation = self._generation
        self.loading = True
        try:
            records, unread_count = await asyncio.gather(
                self.gateway.fetch_notifications(),
                self.gateway.fetch_unread_count(),
            )
        finally:
            if generation == self._generation:
                self.loading = False

        if generation != self._generation:
            logger.debug("Discarding notification refresh from an ended session")
            return
        self._replace_all(records, unread_count)

    def _replace_all(self, records, unread_count):
        unique = []
        seen = set()
        for record in _newest_first(records):
            if record.id in seen:
                continue
            seen.add(record.id)
            unique.append(record)
        self._notifications = unique
        self._ids = seen
        self._unread_count = max(0, unread_count)
        logger.debug(f"Notifications refreshed: {len(unique)} held, {self._unread_count} unread")
        self._changed()

    def _swap(self, record: NotificationRecord):
        for index, current in enumerate(self._notifications):
            if current.id == record.id:
                self._notifications[index] = record
                if current.is_read and not record.is_read:
                    self._unread_count += 1
                elif not current.is_read and record.is_read:
                    self._unread_count = max(0, self._unread_count - 1)
                self._changed()
                return True
        return False

    async def _mutate(self, label, apply_local, remote, rollback, on_confirm=None, on_conflict=None):
        """
        Run an optimistic mutation bound to the current session.

        Once the session ends the rollback and confirm hooks do nothing, and
        a remote call cancelled by stop() surfaces as AuthRequiredError.
        """
        generation = self._generation

        def guarded_rollback():
            if generation == self._generation:
                rollback()

        def guarded_confirm(result):
            if on_confirm is not None and generation == self._generation:
                on_confirm(result)

        async def guarded_conflict(error):
            if generation != self._generation:
                return None
            return await on_conflict(error)

        async def call_remote():
            task = asyncio.ensure_future(remote())
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
            return await task

        try:
            return await apply_optimistically(
                label,
                apply_local=apply_local,
                remote=call_remote,
                rollback=guarded_rollback,
                on_confirm=guarded_confirm,
                on_conflict=guarded_conflict if on_conflict is not None else None,
            )
        except asyncio.CancelledError:
            if generation != self._generation:
                raise AuthRequiredError() from None
            raise

    def _require(self, notification_id) -> NotificationRecord:
        record = self.get(notification_id)
        if record is None:
            raise NotFoundError(f"Notification {notification_id} not found", tag=NOTIFICATION_NOT_FOUND)
        return record

    async def mark_read(self, notification_id) -> Optional[NotificationRecord]:
        """Mark one notification read. Already-read records are left alone."""
        record = self._require(notification_id)
        if record.is_read:
            logger.debug(f"Notification {notification_id} already read")
            return record

        async def forget_missing(error):
            self._discard(notification_id)
            return None

        outcome = await self._mutate(
            f"mark notification {notification_id} read",
            apply_local=lambda: self._swap(record.model_copy(update={'is_read': True})),
            remote=lambda: self.gateway.mark_notification_read(notification_id),
            rollback=lambda: self._swap(record),
            on_confirm=self._swap,
            on_conflict=forget_missing,
        )
        return self.get(notification_id) if outcome.confirmed else None

    async def mark_all_read(self):
        unread_ids = {r.id for r in self._notifications if not r.is_read}

        def apply_local():
            self._notifications = [
                r if r.is_read else r.model_copy(update={'is_read': True})
                for r in self._notifications
            ]
            self._unread_count = 0
            self._changed()

        def rollback():
            restored = 0
            for index, r in enumerate(self._notifications):
                if r.id in unread_ids and r.is_read:
                    self._notifications[index] = r.model_copy(update={'is_read': False})
                    restored += 1
            self._unread_count += restored
            self._changed()

        await self._mutate(
            "mark all notifications read",
            apply_local=apply_local,
            remote=self.gateway.mark_all_notifications_read,
            rollback=rollback,
        )

    async def remove(self, notification_id):
        record = self._require(notification_id)
        index = self._notifications.index(record)

        def rollback():
            if record.id in self._ids:
                return
            self._notifications.insert(min(index, len(self._notifications)), record)
            self._ids.add(record.id)
            if not record.is_read:
                self._unread_count += 1
            self._changed()

        async def already_gone(error):
            return None

        await self._mutate(
            f"delete notification {notification_id}",
            apply_local=lambda: self._discard(notification_id),
            remote=lambda: self.gateway.delete_notification(notification_id),
            rollback=rollback,
            on_conflict=already_gone,
        )

    def _discard(self, notification_id):
        record = self.get(notification_id)
        if record is None:
            return
        self._notifications.remove(record)
        self._ids.discard(notification_id)
        if not record.is_read:
            self._unread_count = max(0, self._unread_count - 1)
        self._changed()

    async def fetch_unread(self) -> List[NotificationRecord]:
        """Server's current unread notifications, without touching local state."""
        return await self.gateway.fetch_unread_notifications()
