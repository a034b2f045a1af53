# match_sync_client.py

"""
Wires the session, gateway, push channel, notification store and match
actions together, and runs a small command-line client:

    python match_sync_client.py

The runner signs in with ACCESS_TOKEN / USER_ID / ROLES from the environment,
loads the user's matches, and logs every notification until interrupted.
"""

import asyncio
import logging
import sys
from typing import Optional

from api.models.schemas import NotificationRecord
from api.utils.api_client import ApiGateway
from config import SYNC_CONFIG
from errors import MatchSyncError
from match_actions import MatchActionService
from match_lifecycle import SERVER_ONLY_STATUSES
from match_registry import MatchRegistry
from notification_channel import NotificationChannel
from notification_store import NotificationStore
from session_state import Session, SessionManager
from utils import configure_logging, utc_now

logger = logging.getLogger(__name__)


class MatchSyncClient:
    def __init__(self, api_url=None, ws_url=None, clock=utc_now, gateway=None, channel=None):
        self.sessions = SessionManager()
        self.gateway = gateway or ApiGateway(lambda: self.sessions.current, base_url=api_url)
        self.channel = channel or NotificationChannel(ws_url=ws_url)
        self.store = NotificationStore(self.gateway, self.channel)
        self.registry = MatchRegistry()
        self.actions = MatchActionService(self.gateway, self.sessions, self.registry, clock=clock)

        self.sessions.add_listener(self._on_session_change)
        self.store.add_push_listener(self._route_match_status)

    @property
    def session(self) -> Optional[Session]:
        return self.sessions.current

    async def login(self, session: Session):
        """Start a session, open the push channel and load notifications."""
        self.sessions.login(session)
        try:
            await self.store.start(session)
        except MatchSyncError as e:
            # The channel is already running; a later refresh will fill the store.
            logger.warning(f"Initial notification load failed: {e}")

    def logout(self):
        """End the session. Channel, store and in-flight actions are torn down before this returns."""
        self.sessions.logout()

    async def close(self):
        self.logout()
        await self.channel.stop()
        await self.gateway.close()

    def _on_session_change(self, session):
        if session is None:
            self.store.stop()

    def _route_match_status(self, record: NotificationRecord):
        metadata = record.metadata or {}
        match_id = metadata.get('matchId') or metadata.get('matchResultId')
        status = metadata.get('status')
        if not match_id or status not in {s.value for s in SERVER_ONLY_STATUSES}:
            return
        self.actions.apply_server_status(
            str(match_id), status,
            at=record.created_at,
            reason=metadata.get('reason'),
        )


def session_from_config(config=SYNC_CONFIG) -> Optional[Session]:
    if not config.get('access_token') or not config.get('user_id'):
        return None
    roles = frozenset(r.strip() for r in (config.get('roles') or '').split(',') if r.strip())
    return Session(user_id=config['user_id'], credential=config['access_token'], roles=roles)


def _log_notification(record: NotificationRecord):
    logger.info(f"[{record.type}] {record.title}: {record.message}")


async def run():
    session = session_from_config()
    if session is None:
        logger.error("ACCESS_TOKEN and USER_ID must be set to start the client")
        return 1

    client = MatchSyncClient()
    client.store.add_push_listener(_log_notification)
    try:
        await client.login(session)
        logger.info(f"{len(client.store.notifications)} notifications, {client.store.unread_count} unread")
        try:
            matches = await client.actions.load_my_matches()
            logger.info(f"Loaded {len(matches)} matches")
        except MatchSyncError as e:
            logger.error(f"Could not load matches: {e}")
        await asyncio.Event().wait()
    finally:
        await client.close()
    return 0


def main():
    configure_logging(SYNC_CONFIG['log_level'], SYNC_CONFIG['log_file'])
    try:
        return asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Client shutdown via KeyboardInterrupt")
        return 0


if __name__ == "__main__":
    sys.exit(main())
