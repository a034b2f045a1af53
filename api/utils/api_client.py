# api_client.py - REST gateway to the matching and notification backend

import aiohttp
import asyncio
import logging
from typing import Callable, Dict, List, Optional

from pydantic import ValidationError

from api.models.schemas import (
    CanConfirmCompletionResponse,
    CompletionDetails,
    ManualMatchRequest,
    ManualMatchResponse,
    MatchResult,
    MatchRole,
    NotificationRecord,
    ReasonRequest,
    UnreadCountResponse,
)
from config import SYNC_CONFIG
from errors import (
    NOT_REGISTERED_AS_DONOR,
    NOT_REGISTERED_AS_RECIPIENT,
    MATCH_NOT_FOUND,
    NOTIFICATION_NOT_FOUND,
    TIMEOUT,
    AuthRequiredError,
    DomainConflictError,
    ForbiddenError,
    MatchSyncError,
    NotFoundError,
    ServerError,
    TransientError,
    conflict_tag_for_message,
)
from session_state import Session

# Set up logging
logger = logging.getLogger(__name__)

CONFLICT_STATUSES = {400, 409, 410, 412, 422}

MATCH_LISTS = {
    'as-donor': {403: NOT_REGISTERED_AS_DONOR},
    'as-recipient': {403: NOT_REGISTERED_AS_RECIPIENT},
    'active': {},
    'pending': {},
    'confirmed': {},
}

ROLE_PATHS = {
    MatchRole.DONOR: 'donor',
    MatchRole.RECIPIENT: 'recipient',
}


def error_for_status(status: int, text: str, tags: Optional[Dict[int, str]] = None) -> MatchSyncError:
    """Translate an HTTP failure into the client's error taxonomy."""
    tags = tags or {}
    text = (text or "").strip()
    if status == 401:
        return AuthRequiredError(status=status)
    if status == 403:
        return ForbiddenError(text or None, tag=tags.get(403), status=status)
    if status == 404:
        return NotFoundError(text or None, tag=tags.get(404), status=status)
    if status in CONFLICT_STATUSES:
        return DomainConflictError(text or None, tag=tags.get(status) or conflict_tag_for_message(text), status=status)
    if status >= 500:
        return ServerError(status=status)
    return MatchSyncError(text or f"Request failed (Status: {status})", status=status)


class ApiGateway:
    """
    Thin async client over the backend's REST endpoints.

    Every call needs a session: the bearer credential and user id are read
    from ``session_provider`` at call time, so a logout takes effect on the
    very next request.
    """

    def __init__(
        self,
        session_provider: Callable[[], Optional[Session]],
        base_url: Optional[str] = None,
        http_session: Optional[aiohttp.ClientSession] = None,
        timeout: Optional[float] = None,
    ):
        self.base_url = (base_url or SYNC_CONFIG['api_url']).rstrip('/')
        self.session_provider = session_provider
        self.timeout = aiohttp.ClientTimeout(total=timeout or SYNC_CONFIG['request_timeout'])
        self._http = http_session
        self._owns_http = http_session is None

    async def get_http(self) -> aiohttp.ClientSession:
        """Get or create the aiohttp session."""
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_http = True
        return self._http

    async def close(self):
        if self._http is not None and self._owns_http and not self._http.closed:
            await self._http.close()
        self._http = None

    def _headers(self) -> Dict[str, str]:
        session = self.session_provider()
        if session is None:
            raise AuthRequiredError()
        headers = session.auth_headers()
        headers['User-Agent'] = f"MatchSync-Client/{SYNC_CONFIG['client_version']}"
        return headers

    async def request(self, method, path, json=None, expect='json', error_tags=None):
        headers = self._headers()
        http = await self.get_http()
        url = f"{self.base_url}{path}"
        try:
            async with http.request(method, url, headers=headers, json=json) as response:
                if response.status >= 400:
                    text = await response.text()
                    error = error_for_status(response.status, text, error_tags)
                    logger.warning(f"{method} {path} failed: {response.status} ({error.tag})")
                    raise error
                if expect == 'json':
                    return await response.json(content_type=None)
                if expect == 'text':
                    return await response.text()
                return None
        except asyncio.TimeoutError as e:
            logger.warning(f"{method} {path} timed out")
            raise TransientError("Request timed out", tag=TIMEOUT) from e
        except aiohttp.ClientError as e:
            logger.warning(f"{method} {path} network error: {e}")
            raise TransientError(str(e) or None) from e

    @staticmethod
    def _parse_many(model, payload, label) -> List:
        records = []
        for item in payload or []:
            try:
                records.append(model.model_validate(item))
            except ValidationError as e:
                logger.warning(f"Skipping malformed {label}: {e.error_count()} error(s)")
        return records

    # Matches

    async def fetch_matches(self, kind: str) -> List[MatchResult]:
        if kind not in MATCH_LISTS:
            raise ValueError(f"Unknown match list: {kind}")
        payload = await self.request('GET', f"/matching/my-matches/{kind}", error_tags=MATCH_LISTS[kind])
        return self._parse_many(MatchResult, payload, "match")

    async def fetch_match(self, match_id: str, role: MatchRole) -> Optional[MatchResult]:
        """Authoritative copy of one match, looked up in the caller's list for ``role``."""
        kind = 'as-donor' if role == MatchRole.DONOR else 'as-recipient'
        for match in await self.fetch_matches(kind):
            if match.match_id == match_id:
                return match
        return None

    async def get_match_confirmation_status(self, match_id: str) -> bool:
        payload = await self.request(
            'GET', f"/matching/match/{match_id}/status", error_tags={404: MATCH_NOT_FOUND},
        )
        return bool(payload)

    async def confirm_match(self, match_id: str, role: MatchRole) -> str:
        return await self.request(
            'POST', f"/matching/{ROLE_PATHS[role]}/confirm/{match_id}",
            expect='text', error_tags={404: MATCH_NOT_FOUND},
        )

    async def reject_match(self, match_id: str, role: MatchRole, reason: str) -> str:
        return await self.request(
            'POST', f"/matching/{ROLE_PATHS[role]}/reject/{match_id}",
            json=ReasonRequest(reason=reason).model_dump(by_alias=True),
            expect='text', error_tags={404: MATCH_NOT_FOUND},
        )

    async def withdraw_confirmation(self, match_id: str, role: MatchRole, reason: str) -> str:
        return await self.request(
            'POST', f"/matching/{ROLE_PATHS[role]}/withdraw/{match_id}",
            json=ReasonRequest(reason=reason).model_dump(by_alias=True),
            expect='text', error_tags={404: MATCH_NOT_FOUND},
        )

    async def confirm_completion(self, match_id: str, details: CompletionDetails) -> str:
        return await self.request(
            'POST', f"/matching/recipient/confirm-completion/{match_id}",
            json=details.to_payload(),
            expect='text', error_tags={404: MATCH_NOT_FOUND},
        )

    async def can_confirm_completion(self, match_id: str) -> bool:
        payload = await self.request(
            'GET', f"/matching/recipient/can-confirm-completion/{match_id}",
            error_tags={404: MATCH_NOT_FOUND},
        )
        return CanConfirmCompletionResponse.model_validate(payload or {}).can_confirm

    async def manual_match(self, request: ManualMatchRequest) -> ManualMatchResponse:
        payload = await self.request(
            'POST', "/matching/manual-match", json=request.model_dump(by_alias=True),
        )
        return ManualMatchResponse.model_validate(payload)

    # Notifications

    async def fetch_notifications(self) -> List[NotificationRecord]:
        payload = await self.request('GET', "/notifications")
        return self._parse_many(NotificationRecord, payload, "notification")

    async def fetch_unread_notifications(self) -> List[NotificationRecord]:
        payload = await self.request('GET', "/notifications/unread")
        return self._parse_many(NotificationRecord, payload, "notification")

    async def fetch_unread_count(self) -> int:
        payload = await self.request('GET', "/notifications/unread/count")
        if isinstance(payload, int):
            return payload
        return UnreadCountResponse.model_validate(payload or {}).unread_count

    async def mark_notification_read(self, notification_id: str) -> NotificationRecord:
        payload = await self.request(
            'PUT', f"/notifications/{notification_id}/read",
            error_tags={404: NOTIFICATION_NOT_FOUND},
        )
        return NotificationRecord.model_validate(payload)

    async def mark_all_notifications_read(self) -> None:
        await self.request('PUT', "/notifications/read-all", expect=None)

    async def delete_notification(self, notification_id: str) -> None:
        await self.request(
            'DELETE', f"/notifications/{notification_id}",
            expect=None, error_tags={404: NOTIFICATION_NOT_FOUND},
        )
