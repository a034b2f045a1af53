# session_state.py

import logging
from dataclasses import dataclass, field
from typing import Callable, FrozenSet, List, Optional

from api.models.schemas import LoginResponse

logger = logging.getLogger(__name__)

DONOR_ROLE = "DONOR"
RECIPIENT_ROLE = "RECIPIENT"


@dataclass(frozen=True)
class Session:
    """
    The authenticated user's identity, built in one step at login.

    A session either exists with every field present or does not exist at all;
    there is no partially populated session.
    """
    user_id: str
    credential: str = field(repr=False)
    roles: FrozenSet[str] = frozenset()
    username: Optional[str] = None
    refresh_token: Optional[str] = field(default=None, repr=False)

    def __post_init__(self):
        if not self.user_id or not self.credential:
            raise ValueError("A session requires both a user id and a credential")
        object.__setattr__(self, 'roles', frozenset(r.upper() for r in self.roles))

    @classmethod
    def from_login_response(cls, payload):
        """Build a session from the backend's login payload (dict or LoginResponse)."""
        if not isinstance(payload, LoginResponse):
            payload = LoginResponse.model_validate(payload)
        return cls(
            user_id=payload.id,
            credential=payload.access_token,
            roles=frozenset(payload.roles),
            username=payload.username,
            refresh_token=payload.refresh_token,
        )

    def has_role(self, role):
        return role.upper() in self.roles

    @property
    def is_donor(self):
        return self.has_role(DONOR_ROLE)

    @property
    def is_recipient(self):
        return self.has_role(RECIPIENT_ROLE)

    def auth_headers(self):
        return {
            'Authorization': f"Bearer {self.credential}",
            'id': self.user_id,
        }


SessionListener = Callable[[Optional[Session]], None]


class SessionManager:
    """
    Holds the current session and tells dependants when it appears or goes away.

    Listeners are called synchronously, in registration order, so anything
    bound to the session (the push channel, in-flight actions) is torn down
    before ``logout()`` returns.
    """

    def __init__(self):
        self._session: Optional[Session] = None
        self._listeners: List[SessionListener] = []

    @property
    def current(self) -> Optional[Session]:
        return self._session

    @property
    def is_authenticated(self):
        return self._session is not None

    def add_listener(self, listener: SessionListener):
        self._listeners.append(listener)

    def remove_listener(self, listener: SessionListener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def login(self, session: Session):
        if self._session is not None:
            if self._session == session:
                logger.debug(f"Session for user {session.user_id} already active")
                return
            logger.info(f"Replacing session for user {self._session.user_id}")
            self._set(None)
        logger.info(f"Session started for user {session.user_id}")
        self._set(session)

    def logout(self):
        if self._session is None:
            return
        logger.info(f"Session ended for user {self._session.user_id}")
        self._set(None)

    def _set(self, session):
        self._session = session
        for listener in list(self._listeners):
            listener(session)
