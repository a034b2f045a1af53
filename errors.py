# errors.py

"""
Error taxonomy for the match sync client.

Every failure that crosses the API gateway is raised as one of these classes,
each carrying a tag so callers can show a specific explanation instead of a
generic failure. Only transient errors are eligible for automatic retry, and
only the notification channel's reconnect loop retries them.
"""

AUTH_REQUIRED = "AUTH_REQUIRED"
ROLE_MISMATCH = "ROLE_MISMATCH"
NOT_REGISTERED_AS_DONOR = "NOT_REGISTERED_AS_DONOR"
NOT_REGISTERED_AS_RECIPIENT = "NOT_REGISTERED_AS_RECIPIENT"
MATCH_NOT_FOUND = "MATCH_NOT_FOUND"
NOTIFICATION_NOT_FOUND = "NOTIFICATION_NOT_FOUND"
GRACE_PERIOD_EXPIRED = "GRACE_PERIOD_EXPIRED"
ALREADY_CONFIRMED = "ALREADY_CONFIRMED"
RECONFIRMATION_WINDOW_CLOSED = "RECONFIRMATION_WINDOW_CLOSED"
MATCH_NOT_ACTIONABLE = "MATCH_NOT_ACTIONABLE"
NETWORK = "NETWORK"
TIMEOUT = "TIMEOUT"
SERVER_ERROR = "SERVER_ERROR"

# Ordered: first phrase found in a server message decides the conflict tag.
CONFLICT_MESSAGE_TAGS = [
    ("grace period", GRACE_PERIOD_EXPIRED),
    ("reconfirmation", RECONFIRMATION_WINDOW_CLOSED),
    ("already confirmed", ALREADY_CONFIRMED),
]


class MatchSyncError(Exception):
    """Base class for all client-side failures."""

    retryable = False
    default_tag = None
    default_message = "Request failed"

    def __init__(self, message=None, tag=None, status=None):
        self.message = message or self.default_message
        self.tag = tag or self.default_tag
        self.status = status
        super().__init__(self.message)

    def __repr__(self):
        return f"{type(self).__name__}(tag={self.tag!r}, message={self.message!r})"


class AuthRequiredError(MatchSyncError):
    default_tag = AUTH_REQUIRED
    default_message = "Authentication required. Please login again."


class ForbiddenError(MatchSyncError):
    default_tag = ROLE_MISMATCH
    default_message = "Access denied"


class NotFoundError(MatchSyncError):
    default_tag = MATCH_NOT_FOUND
    default_message = "Resource not found"


class DomainConflictError(MatchSyncError):
    default_tag = MATCH_NOT_ACTIONABLE
    default_message = "This match is no longer actionable"


class TransientError(MatchSyncError):
    retryable = True
    default_tag = NETWORK
    default_message = "Network unavailable"


class ServerError(MatchSyncError):
    default_tag = SERVER_ERROR
    default_message = "Server error. Please try again later."


def conflict_tag_for_message(text):
    """Infer a DomainConflict tag from server message content."""
    lowered = (text or "").lower()
    for phrase, tag in CONFLICT_MESSAGE_TAGS:
        if phrase in lowered:
            return tag
    if "expired" in lowered and ("window" in lowered or "withdraw" in lowered):
        return GRACE_PERIOD_EXPIRED
    return MATCH_NOT_ACTIONABLE
