# confirmation_gate.py

"""
Decides which match actions the signed-in user may take right now.

Wraps the protocol rules in match_lifecycle with the two things the engine
does not know about: who the caller is (from the Session) and whether the
input is well formed (reason and notes length, rating range, received date).
Time is read when authorize() is called, never cached, so a screen left open
past the grace period is re-evaluated before the action goes out.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import FrozenSet, Optional

import match_lifecycle
from api.models.schemas import CompletionDetails, MatchResult, MatchRole
from config import SYNC_CONFIG
from match_lifecycle import MatchAction, Refusal, RefusalReason, StatusDisplay
from session_state import Session
from utils import format_remaining, utc_now

logger = logging.getLogger(__name__)

MIN_REASON_LENGTH = SYNC_CONFIG['min_reason_length']
MIN_NOTES_LENGTH = SYNC_CONFIG['min_notes_length']
MIN_RATING = 1
MAX_RATING = 5


@dataclass(frozen=True)
class Authorization:
    allowed: bool
    refusal: Optional[Refusal] = None

    @property
    def reason(self):
        return self.refusal.message if self.refusal else None


ALLOWED = Authorization(allowed=True)


def derive_role(match: MatchResult, session: Optional[Session]) -> MatchRole:
    """The caller's side of the match, or UNKNOWN if they are on neither side."""
    if session is None:
        return MatchRole.UNKNOWN
    if session.user_id == match.donor_user_id:
        return MatchRole.DONOR
    if session.user_id == match.recipient_user_id:
        return MatchRole.RECIPIENT
    return MatchRole.UNKNOWN


def _deny(reason, message):
    return Authorization(allowed=False, refusal=Refusal(reason=reason, message=message))


def _check_reason_shape(reason, verb):
    if reason is None or not reason.strip():
        return _deny(RefusalReason.REASON_REQUIRED, f"Please provide a reason to {verb}")
    if len(reason.strip()) < MIN_REASON_LENGTH:
        return _deny(
            RefusalReason.REASON_TOO_SHORT,
            f"Please provide a reason with at least {MIN_REASON_LENGTH} characters",
        )
    return None


def _check_completion_shape(details):
    if details is None or details.received_date is None:
        return _deny(RefusalReason.RECEIVED_DATE_REQUIRED, "Please provide the date the donation was received")
    if len((details.notes or "").strip()) < MIN_NOTES_LENGTH:
        return _deny(
            RefusalReason.NOTES_TOO_SHORT,
            f"Please provide notes with at least {MIN_NOTES_LENGTH} characters",
        )
    if details.rating is not None and not MIN_RATING <= details.rating <= MAX_RATING:
        return _deny(RefusalReason.INVALID_RATING, f"Rating must be between {MIN_RATING} and {MAX_RATING}")
    return None


def authorize(
    match: MatchResult,
    session: Optional[Session],
    action,
    reason: Optional[str] = None,
    details: Optional[CompletionDetails] = None,
    now: Optional[datetime] = None,
    check_input: bool = True,
) -> Authorization:
    """
    Decide whether ``session`` may perform ``action`` on ``match``.

    With ``check_input=False`` only the protocol and identity rules are applied,
    which is what a screen needs to decide which buttons to show before the
    user has typed anything.
    """
    action = MatchAction(action)
    if session is None:
        return _deny(RefusalReason.NOT_AUTHENTICATED, "Please log in again")

    role = derive_role(match, session)
    if role == MatchRole.UNKNOWN:
        return _deny(RefusalReason.NOT_A_PARTY, "You are not authorized to act on this match")

    now = now or utc_now()
    refusal = match_lifecycle.check(match, action, role, now)
    if refusal:
        return Authorization(allowed=False, refusal=refusal)

    if not check_input:
        return ALLOWED
    if action == MatchAction.REJECT:
        return _check_reason_shape(reason, "reject this match") or ALLOWED
    if action == MatchAction.WITHDRAW:
        return _check_reason_shape(reason, "withdraw your confirmation") or ALLOWED
    if action == MatchAction.COMPLETE:
        return _check_completion_shape(details) or ALLOWED
    return ALLOWED


def permitted_actions(match, session, now=None) -> FrozenSet[MatchAction]:
    now = now or utc_now()
    return frozenset(
        action for action in MatchAction
        if authorize(match, session, action, now=now, check_input=False).allowed
    )


@dataclass(frozen=True)
class MatchView:
    """Everything a screen derives from a match for the signed-in user."""
    role: MatchRole
    other_role: MatchRole
    own_confirmed: bool
    other_confirmed: bool
    is_confirmed: bool
    grace_period_expires_at: Optional[datetime]
    grace_period_open: bool
    grace_period_remaining: Optional[str]
    can_initiate_completion: bool
    actions: FrozenSet[MatchAction]
    status: StatusDisplay


def derive_view(match, session, now=None) -> MatchView:
    now = now or utc_now()
    role = derive_role(match, session)
    other = match_lifecycle.other_role(role)
    expires_at = match_lifecycle.grace_period_expires_at(match, role)
    grace_open = expires_at is not None and now < expires_at
    actions = permitted_actions(match, session, now)
    return MatchView(
        role=role,
        other_role=other,
        own_confirmed=match_lifecycle.is_party_confirmed(match, role),
        other_confirmed=match_lifecycle.is_party_confirmed(match, other),
        is_confirmed=match.is_confirmed,
        grace_period_expires_at=expires_at,
        grace_period_open=grace_open,
        grace_period_remaining=format_remaining(expires_at - now) if grace_open else None,
        can_initiate_completion=MatchAction.COMPLETE in actions,
        actions=actions,
        status=match_lifecycle.describe_status(match.status),
    )
