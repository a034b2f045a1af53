# match_lifecycle.py

"""
Match confirmation protocol - pure state transitions over a MatchResult.

PENDING -> DONOR_CONFIRMED / RECIPIENT_CONFIRMED -> CONFIRMED -> COMPLETED,
with side exits to REJECTED, EXPIRED, CANCELLED_BY_DONOR and
CANCELLED_BY_RECIPIENT, and withdrawal reverting a confirmation while the
withdrawing party's grace period is still open.

Nothing here performs I/O or reads the clock. Callers pass the acting role and
the current time, and get back either the new record or a Refusal saying why
the transition is not legal. Input-shape rules (minimum reason length, rating
range) belong to confirmation_gate, so tests can drive the protocol without
building UI payloads.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Optional

from api.models.schemas import CompletionDetails, MatchResult, MatchRole, MatchStatus
from config import SYNC_CONFIG

logger = logging.getLogger(__name__)

GRACE_PERIOD = timedelta(minutes=SYNC_CONFIG['grace_period_minutes'])

TERMINAL_STATUSES = frozenset({
    MatchStatus.REJECTED,
    MatchStatus.EXPIRED,
    MatchStatus.CANCELLED_BY_DONOR,
    MatchStatus.CANCELLED_BY_RECIPIENT,
    MatchStatus.COMPLETED,
})

# Only ever originated by the server; the client applies them, never requests them.
SERVER_ONLY_STATUSES = frozenset({
    MatchStatus.EXPIRED,
    MatchStatus.CANCELLED_BY_DONOR,
    MatchStatus.CANCELLED_BY_RECIPIENT,
})

WITHDRAWABLE_STATUSES = frozenset({
    MatchStatus.DONOR_CONFIRMED,
    MatchStatus.RECIPIENT_CONFIRMED,
    MatchStatus.CONFIRMED,
})

PARTY_CONFIRMED_STATUS = {
    MatchRole.DONOR: MatchStatus.DONOR_CONFIRMED,
    MatchRole.RECIPIENT: MatchStatus.RECIPIENT_CONFIRMED,
}


class MatchAction(str, Enum):
    CONFIRM = "CONFIRM"
    REJECT = "REJECT"
    WITHDRAW = "WITHDRAW"
    COMPLETE = "COMPLETE"


class RefusalReason(str, Enum):
    NOT_AUTHENTICATED = "NOT_AUTHENTICATED"
    NOT_A_PARTY = "NOT_A_PARTY"
    TERMINAL_STATUS = "TERMINAL_STATUS"
    ALREADY_CONFIRMED = "ALREADY_CONFIRMED"
    NOT_CONFIRMED = "NOT_CONFIRMED"
    INVALID_STATUS = "INVALID_STATUS"
    GRACE_PERIOD_EXPIRED = "GRACE_PERIOD_EXPIRED"
    ALREADY_COMPLETED = "ALREADY_COMPLETED"
    RECIPIENT_ONLY = "RECIPIENT_ONLY"
    COMPLETION_NOT_ELIGIBLE = "COMPLETION_NOT_ELIGIBLE"
    REASON_REQUIRED = "REASON_REQUIRED"
    REASON_TOO_SHORT = "REASON_TOO_SHORT"
    NOTES_TOO_SHORT = "NOTES_TOO_SHORT"
    RECEIVED_DATE_REQUIRED = "RECEIVED_DATE_REQUIRED"
    INVALID_RATING = "INVALID_RATING"
    RECONFIRMATION_WINDOW_CLOSED = "RECONFIRMATION_WINDOW_CLOSED"
    MATCH_NOT_ACTIONABLE = "MATCH_NOT_ACTIONABLE"


@dataclass(frozen=True)
class Refusal:
    reason: RefusalReason
    message: str


@dataclass(frozen=True)
class TransitionResult:
    match: MatchResult
    refusal: Optional[Refusal] = None

    @property
    def allowed(self):
        return self.refusal is None


def is_terminal(status):
    return MatchStatus(status) in TERMINAL_STATUSES


def other_role(role):
    if role == MatchRole.DONOR:
        return MatchRole.RECIPIENT
    if role == MatchRole.RECIPIENT:
        return MatchRole.DONOR
    return MatchRole.UNKNOWN


def is_party_confirmed(match, role):
    if role == MatchRole.DONOR:
        return match.donor_confirmed
    if role == MatchRole.RECIPIENT:
        return match.recipient_confirmed
    return False


def party_confirmed_at(match, role):
    if role == MatchRole.DONOR:
        return match.donor_confirmed_at
    if role == MatchRole.RECIPIENT:
        return match.recipient_confirmed_at
    return None


def grace_period_expires_at(match, role):
    confirmed_at = party_confirmed_at(match, role)
    if confirmed_at is None:
        return None
    return confirmed_at + GRACE_PERIOD


def within_grace_period(match, role, now):
    """True while ``now`` is strictly before the role's confirmation + 2h."""
    expires_at = grace_period_expires_at(match, role)
    return expires_at is not None and now < expires_at


def _refuse(reason, message):
    return Refusal(reason=reason, message=message)


def _check_party(role):
    if role not in (MatchRole.DONOR, MatchRole.RECIPIENT):
        return _refuse(RefusalReason.NOT_A_PARTY, "You are not a party to this match")
    return None


def _check_not_terminal(match):
    if match.status in TERMINAL_STATUSES:
        if match.status == MatchStatus.COMPLETED:
            return _refuse(RefusalReason.ALREADY_COMPLETED, "This match has already been completed")
        return _refuse(
            RefusalReason.TERMINAL_STATUS,
            f"This match is {match.status.value.replace('_', ' ').lower()} and can no longer be changed",
        )
    return None


def check_confirm(match, role):
    refusal = _check_party(role) or _check_not_terminal(match)
    if refusal:
        return refusal
    if is_party_confirmed(match, role):
        return _refuse(RefusalReason.ALREADY_CONFIRMED, "You have already confirmed this match")
    return None


def check_reject(match, role, now, reason=None):
    refusal = _check_party(role) or _check_not_terminal(match)
    if refusal:
        return refusal
    if match.status == MatchStatus.CONFIRMED and not within_grace_period(match, role, now):
        return _refuse(
            RefusalReason.GRACE_PERIOD_EXPIRED,
            "The 2-hour window to reject a confirmed match has passed",
        )
    if reason is not None and not reason.strip():
        return _refuse(RefusalReason.REASON_REQUIRED, "A reason is required to reject a match")
    return None


def check_withdraw(match, role, now):
    refusal = _check_party(role)
    if refusal:
        return refusal
    if match.status == MatchStatus.COMPLETED:
        return _refuse(RefusalReason.ALREADY_COMPLETED, "This match has already been completed")
    if match.status not in WITHDRAWABLE_STATUSES:
        return _refuse(
            RefusalReason.INVALID_STATUS,
            "Only a confirmed match can be withdrawn from",
        )
    if not is_party_confirmed(match, role):
        return _refuse(RefusalReason.NOT_CONFIRMED, "You have not confirmed this match")
    if not within_grace_period(match, role, now):
        return _refuse(
            RefusalReason.GRACE_PERIOD_EXPIRED,
            "The 2-hour window to withdraw your confirmation has passed",
        )
    return None


def check_confirm_completion(match, role, details=None):
    refusal = _check_party(role)
    if refusal:
        return refusal
    if role != MatchRole.RECIPIENT:
        return _refuse(RefusalReason.RECIPIENT_ONLY, "Only the recipient can confirm completion")
    if match.completed_at is not None or match.status == MatchStatus.COMPLETED:
        return _refuse(RefusalReason.ALREADY_COMPLETED, "This match has already been completed")
    if match.status != MatchStatus.CONFIRMED:
        return _refuse(
            RefusalReason.INVALID_STATUS,
            "Completion can only be confirmed once both parties have confirmed",
        )
    if match.can_confirm_completion is not True:
        return _refuse(
            RefusalReason.COMPLETION_NOT_ELIGIBLE,
            "The server has not yet allowed completion for this match",
        )
    if details is not None and details.received_date is None:
        return _refuse(RefusalReason.RECEIVED_DATE_REQUIRED, "The received date is required")
    return None


def check(match, action, role, now, reason=None, details=None):
    """Return the Refusal for ``action`` by ``role`` at ``now``, or None if legal."""
    action = MatchAction(action)
    if action == MatchAction.CONFIRM:
        return check_confirm(match, role)
    if action == MatchAction.REJECT:
        return check_reject(match, role, now, reason)
    if action == MatchAction.WITHDRAW:
        return check_withdraw(match, role, now)
    return check_confirm_completion(match, role, details)


def confirm(match, role, now):
    refusal = check_confirm(match, role)
    if refusal:
        return TransitionResult(match=match, refusal=refusal)

    update = {}
    if role == MatchRole.DONOR:
        update.update(donor_confirmed=True, donor_confirmed_at=now)
        both = match.recipient_confirmed
    else:
        update.update(recipient_confirmed=True, recipient_confirmed_at=now)
        both = match.donor_confirmed

    if match.first_confirmer is None:
        update.update(first_confirmer=role, first_confirmed_at=now)

    update['status'] = MatchStatus.CONFIRMED if both else PARTY_CONFIRMED_STATUS[role]
    return TransitionResult(match=match.model_copy(update=update))


def reject(match, role, now, reason):
    if not reason or not reason.strip():
        return TransitionResult(
            match=match,
            refusal=_refuse(RefusalReason.REASON_REQUIRED, "A reason is required to reject a match"),
        )
    refusal = check_reject(match, role, now, reason)
    if refusal:
        return TransitionResult(match=match, refusal=refusal)
    return TransitionResult(match=match.model_copy(update={'status': MatchStatus.REJECTED}))


def withdraw(match, role, now, reason=None):
    refusal = check_withdraw(match, role, now)
    if refusal:
        return TransitionResult(match=match, refusal=refusal)

    update = {
        'withdrawn_by': role,
        'withdrawn_at': now,
        'withdrawal_reason': reason.strip() if reason else None,
    }
    if role == MatchRole.DONOR:
        update.update(donor_confirmed=False, donor_confirmed_at=None)
    else:
        update.update(recipient_confirmed=False, recipient_confirmed_at=None)

    other = other_role(role)
    if is_party_confirmed(match, other):
        update['status'] = PARTY_CONFIRMED_STATUS[other]
    else:
        update['status'] = MatchStatus.PENDING
    return TransitionResult(match=match.model_copy(update=update))


def confirm_completion(match, role, now, details: CompletionDetails):
    if details is None:
        return TransitionResult(
            match=match,
            refusal=_refuse(RefusalReason.RECEIVED_DATE_REQUIRED, "The received date is required"),
        )
    refusal = check_confirm_completion(match, role, details)
    if refusal:
        return TransitionResult(match=match, refusal=refusal)

    update = {
        'status': MatchStatus.COMPLETED,
        'completed_at': now,
        'received_date': details.received_date,
        'completion_notes': details.notes.strip() if details.notes else None,
        'recipient_rating': details.rating,
        'hospital_name': details.hospital_name,
    }
    return TransitionResult(match=match.model_copy(update=update))


def apply(match, action, role, now, reason=None, details=None):
    """Apply a client-initiated action, returning the new record or a refusal."""
    action = MatchAction(action)
    if action == MatchAction.CONFIRM:
        return confirm(match, role, now)
    if action == MatchAction.REJECT:
        return reject(match, role, now, reason)
    if action == MatchAction.WITHDRAW:
        return withdraw(match, role, now, reason)
    return confirm_completion(match, role, now, details)


def apply_server_status(match, status, at=None, reason=None):
    """
    Apply a server-originated terminal status.

    Re-applying the status the match already has is a no-op, so the same
    event arriving over both push and pull is harmless. A status stamped
    earlier than the held record, or one aimed at a completed match, is
    ignored.
    """
    status = MatchStatus(status)
    if status not in SERVER_ONLY_STATUSES:
        raise ValueError(f"{status.value} is not a server-initiated status")
    if match.status == status:
        logger.debug(f"Match {match.match_id} already {status.value}; ignoring repeat")
        return match
    if at is not None and match.updated_at is not None and at < match.updated_at:
        logger.debug(
            f"Ignoring stale {status.value} for match {match.match_id} "
            f"({at.isoformat()} < {match.updated_at.isoformat()})"
        )
        return match
    if match.status == MatchStatus.COMPLETED or match.completed_at is not None:
        logger.warning(f"Ignoring {status.value} for completed match {match.match_id}")
        return match
    if match.status in TERMINAL_STATUSES:
        logger.warning(
            f"Match {match.match_id} moved from terminal {match.status.value} to {status.value} by server"
        )

    update = {'status': status}
    if status == MatchStatus.EXPIRED:
        update['expired_at'] = at or match.expired_at
        update['expiry_reason'] = reason or match.expiry_reason
    if at is not None and (match.updated_at is None or at > match.updated_at):
        update['updated_at'] = at
    return match.model_copy(update=update)


@dataclass(frozen=True)
class StatusDisplay:
    text: str
    subtext: Optional[str]
    description: str


STATUS_DISPLAY = {
    MatchStatus.PENDING: StatusDisplay("Pending", None, "Awaiting confirmation from both parties"),
    MatchStatus.DONOR_CONFIRMED: StatusDisplay("Donor Confirmed", None, "Donor confirmed, waiting for recipient"),
    MatchStatus.RECIPIENT_CONFIRMED: StatusDisplay("Recipient Confirmed", None, "Recipient confirmed, waiting for donor"),
    MatchStatus.CONFIRMED: StatusDisplay("Confirmed", None, "Both parties confirmed"),
    MatchStatus.COMPLETED: StatusDisplay("Completed", None, "Successfully completed"),
    MatchStatus.REJECTED: StatusDisplay("Rejected", None, "Match rejected by user"),
    MatchStatus.EXPIRED: StatusDisplay("Expired", None, "Match expired before both parties confirmed"),
    MatchStatus.CANCELLED_BY_DONOR: StatusDisplay("Cancelled", "by donor", "Cancelled by donor"),
    MatchStatus.CANCELLED_BY_RECIPIENT: StatusDisplay("Cancelled", "by recipient", "Cancelled by recipient"),
}


def describe_status(status):
    try:
        return STATUS_DISPLAY[MatchStatus(status)]
    except ValueError:
        text = str(status).replace("_", " ")
        return StatusDisplay(text, None, text)
