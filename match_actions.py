# match_actions.py

"""
Match actions as the signed-in user performs them.

Each action goes through the same steps: authorize against the current
session and wall-clock time, apply the transition locally, call the backend,
then keep the local result on success or replace it with the server's record
on conflict. Refusals come back as values; transport failures propagate.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Set

import match_lifecycle
from api.models.schemas import CompletionDetails, MatchResult, MatchRole, MatchStatus
from api.utils.api_client import ApiGateway
from confirmation_gate import MatchView, authorize, derive_role, derive_view
from errors import (
    ALREADY_CONFIRMED,
    GRACE_PERIOD_EXPIRED,
    MATCH_NOT_FOUND,
    NOT_REGISTERED_AS_DONOR,
    NOT_REGISTERED_AS_RECIPIENT,
    RECONFIRMATION_WINDOW_CLOSED,
    AuthRequiredError,
    ForbiddenError,
    NotFoundError,
)
from match_lifecycle import MatchAction, Refusal, RefusalReason
from match_registry import MatchRegistry
from optimistic import apply_optimistically
from session_state import SessionManager
from utils import utc_now

logger = logging.getLogger(__name__)

CONFLICT_REFUSALS = {
    GRACE_PERIOD_EXPIRED: Refusal(
        RefusalReason.GRACE_PERIOD_EXPIRED, "The 2-hour grace period for this match has passed",
    ),
    ALREADY_CONFIRMED: Refusal(
        RefusalReason.ALREADY_CONFIRMED, "You have already confirmed this match",
    ),
    RECONFIRMATION_WINDOW_CLOSED: Refusal(
        RefusalReason.RECONFIRMATION_WINDOW_CLOSED, "The window to reconfirm this match has closed",
    ),
}
NOT_ACTIONABLE = Refusal(RefusalReason.MATCH_NOT_ACTIONABLE, "This match is no longer actionable")


@dataclass(frozen=True)
class ActionOutcome:
    success: bool
    match: Optional[MatchResult] = None
    message: Optional[str] = None
    refusal: Optional[Refusal] = None


class MatchActionService:
    def __init__(
        self,
        gateway: ApiGateway,
        sessions: SessionManager,
        registry: Optional[MatchRegistry] = None,
        clock: Callable = utc_now,
    ):
        self.gateway = gateway
        self.sessions = sessions
        self.registry = registry if registry is not None else MatchRegistry()
        self.clock = clock
        self._inflight: Set[asyncio.Future] = set()
        self._generation = 0
        sessions.add_listener(self._on_session_change)

    def _on_session_change(self, session):
        if session is not None:
            return
        for task in list(self._inflight):
            task.cancel()
        self._inflight.clear()
        self._generation += 1
        self.registry.clear()
        logger.debug("Match actions torn down after logout")

    # Loading

    async def load_matches(self, kind: str = 'active') -> List[MatchResult]:
        matches = await self.gateway.fetch_matches(kind)
        return self.registry.merge_many(matches)

    async def load_my_matches(self) -> List[MatchResult]:
        """Load both sides of the caller's matches, skipping a side they are not registered for."""
        loaded = []
        for kind, tag in (('as-donor', NOT_REGISTERED_AS_DONOR), ('as-recipient', NOT_REGISTERED_AS_RECIPIENT)):
            try:
                loaded.extend(await self.load_matches(kind))
            except ForbiddenError as e:
                if e.tag != tag:
                    raise
                logger.info(f"Skipping {kind} matches: {tag}")
        return loaded

    def get(self, match_id) -> MatchResult:
        match = self.registry.get(match_id)
        if match is None:
            raise NotFoundError(f"Match {match_id} is not loaded", tag=MATCH_NOT_FOUND)
        return match

    def view(self, match_id, now=None) -> MatchView:
        return derive_view(self.get(match_id), self.sessions.current, now or self.clock())

    # Actions

    async def confirm(self, match_id) -> ActionOutcome:
        return await self._perform(
            match_id, MatchAction.CONFIRM,
            lambda role: self.gateway.confirm_match(match_id, role),
        )

    async def reject(self, match_id, reason) -> ActionOutcome:
        return await self._perform(
            match_id, MatchAction.REJECT,
            lambda role: self.gateway.reject_match(match_id, role, reason.strip()),
            reason=reason,
        )

    async def withdraw(self, match_id, reason) -> ActionOutcome:
        return await self._perform(
            match_id, MatchAction.WITHDRAW,
            lambda role: self.gateway.withdraw_confirmation(match_id, role, reason.strip()),
            reason=reason,
        )

    async def confirm_completion(self, match_id, details: CompletionDetails) -> ActionOutcome:
        return await self._perform(
            match_id, MatchAction.COMPLETE,
            lambda role: self.gateway.confirm_completion(match_id, details),
            details=details,
        )

    async def check_completion_eligibility(self, match_id) -> bool:
        """Ask the server whether completion may be confirmed and remember its answer."""
        match = self.get(match_id)
        if derive_role(match, self.sessions.current) != MatchRole.RECIPIENT:
            return False
        can_confirm = await self.gateway.can_confirm_completion(match_id)
        current = self.registry.get(match_id)
        if current is not None:
            self.registry.put_local(current.model_copy(update={'can_confirm_completion': can_confirm}))
        return can_confirm

    async def verify_confirmation_status(self, match_id) -> bool:
        """Server's view of whether both parties have confirmed."""
        confirmed = await self.gateway.get_match_confirmation_status(match_id)
        match = self.get(match_id)
        if confirmed != match.is_confirmed:
            logger.info(f"Match {match_id} confirmation differs from server; reloading")
            role = derive_role(match, self.sessions.current)
            if role != MatchRole.UNKNOWN:
                server = await self.gateway.fetch_match(match_id, role)
                if server is not None:
                    self.registry.replace(server)
        return confirmed

    def apply_server_status(self, match_id, status, at=None, reason=None) -> Optional[MatchResult]:
        """Apply EXPIRED / CANCELLED_BY_* pushed by the server to a loaded match."""
        match = self.registry.get(match_id)
        if match is None:
            logger.debug(f"Server status {status} for unknown match {match_id}; ignoring")
            return None
        updated = match_lifecycle.apply_server_status(match, status, at=at, reason=reason)
        if updated is not match:
            logger.info(f"Match {match_id} is now {MatchStatus(status).value}")
            self.registry.replace(updated)
        return updated

    async def _perform(self, match_id, action, remote, reason=None, details=None) -> ActionOutcome:
        session = self.sessions.current
        match = self.get(match_id)
        now = self.clock()

        authorization = authorize(match, session, action, reason=reason, details=details, now=now)
        if not authorization.allowed:
            logger.info(f"{action.value} on match {match_id} refused: {authorization.refusal.reason.value}")
            return ActionOutcome(success=False, match=match, refusal=authorization.refusal)

        role = derive_role(match, session)
        transition = match_lifecycle.apply(
            match, action, role, now,
            reason=reason.strip() if reason else None,
            details=details,
        )
        if not transition.allowed:
            return ActionOutcome(success=False, match=match, refusal=transition.refusal)

        generation = self._generation

        def rollback():
            if generation == self._generation:
                self.registry.put_local(match)

        async def call_remote():
            task = asyncio.ensure_future(remote(role))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
            return await task

        async def reconcile(error):
            server = await self.gateway.fetch_match(match_id, role)
            if generation != self._generation:
                return None
            if server is None:
                self.registry.put_local(match)
                return match
            self.registry.replace(server)
            return server

        try:
            outcome = await apply_optimistically(
                f"{action.value} match {match_id}",
                apply_local=lambda: self.registry.put_local(transition.match),
                remote=call_remote,
                rollback=rollback,
                on_conflict=reconcile,
            )
        except asyncio.CancelledError:
            if generation != self._generation:
                raise AuthRequiredError() from None
            raise

        if outcome.confirmed:
            logger.info(f"{action.value} on match {match_id} as {role.value} accepted")
            return ActionOutcome(success=True, match=self.registry.get(match_id), message=outcome.value)

        refusal = CONFLICT_REFUSALS.get(outcome.error.tag, NOT_ACTIONABLE)
        return ActionOutcome(success=False, match=outcome.value, refusal=refusal)
