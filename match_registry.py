# match_registry.py

import logging
from typing import Callable, Dict, Iterable, List, Optional

from api.models.schemas import MatchResult, MatchStatus

logger = logging.getLogger(__name__)

MatchListener = Callable[[MatchResult], None]


class MatchRegistry:
    """
    The client's copy of every match it has seen, keyed by match id.

    Two write paths:
    - ``put_local`` for tentative client transitions and rollbacks
    - ``merge_server`` for server snapshots, last-writer-wins on ``updated_at``
      when both sides carry one, full replacement otherwise
    """

    def __init__(self):
        self._matches: Dict[str, MatchResult] = {}
        self._listeners: List[MatchListener] = []

    def __len__(self):
        return len(self._matches)

    def __contains__(self, match_id):
        return match_id in self._matches

    def get(self, match_id) -> Optional[MatchResult]:
        return self._matches.get(match_id)

    def all(self, status: Optional[MatchStatus] = None) -> List[MatchResult]:
        matches = list(self._matches.values())
        if status is not None:
            matches = [m for m in matches if m.status == status]
        return matches

    def add_listener(self, listener: MatchListener):
        self._listeners.append(listener)

    def put_local(self, match: MatchResult):
        self._store(match)

    def replace(self, match: MatchResult):
        """Unconditionally take the server's record, discarding local state."""
        self._store(match)

    def merge_server(self, match: MatchResult) -> MatchResult:
        """Merge an authoritative snapshot; returns whichever record is kept."""
        current = self._matches.get(match.match_id)
        if (
            current is not None
            and current.updated_at is not None
            and match.updated_at is not None
            and match.updated_at < current.updated_at
        ):
            logger.debug(
                f"Ignoring stale snapshot for match {match.match_id} "
                f"({match.updated_at.isoformat()} < {current.updated_at.isoformat()})"
            )
            return current
        self._store(match)
        return match

    def merge_many(self, matches: Iterable[MatchResult]) -> List[MatchResult]:
        return [self.merge_server(m) for m in matches]

    def clear(self):
        self._matches.clear()

    def _store(self, match):
        self._matches[match.match_id] = match
        for listener in list(self._listeners):
            listener(match)
