"""Resume an in-progress ride after the app was closed or restarted."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .identity import ActorProvider

if TYPE_CHECKING:
    from ..infrastructure.database.store import SessionStore
    from .session import RideSession

logger = logging.getLogger(__name__)


class RideSessionRecovery:
    """
    Look up the actor's newest in_progress ride and rehydrate the session.

    Await ``recover()`` before offering the start action; it does not lock
    against a concurrent ``start()``. Running it again against the same ride
    is a no-op, so the GPS watch is never duplicated.
    """

    def __init__(self, session: RideSession, store: SessionStore, actor: ActorProvider) -> None:
        self._session = session
        self._store = store
        self._actor = actor
        self.runs = 0
        self.last_error: Exception | None = None

    async def recover(self) -> RideSession | None:
        """
        Returns:
            The resumed session, or None when there is nothing to resume
        """
        self.runs += 1
        self.last_error = None

        user_id = self._actor()
        if not user_id:
            logger.debug("Recovery skipped: no signed-in actor")
            return None

        try:
            record = await self._store.find_active_by_user(user_id)
        except Exception as e:
            self.last_error = e
            logger.error("Failed to load active ride for %s: %s", user_id, e)
            return None

        if record is None:
            logger.debug("No ride in progress for %s", user_id)
            return None

        self._session.resume(record)
        return self._session
