"""Per-user session controllers for the HTTP surface."""

import asyncio
from collections import defaultdict
from typing import Callable, DefaultDict, Dict, Tuple
from uuid import UUID

import structlog

from ..domain.models import User, utcnow
from ..repositories.base import Repository
from ..services.identity import IdentityContext
from ..services.session import SessionController

logger = structlog.get_logger()

ControllerFactory = Callable[[IdentityContext], SessionController]


class SessionRegistry:
    """Keeps one identity context and one controller per signed-in user.

    Controllers serialize exchanges for their user; a second request while
    one is running is rejected by the controller itself.
    """

    def __init__(self, repository: Repository, controller_factory: ControllerFactory) -> None:
        self.repository = repository
        self._controller_factory = controller_factory
        self._sessions: Dict[UUID, Tuple[IdentityContext, SessionController]] = {}
        # Serializes the first request of each user so only one controller is built
        self._open_locks: DefaultDict[UUID, asyncio.Lock] = defaultdict(asyncio.Lock)
        logger.info("session_registry_initialized")

    def __len__(self) -> int:
        return len(self._sessions)

    async def get(self, user: User) -> SessionController:
        """Controller for ``user``, signing them in on first use."""
        entry = self._sessions.get(user.id)
        if entry is not None:
            identity, controller = entry
            identity.refresh(user)
            return controller

        async with self._open_locks[user.id]:
            entry = self._sessions.get(user.id)
            if entry is not None:
                identity, controller = entry
                identity.refresh(user)
                return controller

            user = await self.repository.update_user(user.id, {"last_login_at": utcnow()})
            identity = IdentityContext()
            controller = self._controller_factory(identity)
            identity.sign_in(user)
            self._sessions[user.id] = (identity, controller)
        logger.info("session_opened", user_id=str(user.id), open_sessions=len(self._sessions))
        return controller

    def conversation_deleted(self, user_id: UUID, conversation_id: UUID) -> bool:
        """Tell the owner's session that one of their conversations is gone."""
        entry = self._sessions.get(user_id)
        if entry is None:
            return False
        _, controller = entry
        return controller.conversation_removed(conversation_id)

    def sign_out(self, user_id: UUID) -> bool:
        entry = self._sessions.pop(user_id, None)
        self._open_locks.pop(user_id, None)
        if entry is None:
            return False
        identity, controller = entry
        identity.sign_out()
        controller.close()
        logger.info("session_closed", user_id=str(user_id), open_sessions=len(self._sessions))
        return True

    def close(self) -> None:
        for user_id in list(self._sessions):
            self.sign_out(user_id)
