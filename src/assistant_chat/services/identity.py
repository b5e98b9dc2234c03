"""Explicit identity context handed to session controllers."""

from typing import Callable, List, Optional

import structlog

from ..domain.models import User

logger = structlog.get_logger()

IdentityListener = Callable[[Optional[User], Optional[User]], None]


class IdentityContext:
    """Holds the signed-in user and notifies listeners on login/logout.

    Listeners are called as ``listener(previous, current)``. ``refresh``
    swaps in a newer copy of the same user (e.g. updated counters) without
    notifying, since the identity itself has not changed.
    """

    def __init__(self, user: Optional[User] = None) -> None:
        self._user = user
        self._listeners: List[IdentityListener] = []

    @property
    def current_user(self) -> Optional[User]:
        return self._user

    def subscribe(self, listener: IdentityListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def sign_in(self, user: User) -> None:
        previous = self._user
        self._user = user
        logger.info("identity_signed_in", user_id=str(user.id))
        if previous is None or previous.id != user.id:
            self._notify(previous, user)

    def sign_out(self) -> None:
        previous = self._user
        if previous is None:
            return
        self._user = None
        logger.info("identity_signed_out", user_id=str(previous.id))
        self._notify(previous, None)

    def refresh(self, user: User) -> None:
        if self._user is None or self._user.id != user.id:
            raise ValueError("refresh() only accepts the signed-in user")
        self._user = user

    def _notify(self, previous: Optional[User], current: Optional[User]) -> None:
        for listener in list(self._listeners):
            listener(previous, current)
