"""Ownership checks gating event management actions."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import TypeVar

from .errors import AuthorizationError
from .schemas import Event
from .utils import normalize_email

logger = logging.getLogger("uvicorn.error")

E = TypeVar("E", bound=Event)


@dataclass(frozen=True)
class Identity:
    """The signed-in user as reported by the session collaborator."""

    email: str = ""
    username: str = ""
    is_admin: bool = False

    @property
    def is_authenticated(self) -> bool:
        return bool(self.email.strip() or self.username.strip())

    @classmethod
    def from_values(
        cls,
        email: str | None,
        username: str | None = None,
        *,
        admins: Iterable[str] = (),
    ) -> "Identity | None":
        email = (email or "").strip()
        username = (username or "").strip()
        if not email and not username:
            return None
        admin_set = set(admins)
        is_admin = bool(
            (email and normalize_email(email) in admin_set)
            or (username and username.casefold() in admin_set)
        )
        return cls(email=email, username=username, is_admin=is_admin)


def user_owns_event(event: Event | None, user: Identity | None) -> bool:
    """Return True when ``user`` created ``event``.

    Emails compare case-insensitively after trimming; usernames are trimmed
    but otherwise exact. Missing identities never match.
    """
    if event is None or user is None or not user.is_authenticated:
        return False
    if user.email and event.created_by:
        if normalize_email(event.created_by) == normalize_email(user.email):
            return True
    if user.username and event.created_by_username:
        if event.created_by_username.strip() == user.username.strip():
            return True
    return False


def can_manage(event: Event | None, user: Identity | None) -> bool:
    if user is not None and user.is_admin and event is not None:
        return True
    return user_owns_event(event, user)


def require_owner(event: Event | None, user: Identity | None, *, action: str) -> None:
    """Raise ``AuthorizationError`` unless ``user`` may ``action`` ``event``."""
    if user is None or not user.is_authenticated:
        logger.warning("Denied %s: no signed-in user", action)
        raise AuthorizationError(f"You must be signed in to {action}", status_code=401)
    if not can_manage(event, user):
        logger.warning(
            "Denied %s on event %s for %s",
            action,
            event.id if event else "<missing>",
            user.email or user.username,
        )
        raise AuthorizationError(
            f"You do not have permission to {action} this event", status_code=403
        )


def filter_owned(events: Mapping[str, E], user: Identity | None) -> dict[str, E]:
    """Return only the events ``user`` may see on their dashboard."""
    return {
        event_id: event for event_id, event in events.items() if can_manage(event, user)
    }
