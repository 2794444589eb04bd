"""
Session providers and acting-user identity.

The auth provider itself is external; this module only asks it for the
current session and derives the display name recorded in the audit trail.
"""

from __future__ import annotations

from typing import Optional, Protocol

import httpx
import structlog

from .errors import AuthRequired, RemoteFailure
from .remote.rest import RestRemote
from .schemas.users import Session, UserProfile

log = structlog.get_logger()

UNKNOWN_USER = "Unknown User"


class SessionProvider(Protocol):
    async def get_session(self) -> Optional[Session]:
        ...


class StaticSessionProvider:
    """Holds a session handed to it by the host application."""

    def __init__(self, session: Optional[Session] = None):
        self._session = session

    async def get_session(self) -> Optional[Session]:
        return self._session

    def sign_in(self, session: Session) -> None:
        self._session = session
        log.info("auth.signed_in", user_id=session.user_id)

    def sign_out(self) -> None:
        self._session = None
        log.info("auth.signed_out")


class RestSessionProvider:
    """Resolves the session from the hosted backend's access token."""

    def __init__(self, remote: RestRemote):
        self._remote = remote
        self._cached: Optional[Session] = None

    def invalidate(self) -> None:
        self._cached = None

    async def get_session(self) -> Optional[Session]:
        if self._cached and self._cached.access_token == self._remote.access_token:
            return self._cached
        try:
            user = await self._remote.get_user()
        except RemoteFailure as exc:
            cause = exc.cause
            if isinstance(cause, httpx.HTTPStatusError) and cause.response.status_code in (401, 403):
                log.info("auth.token_rejected", status=cause.response.status_code)
                self._cached = None
                return None
            raise
        if not user:
            self._cached = None
            return None
        self._cached = Session(
            user_id=user["id"],
            email=user.get("email"),
            access_token=self._remote.access_token,
            user_metadata=user.get("user_metadata") or {},
        )
        return self._cached


async def require_session(provider: SessionProvider) -> Session:
    session = await provider.get_session()
    if session is None:
        raise AuthRequired()
    return session


def resolve_display_name(session: Optional[Session], profile: Optional[UserProfile]) -> str:
    """`Name (Designation)` for the acting user.

    Name comes from the profile, then session metadata, then the email.
    """
    metadata = session.user_metadata if session else {}
    name = (
        (profile.name if profile else None)
        or metadata.get("name")
        or (session.email if session else None)
        or UNKNOWN_USER
    )
    designation = (profile.designation if profile else None) or metadata.get("designation") or ""
    return f"{name} ({designation})" if designation else name
