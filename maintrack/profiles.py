"""
Profile and unit reads, and profile updates.

Unit membership is re-read from the profile on every task creation, so a
unit change takes effect immediately without ending the session.
"""

from __future__ import annotations

from typing import Optional

import structlog
from pydantic import ValidationError

from .auth import SessionProvider, require_session
from .errors import DecodeError
from .mapping import utcnow
from .notifications import LogNoticeSink, NoticeSink
from .remote.base import RemoteStore
from .schemas.common import Unit
from .schemas.users import ProfileUpdate, UserProfile

log = structlog.get_logger()

PROFILES_TABLE = "profiles"
UNITS_TABLE = "units"


class ProfileService:
    def __init__(
        self,
        remote: RemoteStore,
        sessions: SessionProvider,
        notices: Optional[NoticeSink] = None,
    ):
        self._remote = remote
        self._sessions = sessions
        self._notices = notices or LogNoticeSink()

    async def get_profile(self, user_id: Optional[str] = None) -> Optional[UserProfile]:
        """Profile of `user_id`, or of the signed-in user when omitted."""
        if user_id is None:
            user_id = (await require_session(self._sessions)).user_id
        try:
            rows = await self._remote.select(PROFILES_TABLE, filters={"id": user_id})
        except Exception:
            self._notices.error("Failed to load profile")
            raise
        if not rows:
            return None
        try:
            return UserProfile.model_validate(rows[0])
        except ValidationError as exc:
            raise DecodeError(PROFILES_TABLE, str(exc)) from exc

    async def list_units(self) -> list[Unit]:
        rows = await self._remote.select(UNITS_TABLE, order_by="name")
        try:
            return [Unit.model_validate(r) for r in rows]
        except ValidationError as exc:
            raise DecodeError(UNITS_TABLE, str(exc)) from exc

    async def update_profile(self, update: ProfileUpdate) -> UserProfile:
        """Write name, designation and unit of the signed-in user's profile.

        A missing profile row is created.
        """
        if not update.name.strip() or not update.unit_id.strip():
            self._notices.error("Name and Unit are required")
            raise ValueError("Name and Unit are required")

        session = await require_session(self._sessions)
        values = {
            "name": update.name.strip(),
            "designation": update.designation.strip(),
            "unit_id": update.unit_id,
            "updated_at": utcnow().isoformat(),
        }
        try:
            rows = await self._remote.update(PROFILES_TABLE, values, filters={"id": session.user_id})
            if not rows:
                rows = [await self._remote.insert(PROFILES_TABLE, {"id": session.user_id, **values})]
        except Exception as exc:
            self._notices.error(f"Error: {getattr(exc, 'message', None) or exc}")
            raise

        log.info("profiles.updated", user_id=session.user_id, unit_id=update.unit_id)
        self._notices.success("Profile updated")
        try:
            return UserProfile.model_validate(rows[0])
        except ValidationError as exc:
            raise DecodeError(PROFILES_TABLE, str(exc)) from exc
