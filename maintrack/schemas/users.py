from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field


class Session(BaseModel):
    """An authenticated session as yielded by the auth provider."""
    user_id: str
    email: Optional[str] = None
    access_token: Optional[str] = None
    user_metadata: dict[str, Any] = Field(default_factory=dict)


class UserProfile(BaseModel):
    id: str
    name: Optional[str] = None
    designation: Optional[str] = None
    unit_id: Optional[str] = None


class ProfileUpdate(BaseModel):
    name: str
    designation: str = ""
    unit_id: str
