"""
Pydantic schemas for the Google / Apple sign-in endpoints.

Field names are the wire contract shared with the frontend (Apple's `user` object
keeps its camelCase keys).
"""
from __future__ import annotations

import json
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models.user import User


class GoogleAuthIn(BaseModel):
    id_token: str = Field(min_length=1)


class AppleNameIn(BaseModel):
    firstName: Optional[str] = None
    lastName: Optional[str] = None


class AppleUserIn(BaseModel):
    name: Optional[AppleNameIn] = None
    email: Optional[str] = None


class AppleAuthIn(BaseModel):
    identity_token: str = Field(min_length=1)
    user: Optional[AppleUserIn] = Field(
        None,
        description="Only sent by Apple on the first authorization for this app.",
    )

    @field_validator("user", mode="before")
    @classmethod
    def _parse_user_string(cls, value: Any) -> Any:
        # Apple's form_post delivers `user` as a JSON string; some frontends forward it verbatim.
        if isinstance(value, str):
            if not value.strip():
                return None
            try:
                return json.loads(value)
            except ValueError as e:
                raise ValueError("user must be a JSON object") from e
        return value


class UserOut(BaseModel):
    id: int
    user_id: int
    username: str
    email: Optional[str] = None
    first_name: str = ""
    last_name: str = ""
    role: str
    user_uid: str
    phone_number: Optional[str] = None
    media_data: Optional[Any] = None
    other_data: Optional[Any] = None
    user_data: Optional[Any] = None

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_user(cls, user: User) -> UserOut:
        return cls(
            id=user.id,
            user_id=user.id,
            username=user.username,
            email=user.email,
            first_name=user.first_name or "",
            last_name=user.last_name or "",
            role=user.role,
            user_uid=user.user_uid,
            phone_number=user.phone_number,
            media_data=user.media_data,
            other_data=user.other_data,
            user_data=user.user_data,
        )


class SocialAuthOut(BaseModel):
    access: str
    refresh: str
    user: Optional[UserOut] = None


class ErrorOut(BaseModel):
    error: str
    detail: Optional[str] = None
