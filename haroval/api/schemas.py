from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

MAX_USERNAME_LENGTH = 64
# Bounds the hashing work a single request can demand
MAX_PASSWORD_LENGTH = 1024


class ErrorBody(BaseModel):
    """Error payload. Carries no request-specific data so identical failures
    serialize identically."""

    error: str
    code: str
    details: Optional[Any] = None


class LoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    username: str = Field(..., max_length=MAX_USERNAME_LENGTH)
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class RegisterRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    username: str = Field(..., max_length=MAX_USERNAME_LENGTH)
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    confirm_password: str = Field(
        ..., alias="confirmPassword", max_length=MAX_PASSWORD_LENGTH
    )


class ProfileUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    username: str = Field(..., max_length=MAX_USERNAME_LENGTH)
    current_password: str = Field(
        ..., alias="currentPassword", max_length=MAX_PASSWORD_LENGTH
    )
    new_password: Optional[str] = Field(
        default=None, alias="newPassword", max_length=MAX_PASSWORD_LENGTH
    )


class UserPublic(BaseModel):
    id: str
    username: str


class UserResponse(BaseModel):
    user: UserPublic


class MessageResponse(BaseModel):
    message: str


class ProfileResponse(BaseModel):
    message: str
    user: UserPublic


class GoogleAuthStartResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    auth_url: str = Field(..., serialization_alias="authUrl")
    message: str
