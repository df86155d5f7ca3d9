from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Bodies are bounded here; character-class and confirmation rules are enforced by the
# password policy in the service layer so every entry point shares the same messages.
MAX_PASSWORD_LENGTH = 128
MAX_EMAIL_LENGTH = 254


def _strip(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return value.strip()


class Envelope(BaseModel):
    """Uniform response body: ``{statusCode, message, data}``."""

    statusCode: int
    message: str
    data: Optional[Any] = None


class AdminView(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., alias="_id")
    email: str
    is_disabled: bool


class LoginRequest(BaseModel):
    email: Optional[str] = Field(default=None, max_length=MAX_EMAIL_LENGTH)
    password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_LENGTH)

    @field_validator("email")
    @classmethod
    def _strip_email(cls, value: Optional[str]) -> Optional[str]:
        return _strip(value)


class LoginResponse(BaseModel):
    user: AdminView
    token: str


class UpdatePasswordRequest(BaseModel):
    current_password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_LENGTH)
    password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_LENGTH)
    confirm_password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_LENGTH)


class PasswordResetRequest(BaseModel):
    email: str = Field(..., max_length=MAX_EMAIL_LENGTH)

    @field_validator("email")
    @classmethod
    def _strip_email(cls, value: str) -> str:
        return value.strip()


class PasswordResetConfirm(BaseModel):
    password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_LENGTH)
    confirm_password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_LENGTH)


class InviteRequest(BaseModel):
    email: str = Field(..., max_length=MAX_EMAIL_LENGTH)


class AcceptInviteRequest(BaseModel):
    password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_LENGTH)
    confirm_password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_LENGTH)
