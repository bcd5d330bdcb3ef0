from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "invalid_credentials",
    "account_unavailable",
    "account_not_verified",
    "account_inactive",
    "account_suspended",
    "account_locked",
    "invalid_or_expired_artifact",
    "invalid_two_factor_code",
    "invalid_session",
    "invalid_refresh_token",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable machine-readable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Response wrapper shared by every endpoint."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    """At least 8 characters mixing letters and digits, at most 128."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    if not any(ch.isalpha() for ch in value) or not any(ch.isdigit() for ch in value):
        raise ValueError("password must contain both letters and digits")
    return value


class _EmailRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return _validate_email(value)


class RegisterRequest(_EmailRequest):
    password: str = Field(..., max_length=128)
    role: Literal["student", "employer", "university"] = "student"

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class RegisterResponse(BaseModel):
    account_id: str
    email: str
    role: str
    is_verified: bool
    status: str
    verification_expires_at: datetime


class VerifyEmailRequest(_EmailRequest):
    token: str = Field(..., min_length=1, max_length=256)


class EmailOnlyRequest(_EmailRequest):
    pass


class LoginRequest(_EmailRequest):
    password: str = Field(..., max_length=128)
    two_factor_code: Optional[str] = Field(default=None, max_length=16)
    remember_me: bool = False
    device_name: Optional[str] = Field(default=None, max_length=128)


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_expires_in: int


class LoginResponse(BaseModel):
    account_id: str
    email: str
    role: str
    requires_two_factor: bool = False
    session_id: Optional[str] = None
    tokens: Optional[TokenResponse] = None
    is_first_login: bool = False
    password_expires_in_days: Optional[int] = None


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=4096)


class ResetPasswordRequest(_EmailRequest):
    code: str = Field(..., min_length=1, max_length=16)
    new_password: str = Field(..., max_length=128)

    @field_validator("new_password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., max_length=128)
    new_password: str = Field(..., max_length=128)

    @field_validator("new_password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @model_validator(mode="after")
    def _must_differ(self):
        if self.current_password == self.new_password:
            raise ValueError("new password must differ from the current password")
        return self


class AccountResponse(BaseModel):
    account_id: str
    email: str
    role: str
    is_verified: bool
    status: str
    session_id: Optional[str] = None


class SessionResponse(BaseModel):
    id: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_name: Optional[str] = None
    created_at: datetime
    last_activity: datetime
    current: bool = False


class TwoFactorCodeRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=16)


class TwoFactorSetupResponse(BaseModel):
    secret: str
    otpauth_uri: str
    backup_codes: List[str]


class TwoFactorStatusResponse(BaseModel):
    enabled: bool
    confirmed: bool
    backup_codes_remaining: int


class BackupCodesResponse(BaseModel):
    backup_codes: List[str]


class DeactivateAccountRequest(BaseModel):
    password: str = Field(..., max_length=128)
    reason: Optional[str] = Field(default=None, max_length=500)


class ReactivateAccountRequest(_EmailRequest):
    code: str = Field(..., min_length=1, max_length=16)


class SecurityEventResponse(BaseModel):
    event: str
    created_at: datetime
    meta: Optional[dict] = None


class SecurityAuditResponse(BaseModel):
    recent_logins: List[SecurityEventResponse]
    failed_attempts: int
    active_sessions: List[SessionResponse]
    two_factor_enabled: bool
    last_password_change: Optional[datetime] = None
    last_login: Optional[datetime] = None
