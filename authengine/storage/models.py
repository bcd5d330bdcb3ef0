from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountStatus(str, Enum):
    INACTIVE = "INACTIVE"
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"


class ArtifactPurpose(str, Enum):
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"
    TWO_FACTOR = "two_factor"
    ACCOUNT_REACTIVATION = "account_reactivation"


class ArtifactKind(str, Enum):
    CODE = "code"
    TOKEN = "token"


class ArtifactCheck(str, Enum):
    """Outcome of a single conditional artifact verification."""

    MISSING = "missing"
    EXPIRED = "expired"
    EXHAUSTED = "exhausted"
    USED = "used"
    MISMATCH = "mismatch"
    MATCH = "match"


class SecurityEventType(str, Enum):
    REGISTRATION = "REGISTRATION"
    EMAIL_VERIFIED = "EMAIL_VERIFIED"
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    TWO_FACTOR_FAILED = "TWO_FACTOR_FAILED"
    PASSWORD_RESET_REQUESTED = "PASSWORD_RESET_REQUESTED"
    PASSWORD_RESET_COMPLETED = "PASSWORD_RESET_COMPLETED"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    TWO_FACTOR_ENABLED = "TWO_FACTOR_ENABLED"
    TWO_FACTOR_DISABLED = "TWO_FACTOR_DISABLED"
    BACKUP_CODES_REGENERATED = "BACKUP_CODES_REGENERATED"
    ACCOUNT_DEACTIVATED = "ACCOUNT_DEACTIVATED"
    ACCOUNT_REACTIVATED = "ACCOUNT_REACTIVATED"
    SESSION_REVOKED = "SESSION_REVOKED"
    ALL_SESSIONS_REVOKED = "ALL_SESSIONS_REVOKED"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    REFRESH_TOKEN_REUSED = "REFRESH_TOKEN_REUSED"


@dataclass
class Account:
    id: str
    email: str
    role: str = "student"
    is_verified: bool = False
    status: AccountStatus = AccountStatus.INACTIVE
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    password_changed_at: Optional[datetime] = None
    last_login: Optional[datetime] = None
    meta: Dict | None = None


@dataclass
class VerificationArtifact:
    email: str
    purpose: ArtifactPurpose
    kind: ArtifactKind
    value_hash: str
    expires_at: datetime
    attempts: int = 0
    is_used: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Session:
    id: str
    account_id: str
    created_at: datetime
    last_activity: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_name: Optional[str] = None
    is_active: bool = True
    revoked_at: Optional[datetime] = None
    meta: Dict | None = None

    @classmethod
    def new(
        cls,
        account_id: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
        device_name: str | None = None,
        *,
        meta: Dict | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            account_id=account_id,
            created_at=now,
            last_activity=now,
            ip_address=ip_address,
            user_agent=user_agent,
            device_name=device_name,
            meta=meta,
        )


@dataclass
class TwoFactorEnrollment:
    account_id: str
    secret: str
    is_confirmed: bool = False
    created_at: datetime = field(default_factory=utcnow)
    confirmed_at: Optional[datetime] = None


@dataclass
class BackupCode:
    id: str
    account_id: str
    code_hash: str
    is_used: bool = False
    created_at: datetime = field(default_factory=utcnow)
    used_at: Optional[datetime] = None


@dataclass
class LockoutRecord:
    email: str
    failed_attempts: int = 0
    last_failed_attempt: Optional[datetime] = None
    locked_until: Optional[datetime] = None
    last_ip: Optional[str] = None


@dataclass
class SecurityEvent:
    id: str
    account_id: str
    event: SecurityEventType
    created_at: datetime = field(default_factory=utcnow)
    meta: Dict | None = None
