from __future__ import annotations

import json
import os
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional

from authengine.logging import get_logger
from authengine.storage.common import (
    ARTIFACT_DELETE,
    ARTIFACT_INCREMENT,
    ARTIFACT_MARK_USED,
    build_secret_cipher,
    decide_artifact_check,
    decrypt_secret,
    encrypt_secret,
    ensure_utc,
    generate_uuid,
    next_lockout_state,
)
from authengine.storage.errors import ConstraintViolation
from authengine.storage.models import (
    Account,
    AccountStatus,
    ArtifactCheck,
    ArtifactKind,
    ArtifactPurpose,
    BackupCode,
    LockoutRecord,
    SecurityEvent,
    SecurityEventType,
    Session,
    TwoFactorEnrollment,
    VerificationArtifact,
    utcnow,
)


class MemoryStore:
    """In-process credential store with JSON snapshot persistence.

    Every public method runs under one re-entrant lock, which makes each call
    an atomic unit the same way a single SQL statement is for PostgresStore.
    """

    def __init__(
        self, fs_root: str = "/tmp/authengine", *, mfa_encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.artifacts: Dict[tuple[str, str], VerificationArtifact] = {}
        self.sessions: Dict[str, Session] = {}
        self.two_factor: Dict[str, TwoFactorEnrollment] = {}
        self.backup_codes: Dict[str, List[BackupCode]] = {}
        self.lockouts: Dict[str, LockoutRecord] = {}
        self.security_events: List[SecurityEvent] = []
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        material = (
            mfa_encryption_key or os.getenv("MFA_SECRET_KEY") or os.getenv("JWT_SECRET")
        )
        if not material:
            raise RuntimeError("MFA_SECRET_KEY or JWT_SECRET is required to encrypt 2FA secrets")
        self._mfa_cipher = build_secret_cipher(material)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return ensure_utc(datetime.fromisoformat(raw)) if raw else None

    # accounts
    def create_account(
        self,
        email: str,
        *,
        role: str = "student",
        status: AccountStatus = AccountStatus.INACTIVE,
        is_verified: bool = False,
        meta: Optional[Dict] = None,
    ) -> Account:
        if status == AccountStatus.ACTIVE and not is_verified:
            raise ConstraintViolation(
                "account cannot be active before verification", {"field": "status"}
            )
        with self._data_lock:
            if any(existing.email == email for existing in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = utcnow()
            account = Account(
                id=generate_uuid(),
                email=email,
                role=role,
                is_verified=is_verified,
                status=status,
                created_at=now,
                updated_at=now,
                meta=dict(meta) if meta else {},
            )
            self.accounts[account.id] = account
            self._persist_state()
            return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            return self.accounts.get(account_id)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            return next((a for a in self.accounts.values() if a.email == email), None)

    def mark_account_verified(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.is_verified = True
            if account.status != AccountStatus.SUSPENDED:
                account.status = AccountStatus.ACTIVE
            account.updated_at = utcnow()
            self._persist_state()
            return account

    def set_account_status(
        self, account_id: str, status: AccountStatus
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            if status == AccountStatus.ACTIVE and not account.is_verified:
                raise ConstraintViolation(
                    "account cannot be active before verification",
                    {"account_id": account_id},
                )
            account.status = status
            account.updated_at = utcnow()
            self._persist_state()
            return account

    def update_account_role(self, account_id: str, role: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.role = role
            account.updated_at = utcnow()
            self._persist_state()
            return account

    def record_login(self, account_id: str, at: datetime) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.last_login = at
            self._persist_state()
            return account

    def save_password(
        self, account_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                raise ConstraintViolation(
                    "account not found for credentials", {"account_id": account_id}
                )
            self.credentials[account_id] = (password_hash, password_algo)
            now = utcnow()
            account.password_changed_at = now
            account.updated_at = now
            self._persist_state()

    def get_password_record(self, account_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(account_id)

    # verification artifacts
    def upsert_artifact(self, artifact: VerificationArtifact) -> VerificationArtifact:
        with self._data_lock:
            self.artifacts[(artifact.email, artifact.purpose.value)] = artifact
            self._persist_state()
            return artifact

    def get_artifact(
        self, email: str, purpose: ArtifactPurpose
    ) -> Optional[VerificationArtifact]:
        with self._data_lock:
            return self.artifacts.get((email, purpose.value))

    def delete_artifact(self, email: str, purpose: ArtifactPurpose) -> bool:
        with self._data_lock:
            removed = self.artifacts.pop((email, purpose.value), None)
            if removed:
                self._persist_state()
            return removed is not None

    def check_artifact(
        self,
        email: str,
        purpose: ArtifactPurpose,
        value_hash: str,
        *,
        now: datetime,
        max_attempts: int,
    ) -> ArtifactCheck:
        key = (email, purpose.value)
        with self._data_lock:
            artifact = self.artifacts.get(key)
            outcome, action = decide_artifact_check(
                artifact, value_hash, now=now, max_attempts=max_attempts
            )
            if action == ARTIFACT_DELETE:
                self.artifacts.pop(key, None)
            elif action == ARTIFACT_INCREMENT:
                artifact.attempts += 1
            elif action == ARTIFACT_MARK_USED:
                artifact.is_used = True
            else:
                return outcome
            self._persist_state()
            return outcome

    # sessions
    def create_session(
        self,
        account_id: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
        device_name: str | None = None,
        *,
        meta: Optional[Dict] = None,
    ) -> Session:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("account does not exist", {"account_id": account_id})
            sess = Session.new(
                account_id,
                ip_address=ip_address,
                user_agent=user_agent,
                device_name=device_name,
                meta=meta,
            )
            self.sessions[sess.id] = sess
            self._persist_state()
            return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def touch_session(self, session_id: str, at: datetime) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active:
                return
            sess.last_activity = at
            self._persist_state()

    def set_session_meta(self, session_id: str, meta: Dict) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return
            sess.meta = dict(meta)
            self._persist_state()

    def swap_refresh_token(
        self, session_id: str, expected_jti: str, meta: Dict
    ) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active:
                return False
            if (sess.meta or {}).get("refresh_jti") != expected_jti:
                return False
            sess.meta = dict(meta)
            self._persist_state()
            return True

    def deactivate_session(
        self, session_id: str, account_id: Optional[str] = None
    ) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active:
                return False
            if account_id is not None and sess.account_id != account_id:
                return False
            sess.is_active = False
            sess.revoked_at = utcnow()
            self._persist_state()
            return True

    def deactivate_account_sessions(
        self, account_id: str, except_session_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            now = utcnow()
            revoked = 0
            for sess in self.sessions.values():
                if sess.account_id != account_id or not sess.is_active:
                    continue
                if except_session_id and sess.id == except_session_id:
                    continue
                sess.is_active = False
                sess.revoked_at = now
                revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    def list_sessions(self, account_id: str, *, active_only: bool = True) -> List[Session]:
        with self._data_lock:
            results = [
                s
                for s in self.sessions.values()
                if s.account_id == account_id and (s.is_active or not active_only)
            ]
            return sorted(results, key=lambda s: s.last_activity, reverse=True)

    # two-factor
    def save_two_factor_enrollment(
        self, enrollment: TwoFactorEnrollment
    ) -> TwoFactorEnrollment:
        with self._data_lock:
            if enrollment.account_id not in self.accounts:
                raise ConstraintViolation(
                    "account not found for two-factor", {"account_id": enrollment.account_id}
                )
            self.two_factor[enrollment.account_id] = replace(
                enrollment, secret=encrypt_secret(self._mfa_cipher, enrollment.secret)
            )
            self._persist_state()
            return enrollment

    def get_two_factor_enrollment(self, account_id: str) -> Optional[TwoFactorEnrollment]:
        with self._data_lock:
            stored = self.two_factor.get(account_id)
            if not stored:
                return None
            return replace(stored, secret=decrypt_secret(self._mfa_cipher, stored.secret))

    def confirm_two_factor_enrollment(self, account_id: str, at: datetime) -> bool:
        with self._data_lock:
            stored = self.two_factor.get(account_id)
            if not stored or stored.is_confirmed:
                return False
            stored.is_confirmed = True
            stored.confirmed_at = at
            self._persist_state()
            return True

    def delete_two_factor_enrollment(self, account_id: str) -> bool:
        with self._data_lock:
            removed = self.two_factor.pop(account_id, None)
            self.backup_codes.pop(account_id, None)
            self._persist_state()
            return removed is not None

    def replace_backup_codes(self, account_id: str, code_hashes: List[str]) -> List[BackupCode]:
        with self._data_lock:
            codes = [
                BackupCode(id=generate_uuid(), account_id=account_id, code_hash=h)
                for h in code_hashes
            ]
            self.backup_codes[account_id] = codes
            self._persist_state()
            return list(codes)

    def list_unused_backup_codes(self, account_id: str) -> List[BackupCode]:
        with self._data_lock:
            return [c for c in self.backup_codes.get(account_id, []) if not c.is_used]

    def mark_backup_code_used(self, code_id: str, at: datetime) -> bool:
        with self._data_lock:
            for codes in self.backup_codes.values():
                for code in codes:
                    if code.id != code_id:
                        continue
                    if code.is_used:
                        return False
                    code.is_used = True
                    code.used_at = at
                    self._persist_state()
                    return True
            return False

    # lockout
    def record_failed_login(
        self,
        email: str,
        ip: Optional[str],
        *,
        now: datetime,
        max_attempts: int,
        lockout: timedelta,
    ) -> LockoutRecord:
        with self._data_lock:
            record = next_lockout_state(
                self.lockouts.get(email),
                email,
                ip,
                now=now,
                max_attempts=max_attempts,
                lockout=lockout,
            )
            self.lockouts[email] = record
            self._persist_state()
            return record

    def get_lockout(self, email: str) -> Optional[LockoutRecord]:
        with self._data_lock:
            return self.lockouts.get(email)

    def clear_lockout(self, email: str) -> None:
        with self._data_lock:
            if self.lockouts.pop(email, None) is not None:
                self._persist_state()

    # security events
    def record_security_event(
        self,
        account_id: str,
        event: SecurityEventType,
        meta: Optional[Dict] = None,
        *,
        at: Optional[datetime] = None,
    ) -> SecurityEvent:
        with self._data_lock:
            record = SecurityEvent(
                id=generate_uuid(),
                account_id=account_id,
                event=event,
                created_at=at or utcnow(),
                meta=dict(meta) if meta else {},
            )
            self.security_events.append(record)
            self._persist_state()
            return record

    def list_security_events(
        self,
        account_id: str,
        *,
        since: Optional[datetime] = None,
        event: Optional[SecurityEventType] = None,
        limit: int = 100,
    ) -> List[SecurityEvent]:
        with self._data_lock:
            results = [
                e
                for e in self.security_events
                if e.account_id == account_id
                and (since is None or e.created_at >= since)
                and (event is None or e.event == event)
            ]
            return sorted(results, key=lambda e: e.created_at, reverse=True)[:limit]

    # persistence
    def _persist_state(self) -> None:
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "credentials": [
                {
                    "account_id": account_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for account_id, creds in self.credentials.items()
            ],
            "artifacts": [self._serialize_artifact(a) for a in self.artifacts.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "two_factor": [
                self._serialize_enrollment(e) for e in self.two_factor.values()
            ],
            "backup_codes": [
                self._serialize_backup_code(c)
                for codes in self.backup_codes.values()
                for c in codes
            ],
            "lockouts": [self._serialize_lockout(r) for r in self.lockouts.values()],
            "security_events": [
                self._serialize_event(e) for e in self.security_events
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.credentials = {
            entry["account_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.artifacts = {}
        for raw in data.get("artifacts", []):
            artifact = self._deserialize_artifact(raw)
            self.artifacts[(artifact.email, artifact.purpose.value)] = artifact
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.two_factor = {
            e["account_id"]: self._deserialize_enrollment(e)
            for e in data.get("two_factor", [])
        }
        self.backup_codes = {}
        for raw in data.get("backup_codes", []):
            code = self._deserialize_backup_code(raw)
            self.backup_codes.setdefault(code.account_id, []).append(code)
        self.lockouts = {
            r["email"]: self._deserialize_lockout(r) for r in data.get("lockouts", [])
        }
        self.security_events = [
            self._deserialize_event(e) for e in data.get("security_events", [])
        ]
        return True

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "email": account.email,
            "role": account.role,
            "is_verified": account.is_verified,
            "status": account.status.value,
            "created_at": self._serialize_datetime(account.created_at),
            "updated_at": self._serialize_datetime(account.updated_at),
            "password_changed_at": self._serialize_datetime(account.password_changed_at),
            "last_login": self._serialize_datetime(account.last_login),
            "meta": account.meta,
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=str(data["id"]),
            email=data["email"],
            role=data.get("role", "student"),
            is_verified=data.get("is_verified", False),
            status=AccountStatus(data.get("status", AccountStatus.INACTIVE.value)),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at") or data["created_at"]),
            password_changed_at=self._deserialize_datetime(data.get("password_changed_at")),
            last_login=self._deserialize_datetime(data.get("last_login")),
            meta=data.get("meta"),
        )

    def _serialize_artifact(self, artifact: VerificationArtifact) -> dict:
        return {
            "email": artifact.email,
            "purpose": artifact.purpose.value,
            "kind": artifact.kind.value,
            "value_hash": artifact.value_hash,
            "expires_at": self._serialize_datetime(artifact.expires_at),
            "attempts": artifact.attempts,
            "is_used": artifact.is_used,
            "created_at": self._serialize_datetime(artifact.created_at),
        }

    def _deserialize_artifact(self, data: dict) -> VerificationArtifact:
        return VerificationArtifact(
            email=data["email"],
            purpose=ArtifactPurpose(data["purpose"]),
            kind=ArtifactKind(data["kind"]),
            value_hash=data["value_hash"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            attempts=int(data.get("attempts", 0)),
            is_used=data.get("is_used", False),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "account_id": session.account_id,
            "created_at": self._serialize_datetime(session.created_at),
            "last_activity": self._serialize_datetime(session.last_activity),
            "ip_address": session.ip_address,
            "user_agent": session.user_agent,
            "device_name": session.device_name,
            "is_active": session.is_active,
            "revoked_at": self._serialize_datetime(session.revoked_at),
            "meta": session.meta,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            account_id=data["account_id"],
            created_at=self._deserialize_datetime(data["created_at"]),
            last_activity=self._deserialize_datetime(data["last_activity"]),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            device_name=data.get("device_name"),
            is_active=data.get("is_active", False),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            meta=data.get("meta"),
        )

    def _serialize_enrollment(self, enrollment: TwoFactorEnrollment) -> dict:
        # secret is already encrypted in the in-memory map
        return {
            "account_id": enrollment.account_id,
            "secret": enrollment.secret,
            "is_confirmed": enrollment.is_confirmed,
            "created_at": self._serialize_datetime(enrollment.created_at),
            "confirmed_at": self._serialize_datetime(enrollment.confirmed_at),
        }

    def _deserialize_enrollment(self, data: dict) -> TwoFactorEnrollment:
        return TwoFactorEnrollment(
            account_id=data["account_id"],
            secret=data["secret"],
            is_confirmed=data.get("is_confirmed", False),
            created_at=self._deserialize_datetime(data["created_at"]),
            confirmed_at=self._deserialize_datetime(data.get("confirmed_at")),
        )

    def _serialize_backup_code(self, code: BackupCode) -> dict:
        return {
            "id": code.id,
            "account_id": code.account_id,
            "code_hash": code.code_hash,
            "is_used": code.is_used,
            "created_at": self._serialize_datetime(code.created_at),
            "used_at": self._serialize_datetime(code.used_at),
        }

    def _deserialize_backup_code(self, data: dict) -> BackupCode:
        return BackupCode(
            id=data["id"],
            account_id=data["account_id"],
            code_hash=data["code_hash"],
            is_used=data.get("is_used", False),
            created_at=self._deserialize_datetime(data["created_at"]),
            used_at=self._deserialize_datetime(data.get("used_at")),
        )

    def _serialize_lockout(self, record: LockoutRecord) -> dict:
        return {
            "email": record.email,
            "failed_attempts": record.failed_attempts,
            "last_failed_attempt": self._serialize_datetime(record.last_failed_attempt),
            "locked_until": self._serialize_datetime(record.locked_until),
            "last_ip": record.last_ip,
        }

    def _deserialize_lockout(self, data: dict) -> LockoutRecord:
        return LockoutRecord(
            email=data["email"],
            failed_attempts=int(data.get("failed_attempts", 0)),
            last_failed_attempt=self._deserialize_datetime(data.get("last_failed_attempt")),
            locked_until=self._deserialize_datetime(data.get("locked_until")),
            last_ip=data.get("last_ip"),
        )

    def _serialize_event(self, event: SecurityEvent) -> dict:
        return {
            "id": event.id,
            "account_id": event.account_id,
            "event": event.event.value,
            "created_at": self._serialize_datetime(event.created_at),
            "meta": event.meta,
        }

    def _deserialize_event(self, data: dict) -> SecurityEvent:
        return SecurityEvent(
            id=data["id"],
            account_id=data["account_id"],
            event=SecurityEventType(data["event"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            meta=data.get("meta"),
        )
