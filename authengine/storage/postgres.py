from __future__ import annotations

import json
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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
    parse_json_meta,
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

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS auth_account (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        role TEXT NOT NULL DEFAULT 'student',
        is_verified BOOLEAN NOT NULL DEFAULT FALSE,
        status TEXT NOT NULL DEFAULT 'INACTIVE',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        password_changed_at TIMESTAMPTZ,
        last_login TIMESTAMPTZ,
        meta JSONB,
        CONSTRAINT active_requires_verified CHECK (status <> 'ACTIVE' OR is_verified)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_credential (
        account_id UUID PRIMARY KEY REFERENCES auth_account(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_verification_artifact (
        email TEXT NOT NULL,
        purpose TEXT NOT NULL,
        kind TEXT NOT NULL,
        value_hash TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        is_used BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (email, purpose)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id UUID PRIMARY KEY,
        account_id UUID NOT NULL REFERENCES auth_account(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_activity TIMESTAMPTZ NOT NULL DEFAULT now(),
        ip_address TEXT,
        user_agent TEXT,
        device_name TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        revoked_at TIMESTAMPTZ,
        meta JSONB
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_account_idx ON auth_session (account_id, is_active)",
    """
    CREATE TABLE IF NOT EXISTS auth_two_factor (
        account_id UUID PRIMARY KEY REFERENCES auth_account(id) ON DELETE CASCADE,
        secret TEXT NOT NULL,
        is_confirmed BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        confirmed_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_backup_code (
        id UUID PRIMARY KEY,
        account_id UUID NOT NULL REFERENCES auth_account(id) ON DELETE CASCADE,
        code_hash TEXT NOT NULL,
        is_used BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        used_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_lockout (
        email TEXT PRIMARY KEY,
        failed_attempts INTEGER NOT NULL DEFAULT 0,
        last_failed_attempt TIMESTAMPTZ,
        locked_until TIMESTAMPTZ,
        last_ip TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_security_event (
        id UUID PRIMARY KEY,
        account_id UUID NOT NULL,
        event TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        meta JSONB
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_security_event_account_idx ON auth_security_event (account_id, created_at DESC)",
)


class PostgresStore:
    """Postgres-backed credential store.

    Conditional transitions (artifact checks, lockout increments, refresh-token
    swaps, backup-code consumption) run inside a single transaction with row
    locks or as a guarded ``UPDATE ... RETURNING`` so concurrent requests cannot
    both win.
    """

    def __init__(
        self, dsn: str, fs_root: str, *, mfa_encryption_key: str | None = None
    ) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        if not mfa_encryption_key:
            raise RuntimeError("mfa_encryption_key is required for the postgres store")
        self._mfa_cipher = build_secret_cipher(mfa_encryption_key)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the auth tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # row mappers
    @staticmethod
    def _account_from_row(row: dict) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            role=row.get("role", "student"),
            is_verified=bool(row.get("is_verified", False)),
            status=AccountStatus(row.get("status", AccountStatus.INACTIVE.value)),
            created_at=ensure_utc(row.get("created_at")) or utcnow(),
            updated_at=ensure_utc(row.get("updated_at")) or utcnow(),
            password_changed_at=ensure_utc(row.get("password_changed_at")),
            last_login=ensure_utc(row.get("last_login")),
            meta=parse_json_meta(row.get("meta")),
        )

    @staticmethod
    def _artifact_from_row(row: dict) -> VerificationArtifact:
        return VerificationArtifact(
            email=row["email"],
            purpose=ArtifactPurpose(row["purpose"]),
            kind=ArtifactKind(row["kind"]),
            value_hash=row["value_hash"],
            expires_at=ensure_utc(row["expires_at"]),
            attempts=int(row.get("attempts", 0)),
            is_used=bool(row.get("is_used", False)),
            created_at=ensure_utc(row.get("created_at")) or utcnow(),
        )

    @staticmethod
    def _session_from_row(row: dict) -> Session:
        return Session(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            created_at=ensure_utc(row["created_at"]),
            last_activity=ensure_utc(row["last_activity"]),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            device_name=row.get("device_name"),
            is_active=bool(row.get("is_active", False)),
            revoked_at=ensure_utc(row.get("revoked_at")),
            meta=parse_json_meta(row.get("meta")),
        )

    @staticmethod
    def _lockout_from_row(row: dict) -> LockoutRecord:
        return LockoutRecord(
            email=row["email"],
            failed_attempts=int(row.get("failed_attempts", 0)),
            last_failed_attempt=ensure_utc(row.get("last_failed_attempt")),
            locked_until=ensure_utc(row.get("locked_until")),
            last_ip=row.get("last_ip"),
        )

    @staticmethod
    def _backup_code_from_row(row: dict) -> BackupCode:
        return BackupCode(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            code_hash=row["code_hash"],
            is_used=bool(row.get("is_used", False)),
            created_at=ensure_utc(row.get("created_at")) or utcnow(),
            used_at=ensure_utc(row.get("used_at")),
        )

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
        account_id = generate_uuid()
        normalized_meta = dict(meta) if meta else {}
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth_account (id, email, role, is_verified, status, meta)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        account_id,
                        email,
                        role,
                        is_verified,
                        status.value,
                        json.dumps(normalized_meta),
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._account_from_row(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_account WHERE email = %s", (email,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def mark_account_verified(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_account
                SET is_verified = TRUE,
                    status = CASE WHEN status = %s THEN status ELSE %s END,
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (AccountStatus.SUSPENDED.value, AccountStatus.ACTIVE.value, account_id),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def set_account_status(
        self, account_id: str, status: AccountStatus
    ) -> Optional[Account]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE auth_account SET status = %s, updated_at = now()
                    WHERE id = %s
                    RETURNING *
                    """,
                    (status.value, account_id),
                ).fetchone()
        except errors.CheckViolation:
            raise ConstraintViolation(
                "account cannot be active before verification",
                {"account_id": account_id},
            )
        return self._account_from_row(row) if row else None

    def update_account_role(self, account_id: str, role: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE auth_account SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
                (role, account_id),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def record_login(self, account_id: str, at: datetime) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE auth_account SET last_login = %s WHERE id = %s RETURNING *",
                (at, account_id),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def save_password(
        self, account_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_credential (account_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (account_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (account_id, password_hash, password_algo),
                )
                conn.execute(
                    """
                    UPDATE auth_account
                    SET password_changed_at = now(), updated_at = now()
                    WHERE id = %s
                    """,
                    (account_id,),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account not found for credentials", {"account_id": account_id}
            )

    def get_password_record(self, account_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM auth_credential WHERE account_id = %s",
                (account_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # verification artifacts
    def upsert_artifact(self, artifact: VerificationArtifact) -> VerificationArtifact:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_verification_artifact
                    (email, purpose, kind, value_hash, expires_at, attempts, is_used, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (email, purpose) DO UPDATE
                SET kind = EXCLUDED.kind,
                    value_hash = EXCLUDED.value_hash,
                    expires_at = EXCLUDED.expires_at,
                    attempts = EXCLUDED.attempts,
                    is_used = EXCLUDED.is_used,
                    created_at = EXCLUDED.created_at
                """,
                (
                    artifact.email,
                    artifact.purpose.value,
                    artifact.kind.value,
                    artifact.value_hash,
                    artifact.expires_at,
                    artifact.attempts,
                    artifact.is_used,
                    artifact.created_at,
                ),
            )
        return artifact

    def get_artifact(
        self, email: str, purpose: ArtifactPurpose
    ) -> Optional[VerificationArtifact]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_verification_artifact WHERE email = %s AND purpose = %s",
                (email, purpose.value),
            ).fetchone()
        return self._artifact_from_row(row) if row else None

    def delete_artifact(self, email: str, purpose: ArtifactPurpose) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM auth_verification_artifact WHERE email = %s AND purpose = %s",
                (email, purpose.value),
            )
            return cur.rowcount > 0

    def check_artifact(
        self,
        email: str,
        purpose: ArtifactPurpose,
        value_hash: str,
        *,
        now: datetime,
        max_attempts: int,
    ) -> ArtifactCheck:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM auth_verification_artifact
                WHERE email = %s AND purpose = %s
                FOR UPDATE
                """,
                (email, purpose.value),
            ).fetchone()
            artifact = self._artifact_from_row(row) if row else None
            outcome, action = decide_artifact_check(
                artifact, value_hash, now=now, max_attempts=max_attempts
            )
            key = (email, purpose.value)
            if action == ARTIFACT_DELETE:
                conn.execute(
                    "DELETE FROM auth_verification_artifact WHERE email = %s AND purpose = %s",
                    key,
                )
            elif action == ARTIFACT_INCREMENT:
                conn.execute(
                    """
                    UPDATE auth_verification_artifact SET attempts = attempts + 1
                    WHERE email = %s AND purpose = %s
                    """,
                    key,
                )
            elif action == ARTIFACT_MARK_USED:
                conn.execute(
                    """
                    UPDATE auth_verification_artifact SET is_used = TRUE
                    WHERE email = %s AND purpose = %s
                    """,
                    key,
                )
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
        sess = Session.new(
            account_id,
            ip_address=ip_address,
            user_agent=user_agent,
            device_name=device_name,
            meta=meta,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session
                        (id, account_id, created_at, last_activity, ip_address, user_agent, device_name, is_active, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, TRUE, %s)
                    """,
                    (
                        sess.id,
                        account_id,
                        sess.created_at,
                        sess.last_activity,
                        ip_address,
                        user_agent,
                        device_name,
                        json.dumps(meta) if meta else None,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("account does not exist", {"account_id": account_id})
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def touch_session(self, session_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_session SET last_activity = %s WHERE id = %s AND is_active",
                (at, session_id),
            )

    def set_session_meta(self, session_id: str, meta: Dict) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_session SET meta = %s WHERE id = %s",
                (json.dumps(meta), session_id),
            )

    def swap_refresh_token(
        self, session_id: str, expected_jti: str, meta: Dict
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session SET meta = %s
                WHERE id = %s AND is_active AND meta->>'refresh_jti' = %s
                RETURNING id
                """,
                (json.dumps(meta), session_id, expected_jti),
            ).fetchone()
        return row is not None

    def deactivate_session(
        self, session_id: str, account_id: Optional[str] = None
    ) -> bool:
        query = "UPDATE auth_session SET is_active = FALSE, revoked_at = now() WHERE id = %s AND is_active"
        params: list = [session_id]
        if account_id is not None:
            query += " AND account_id = %s"
            params.append(account_id)
        with self._connect() as conn:
            row = conn.execute(query + " RETURNING id", params).fetchone()
        return row is not None

    def deactivate_account_sessions(
        self, account_id: str, except_session_id: Optional[str] = None
    ) -> int:
        query = "UPDATE auth_session SET is_active = FALSE, revoked_at = now() WHERE account_id = %s AND is_active"
        params: list = [account_id]
        if except_session_id:
            query += " AND id <> %s"
            params.append(except_session_id)
        with self._connect() as conn:
            cur = conn.execute(query, params)
            return cur.rowcount

    def list_sessions(self, account_id: str, *, active_only: bool = True) -> List[Session]:
        query = "SELECT * FROM auth_session WHERE account_id = %s"
        if active_only:
            query += " AND is_active"
        with self._connect() as conn:
            rows = conn.execute(
                query + " ORDER BY last_activity DESC", (account_id,)
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    # two-factor
    def save_two_factor_enrollment(
        self, enrollment: TwoFactorEnrollment
    ) -> TwoFactorEnrollment:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_two_factor (account_id, secret, is_confirmed, created_at, confirmed_at)
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (account_id) DO UPDATE
                    SET secret = EXCLUDED.secret,
                        is_confirmed = EXCLUDED.is_confirmed,
                        created_at = EXCLUDED.created_at,
                        confirmed_at = EXCLUDED.confirmed_at
                    """,
                    (
                        enrollment.account_id,
                        encrypt_secret(self._mfa_cipher, enrollment.secret),
                        enrollment.is_confirmed,
                        enrollment.created_at,
                        enrollment.confirmed_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account not found for two-factor", {"account_id": enrollment.account_id}
            )
        return enrollment

    def get_two_factor_enrollment(self, account_id: str) -> Optional[TwoFactorEnrollment]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_two_factor WHERE account_id = %s", (account_id,)
            ).fetchone()
        if not row:
            return None
        stored = TwoFactorEnrollment(
            account_id=str(row["account_id"]),
            secret=row["secret"],
            is_confirmed=bool(row.get("is_confirmed", False)),
            created_at=ensure_utc(row.get("created_at")) or utcnow(),
            confirmed_at=ensure_utc(row.get("confirmed_at")),
        )
        return replace(stored, secret=decrypt_secret(self._mfa_cipher, stored.secret))

    def confirm_two_factor_enrollment(self, account_id: str, at: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_two_factor SET is_confirmed = TRUE, confirmed_at = %s
                WHERE account_id = %s AND NOT is_confirmed
                RETURNING account_id
                """,
                (at, account_id),
            ).fetchone()
        return row is not None

    def delete_two_factor_enrollment(self, account_id: str) -> bool:
        with self._connect() as conn:
            conn.execute("DELETE FROM auth_backup_code WHERE account_id = %s", (account_id,))
            cur = conn.execute(
                "DELETE FROM auth_two_factor WHERE account_id = %s", (account_id,)
            )
            return cur.rowcount > 0

    def replace_backup_codes(self, account_id: str, code_hashes: List[str]) -> List[BackupCode]:
        codes = [
            BackupCode(id=generate_uuid(), account_id=account_id, code_hash=h)
            for h in code_hashes
        ]
        with self._connect() as conn:
            conn.execute("DELETE FROM auth_backup_code WHERE account_id = %s", (account_id,))
            with conn.cursor() as cur:
                cur.executemany(
                    """
                    INSERT INTO auth_backup_code (id, account_id, code_hash, is_used, created_at)
                    VALUES (%s, %s, %s, FALSE, %s)
                    """,
                    [(c.id, c.account_id, c.code_hash, c.created_at) for c in codes],
                )
        return codes

    def list_unused_backup_codes(self, account_id: str) -> List[BackupCode]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_backup_code WHERE account_id = %s AND NOT is_used ORDER BY created_at",
                (account_id,),
            ).fetchall()
        return [self._backup_code_from_row(row) for row in rows]

    def mark_backup_code_used(self, code_id: str, at: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_backup_code SET is_used = TRUE, used_at = %s
                WHERE id = %s AND NOT is_used
                RETURNING id
                """,
                (at, code_id),
            ).fetchone()
        return row is not None

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
        with self._connect() as conn:
            # Seed the row so FOR UPDATE always has something to lock
            conn.execute(
                """
                INSERT INTO auth_lockout (email, failed_attempts)
                VALUES (%s, 0)
                ON CONFLICT (email) DO NOTHING
                """,
                (email,),
            )
            row = conn.execute(
                "SELECT * FROM auth_lockout WHERE email = %s FOR UPDATE", (email,)
            ).fetchone()
            record = next_lockout_state(
                self._lockout_from_row(row) if row else None,
                email,
                ip,
                now=now,
                max_attempts=max_attempts,
                lockout=lockout,
            )
            conn.execute(
                """
                UPDATE auth_lockout
                SET failed_attempts = %s, last_failed_attempt = %s, locked_until = %s, last_ip = %s
                WHERE email = %s
                """,
                (
                    record.failed_attempts,
                    record.last_failed_attempt,
                    record.locked_until,
                    record.last_ip,
                    email,
                ),
            )
        return record

    def get_lockout(self, email: str) -> Optional[LockoutRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_lockout WHERE email = %s", (email,)
            ).fetchone()
        return self._lockout_from_row(row) if row else None

    def clear_lockout(self, email: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM auth_lockout WHERE email = %s", (email,))

    # security events
    def record_security_event(
        self,
        account_id: str,
        event: SecurityEventType,
        meta: Optional[Dict] = None,
        *,
        at: Optional[datetime] = None,
    ) -> SecurityEvent:
        record = SecurityEvent(
            id=generate_uuid(),
            account_id=account_id,
            event=event,
            created_at=at or utcnow(),
            meta=dict(meta) if meta else {},
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_security_event (id, account_id, event, created_at, meta)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (
                    record.id,
                    account_id,
                    event.value,
                    record.created_at,
                    json.dumps(record.meta),
                ),
            )
        return record

    def list_security_events(
        self,
        account_id: str,
        *,
        since: Optional[datetime] = None,
        event: Optional[SecurityEventType] = None,
        limit: int = 100,
    ) -> List[SecurityEvent]:
        clauses = ["account_id = %s"]
        params: list = [account_id]
        if since is not None:
            clauses.append("created_at >= %s")
            params.append(since)
        if event is not None:
            clauses.append("event = %s")
            params.append(event.value)
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM auth_security_event WHERE {' AND '.join(clauses)} "
                "ORDER BY created_at DESC LIMIT %s",
                params,
            ).fetchall()
        return [
            SecurityEvent(
                id=str(row["id"]),
                account_id=str(row["account_id"]),
                event=SecurityEventType(row["event"]),
                created_at=ensure_utc(row["created_at"]),
                meta=parse_json_meta(row.get("meta")),
            )
            for row in rows
        ]
