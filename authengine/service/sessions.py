from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple

from authengine.config import Settings
from authengine.logging import get_logger
from authengine.service.errors import InvalidRefreshTokenError, InvalidSessionError
from authengine.storage.models import Account, SecurityEventType, Session, utcnow

if TYPE_CHECKING:
    from authengine.service.auth import AuthStore

logger = get_logger(__name__)


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_ttl: int
    refresh_ttl: int
    token_type: str = "bearer"

    def as_dict(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_in": self.access_ttl,
            "refresh_expires_in": self.refresh_ttl,
        }


class SessionManager:
    """Session rows plus the HS256 bearer tokens bound to them.

    Tokens carry the session id, so a signature alone is never enough: every
    use re-reads the session and fails once it has been deactivated.
    """

    def __init__(
        self,
        store: "AuthStore",
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock

    # token codec
    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = (token or "").split(".")
        except ValueError:
            return None

        # Reject anything but HS256 so "alg": "none" tokens never verify
        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected = self._sign(f"{header_b64}.{payload_b64}")
        # Compare as bytes; str comparison raises on non-ASCII input
        if not hmac.compare_digest(expected.encode("utf-8"), sig_b64.encode("utf-8")):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._clock().timestamp():
            return None
        return payload

    # sessions
    def create_session(
        self,
        account_id: str,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        device_name: Optional[str] = None,
    ) -> Session:
        sess = self.store.create_session(
            account_id, ip_address=ip, user_agent=user_agent, device_name=device_name
        )
        logger.info("session_created", account_id=account_id, session_id=sess.id)
        return sess

    def _ttls(self, remember_me: bool) -> Tuple[int, int]:
        if remember_me:
            access = self.settings.remember_me_access_ttl_minutes
            refresh = self.settings.remember_me_refresh_ttl_minutes
        else:
            access = self.settings.access_token_ttl_minutes
            refresh = self.settings.refresh_token_ttl_minutes
        return access * 60, refresh * 60

    def _build_tokens(
        self, account: Account, session: Session, remember_me: bool
    ) -> Tuple[TokenPair, Dict[str, Any]]:
        now = self._clock()
        access_ttl, refresh_ttl = self._ttls(remember_me)
        iat = int(now.timestamp())
        access_exp = int((now + timedelta(seconds=access_ttl)).timestamp())
        refresh_exp = int((now + timedelta(seconds=refresh_ttl)).timestamp())
        access_jti = str(uuid.uuid4())
        refresh_jti = str(uuid.uuid4())
        base_claims = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": account.id,
            "email": account.email,
            "role": account.role,
            "sid": session.id,
            "iat": iat,
        }
        access_token = self._encode_jwt(
            {**base_claims, "token_type": "access", "jti": access_jti, "exp": access_exp}
        )
        refresh_token = self._encode_jwt(
            {
                **base_claims,
                "token_type": "refresh",
                "jti": refresh_jti,
                "exp": refresh_exp,
                "remember_me": remember_me,
            }
        )
        meta = dict(session.meta or {})
        meta.update(
            {
                "access_jti": access_jti,
                "access_exp": access_exp,
                "refresh_jti": refresh_jti,
                "refresh_exp": refresh_exp,
                "remember_me": remember_me,
            }
        )
        pair = TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_ttl=access_ttl,
            refresh_ttl=refresh_ttl,
        )
        return pair, meta

    def issue_tokens(
        self, account: Account, session: Session, remember_me: bool = False
    ) -> TokenPair:
        pair, meta = self._build_tokens(account, session, remember_me)
        session.meta = meta
        self.store.set_session_meta(session.id, meta)
        return pair

    def _revoke_for_reuse(self, session: Session, jti: str) -> None:
        self.store.deactivate_session(session.id)
        self.store.record_security_event(
            session.account_id,
            SecurityEventType.REFRESH_TOKEN_REUSED,
            {"session_id": session.id, "jti": jti},
            at=self._clock(),
        )
        logger.warning(
            "refresh_token_reuse_detected",
            account_id=session.account_id,
            session_id=session.id,
        )

    def refresh(self, refresh_token: str) -> Tuple[Account, Session, TokenPair]:
        """Exchange a refresh token for a new pair bound to the same session.

        The presented token is retired by the exchange. Presenting it again
        counts as theft and deactivates the whole session.
        """
        payload = self._decode_jwt(refresh_token)
        if not payload or payload.get("token_type") != "refresh":
            raise InvalidRefreshTokenError()
        jti = payload.get("jti")
        session_id = payload.get("sid")
        sess = self.store.get_session(session_id) if session_id else None
        if not sess or not sess.is_active or sess.account_id != payload.get("sub"):
            raise InvalidSessionError()
        account = self.store.get_account(sess.account_id)
        if not account:
            raise InvalidSessionError()
        if not jti or (sess.meta or {}).get("refresh_jti") != jti:
            self._revoke_for_reuse(sess, jti or "")
            raise InvalidRefreshTokenError("refresh token has already been used")
        pair, meta = self._build_tokens(
            account, sess, bool(payload.get("remember_me", False))
        )
        if not self.store.swap_refresh_token(sess.id, jti, meta):
            # Lost the race against another exchange of the same token
            self._revoke_for_reuse(sess, jti)
            raise InvalidRefreshTokenError("refresh token has already been used")
        sess.meta = meta
        logger.info("tokens_refreshed", account_id=account.id, session_id=sess.id)
        return account, sess, pair

    def resolve_access_token(self, token: str) -> Tuple[dict[str, Any], Session]:
        payload = self._decode_jwt(token)
        if not payload or payload.get("token_type") != "access":
            raise InvalidSessionError("invalid access token")
        session_id = payload.get("sid")
        sess = self.store.get_session(session_id) if session_id else None
        if not sess or not sess.is_active or sess.account_id != payload.get("sub"):
            raise InvalidSessionError()
        return payload, sess

    def touch(self, session: Session) -> None:
        self.store.touch_session(session.id, self._clock())

    def revoke(self, account_id: str, session_id: str) -> bool:
        revoked = self.store.deactivate_session(session_id, account_id)
        if revoked:
            logger.info("session_revoked", account_id=account_id, session_id=session_id)
        return revoked

    def revoke_all(self, account_id: str, except_session_id: Optional[str] = None) -> int:
        count = self.store.deactivate_account_sessions(account_id, except_session_id)
        logger.info(
            "sessions_revoked",
            account_id=account_id,
            count=count,
            kept_session_id=except_session_id,
        )
        return count

    def list_active(self, account_id: str) -> List[Session]:
        return self.store.list_sessions(account_id, active_only=True)
