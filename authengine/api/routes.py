from __future__ import annotations

from typing import Callable, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Request, Response

from authengine.api.schemas import (
    AccountResponse,
    BackupCodesResponse,
    ChangePasswordRequest,
    DeactivateAccountRequest,
    EmailOnlyRequest,
    Envelope,
    LoginRequest,
    LoginResponse,
    ReactivateAccountRequest,
    RegisterRequest,
    RegisterResponse,
    ResetPasswordRequest,
    SecurityAuditResponse,
    SecurityEventResponse,
    SessionResponse,
    TokenRefreshRequest,
    TokenResponse,
    TwoFactorCodeRequest,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
    VerifyEmailRequest,
)
from authengine.service.auth import AccountIdentity, SecurityAudit
from authengine.service.rate_limit import resolve_identity_key
from authengine.service.runtime import get_runtime
from authengine.storage.models import Session

router = APIRouter(prefix="/v1")


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict[str, str]] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


def _client_ip(request: Request) -> Optional[str]:
    runtime = get_runtime()
    if runtime.settings.trust_proxy_headers:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first_hop = forwarded.split(",")[0].strip()
            if first_hop:
                return first_hop
    return request.client.host if request.client else None


async def _enforce_rate_limit(
    endpoint_class: str,
    identity_key: str,
    *,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Count this request against ``endpoint_class``; past the limit ``check`` raises a 429."""
    runtime = get_runtime()
    decision = await runtime.rate_limiter.check(endpoint_class, identity_key)
    info = RateLimitInfo(decision.limit, decision.remaining, decision.reset_in)
    if response is not None:
        info.apply_headers(response)
    return info


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_principal(authorization: Optional[str] = Header(None)) -> AccountIdentity:
    token = _extract_bearer(authorization)
    if not token:
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    runtime = get_runtime()
    return await runtime.auth.authenticate(token)


def require_capability(permission: str) -> Callable:
    async def _dependency(
        principal: AccountIdentity = Depends(get_principal),
    ) -> AccountIdentity:
        runtime = get_runtime()
        if not runtime.auth.has_capability(principal.account_id, permission):
            raise _http_error(
                "forbidden", "insufficient permissions", status_code=403,
                details={"permission": permission},
            )
        return principal

    return _dependency


def _session_response(sess: Session, current_session_id: Optional[str] = None) -> SessionResponse:
    return SessionResponse(
        id=sess.id,
        ip_address=sess.ip_address,
        user_agent=sess.user_agent,
        device_name=sess.device_name,
        created_at=sess.created_at,
        last_activity=sess.last_activity,
        current=sess.id == current_session_id,
    )


def _audit_response(audit: SecurityAudit, current_session_id: Optional[str] = None) -> SecurityAuditResponse:
    return SecurityAuditResponse(
        recent_logins=[
            SecurityEventResponse(event=e.event.value, created_at=e.created_at, meta=e.meta)
            for e in audit.recent_logins
        ],
        failed_attempts=audit.failed_attempts,
        active_sessions=[_session_response(s, current_session_id) for s in audit.active_sessions],
        two_factor_enabled=audit.two_factor_enabled,
        last_password_change=audit.last_password_change,
        last_login=audit.last_login,
    )


# registration and verification
@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an unverified account and email a verification link."""
    runtime = get_runtime()
    ip = _client_ip(request)
    await _enforce_rate_limit("register", resolve_identity_key(ip=ip), response=response)
    result = await runtime.auth.register(body.email, body.password, role=body.role, ip=ip)
    account = result.account
    return Envelope(
        status="ok",
        data=RegisterResponse(
            account_id=account.id,
            email=account.email,
            role=account.role,
            is_verified=account.is_verified,
            status=account.status.value,
            verification_expires_at=result.verification_expires_at,
        ),
    )


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: VerifyEmailRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        "verify_email",
        resolve_identity_key(email=body.email, ip=_client_ip(request)),
        response=response,
    )
    account = await runtime.auth.verify_email(body.email, body.token)
    return Envelope(
        status="ok",
        data=AccountResponse(
            account_id=account.id,
            email=account.email,
            role=account.role,
            is_verified=account.is_verified,
            status=account.status.value,
        ),
    )


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(body: EmailOnlyRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        "resend_verification",
        resolve_identity_key(email=body.email, ip=_client_ip(request)),
        response=response,
    )
    await runtime.auth.resend_verification(body.email)
    return Envelope(
        status="ok",
        data={"message": "if the account exists and is unverified, a new link has been sent"},
    )


# login and tokens
@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password, plus a second factor when enrolled.

    Raises:
        401: If credentials or the second factor are invalid
        403: If the account is unverified, inactive or suspended
        423: If the email is locked after repeated failures
        429: If rate limit exceeded
    """
    runtime = get_runtime()
    ip = _client_ip(request)
    identity_key = resolve_identity_key(email=body.email, ip=ip)
    # Every attempt spends the login budget; a second factor also spends its own
    await _enforce_rate_limit("login", identity_key, response=response)
    if body.two_factor_code:
        await _enforce_rate_limit("two_factor_verify", identity_key)
    result = await runtime.auth.login(
        body.email,
        body.password,
        two_factor_code=body.two_factor_code,
        remember_me=body.remember_me,
        ip=ip,
        user_agent=request.headers.get("user-agent"),
        device_name=body.device_name,
    )
    tokens = TokenResponse(**result.tokens.as_dict()) if result.tokens else None
    return Envelope(
        status="ok",
        data=LoginResponse(
            account_id=result.account.id,
            email=result.account.email,
            role=result.account.role,
            requires_two_factor=result.requires_two_factor,
            session_id=result.session.id if result.session else None,
            tokens=tokens,
            is_first_login=result.is_first_login,
            password_expires_in_days=result.password_expires_in_days,
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        "refresh", resolve_identity_key(ip=_client_ip(request)), response=response
    )
    tokens = await runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=TokenResponse(**tokens.as_dict()))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: AccountIdentity = Depends(get_principal)):
    runtime = get_runtime()
    await runtime.auth.logout(principal)
    return Envelope(status="ok", data={"message": "signed out"})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_me(principal: AccountIdentity = Depends(get_principal)):
    return Envelope(
        status="ok",
        data=AccountResponse(
            account_id=principal.account_id,
            email=principal.email,
            role=principal.role,
            is_verified=principal.is_verified,
            status=principal.status.value,
            session_id=principal.session_id,
        ),
    )


# passwords
@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: EmailOnlyRequest, request: Request, response: Response):
    runtime = get_runtime()
    ip = _client_ip(request)
    await _enforce_rate_limit(
        "forgot_password", resolve_identity_key(email=body.email, ip=ip), response=response
    )
    await runtime.auth.forgot_password(body.email, ip=ip)
    return Envelope(
        status="ok",
        data={"message": "if the account exists, a reset code has been sent"},
    )


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        "reset_password",
        resolve_identity_key(email=body.email, ip=_client_ip(request)),
        response=response,
    )
    await runtime.auth.reset_password(body.email, body.code, body.new_password)
    return Envelope(status="ok", data={"message": "password updated"})


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest,
    request: Request,
    response: Response,
    principal: AccountIdentity = Depends(get_principal),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        "default",
        resolve_identity_key(user_id=principal.account_id, ip=_client_ip(request)),
        response=response,
    )
    await runtime.auth.change_password(
        principal.account_id,
        body.current_password,
        body.new_password,
        keep_session_id=principal.session_id,
    )
    return Envelope(status="ok", data={"message": "password updated"})


# sessions
@router.get("/auth/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(principal: AccountIdentity = Depends(get_principal)):
    runtime = get_runtime()
    sessions = await runtime.auth.list_sessions(principal.account_id)
    return Envelope(
        status="ok",
        data={"items": [_session_response(s, principal.session_id) for s in sessions]},
    )


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def revoke_session(
    session_id: str = Path(..., max_length=64),
    principal: AccountIdentity = Depends(get_principal),
):
    runtime = get_runtime()
    await runtime.auth.revoke_session(principal.account_id, session_id)
    return Envelope(status="ok", data={"revoked": session_id})


@router.delete("/auth/sessions", response_model=Envelope, tags=["sessions"])
async def revoke_other_sessions(principal: AccountIdentity = Depends(get_principal)):
    """Sign out every device except the one making this request."""
    runtime = get_runtime()
    count = await runtime.auth.revoke_all_sessions(
        principal.account_id, except_session_id=principal.session_id
    )
    return Envelope(status="ok", data={"revoked": count})


# two-factor
@router.post("/auth/2fa/enable", response_model=Envelope, tags=["two-factor"])
async def enable_two_factor(
    request: Request,
    response: Response,
    principal: AccountIdentity = Depends(get_principal),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        "two_factor_enable",
        resolve_identity_key(user_id=principal.account_id, ip=_client_ip(request)),
        response=response,
    )
    setup = await runtime.auth.start_two_factor_enrollment(principal.account_id)
    return Envelope(
        status="ok",
        data=TwoFactorSetupResponse(
            secret=setup.secret,
            otpauth_uri=setup.otpauth_uri,
            backup_codes=setup.backup_codes,
        ),
    )


@router.post("/auth/2fa/verify-setup", response_model=Envelope, tags=["two-factor"])
async def verify_two_factor_setup(
    body: TwoFactorCodeRequest,
    request: Request,
    response: Response,
    principal: AccountIdentity = Depends(get_principal),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        "two_factor_verify_setup",
        resolve_identity_key(user_id=principal.account_id, ip=_client_ip(request)),
        response=response,
    )
    await runtime.auth.confirm_two_factor_enrollment(principal.account_id, body.code)
    return Envelope(status="ok", data={"enabled": True})


@router.post("/auth/2fa/disable", response_model=Envelope, tags=["two-factor"])
async def disable_two_factor(
    body: TwoFactorCodeRequest,
    request: Request,
    response: Response,
    principal: AccountIdentity = Depends(get_principal),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        "two_factor_disable",
        resolve_identity_key(user_id=principal.account_id, ip=_client_ip(request)),
        response=response,
    )
    await runtime.auth.disable_two_factor(principal.account_id, body.code)
    return Envelope(status="ok", data={"enabled": False})


@router.post("/auth/2fa/backup-codes/regenerate", response_model=Envelope, tags=["two-factor"])
async def regenerate_backup_codes(
    body: TwoFactorCodeRequest,
    request: Request,
    response: Response,
    principal: AccountIdentity = Depends(get_principal),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        "two_factor_verify",
        resolve_identity_key(user_id=principal.account_id, ip=_client_ip(request)),
        response=response,
    )
    codes = await runtime.auth.regenerate_backup_codes(principal.account_id, body.code)
    return Envelope(status="ok", data=BackupCodesResponse(backup_codes=codes))


@router.get("/auth/2fa/status", response_model=Envelope, tags=["two-factor"])
async def two_factor_status(principal: AccountIdentity = Depends(get_principal)):
    runtime = get_runtime()
    status = await runtime.auth.two_factor_status(principal.account_id)
    return Envelope(
        status="ok",
        data=TwoFactorStatusResponse(
            enabled=status.enabled,
            confirmed=status.confirmed,
            backup_codes_remaining=status.backup_codes_remaining,
        ),
    )


# account lifecycle
@router.post("/account/deactivate", response_model=Envelope, tags=["account"])
async def deactivate_account(
    body: DeactivateAccountRequest,
    request: Request,
    response: Response,
    principal: AccountIdentity = Depends(get_principal),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        "default",
        resolve_identity_key(user_id=principal.account_id, ip=_client_ip(request)),
        response=response,
    )
    await runtime.auth.deactivate_account(principal.account_id, body.password, reason=body.reason)
    return Envelope(status="ok", data={"status": "INACTIVE"})


@router.post("/account/request-reactivation", response_model=Envelope, tags=["account"])
async def request_reactivation(body: EmailOnlyRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        "reactivation",
        resolve_identity_key(email=body.email, ip=_client_ip(request)),
        response=response,
    )
    await runtime.auth.request_reactivation(body.email)
    return Envelope(
        status="ok",
        data={"message": "if the account can be reactivated, a code has been sent"},
    )


@router.post("/account/reactivate", response_model=Envelope, tags=["account"])
async def reactivate_account(body: ReactivateAccountRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        "reactivation",
        resolve_identity_key(email=body.email, ip=_client_ip(request)),
        response=response,
    )
    account = await runtime.auth.reactivate_account(body.email, body.code)
    return Envelope(
        status="ok",
        data=AccountResponse(
            account_id=account.id,
            email=account.email,
            role=account.role,
            is_verified=account.is_verified,
            status=account.status.value,
        ),
    )


@router.get("/account/security-audit", response_model=Envelope, tags=["account"])
async def security_audit(principal: AccountIdentity = Depends(get_principal)):
    runtime = get_runtime()
    audit = await runtime.auth.security_audit(principal.account_id)
    return Envelope(status="ok", data=_audit_response(audit, principal.session_id))


@router.get("/admin/accounts/{account_id}/security-audit", response_model=Envelope, tags=["admin"])
async def admin_security_audit(
    account_id: str = Path(..., max_length=64),
    principal: AccountIdentity = Depends(require_capability("security:audit")),
):
    runtime = get_runtime()
    audit = await runtime.auth.security_audit(account_id)
    return Envelope(status="ok", data=_audit_response(audit))
