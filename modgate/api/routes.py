from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Path, Query, Request, Response

from modgate.api.gate import (
    Principal,
    get_principal,
    get_session_principal,
    require_admin,
    require_principal,
    require_session_principal,
)
from modgate.api.schemas import (
    AccountResponse,
    ApiKeyCreateRequest,
    ApiKeyResponse,
    BannedEmailRequest,
    ChangePasswordRequest,
    CredentialsRequest,
    Envelope,
    ForgotPasswordRequest,
    MfaCodeRequest,
    MfaLoginRequest,
    OAuthStartResponse,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    SigninRequest,
)
from modgate.config import get_settings
from modgate.logging import get_logger
from modgate.service.errors import (
    ForbiddenError,
    InvalidCredentials,
    InvalidOrExpiredToken,
    NotFoundError,
    Unauthorized,
)
from modgate.service.passwords import normalize_email
from modgate.service.runtime import Runtime, get_runtime
from modgate.storage.models import Account

logger = get_logger(__name__)

router = APIRouter(prefix=get_settings().api_prefix)


def _request_host(request: Request) -> Optional[str]:
    return request.headers.get("host")


def _load_account(runtime: Runtime, principal: Principal) -> Account:
    account = runtime.store.get_account(principal.account_id)
    if account is None or account.is_deleted:
        raise Unauthorized("Authentication required.")
    return account


def _start_session(
    runtime: Runtime, account: Account, request: Request, response: Response
) -> Dict[str, Any]:
    """Mint access and refresh tokens and deliver the refresh token as a cookie."""
    tokens = runtime.tokens.issue_login_tokens(account)
    runtime.tokens.set_token_cookie(
        response, tokens["refresh_token"], request_host=_request_host(request)
    )
    return {**tokens, "user": AccountResponse.from_account(account)}


def _mfa_challenge(runtime: Runtime, account: Account, response: Response) -> Envelope:
    response.status_code = 202
    logger.info("mfa_challenge_issued", account_id=account.id)
    return Envelope(
        status="ok",
        data={
            "mfa_required": True,
            "pre_auth_token": runtime.tokens.generate_pre_auth_token(account.id),
            "expires_in": runtime.settings.pre_auth_token_ttl_seconds,
        },
    )


# registration and email verification
@router.post("/auth/register", response_model=Envelope, tags=["auth"])
async def register(body: RegisterRequest):
    """Create a password account and email a verification link."""
    runtime = get_runtime()
    if not runtime.settings.allow_signup:
        raise ForbiddenError("Signup is disabled.")
    account = runtime.passwords.register(body.username, body.email, body.password)
    return Envelope(status="ok", data=AccountResponse.from_account(account))


@router.post("/auth/verify", response_model=Envelope, tags=["auth"])
async def verify_email(token: str = Query(..., max_length=256)):
    runtime = get_runtime()
    account = runtime.passwords.verify_email(token)
    return Envelope(
        status="ok", data={"verified": True, "user": AccountResponse.from_account(account)}
    )


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(principal: Principal = Depends(require_session_principal)):
    runtime = get_runtime()
    runtime.passwords.resend_verification(principal.account_id)
    return Envelope(status="ok", data={"message": "Verification email sent."})


# password lifecycle
@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest):
    """Start a password reset.

    Always answers 200 so the response does not reveal whether the address
    belongs to an account.
    """
    runtime = get_runtime()
    runtime.passwords.initiate_password_reset(body.email)
    return Envelope(
        status="ok",
        data={"message": "If that address has an account, a reset link is on its way."},
    )


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest):
    runtime = get_runtime()
    runtime.passwords.complete_password_reset(body.token, body.new_password)
    return Envelope(status="ok", data={"message": "Password has been reset."})


@router.put("/auth/credentials", response_model=Envelope, tags=["auth"])
async def add_credentials(
    body: CredentialsRequest, principal: Principal = Depends(require_session_principal)
):
    """Attach an email and password to an account, typically one created by OAuth."""
    runtime = get_runtime()
    account = runtime.passwords.add_credentials(principal.account_id, body.email, body.password)
    return Envelope(status="ok", data=AccountResponse.from_account(account))


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest, principal: Principal = Depends(require_session_principal)
):
    runtime = get_runtime()
    runtime.passwords.change_password(
        principal.account_id, body.current_password, body.new_password
    )
    return Envelope(status="ok", data={"message": "Password changed."})


# mfa enrollment
@router.get("/auth/mfa/setup", response_model=Envelope, tags=["mfa"])
async def mfa_setup(principal: Principal = Depends(require_session_principal)):
    """Store a pending TOTP secret and return it with an enrollment QR code."""
    runtime = get_runtime()
    account = _load_account(runtime, principal)
    secret = runtime.two_factor.generate_new_secret()
    runtime.passwords.set_temp_mfa_secret(account.id, secret)
    label = account.email or account.username
    return Envelope(
        status="ok",
        data={
            "secret": secret,
            "qr_code": runtime.two_factor.generate_qr_code_image_uri(secret, label),
            "otpauth_uri": runtime.two_factor.provisioning_uri(secret, label),
        },
    )


@router.post("/auth/mfa/verify", response_model=Envelope, tags=["mfa"])
async def mfa_verify(
    body: MfaCodeRequest, principal: Principal = Depends(require_session_principal)
):
    runtime = get_runtime()
    account = runtime.passwords.enable_mfa(principal.account_id, body.code)
    return Envelope(status="ok", data={"mfa_enabled": account.mfa_enabled})


@router.post("/auth/mfa/disable", response_model=Envelope, tags=["mfa"])
async def mfa_disable(
    body: MfaCodeRequest, principal: Principal = Depends(require_session_principal)
):
    runtime = get_runtime()
    runtime.passwords.disable_mfa(principal.account_id, body.code)
    return Envelope(status="ok", data={"mfa_enabled": False})


# sessions
@router.post("/auth/signin", response_model=Envelope, tags=["auth"])
async def signin(body: SigninRequest, request: Request, response: Response):
    """Password login.

    Accounts with MFA enabled get a 202 with a short-lived pre-auth token
    instead of session tokens; it is only accepted by mfa/validate-login.
    """
    runtime = get_runtime()
    account = runtime.passwords.authenticate(body.username, body.password)
    if account.mfa_enabled:
        return _mfa_challenge(runtime, account, response)
    logger.info("signin_success", account_id=account.id)
    return Envelope(status="ok", data=_start_session(runtime, account, request, response))


@router.post("/auth/mfa/validate-login", response_model=Envelope, tags=["mfa"])
async def mfa_validate_login(body: MfaLoginRequest, request: Request, response: Response):
    runtime = get_runtime()
    account = runtime.tokens.validate_pre_auth_token(body.pre_auth_token)
    if account is None or not account.mfa_enabled:
        raise InvalidOrExpiredToken(
            "Session expired or invalid. Please login again.", status_code=401
        )
    if not runtime.two_factor.is_otp_valid(account.mfa_secret, body.code):
        # The pre-auth token stays usable until it expires
        logger.info("mfa_login_code_rejected", account_id=account.id)
        raise InvalidCredentials("Invalid verification code.")
    logger.info("mfa_login_success", account_id=account.id)
    return Envelope(status="ok", data=_start_session(runtime, account, request, response))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_access_token(
    request: Request,
    body: Optional[RefreshRequest] = Body(default=None),
):
    """Exchange a refresh token for a new access token.

    The refresh token comes from the JSON body or, failing that, the refresh
    cookie. It stays valid until its own expiry.
    """
    runtime = get_runtime()
    token = (body.refresh_token if body else None) or request.cookies.get(
        runtime.settings.refresh_cookie_name
    )
    if not token:
        raise Unauthorized("Refresh token required.")
    claims = runtime.tokens.validate_refresh_token(token)
    account = runtime.store.get_account(claims["sub"])
    if account is None or account.is_deleted:
        raise Unauthorized("Account is no longer available.")
    return Envelope(
        status="ok",
        data={
            "access_token": runtime.tokens.generate_access_token(account),
            "token_type": "bearer",
            "expires_in": runtime.settings.access_token_ttl_minutes * 60,
            "user": AccountResponse.from_account(account),
        },
    )


@router.post("/auth/signout", response_model=Envelope, tags=["auth"])
async def signout(request: Request, response: Response):
    runtime = get_runtime()
    runtime.tokens.clear_token_cookie(response, request_host=_request_host(request))
    principal = get_principal(request)
    if principal:
        logger.info("signout", account_id=principal.account_id)
    return Envelope(status="ok", data={"signed_out": True})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: Principal = Depends(require_principal)):
    runtime = get_runtime()
    account = _load_account(runtime, principal)
    data = AccountResponse.from_account(account).model_dump(mode="json")
    data["auth_method"] = principal.method
    return Envelope(status="ok", data=data)


# oauth
@router.post("/auth/oauth/{provider}/start", response_model=Envelope, tags=["oauth"])
async def oauth_start(request: Request, provider: str = Path(..., max_length=32)):
    """Return the provider authorization URL.

    When the caller is signed in, the state remembers the account so the
    callback links the identity instead of logging in.
    """
    runtime = get_runtime()
    principal = get_session_principal(request)
    start = await runtime.oauth.start(
        provider, link_account_id=principal.account_id if principal else None
    )
    return Envelope(status="ok", data=OAuthStartResponse(**start))


@router.get("/auth/oauth/{provider}/callback", response_model=Envelope, tags=["oauth"])
async def oauth_callback(
    request: Request,
    response: Response,
    provider: str = Path(..., max_length=32),
    code: str = Query(..., max_length=512),
    state: str = Query(..., max_length=128),
):
    runtime = get_runtime()
    principal = get_session_principal(request)
    outcome = await runtime.oauth.complete(
        provider, code, state, current_account_id=principal.account_id if principal else None
    )
    account = outcome.account
    if outcome.action == "linked":
        return Envelope(
            status="ok",
            data={"action": outcome.action, "user": AccountResponse.from_account(account)},
        )
    if account.mfa_enabled:
        return _mfa_challenge(runtime, account, response)
    session = _start_session(runtime, account, request, response)
    return Envelope(status="ok", data={"action": outcome.action, **session})


@router.delete("/auth/connections/{provider}", response_model=Envelope, tags=["oauth"])
async def oauth_unlink(
    provider: str = Path(..., max_length=32),
    principal: Principal = Depends(require_session_principal),
):
    runtime = get_runtime()
    account = runtime.oauth.unlink(principal.account_id, provider)
    return Envelope(status="ok", data=AccountResponse.from_account(account))


# api keys
@router.get("/user/api-keys", response_model=Envelope, tags=["api-keys"])
async def list_api_keys(principal: Principal = Depends(require_session_principal)):
    runtime = get_runtime()
    keys = runtime.api_keys.list_keys(principal.account_id)
    return Envelope(status="ok", data=[ApiKeyResponse.from_api_key(k) for k in keys])


@router.post("/user/api-keys", response_model=Envelope, status_code=201, tags=["api-keys"])
async def create_api_key(
    body: ApiKeyCreateRequest, principal: Principal = Depends(require_session_principal)
):
    """Create an API key; the raw key is in this response and nowhere else."""
    runtime = get_runtime()
    api_key, raw_key = runtime.api_keys.create_api_key(principal.account_id, body.name)
    return Envelope(status="ok", data=ApiKeyResponse.from_api_key(api_key, raw_key))


@router.delete("/user/api-keys/{key_id}", response_model=Envelope, tags=["api-keys"])
async def revoke_api_key(
    key_id: str = Path(..., max_length=64),
    principal: Principal = Depends(require_session_principal),
):
    runtime = get_runtime()
    if not runtime.api_keys.revoke_key(key_id, principal.account_id):
        raise NotFoundError("API key not found.")
    return Envelope(status="ok", data={"id": key_id, "revoked": True})


# admin
@router.get("/admin/banned-emails", response_model=Envelope, tags=["admin"])
async def list_banned_emails(principal: Principal = Depends(require_admin)):
    runtime = get_runtime()
    return Envelope(status="ok", data={"emails": runtime.store.list_banned_emails()})


@router.post("/admin/banned-emails", response_model=Envelope, tags=["admin"])
async def ban_email(body: BannedEmailRequest, principal: Principal = Depends(require_admin)):
    runtime = get_runtime()
    email = normalize_email(body.email)
    runtime.store.ban_email(email)
    logger.info("email_banned", admin_id=principal.account_id)
    return Envelope(status="ok", data={"email": email, "banned": True})


@router.delete("/admin/banned-emails/{email}", response_model=Envelope, tags=["admin"])
async def unban_email(
    email: str = Path(..., max_length=254), principal: Principal = Depends(require_admin)
):
    runtime = get_runtime()
    normalized = email.strip().lower()
    if not runtime.store.unban_email(normalized):
        raise NotFoundError("Email is not banned.")
    logger.info("email_unbanned", admin_id=principal.account_id)
    return Envelope(status="ok", data={"email": normalized, "banned": False})
