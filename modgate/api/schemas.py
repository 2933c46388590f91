from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from modgate.logging import get_correlation_id
from modgate.storage.models import Account, ApiKey

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "invalid_credentials",
    "invalid_or_expired_token",
    "account_collision",
    "token_invalid",
    "token_expired",
    "login_failure",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable machine-readable code."""

    code: str
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
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


class RegisterRequest(BaseModel):
    username: str = Field(..., max_length=64)
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=256)


class SigninRequest(BaseModel):
    # Accepts a username or an email address
    username: str = Field(..., max_length=254)
    password: str = Field(..., max_length=256)


class ForgotPasswordRequest(BaseModel):
    email: str = Field(..., max_length=254)


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., max_length=256)
    new_password: str = Field(..., max_length=256)


class CredentialsRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=256)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., max_length=256)
    new_password: str = Field(..., max_length=256)


class MfaCodeRequest(BaseModel):
    code: str = Field(..., max_length=10)


class MfaLoginRequest(BaseModel):
    pre_auth_token: str = Field(..., max_length=2048)
    code: str = Field(..., max_length=10)


class RefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class ApiKeyCreateRequest(BaseModel):
    name: str = Field(..., max_length=64)


class BannedEmailRequest(BaseModel):
    email: str = Field(..., max_length=254)


class LinkedIdentityResponse(BaseModel):
    provider: str
    provider_username: Optional[str] = None
    profile_url: Optional[str] = None
    visible: bool = True
    linked_at: datetime


class AccountResponse(BaseModel):
    """Public view of an account; never carries hashes, secrets or upstream tokens."""

    id: str
    username: str
    email: Optional[str] = None
    email_verified: bool = False
    mfa_enabled: bool = False
    has_password: bool = False
    roles: List[str] = Field(default_factory=list)
    tier: str
    avatar_url: Optional[str] = None
    linked_identities: List[LinkedIdentityResponse] = Field(default_factory=list)
    created_at: datetime

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.id,
            username=account.username,
            email=account.email,
            email_verified=account.email_verified,
            mfa_enabled=account.mfa_enabled,
            has_password=account.has_password,
            roles=list(account.roles),
            tier=account.tier.value,
            avatar_url=account.avatar_url,
            linked_identities=[
                LinkedIdentityResponse(
                    provider=identity.provider,
                    provider_username=identity.provider_username,
                    profile_url=identity.profile_url,
                    visible=identity.visible,
                    linked_at=identity.linked_at,
                )
                for identity in account.linked_identities
            ],
            created_at=account.created_at,
        )


class ApiKeyResponse(BaseModel):
    id: str
    name: str
    prefix: str
    tier: str
    created_at: datetime
    last_used_at: Optional[datetime] = None
    # Only populated on creation
    key: Optional[str] = None

    @classmethod
    def from_api_key(cls, api_key: ApiKey, raw_key: Optional[str] = None) -> "ApiKeyResponse":
        return cls(
            id=api_key.id,
            name=api_key.name,
            prefix=api_key.prefix,
            tier=api_key.tier.value,
            created_at=api_key.created_at,
            last_used_at=api_key.last_used_at,
            key=raw_key,
        )


class OAuthStartResponse(BaseModel):
    authorization_url: str
    state: str
    provider: str
