from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MfaState(str, Enum):
    DISABLED = "disabled"
    PENDING = "pending"
    ENABLED = "enabled"


class Tier(str, Enum):
    USER = "USER"
    ENTERPRISE = "ENTERPRISE"


ROLE_USER = "USER"
ROLE_ADMIN = "ADMIN"
ROLE_API = "API"


@dataclass
class LinkedIdentity:
    provider: str
    provider_uid: str
    provider_username: Optional[str] = None
    provider_access_token: Optional[str] = None
    profile_url: Optional[str] = None
    visible: bool = True
    linked_at: datetime = field(default_factory=utcnow)


@dataclass
class Account:
    id: str
    username: str
    email: Optional[str] = None
    password_hash: Optional[str] = None
    password_algo: Optional[str] = None
    email_verified: bool = False
    # Single-use tokens are stored as sha256 digests, never raw
    verification_token_digest: Optional[str] = None
    verification_expires_at: Optional[datetime] = None
    reset_token_digest: Optional[str] = None
    reset_expires_at: Optional[datetime] = None
    mfa_state: MfaState = MfaState.DISABLED
    mfa_secret: Optional[str] = None
    roles: List[str] = field(default_factory=lambda: [ROLE_USER])
    tier: Tier = Tier.USER
    avatar_url: Optional[str] = None
    linked_identities: List[LinkedIdentity] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def mfa_enabled(self) -> bool:
        return self.mfa_state == MfaState.ENABLED and bool(self.mfa_secret)

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)

    def identity_for(self, provider: str) -> Optional[LinkedIdentity]:
        return next((i for i in self.linked_identities if i.provider == provider), None)


@dataclass
class ApiKey:
    id: str
    account_id: str
    name: str
    key_hash: str
    prefix: str
    tier: Tier = Tier.USER
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None
