from __future__ import annotations

import base64
import copy
import hashlib
import json
import os
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from modgate.logging import get_logger
from modgate.storage.errors import ConstraintViolation, MissingRecord
from modgate.storage.models import (
    Account,
    ApiKey,
    LinkedIdentity,
    MfaState,
    Tier,
    utcnow,
)


class MemoryStore:
    """Thread-safe in-memory credential store with optional JSON persistence.

    Every public method is a point read or a point write on one account or
    one API key, guarded by a single re-entrant lock. Readers receive copies
    with MFA secrets and upstream tokens decrypted; the held records keep
    them Fernet-encrypted, and so does the persisted state file.
    """

    def __init__(
        self,
        fs_root: str = "/tmp/modgate",
        *,
        encryption_key: str | None = None,
        persist: bool = True,
    ) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.api_keys: Dict[str, ApiKey] = {}
        self.banned_emails: set[str] = set()
        # RLock so helpers can call each other while holding it
        self._data_lock = threading.RLock()
        self.persist = persist
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._cipher = self._build_cipher(encryption_key)

        if self.persist:
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "credential_store.json"

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_cipher(self, key_material: str | None) -> Fernet:
        material = (
            key_material or os.getenv("MFA_SECRET_KEY") or os.getenv("JWT_SECRET")
        )
        if not material:
            raise RuntimeError(
                "No key material for secret encryption; set MFA_SECRET_KEY or JWT_SECRET"
            )
        return Fernet(self._derive_cipher_key(material))

    def _encrypt(self, value: Optional[str]) -> Optional[str]:
        if not value:
            return value
        return self._cipher.encrypt(value.encode()).decode()

    def _decrypt(self, value: Optional[str]) -> Optional[str]:
        if not value:
            return value
        try:
            return self._cipher.decrypt(value.encode()).decode()
        except InvalidToken:
            # Key rotated or record tampered with; callers treat it as absent
            self.logger.warning("stored_secret_decrypt_failed")
            return None

    def _reveal(self, account: Optional[Account]) -> Optional[Account]:
        if account is None:
            return None
        revealed = copy.deepcopy(account)
        revealed.mfa_secret = self._decrypt(account.mfa_secret)
        for identity in revealed.linked_identities:
            identity.provider_access_token = self._decrypt(identity.provider_access_token)
        return revealed

    def _require(self, account_id: str) -> Account:
        account = self.accounts.get(account_id)
        if account is None:
            raise MissingRecord("account not found", {"account_id": account_id})
        return account

    @staticmethod
    def _fold(value: str) -> str:
        return value.strip().casefold()

    def _find_by_username(self, username: str) -> Optional[Account]:
        folded = self._fold(username)
        return next(
            (a for a in self.accounts.values() if self._fold(a.username) == folded), None
        )

    def _find_by_email(self, email: str) -> Optional[Account]:
        folded = self._fold(email)
        return next(
            (a for a in self.accounts.values() if a.email and self._fold(a.email) == folded),
            None,
        )

    # accounts
    def create_account(
        self,
        username: str,
        *,
        email: Optional[str] = None,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
        email_verified: bool = False,
        roles: Optional[List[str]] = None,
        tier: Tier = Tier.USER,
        avatar_url: Optional[str] = None,
    ) -> Account:
        with self._data_lock:
            if self._find_by_username(username):
                raise ConstraintViolation("username already exists", {"field": "username"})
            if email and self._find_by_email(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account(
                id=str(uuid.uuid4()),
                username=username,
                email=email,
                password_hash=password_hash,
                password_algo=password_algo,
                email_verified=email_verified,
                tier=tier,
                avatar_url=avatar_url,
            )
            if roles:
                account.roles = list(roles)
            self.accounts[account.id] = account
            self._persist_state()
            return self._reveal(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            return self._reveal(self.accounts.get(account_id))

    def get_account_by_username(self, username: str) -> Optional[Account]:
        with self._data_lock:
            return self._reveal(self._find_by_username(username))

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            return self._reveal(self._find_by_email(email))

    def get_account_by_login(self, login: str) -> Optional[Account]:
        """Resolve a sign-in identifier that may be either a username or an email."""
        with self._data_lock:
            account = self._find_by_username(login)
            if account is None and "@" in login:
                account = self._find_by_email(login)
            return self._reveal(account)

    def get_account_by_provider(self, provider: str, provider_uid: str) -> Optional[Account]:
        with self._data_lock:
            for account in self.accounts.values():
                for identity in account.linked_identities:
                    if identity.provider == provider and identity.provider_uid == provider_uid:
                        return self._reveal(account)
            return None

    def username_taken(self, username: str) -> bool:
        with self._data_lock:
            return self._find_by_username(username) is not None

    def set_password(self, account_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            account = self._require(account_id)
            account.password_hash = password_hash
            account.password_algo = password_algo
            self._persist_state()

    def set_email(self, account_id: str, email: str, *, verified: bool = False) -> Account:
        with self._data_lock:
            account = self._require(account_id)
            owner = self._find_by_email(email)
            if owner is not None and owner.id != account_id:
                raise ConstraintViolation("email already exists", {"field": "email"})
            account.email = email
            account.email_verified = verified
            self._persist_state()
            return self._reveal(account)

    def set_roles(self, account_id: str, roles: List[str]) -> None:
        with self._data_lock:
            self._require(account_id).roles = list(roles)
            self._persist_state()

    def set_tier(self, account_id: str, tier: Tier) -> None:
        with self._data_lock:
            self._require(account_id).tier = Tier(tier)
            self._persist_state()

    def mark_deleted(self, account_id: str) -> None:
        with self._data_lock:
            account = self._require(account_id)
            if account.deleted_at is None:
                account.deleted_at = utcnow()
                self._persist_state()

    # single-use email tokens
    def set_verification_token(
        self, account_id: str, digest: Optional[str], expires_at: Optional[datetime]
    ) -> None:
        with self._data_lock:
            account = self._require(account_id)
            account.verification_token_digest = digest
            account.verification_expires_at = expires_at
            self._persist_state()

    def get_account_by_verification_digest(self, digest: str) -> Optional[Account]:
        with self._data_lock:
            return self._reveal(
                next(
                    (
                        a
                        for a in self.accounts.values()
                        if a.verification_token_digest == digest
                    ),
                    None,
                )
            )

    def consume_verification_token(self, account_id: str, digest: str) -> bool:
        """Mark the email verified if ``digest`` is still the account's pending token."""
        with self._data_lock:
            account = self._require(account_id)
            if account.verification_token_digest != digest:
                return False
            account.email_verified = True
            account.verification_token_digest = None
            account.verification_expires_at = None
            self._persist_state()
            return True

    def set_reset_token(
        self, account_id: str, digest: Optional[str], expires_at: Optional[datetime]
    ) -> None:
        with self._data_lock:
            account = self._require(account_id)
            account.reset_token_digest = digest
            account.reset_expires_at = expires_at
            self._persist_state()

    def get_account_by_reset_digest(self, digest: str) -> Optional[Account]:
        with self._data_lock:
            return self._reveal(
                next(
                    (a for a in self.accounts.values() if a.reset_token_digest == digest),
                    None,
                )
            )

    def consume_reset_token(
        self, account_id: str, digest: str, password_hash: str, password_algo: str
    ) -> bool:
        """Swap in a new password hash if ``digest`` is still the pending reset token."""
        with self._data_lock:
            account = self._require(account_id)
            if account.reset_token_digest != digest:
                return False
            account.password_hash = password_hash
            account.password_algo = password_algo
            account.reset_token_digest = None
            account.reset_expires_at = None
            self._persist_state()
            return True

    # mfa
    def set_mfa(self, account_id: str, state: MfaState, secret: Optional[str]) -> None:
        state = MfaState(state)
        if state == MfaState.ENABLED and not secret:
            raise ConstraintViolation("enabled mfa requires a confirmed secret", {"field": "mfa_secret"})
        with self._data_lock:
            account = self._require(account_id)
            account.mfa_state = state
            account.mfa_secret = self._encrypt(secret) if secret else None
            self._persist_state()

    # linked identities
    def link_identity(self, account_id: str, identity: LinkedIdentity) -> Account:
        """Bind an external identity, replacing any earlier binding for the same provider.

        Raises ConstraintViolation when (provider, provider_uid) already belongs
        to a different account; nothing is changed in that case.
        """
        with self._data_lock:
            account = self._require(account_id)
            for other in self.accounts.values():
                if other.id == account_id:
                    continue
                for existing in other.linked_identities:
                    if (
                        existing.provider == identity.provider
                        and existing.provider_uid == identity.provider_uid
                    ):
                        raise ConstraintViolation(
                            "identity already linked to another account",
                            {"provider": identity.provider},
                        )
            stored = copy.deepcopy(identity)
            stored.provider_access_token = self._encrypt(identity.provider_access_token)
            account.linked_identities = [
                i for i in account.linked_identities if i.provider != identity.provider
            ]
            account.linked_identities.append(stored)
            self._persist_state()
            return self._reveal(account)

    def unlink_identity(self, account_id: str, provider: str) -> bool:
        with self._data_lock:
            account = self._require(account_id)
            remaining = [i for i in account.linked_identities if i.provider != provider]
            if len(remaining) == len(account.linked_identities):
                return False
            account.linked_identities = remaining
            self._persist_state()
            return True

    # api keys
    def add_api_key(self, api_key: ApiKey, *, max_per_account: int) -> ApiKey:
        with self._data_lock:
            self._require(api_key.account_id)
            owned = sum(1 for k in self.api_keys.values() if k.account_id == api_key.account_id)
            if owned >= max_per_account:
                raise ConstraintViolation(
                    "api key limit reached", {"limit": max_per_account}
                )
            self.api_keys[api_key.id] = copy.deepcopy(api_key)
            self._persist_state()
            return copy.deepcopy(api_key)

    def get_api_key(self, key_id: str) -> Optional[ApiKey]:
        with self._data_lock:
            key = self.api_keys.get(key_id)
            return copy.deepcopy(key) if key else None

    def get_api_keys_by_prefix(self, prefix: str) -> List[ApiKey]:
        with self._data_lock:
            return [copy.deepcopy(k) for k in self.api_keys.values() if k.prefix == prefix]

    def list_api_keys(self, account_id: str) -> List[ApiKey]:
        with self._data_lock:
            owned = [copy.deepcopy(k) for k in self.api_keys.values() if k.account_id == account_id]
            return sorted(owned, key=lambda k: k.created_at)

    def touch_api_key(self, key_id: str, when: datetime) -> None:
        with self._data_lock:
            key = self.api_keys.get(key_id)
            if key is None:
                return
            key.last_used_at = when
            self._persist_state()

    def delete_api_key(self, key_id: str, owner_id: str) -> bool:
        with self._data_lock:
            key = self.api_keys.get(key_id)
            if key is None or key.account_id != owner_id:
                return False
            del self.api_keys[key_id]
            self._persist_state()
            return True

    # banned emails
    def ban_email(self, email: str) -> None:
        with self._data_lock:
            self.banned_emails.add(self._fold(email))
            self._persist_state()

    def unban_email(self, email: str) -> bool:
        with self._data_lock:
            folded = self._fold(email)
            if folded not in self.banned_emails:
                return False
            self.banned_emails.discard(folded)
            self._persist_state()
            return True

    def is_email_banned(self, email: Optional[str]) -> bool:
        if not email:
            return False
        with self._data_lock:
            return self._fold(email) in self.banned_emails

    def list_banned_emails(self) -> List[str]:
        with self._data_lock:
            return sorted(self.banned_emails)

    # persistence
    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "api_keys": [self._serialize_api_key(k) for k in self.api_keys.values()],
            "banned_emails": sorted(self.banned_emails),
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            os.replace(tmp_path, path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist credential store: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.api_keys = {
            k["id"]: self._deserialize_api_key(k) for k in data.get("api_keys", [])
        }
        self.banned_emails = set(data.get("banned_emails", []))
        return True

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_identity(self, identity: LinkedIdentity) -> dict:
        return {
            "provider": identity.provider,
            "provider_uid": identity.provider_uid,
            "provider_username": identity.provider_username,
            "provider_access_token": identity.provider_access_token,
            "profile_url": identity.profile_url,
            "visible": identity.visible,
            "linked_at": self._serialize_datetime(identity.linked_at),
        }

    def _deserialize_identity(self, data: dict) -> LinkedIdentity:
        return LinkedIdentity(
            provider=data["provider"],
            provider_uid=data["provider_uid"],
            provider_username=data.get("provider_username"),
            provider_access_token=data.get("provider_access_token"),
            profile_url=data.get("profile_url"),
            visible=data.get("visible", True),
            linked_at=self._deserialize_datetime(data.get("linked_at")) or utcnow(),
        )

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "username": account.username,
            "email": account.email,
            "password_hash": account.password_hash,
            "password_algo": account.password_algo,
            "email_verified": account.email_verified,
            "verification_token_digest": account.verification_token_digest,
            "verification_expires_at": self._serialize_datetime(account.verification_expires_at),
            "reset_token_digest": account.reset_token_digest,
            "reset_expires_at": self._serialize_datetime(account.reset_expires_at),
            "mfa_state": account.mfa_state.value,
            "mfa_secret": account.mfa_secret,
            "roles": account.roles,
            "tier": account.tier.value,
            "avatar_url": account.avatar_url,
            "linked_identities": [
                self._serialize_identity(i) for i in account.linked_identities
            ],
            "created_at": self._serialize_datetime(account.created_at),
            "deleted_at": self._serialize_datetime(account.deleted_at),
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=data["id"],
            username=data["username"],
            email=data.get("email"),
            password_hash=data.get("password_hash"),
            password_algo=data.get("password_algo"),
            email_verified=data.get("email_verified", False),
            verification_token_digest=data.get("verification_token_digest"),
            verification_expires_at=self._deserialize_datetime(
                data.get("verification_expires_at")
            ),
            reset_token_digest=data.get("reset_token_digest"),
            reset_expires_at=self._deserialize_datetime(data.get("reset_expires_at")),
            mfa_state=MfaState(data.get("mfa_state", MfaState.DISABLED.value)),
            mfa_secret=data.get("mfa_secret"),
            roles=list(data.get("roles") or []),
            tier=Tier(data.get("tier", Tier.USER.value)),
            avatar_url=data.get("avatar_url"),
            linked_identities=[
                self._deserialize_identity(i) for i in data.get("linked_identities", [])
            ],
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            deleted_at=self._deserialize_datetime(data.get("deleted_at")),
        )

    def _serialize_api_key(self, key: ApiKey) -> dict:
        return {
            "id": key.id,
            "account_id": key.account_id,
            "name": key.name,
            "key_hash": key.key_hash,
            "prefix": key.prefix,
            "tier": key.tier.value,
            "created_at": self._serialize_datetime(key.created_at),
            "last_used_at": self._serialize_datetime(key.last_used_at),
        }

    def _deserialize_api_key(self, data: dict) -> ApiKey:
        return ApiKey(
            id=data["id"],
            account_id=data["account_id"],
            name=data["name"],
            key_hash=data["key_hash"],
            prefix=data["prefix"],
            tier=Tier(data.get("tier", Tier.USER.value)),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            last_used_at=self._deserialize_datetime(data.get("last_used_at")),
        )
