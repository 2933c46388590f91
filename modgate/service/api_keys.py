from __future__ import annotations

import secrets
import uuid
from typing import List, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from modgate.logging import get_logger
from modgate.service.errors import ConflictError, NotFoundError, Unauthorized, ValidationError
from modgate.storage.errors import ConstraintViolation
from modgate.storage.memory import MemoryStore
from modgate.storage.models import Account, ApiKey, utcnow

logger = get_logger(__name__)

API_KEY_SCHEME = "mg_"
LOOKUP_PREFIX_LENGTH = 10
MAX_KEY_NAME_LENGTH = 64


class ApiKeyService:
    """Issues and verifies long-lived API keys.

    A raw key is ``mg_`` followed by 32 random bytes in url-safe base64. Only
    its first ten characters (the lookup prefix) and an argon2 hash of the
    whole key are stored, so the raw key is shown exactly once.
    """

    def __init__(self, store: MemoryStore, *, max_keys_per_account: int = 10) -> None:
        self.store = store
        self.max_keys_per_account = max_keys_per_account
        self._hasher = PasswordHasher(type=Type.ID)

    @staticmethod
    def _generate_raw_key() -> str:
        return API_KEY_SCHEME + secrets.token_urlsafe(32)

    def create_api_key(self, account_id: str, name: str) -> Tuple[ApiKey, str]:
        """Create a key for ``account_id`` and return it with the raw secret."""
        name = (name or "").strip()
        if not name:
            raise ValidationError("Key name is required.", detail={"field": "name"})
        if len(name) > MAX_KEY_NAME_LENGTH:
            raise ValidationError("Key name is too long.", detail={"field": "name"})
        account = self.store.get_account(account_id)
        if account is None or account.is_deleted:
            raise NotFoundError("account not found")

        raw_key = self._generate_raw_key()
        record = ApiKey(
            id=str(uuid.uuid4()),
            account_id=account.id,
            name=name,
            key_hash=self._hasher.hash(raw_key),
            prefix=raw_key[:LOOKUP_PREFIX_LENGTH],
            tier=account.tier,
        )
        try:
            stored = self.store.add_api_key(record, max_per_account=self.max_keys_per_account)
        except ConstraintViolation as exc:
            raise ConflictError(
                f"You have reached the maximum of {self.max_keys_per_account} API keys.",
                detail=exc.detail,
            ) from exc
        logger.info("api_key_created", account_id=account.id, key_id=stored.id)
        return stored, raw_key

    def resolve_key(self, raw_key: Optional[str]) -> Optional[ApiKey]:
        """Find the stored key matching ``raw_key`` and record its use.

        Returns None for anything that does not verify; the caller decides
        how to surface that.
        """
        if not raw_key or not isinstance(raw_key, str) or len(raw_key) <= LOOKUP_PREFIX_LENGTH:
            return None
        for candidate in self.store.get_api_keys_by_prefix(raw_key[:LOOKUP_PREFIX_LENGTH]):
            try:
                self._hasher.verify(candidate.key_hash, raw_key)
            except (VerifyMismatchError, InvalidHash, VerificationError):
                continue
            now = utcnow()
            self.store.touch_api_key(candidate.id, now)
            candidate.last_used_at = now
            return candidate
        return None

    def get_user_from_key(self, api_key: ApiKey) -> Account:
        account = self.store.get_account(api_key.account_id)
        if account is None or account.is_deleted:
            logger.warning("api_key_owner_unavailable", key_id=api_key.id)
            raise Unauthorized("Invalid API Key.")
        return account

    def list_keys(self, account_id: str) -> List[ApiKey]:
        keys = self.store.list_api_keys(account_id)
        for key in keys:
            key.key_hash = ""
        return keys

    def revoke_key(self, key_id: str, owner_id: str) -> bool:
        """Delete ``key_id`` only when ``owner_id`` owns it."""
        revoked = self.store.delete_api_key(key_id, owner_id)
        if revoked:
            logger.info("api_key_revoked", account_id=owner_id, key_id=key_id)
        else:
            logger.warning("api_key_revoke_denied", account_id=owner_id, key_id=key_id)
        return revoked
