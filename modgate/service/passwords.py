from __future__ import annotations

import hashlib
import re
import secrets
import unicodedata
from datetime import timedelta
from typing import Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from modgate.config import Settings
from modgate.logging import get_logger
from modgate.service.email import EmailService
from modgate.service.errors import (
    InvalidCredentials,
    InvalidOrExpiredToken,
    NotFoundError,
    ValidationError,
)
from modgate.service.two_factor import TwoFactorChallenge
from modgate.storage.errors import ConstraintViolation
from modgate.storage.memory import MemoryStore
from modgate.storage.models import Account, MfaState, utcnow

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 30
PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128

_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")
_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_EMAIL_TLD = re.compile(r"^[a-zA-Z]{2,63}$")


def normalize_email(value: str) -> str:
    """Lower-case, NFKC-normalize and validate an email address.

    Raises:
        ValidationError: if the address is not a plausible mailbox
    """
    if not isinstance(value, str):
        raise ValidationError("email must be a string", detail={"field": "email"})
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) < 3 or len(normalized) > 254:
        raise ValidationError("invalid email address", detail={"field": "email"})
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise ValidationError("invalid email address", detail={"field": "email"})
    if not _EMAIL_LOCAL_PART.match(local) or local.startswith(".") or ".." in local:
        raise ValidationError("invalid email address format", detail={"field": "email"})
    labels = domain.split(".")
    if len(labels) < 2 or not _EMAIL_TLD.match(labels[-1]):
        raise ValidationError("invalid email domain", detail={"field": "email"})
    for label in labels:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValidationError("invalid email domain", detail={"field": "email"})
    return normalized


def validate_username(value: str) -> str:
    if not isinstance(value, str):
        raise ValidationError("username must be a string", detail={"field": "username"})
    username = value.strip()
    if not USERNAME_MIN_LENGTH <= len(username) <= USERNAME_MAX_LENGTH:
        raise ValidationError(
            f"username must be {USERNAME_MIN_LENGTH}-{USERNAME_MAX_LENGTH} characters",
            detail={"field": "username"},
        )
    if not _USERNAME_PATTERN.match(username):
        raise ValidationError(
            "username may only contain letters, digits, '.', '_' and '-'",
            detail={"field": "username"},
        )
    return username


def validate_password(value: str) -> str:
    if not isinstance(value, str) or len(value) < PASSWORD_MIN_LENGTH:
        raise ValidationError(
            f"password must be at least {PASSWORD_MIN_LENGTH} characters",
            detail={"field": "password"},
        )
    if len(value) > PASSWORD_MAX_LENGTH:
        raise ValidationError(
            f"password must be at most {PASSWORD_MAX_LENGTH} characters",
            detail={"field": "password"},
        )
    return value


def token_digest(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode()).hexdigest()


class PasswordAuthenticator:
    """Password, email-token and MFA-activation operations over the credential store."""

    def __init__(
        self,
        store: MemoryStore,
        settings: Settings,
        *,
        two_factor: TwoFactorChallenge,
        email: Optional[EmailService] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.two_factor = two_factor
        self.email = email or EmailService()
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    # hashing
    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def password_matches(self, account: Account, password: str) -> bool:
        if not account.password_hash or not isinstance(password, str):
            return False
        if account.password_algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", account_id=account.id, algo=account.password_algo)
            return False
        try:
            return self._pwd_hasher.verify(account.password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def _ensure_not_banned(self, email: Optional[str]) -> None:
        if email and self.store.is_email_banned(email):
            raise ValidationError("This email address is not allowed.", detail={"field": "email"})

    def _issue_verification(self, account: Account) -> str:
        raw = secrets.token_urlsafe(32)
        expires_at = utcnow() + timedelta(hours=self.settings.email_verification_ttl_hours)
        self.store.set_verification_token(account.id, token_digest(raw), expires_at)
        if account.email:
            self.email.send_email_verification(
                account.email,
                account.username,
                raw,
                ttl_hours=self.settings.email_verification_ttl_hours,
            )
        return raw

    def _require_account(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if account is None or account.is_deleted:
            raise NotFoundError("account not found")
        return account

    # registration and email verification
    def register(self, username: str, email: str, password: str) -> Account:
        username = validate_username(username)
        email = normalize_email(email)
        validate_password(password)
        self._ensure_not_banned(email)
        if self.store.username_taken(username):
            raise ValidationError("Username is already taken.", detail={"field": "username"})
        if self.store.get_account_by_email(email):
            raise ValidationError("Email is already in use.", detail={"field": "email"})

        password_hash, algo = self.hash_password(password)
        try:
            account = self.store.create_account(
                username, email=email, password_hash=password_hash, password_algo=algo
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration for the same name/email
            raise ValidationError(exc.message, detail=exc.detail) from exc
        self._issue_verification(account)
        logger.info("account_registered", account_id=account.id)
        return self.store.get_account(account.id)

    def verify_email(self, token: str) -> Account:
        if not token:
            raise InvalidOrExpiredToken("Invalid or expired verification token.")
        digest = token_digest(token)
        account = self.store.get_account_by_verification_digest(digest)
        if account is None or account.is_deleted:
            raise InvalidOrExpiredToken("Invalid or expired verification token.")
        if account.verification_expires_at is None or account.verification_expires_at <= utcnow():
            self.store.set_verification_token(account.id, None, None)
            raise InvalidOrExpiredToken("Invalid or expired verification token.")
        if not self.store.consume_verification_token(account.id, digest):
            raise InvalidOrExpiredToken("Invalid or expired verification token.")
        logger.info("email_verified", account_id=account.id)
        return self.store.get_account(account.id)

    def resend_verification(self, account_id: str) -> None:
        account = self._require_account(account_id)
        if not account.email:
            raise ValidationError("No email address on this account.")
        if account.email_verified:
            raise ValidationError("Email is already verified.")
        self._issue_verification(account)
        logger.info("verification_resent", account_id=account.id)

    # sign-in
    def authenticate(self, login: str, password: str) -> Account:
        """Resolve a username (or email) and password to an account.

        Unknown, deleted, banned and wrong-password cases all raise the same
        InvalidCredentials.
        """
        account = self.store.get_account_by_login(login.strip()) if isinstance(login, str) else None
        if account is None or account.is_deleted:
            # Hash anyway so unknown accounts cost the same as wrong passwords
            self._pwd_hasher.hash(password if isinstance(password, str) else "")
            raise InvalidCredentials()
        if not self.password_matches(account, password):
            logger.info("password_authentication_failed", account_id=account.id)
            raise InvalidCredentials()
        if self.store.is_email_banned(account.email):
            logger.warning("banned_account_signin", account_id=account.id)
            raise InvalidCredentials()
        return account

    # password lifecycle
    def initiate_password_reset(self, email: str) -> Optional[str]:
        """Start a reset and email the token; returns the raw token or None.

        Callers must report success either way so the response does not
        reveal whether the address is registered.
        """
        try:
            normalized = normalize_email(email)
        except ValidationError:
            return None
        account = self.store.get_account_by_email(normalized)
        if account is None or account.is_deleted or self.store.is_email_banned(normalized):
            logger.info("password_reset_skipped")
            return None
        if not account.has_password and not account.linked_identities:
            logger.info("password_reset_skipped", account_id=account.id)
            return None
        raw = secrets.token_urlsafe(32)
        expires_at = utcnow() + timedelta(minutes=self.settings.password_reset_ttl_minutes)
        self.store.set_reset_token(account.id, token_digest(raw), expires_at)
        self.email.send_password_reset(
            normalized,
            account.username,
            raw,
            ttl_minutes=self.settings.password_reset_ttl_minutes,
        )
        logger.info("password_reset_requested", account_id=account.id)
        return raw

    def complete_password_reset(self, token: str, new_password: str) -> Account:
        validate_password(new_password)
        if not token:
            raise InvalidOrExpiredToken("Invalid or expired reset token.")
        digest = token_digest(token)
        account = self.store.get_account_by_reset_digest(digest)
        if account is None or account.is_deleted:
            raise InvalidOrExpiredToken("Invalid or expired reset token.")
        if account.reset_expires_at is None or account.reset_expires_at <= utcnow():
            self.store.set_reset_token(account.id, None, None)
            raise InvalidOrExpiredToken("Invalid or expired reset token.")
        password_hash, algo = self.hash_password(new_password)
        if not self.store.consume_reset_token(account.id, digest, password_hash, algo):
            raise InvalidOrExpiredToken("Invalid or expired reset token.")
        logger.info("password_reset_completed", account_id=account.id)
        return self.store.get_account(account.id)

    def change_password(self, account_id: str, current_password: str, new_password: str) -> None:
        account = self._require_account(account_id)
        if not self.password_matches(account, current_password):
            raise InvalidCredentials("Incorrect current password.", status_code=400)
        validate_password(new_password)
        password_hash, algo = self.hash_password(new_password)
        self.store.set_password(account.id, password_hash, algo)
        logger.info("password_changed", account_id=account.id)

    def add_credentials(self, account_id: str, email: str, password: str) -> Account:
        """Give an account an email and password, typically after a federated signup."""
        account = self._require_account(account_id)
        if account.has_password:
            raise ValidationError(
                "Account already has a password; use change-password.",
                detail={"field": "password"},
            )
        email = normalize_email(email)
        validate_password(password)
        self._ensure_not_banned(email)
        if account.email != email:
            owner = self.store.get_account_by_email(email)
            if owner is not None and owner.id != account.id:
                raise ValidationError("Email already in use.", detail={"field": "email"})
            try:
                account = self.store.set_email(account.id, email, verified=False)
            except ConstraintViolation as exc:
                raise ValidationError("Email already in use.", detail=exc.detail) from exc
            self._issue_verification(account)
        password_hash, algo = self.hash_password(password)
        self.store.set_password(account.id, password_hash, algo)
        logger.info("credentials_added", account_id=account.id)
        return self.store.get_account(account.id)

    # mfa activation
    def set_temp_mfa_secret(self, account_id: str, secret: str) -> None:
        account = self._require_account(account_id)
        if account.mfa_enabled:
            raise ValidationError("Two-factor authentication is already enabled.")
        self.store.set_mfa(account.id, MfaState.PENDING, secret)

    def enable_mfa(self, account_id: str, code: str) -> Account:
        """Confirm the pending secret with a code; only then is MFA enforced."""
        account = self._require_account(account_id)
        if account.mfa_enabled:
            raise ValidationError("Two-factor authentication is already enabled.")
        if account.mfa_state != MfaState.PENDING or not account.mfa_secret:
            raise ValidationError("Start two-factor setup first.")
        if not self.two_factor.is_otp_valid(account.mfa_secret, code):
            raise ValidationError("Invalid verification code.", detail={"field": "code"})
        self.store.set_mfa(account.id, MfaState.ENABLED, account.mfa_secret)
        if account.email:
            self.email.send_mfa_enabled(account.email, account.username)
        logger.info("mfa_enabled", account_id=account.id)
        return self.store.get_account(account.id)

    def disable_mfa(self, account_id: str, code: str) -> None:
        account = self._require_account(account_id)
        if not account.mfa_enabled:
            raise ValidationError("Two-factor authentication is not enabled.")
        if not self.two_factor.is_otp_valid(account.mfa_secret, code):
            raise ValidationError("Invalid verification code.", detail={"field": "code"})
        self.store.set_mfa(account.id, MfaState.DISABLED, None)
        logger.info("mfa_disabled", account_id=account.id)
