from __future__ import annotations

import re
import secrets
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode, urlparse

import httpx

from modgate.config import Settings
from modgate.logging import get_logger
from modgate.service.errors import (
    AccountCollision,
    ForbiddenError,
    LoginFailure,
    NotFoundError,
    ValidationError,
)
from modgate.service.passwords import USERNAME_MAX_LENGTH, USERNAME_MIN_LENGTH
from modgate.storage.errors import ConstraintViolation
from modgate.storage.memory import MemoryStore
from modgate.storage.models import Account, LinkedIdentity, utcnow
from modgate.storage.redis_cache import RedisCache

logger = get_logger(__name__)

OAUTH_PROVIDERS: Dict[str, Dict[str, str]] = {
    "github": {
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "scope": "read:user user:email",
    },
    "gitlab": {
        "auth_url": "https://gitlab.com/oauth/authorize",
        "token_url": "https://gitlab.com/oauth/token",
        "userinfo_url": "https://gitlab.com/api/v4/user",
        "scope": "read_user",
    },
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://openidconnect.googleapis.com/v1/userinfo",
        "scope": "openid email profile",
    },
    "discord": {
        "auth_url": "https://discord.com/oauth2/authorize",
        "token_url": "https://discord.com/api/oauth2/token",
        "userinfo_url": "https://discord.com/api/users/@me",
        "scope": "identify email",
    },
}

# Providers whose identities are not shown on public profiles
HIDDEN_PROVIDERS = {"google"}

OAUTH_STATE_TTL = timedelta(minutes=10)

_USERNAME_UNSAFE = re.compile(r"[^a-zA-Z0-9_.-]")


@dataclass
class NormalizedProfile:
    provider: str
    provider_uid: str
    username: Optional[str] = None
    email: Optional[str] = None
    avatar_url: Optional[str] = None
    profile_url: Optional[str] = None
    access_token: Optional[str] = None


@dataclass
class OAuthOutcome:
    account: Account
    action: str  # "linked", "login" or "registered"


def _as_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def exchange_and_normalize(provider: str, raw_profile: dict, token: Optional[str]) -> NormalizedProfile:
    """Map a provider's userinfo document onto a NormalizedProfile.

    Raises:
        ValidationError: unknown provider or a profile without a stable id
    """
    if provider not in OAUTH_PROVIDERS:
        raise ValidationError(f"Unsupported OAuth provider: {provider}")
    if not isinstance(raw_profile, dict):
        raise ValidationError("OAuth profile must be an object")

    if provider == "github":
        profile = NormalizedProfile(
            provider=provider,
            provider_uid=_as_str(raw_profile.get("id")),
            username=_as_str(raw_profile.get("login")),
            email=_as_str(raw_profile.get("email")),
            avatar_url=_as_str(raw_profile.get("avatar_url")),
            profile_url=_as_str(raw_profile.get("html_url")),
        )
    elif provider == "gitlab":
        profile = NormalizedProfile(
            provider=provider,
            provider_uid=_as_str(raw_profile.get("id")),
            username=_as_str(raw_profile.get("username")),
            email=_as_str(raw_profile.get("email")),
            avatar_url=_as_str(raw_profile.get("avatar_url")),
            profile_url=_as_str(raw_profile.get("web_url")),
        )
    elif provider == "google":
        verified = raw_profile.get("email_verified", True)
        profile = NormalizedProfile(
            provider=provider,
            provider_uid=_as_str(raw_profile.get("sub") or raw_profile.get("id")),
            username=_as_str(raw_profile.get("name")),
            email=_as_str(raw_profile.get("email")) if verified else None,
            avatar_url=_as_str(raw_profile.get("picture")),
        )
    else:
        uid = _as_str(raw_profile.get("id"))
        avatar = _as_str(raw_profile.get("avatar"))
        profile = NormalizedProfile(
            provider=provider,
            provider_uid=uid,
            username=_as_str(raw_profile.get("username")),
            email=_as_str(raw_profile.get("email")) if raw_profile.get("verified", False) else None,
            avatar_url=f"https://cdn.discordapp.com/avatars/{uid}/{avatar}.png" if uid and avatar else None,
            profile_url=f"https://discord.com/users/{uid}" if uid else None,
        )

    if not profile.provider_uid:
        raise ValidationError("OAuth profile is missing an account id")
    if profile.email:
        profile.email = profile.email.strip().lower()
    profile.access_token = token
    return profile


class OAuthLinkingService:
    """Turns a provider callback into a link, a returning login or a new account."""

    def __init__(
        self,
        store: MemoryStore,
        settings: Settings,
        *,
        cache: Optional[RedisCache] = None,
        http_timeout: float = 30.0,
    ) -> None:
        self.store = store
        self.settings = settings
        self.cache = cache
        self.http_timeout = http_timeout
        self._states: Dict[str, Tuple[str, datetime, Optional[str]]] = {}
        self._state_lock = threading.Lock()
        self._code_registry: Dict[Tuple[str, str], Tuple[dict, str]] = {}

    # authorization redirect and state
    def _validate_redirect_uri(self, redirect_uri: str) -> str:
        parsed = urlparse(redirect_uri)
        if parsed.scheme not in {"https", "http"} or not parsed.netloc:
            raise ValidationError("OAuth redirect URI must be an absolute http(s) URL")
        if parsed.scheme == "http" and parsed.hostname not in {"localhost", "127.0.0.1"}:
            raise ValidationError("Insecure redirect URI not allowed outside localhost")
        return redirect_uri

    def _redirect_uri(self, provider: str) -> str:
        if not self.settings.oauth_redirect_uri:
            logger.error("oauth_no_redirect_uri_configured", provider=provider)
            raise ValidationError("No OAuth redirect URI configured")
        base = self._validate_redirect_uri(self.settings.oauth_redirect_uri)
        return base.replace("{provider}", provider)

    async def start(self, provider: str, *, link_account_id: Optional[str] = None) -> dict:
        if provider not in OAUTH_PROVIDERS:
            raise NotFoundError(f"Unsupported OAuth provider: {provider}")
        client_id, _ = self.settings.oauth_credentials(provider)
        if not client_id:
            logger.warning("oauth_not_configured", provider=provider)
            raise ValidationError(f"OAuth provider {provider} is not configured")

        state = uuid.uuid4().hex
        expires_at = utcnow() + OAUTH_STATE_TTL
        if self.cache:
            await self.cache.set_oauth_state(state, provider, expires_at, link_account_id)
        else:
            with self._state_lock:
                self._purge_expired_states()
                self._states[state] = (provider, expires_at, link_account_id)

        config = OAUTH_PROVIDERS[provider]
        params = {
            "client_id": client_id,
            "redirect_uri": self._redirect_uri(provider),
            "response_type": "code",
            "scope": config["scope"],
            "state": state,
        }
        if provider == "google":
            params["access_type"] = "online"
            params["prompt"] = "select_account"
        return {
            "authorization_url": f"{config['auth_url']}?{urlencode(params)}",
            "state": state,
            "provider": provider,
        }

    def _purge_expired_states(self) -> None:
        now = utcnow()
        expired = [s for s, (_, exp, _) in self._states.items() if exp <= now]
        for state in expired:
            del self._states[state]

    async def _consume_state(self, state: str, provider: str) -> Optional[str]:
        """Pop ``state`` once and return the account id it was started for, if any."""
        record = None
        if self.cache:
            record = await self.cache.pop_oauth_state(state)
        else:
            with self._state_lock:
                record = self._states.pop(state, None)
        if record is None:
            raise ValidationError("Invalid or expired OAuth state")
        stored_provider, expires_at, link_account_id = record
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if stored_provider != provider or expires_at <= utcnow():
            raise ValidationError("Invalid or expired OAuth state")
        return link_account_id

    # upstream exchange
    def register_oauth_code(
        self, provider: str, code: str, raw_profile: dict, access_token: str = "test-access-token"
    ) -> None:
        """Pre-register the userinfo a code exchanges to, for tests and offline flows."""
        self._code_registry[(provider, code)] = (raw_profile, access_token)

    async def _exchange_code(self, provider: str, code: str) -> Tuple[dict, str]:
        registered = self._code_registry.pop((provider, code), None)
        if registered is not None:
            return registered

        client_id, client_secret = self.settings.oauth_credentials(provider)
        if not client_id or not client_secret:
            logger.error("oauth_credentials_missing", provider=provider)
            raise LoginFailure("OAuth provider is not configured.")
        config = OAUTH_PROVIDERS[provider]

        try:
            async with httpx.AsyncClient(timeout=self.http_timeout, follow_redirects=False) as client:
                token_response = await client.post(
                    config["token_url"],
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "code": code,
                        "redirect_uri": self._redirect_uri(provider),
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = token_result.get("access_token") if isinstance(token_result, dict) else None
                if not access_token:
                    logger.error("oauth_no_access_token", provider=provider)
                    raise LoginFailure("Login failed.")

                userinfo_headers = {"Authorization": f"Bearer {access_token}"}
                if provider == "github":
                    userinfo_headers["Accept"] = "application/vnd.github+json"
                userinfo_response = await client.get(config["userinfo_url"], headers=userinfo_headers)
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
                if not isinstance(userinfo, dict):
                    logger.error("oauth_userinfo_invalid_format", provider=provider)
                    raise LoginFailure("Login failed.")

                # GitHub omits private emails from /user
                if provider == "github" and not userinfo.get("email"):
                    emails_response = await client.get(
                        "https://api.github.com/user/emails", headers=userinfo_headers
                    )
                    if emails_response.status_code == 200:
                        primary = next(
                            (
                                e.get("email")
                                for e in emails_response.json()
                                if e.get("primary") and e.get("verified")
                            ),
                            None,
                        )
                        if primary:
                            userinfo["email"] = primary
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider=provider,
                status_code=exc.response.status_code,
            )
            raise LoginFailure("Login failed.") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("oauth_exchange_error", provider=provider, error=str(exc))
            raise LoginFailure("Login failed.") from exc

        logger.info("oauth_exchange_success", provider=provider)
        return userinfo, access_token

    async def complete(
        self,
        provider: str,
        code: str,
        state: str,
        *,
        current_account_id: Optional[str] = None,
    ) -> OAuthOutcome:
        """Validate state, exchange the code and apply the linking rules."""
        if provider not in OAUTH_PROVIDERS:
            raise NotFoundError(f"Unsupported OAuth provider: {provider}")
        link_account_id = await self._consume_state(state, provider)
        raw_profile, access_token = await self._exchange_code(provider, code)
        try:
            profile = exchange_and_normalize(provider, raw_profile, access_token)
        except ValidationError as exc:
            logger.error("oauth_profile_invalid", provider=provider, error=exc.message)
            raise LoginFailure("Login failed.") from exc
        return self.handle_callback(profile, current_account_id=current_account_id or link_account_id)

    # linking algorithm
    def handle_callback(
        self, profile: NormalizedProfile, *, current_account_id: Optional[str] = None
    ) -> OAuthOutcome:
        """Link to the current account, log in the bound account, or register a new one.

        AccountCollision passes through untouched; every other failure is
        logged and reported as LoginFailure.
        """
        try:
            if current_account_id:
                account = self._link(current_account_id, profile)
                return OAuthOutcome(account=account, action="linked")
            return self._login_or_register(profile)
        except AccountCollision:
            raise
        except Exception as exc:
            logger.exception(
                "oauth_login_failed",
                provider=profile.provider,
                error_type=type(exc).__name__,
            )
            raise LoginFailure("Login failed.") from exc

    def _identity_from(self, profile: NormalizedProfile) -> LinkedIdentity:
        return LinkedIdentity(
            provider=profile.provider,
            provider_uid=profile.provider_uid,
            provider_username=profile.username,
            provider_access_token=profile.access_token,
            profile_url=profile.profile_url,
            visible=profile.provider not in HIDDEN_PROVIDERS,
        )

    def _link(self, account_id: str, profile: NormalizedProfile) -> Account:
        account = self.store.get_account(account_id)
        if account is None or account.is_deleted:
            raise NotFoundError("account not found")
        owner = self.store.get_account_by_provider(profile.provider, profile.provider_uid)
        if owner is not None and owner.id != account.id:
            logger.warning(
                "oauth_account_collision",
                provider=profile.provider,
                account_id=account.id,
                owner_id=owner.id,
            )
            raise AccountCollision(
                "This external account is already linked to another user.",
                detail={"provider": profile.provider},
            )
        try:
            linked = self.store.link_identity(account.id, self._identity_from(profile))
        except ConstraintViolation as exc:
            raise AccountCollision(
                "This external account is already linked to another user.",
                detail={"provider": profile.provider},
            ) from exc
        logger.info("oauth_identity_linked", provider=profile.provider, account_id=account.id)
        return linked

    def _login_or_register(self, profile: NormalizedProfile) -> OAuthOutcome:
        existing = self.store.get_account_by_provider(profile.provider, profile.provider_uid)
        if existing is not None:
            if existing.is_deleted:
                raise ForbiddenError("account is deleted")
            refreshed = self.store.link_identity(existing.id, self._identity_from(profile))
            logger.info("oauth_login", provider=profile.provider, account_id=existing.id)
            return OAuthOutcome(account=refreshed, action="login")

        if profile.email and self.store.is_email_banned(profile.email):
            raise ForbiddenError("email is banned")
        email = profile.email
        if email and self.store.get_account_by_email(email) is not None:
            # No silent merge into a password account that owns this address
            email = None
        account = self.store.create_account(
            self._unique_username(profile),
            email=email,
            email_verified=bool(email),
            avatar_url=profile.avatar_url,
        )
        try:
            account = self.store.link_identity(account.id, self._identity_from(profile))
        except ConstraintViolation:
            # A concurrent callback bound this identity first; keep that account
            self.store.mark_deleted(account.id)
            winner = self.store.get_account_by_provider(profile.provider, profile.provider_uid)
            if winner is None or winner.is_deleted:
                raise
            return OAuthOutcome(account=winner, action="login")
        logger.info("oauth_account_registered", provider=profile.provider, account_id=account.id)
        return OAuthOutcome(account=account, action="registered")

    def _random_username(self) -> str:
        while True:
            candidate = f"user_{secrets.token_hex(4)}"
            if not self.store.username_taken(candidate):
                return candidate

    def _unique_username(self, profile: NormalizedProfile) -> str:
        if profile.provider in HIDDEN_PROVIDERS or not profile.username:
            return self._random_username()
        base = _USERNAME_UNSAFE.sub("", profile.username)[: USERNAME_MAX_LENGTH - 4]
        if len(base) < USERNAME_MIN_LENGTH:
            return self._random_username()
        candidate = base
        suffix = 1
        while self.store.username_taken(candidate):
            candidate = f"{base}_{suffix}"
            suffix += 1
        return candidate

    def unlink(self, account_id: str, provider: str) -> Account:
        account = self.store.get_account(account_id)
        if account is None or account.is_deleted:
            raise NotFoundError("account not found")
        if account.identity_for(provider) is None:
            raise NotFoundError(f"No {provider} account is linked.")
        if not account.has_password and len(account.linked_identities) <= 1:
            raise ValidationError(
                "Add a password or link another account before removing this one."
            )
        self.store.unlink_identity(account.id, provider)
        logger.info("oauth_identity_unlinked", provider=provider, account_id=account.id)
        return self.store.get_account(account.id)
