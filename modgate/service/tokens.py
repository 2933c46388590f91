from __future__ import annotations

import base64
import hashlib
import hmac
import ipaddress
import json
import re
import time
import uuid
from typing import Any, Optional
from urllib.parse import urlparse

from fastapi import Response

from modgate.config import Settings
from modgate.logging import get_logger
from modgate.service.errors import TokenExpired, TokenInvalid
from modgate.storage.memory import MemoryStore
from modgate.storage.models import Account

logger = get_logger(__name__)

ACCESS_TOKEN = "access"
REFRESH_TOKEN = "refresh"
PRE_AUTH_TOKEN = "mfa-pending"

_LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1"}


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class TokenService:
    """Mints and validates HS256 tokens and owns refresh cookie policy.

    Three token types share one signing key and are told apart by the
    ``token_type`` claim, which every typed validator checks:

    - ``access``: short lived, carries username, tier and roles
    - ``refresh``: long lived, reusable until expiry
    - ``mfa-pending``: pre-auth token accepted only by MFA login completion
    """

    def __init__(self, settings: Settings, store: MemoryStore) -> None:
        self.settings = settings
        self.store = store
        self._leeway = max(0, settings.token_clock_skew_seconds)

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
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _mint(
        self, account_id: str, token_type: str, ttl_seconds: int, **claims: Any
    ) -> str:
        now = int(time.time())
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": account_id,
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + ttl_seconds,
            **claims,
        }
        return self._encode_jwt(payload)

    def generate_access_token(self, account: Account) -> str:
        return self._mint(
            account.id,
            ACCESS_TOKEN,
            self.settings.access_token_ttl_minutes * 60,
            username=account.username,
            tier=account.tier.value,
            roles=list(account.roles),
        )

    def generate_refresh_token(self, account: Account) -> str:
        return self._mint(
            account.id, REFRESH_TOKEN, self.settings.refresh_token_ttl_minutes * 60
        )

    def generate_pre_auth_token(self, account_id: str) -> str:
        return self._mint(
            account_id,
            PRE_AUTH_TOKEN,
            self.settings.pre_auth_token_ttl_seconds,
            purpose=PRE_AUTH_TOKEN,
        )

    def validate_token(self, token: Optional[str]) -> dict[str, Any]:
        """Verify signature, issuer, audience and expiry and return the claims.

        Raises:
            TokenInvalid: malformed, badly signed or foreign token
            TokenExpired: well formed and signed, but past ``exp``
        """
        if not token or not isinstance(token, str):
            raise TokenInvalid("token missing")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalid("malformed token") from None

        # Pin the algorithm so a forged header cannot downgrade verification
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            raise TokenInvalid("malformed token header") from None
        if not isinstance(header, dict):
            raise TokenInvalid("malformed token header")
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise TokenInvalid("unsupported token algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise TokenInvalid("bad token signature")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            raise TokenInvalid("malformed token payload") from None
        if not isinstance(payload, dict):
            raise TokenInvalid("malformed token payload")

        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenInvalid("token issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise TokenInvalid("token audience mismatch")
        if not payload.get("sub"):
            raise TokenInvalid("token subject missing")
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            raise TokenInvalid("token expiry missing") from None
        if exp_ts <= time.time() - self._leeway:
            raise TokenExpired("token expired")
        return payload

    def _validate_typed(self, token: Optional[str], token_type: str) -> dict[str, Any]:
        claims = self.validate_token(token)
        if claims.get("token_type") != token_type:
            raise TokenInvalid(f"expected {token_type} token")
        return claims

    def validate_access_token(self, token: Optional[str]) -> dict[str, Any]:
        return self._validate_typed(token, ACCESS_TOKEN)

    def validate_refresh_token(self, token: Optional[str]) -> dict[str, Any]:
        return self._validate_typed(token, REFRESH_TOKEN)

    def is_refresh_token(self, token: Optional[str]) -> bool:
        try:
            return self.validate_token(token).get("token_type") == REFRESH_TOKEN
        except (TokenInvalid, TokenExpired):
            return False

    def get_user_id_from_token(self, token: Optional[str]) -> Optional[str]:
        try:
            return self.validate_token(token)["sub"]
        except (TokenInvalid, TokenExpired):
            return None

    def validate_pre_auth_token(self, token: Optional[str]) -> Optional[Account]:
        """Return the account a live pre-auth token is bound to, or None."""
        try:
            claims = self._validate_typed(token, PRE_AUTH_TOKEN)
        except (TokenInvalid, TokenExpired) as exc:
            logger.info("pre_auth_token_rejected", reason=exc.error_code)
            return None
        if claims.get("purpose") != PRE_AUTH_TOKEN:
            return None
        account = self.store.get_account(claims["sub"])
        if account is None or account.is_deleted:
            return None
        return account

    def issue_login_tokens(self, account: Account) -> dict[str, Any]:
        return {
            "access_token": self.generate_access_token(account),
            "refresh_token": self.generate_refresh_token(account),
            "token_type": "bearer",
            "expires_in": self.settings.access_token_ttl_minutes * 60,
        }

    @staticmethod
    def _is_local_host(host: str) -> bool:
        if host in _LOCAL_HOSTS:
            return True
        try:
            ipaddress.ip_address(host)
        except ValueError:
            return False
        return True

    def cookie_domain(self, request_host: Optional[str] = None) -> Optional[str]:
        """Domain attribute for the refresh cookie, or None for a host-only cookie.

        The root two-label domain of ``frontend_url`` wins; without a usable
        frontend URL the configured host pattern is matched against the
        request host instead.
        """
        frontend_host = None
        if self.settings.frontend_url:
            try:
                frontend_host = urlparse(self.settings.frontend_url).hostname
            except ValueError:
                frontend_host = None
        if frontend_host:
            if self._is_local_host(frontend_host):
                return None
            labels = frontend_host.split(".")
            return ".".join(labels[-2:]) if len(labels) >= 2 else None

        if not request_host:
            return None
        host = request_host.split(":", 1)[0].lower()
        if self._is_local_host(host):
            return None
        try:
            match = re.match(self.settings.cookie_domain_pattern, host)
        except re.error:
            logger.warning("cookie_domain_pattern_invalid")
            return None
        if not match:
            return None
        return match.group(1) if match.groups() else match.group(0)

    def set_token_cookie(
        self, response: Response, refresh_token: str, *, request_host: Optional[str] = None
    ) -> None:
        response.set_cookie(
            self.settings.refresh_cookie_name,
            refresh_token,
            max_age=self.settings.refresh_token_ttl_minutes * 60,
            path="/",
            domain=self.cookie_domain(request_host),
            secure=True,
            httponly=True,
            samesite="none",
        )

    def clear_token_cookie(self, response: Response, *, request_host: Optional[str] = None) -> None:
        response.delete_cookie(
            self.settings.refresh_cookie_name,
            path="/",
            domain=self.cookie_domain(request_host),
            secure=True,
            httponly=True,
            samesite="none",
        )
