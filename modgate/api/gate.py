from __future__ import annotations

from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Mapping, Optional

from fastapi import Request
from fastapi.responses import Response

from modgate.api.error_handling import error_response
from modgate.logging import get_logger
from modgate.service.errors import ForbiddenError, TokenExpired, TokenInvalid, Unauthorized
from modgate.service.runtime import Runtime, check_rate_limit, get_runtime
from modgate.service.tokens import extract_bearer
from modgate.storage.models import ROLE_ADMIN, ROLE_API, Tier

logger = get_logger(__name__)

RATE_LIMIT_WINDOW_SECONDS = 60

# (writes, reads) per minute
RATE_LIMIT_TIERS: Dict[str, tuple[int, int]] = {
    "api-enterprise": (500, 5000),
    "api": (60, 600),
    "admin": (1000, 20000),
    "user": (150, 2000),
    "anonymous": (20, 300),
}

_READ_METHODS = {"GET", "HEAD", "OPTIONS"}


@dataclass
class Principal:
    """Identity resolved for one request, passed explicitly to handlers."""

    account_id: str
    username: str
    roles: List[str]
    tier: Tier
    method: str  # "api_key" or "bearer"
    api_key_id: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return ROLE_ADMIN in self.roles


@dataclass
class GateContext:
    path: str
    method: str
    headers: Mapping[str, str]
    client_ip: str = "unknown"
    principal: Optional[Principal] = None
    response_headers: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_request(cls, request: Request, *, trust_proxy: bool = False) -> "GateContext":
        return cls(
            path=request.url.path,
            method=request.method.upper(),
            headers=request.headers,
            client_ip=client_ip(request, trust_proxy=trust_proxy),
        )


GateStep = Callable[[GateContext], Awaitable[Optional[Response]]]


def client_ip(request: Request, *, trust_proxy: bool = False) -> str:
    """Caller address used for anonymous rate limiting.

    CF-Connecting-IP and X-Forwarded-For are client-controlled unless a proxy
    in front rewrites them, so they are read only when trust_proxy is set.
    """
    peer = request.client.host if request.client else "unknown"
    if not trust_proxy:
        return peer
    cf_ip = request.headers.get("CF-Connecting-IP")
    if cf_ip:
        return cf_ip.strip()
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return peer


class RequestAuthenticationGate:
    """Resolves the caller before any route runs.

    Steps run in order against a shared GateContext; the first step that
    returns a response ends the pipeline and that response is sent as is.
    Missing credentials are not an error here, routes decide whether they
    need a principal.
    """

    def __init__(
        self,
        runtime_provider: Callable[[], Runtime] = get_runtime,
        *,
        steps: Optional[List[GateStep]] = None,
    ) -> None:
        self._runtime_provider = runtime_provider
        self.steps: List[GateStep] = (
            steps
            if steps is not None
            else [self.resolve_api_key, self.resolve_bearer_token, self.enforce_rate_limit]
        )

    @property
    def runtime(self) -> Runtime:
        return self._runtime_provider()

    def _is_api_path(self, path: str) -> bool:
        prefix = self.runtime.settings.api_prefix
        if not prefix:
            return True
        return path == prefix or path.startswith(prefix + "/")

    async def run(self, ctx: GateContext) -> Optional[Response]:
        for step in self.steps:
            response = await step(ctx)
            if response is not None:
                return response
        return None

    async def resolve_api_key(self, ctx: GateContext) -> Optional[Response]:
        runtime = self.runtime
        raw_key = ctx.headers.get(runtime.settings.api_key_header)
        if not raw_key or not self._is_api_path(ctx.path):
            return None
        api_key = runtime.api_keys.resolve_key(raw_key.strip())
        try:
            if api_key is None:
                raise Unauthorized("Invalid API Key.")
            account = runtime.api_keys.get_user_from_key(api_key)
        except Unauthorized as exc:
            logger.warning("api_key_rejected", path=ctx.path, client_ip=ctx.client_ip)
            return error_response(exc.status_code, exc.message, code=exc.error_code)
        roles = list(account.roles)
        if ROLE_API not in roles:
            roles.append(ROLE_API)
        ctx.principal = Principal(
            account_id=account.id,
            username=account.username,
            roles=roles,
            tier=api_key.tier,
            method="api_key",
            api_key_id=api_key.id,
        )
        return None

    async def resolve_bearer_token(self, ctx: GateContext) -> Optional[Response]:
        if ctx.principal is not None:
            return None
        token = extract_bearer(ctx.headers.get("Authorization"))
        if not token:
            return None
        runtime = self.runtime
        try:
            claims = runtime.tokens.validate_access_token(token)
        except (TokenInvalid, TokenExpired) as exc:
            # Invalid tokens leave the request anonymous; protected routes answer 401
            logger.info("bearer_token_ignored", path=ctx.path, reason=exc.error_code)
            return None
        account = runtime.store.get_account(claims["sub"])
        if account is None or account.is_deleted:
            logger.info("bearer_account_unavailable", path=ctx.path)
            return None
        try:
            tier = Tier(claims.get("tier", account.tier.value))
        except ValueError:
            tier = account.tier
        ctx.principal = Principal(
            account_id=account.id,
            username=claims.get("username") or account.username,
            roles=list(claims.get("roles") or account.roles),
            tier=tier,
            method="bearer",
        )
        return None

    def _rate_tier(self, principal: Optional[Principal]) -> str:
        if principal is None:
            return "anonymous"
        if principal.method == "api_key":
            return "api-enterprise" if principal.tier == Tier.ENTERPRISE else "api"
        if principal.is_admin:
            return "admin"
        return "user"

    async def enforce_rate_limit(self, ctx: GateContext) -> Optional[Response]:
        runtime = self.runtime
        if not runtime.settings.rate_limit_enabled or not self._is_api_path(ctx.path):
            return None
        tier = self._rate_tier(ctx.principal)
        writes, reads = RATE_LIMIT_TIERS[tier]
        is_read = ctx.method in _READ_METHODS
        limit = reads if is_read else writes
        if ctx.principal is None:
            subject = f"ip:{ctx.client_ip}"
        elif ctx.principal.api_key_id:
            subject = f"key:{ctx.principal.api_key_id}"
        else:
            subject = f"account:{ctx.principal.account_id}"
        key = f"gate:{subject}:{'read' if is_read else 'write'}"

        allowed, remaining, reset_seconds = await check_rate_limit(
            runtime, key, limit, RATE_LIMIT_WINDOW_SECONDS, return_remaining=True
        )
        ctx.response_headers.update(
            {
                "X-RateLimit-Limit": str(limit),
                "X-RateLimit-Remaining": str(max(0, remaining)),
                "X-RateLimit-Tier": tier,
            }
        )
        if allowed:
            return None
        logger.warning("rate_limited", tier=tier, path=ctx.path, method=ctx.method)
        return error_response(
            429,
            "Rate limit exceeded.",
            code="rate_limited",
            headers={**ctx.response_headers, "Retry-After": str(max(1, reset_seconds))},
        )


def get_principal(request: Request) -> Optional[Principal]:
    return getattr(request.state, "principal", None)


def require_principal(request: Request) -> Principal:
    principal = get_principal(request)
    if principal is None:
        raise Unauthorized("Authentication required.")
    return principal


def _reject_api_key(principal: Optional[Principal]) -> None:
    if principal is not None and principal.method == "api_key":
        logger.warning("api_key_session_route_denied", api_key_id=principal.api_key_id)
        raise ForbiddenError("API keys cannot manage account credentials or keys.")


def get_session_principal(request: Request) -> Optional[Principal]:
    """Like get_principal, but API-key callers are refused instead of returned."""
    principal = get_principal(request)
    _reject_api_key(principal)
    return principal


def require_session_principal(request: Request) -> Principal:
    principal = require_principal(request)
    _reject_api_key(principal)
    return principal


def require_admin(request: Request) -> Principal:
    principal = require_session_principal(request)
    if not principal.is_admin:
        raise ForbiddenError("Admin access required.")
    return principal
