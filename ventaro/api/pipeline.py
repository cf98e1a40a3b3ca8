from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from fastapi import Request, Response

from ventaro.api.schemas import validate_json_depth
from ventaro.logging import get_logger
from ventaro.service.auth import ACCESS_COOKIE, SessionData, TokenManager
from ventaro.service.csrf import CSRF_HEADER
from ventaro.service.errors import CSRFError, RateLimitedError, ValidationError
from ventaro.service.rate_limit import (
    RateLimitDecision,
    RateLimitStrategy,
    RateLimitTier,
    tier_for_path,
)
from ventaro.service.runtime import Runtime, get_runtime
from ventaro.service.validation import Schema

logger = get_logger(__name__)

_MUTATING_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


@dataclass
class GuardContext:
    """What a guarded route learns about the caller."""

    identity: str
    rate_limit: RateLimitDecision
    session: Optional[SessionData] = None
    data: dict[str, Any] = field(default_factory=dict)


def client_identity(request: Request, trusted_proxies: Optional[Iterable[str]] = None) -> str:
    """Address the rate limiter and login throttle key on.

    X-Forwarded-For is only read when the connecting peer is a configured
    proxy; the chain is walked from the right and the first hop that is not
    itself a trusted proxy wins.
    """
    peer = request.client.host if request.client else None
    if trusted_proxies is None:
        trusted_proxies = get_runtime().settings.trusted_proxies
    trusted = set(trusted_proxies)
    if peer is None or peer not in trusted:
        return peer or "unknown"
    forwarded = request.headers.get("x-forwarded-for", "")
    hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
    for hop in reversed(hops):
        if hop not in trusted:
            return hop
    return hops[0] if hops else peer


def apply_rate_limit_headers(response: Response, decision: RateLimitDecision) -> None:
    for name, value in decision.headers().items():
        response.headers[name] = value


def presented_session_id(request: Request, tokens: TokenManager) -> Optional[str]:
    """Session id claimed by the caller's access credential, without a registry lookup."""
    token = TokenManager.extract_bearer(request.headers.get("authorization")) or request.cookies.get(
        ACCESS_COOKIE
    )
    if not token:
        return None
    payload = tokens.decode_access(token)
    if not payload:
        return None
    sid = payload.get("sid")
    return sid if isinstance(sid, str) else None


class RequestGuard:
    """Per-route chain of the security stages, always run in the same order.

    1. rate limit (tier picked from the path unless ``tier`` names one);
       identities blocked by the penalty limiter are refused first and the
       tier quota shrinks with each violation the identity has on record
    2. CSRF token consumption for mutating methods
    3. authentication and optional permission check
    4. payload validation against ``schema``

    Used as a FastAPI dependency: ``guard: GuardContext = Depends(RequestGuard(...))``.
    Each stage raises the matching ``ServiceError``; rate-limit headers are
    copied onto the response once the request is let through.
    """

    def __init__(
        self,
        *,
        tier: Optional[str] = None,
        window_seconds: Optional[int] = None,
        strategy: RateLimitStrategy = RateLimitStrategy.FIXED_WINDOW,
        csrf: bool = False,
        auth: bool = False,
        permission: Optional[str] = None,
        schema: Optional[Schema] = None,
    ) -> None:
        self.tier = tier
        self.window_seconds = window_seconds
        self.strategy = strategy
        self.csrf = csrf
        self.auth = auth or permission is not None
        self.permission = permission
        self.schema = schema

    def _resolve_tier(self, path: str, runtime: Runtime) -> RateLimitTier:
        settings = runtime.settings
        if self.tier is None:
            resolved = tier_for_path(path, settings)
        else:
            resolved = RateLimitTier(
                self.tier,
                getattr(settings, f"rate_limit_{self.tier}"),
                settings.rate_limit_window_seconds,
            )
        if self.window_seconds is not None:
            resolved = RateLimitTier(resolved.name, resolved.limit, self.window_seconds)
        return resolved

    async def __call__(self, request: Request, response: Response) -> GuardContext:
        runtime = get_runtime()
        identity = client_identity(request, runtime.settings.trusted_proxies)
        path = request.url.path

        decision = await self._check_rate_limit(runtime, identity, path)

        if self.csrf and request.method.upper() in _MUTATING_METHODS:
            token = request.headers.get(CSRF_HEADER)
            session_id = presented_session_id(request, runtime.tokens)
            if not await runtime.csrf.validate(token, session_id):
                raise CSRFError(
                    "csrf token missing or invalid",
                    detail={"path": path, "token_present": bool(token)},
                )

        session: Optional[SessionData] = None
        if self.auth:
            session = await runtime.auth.require_auth(
                request.headers.get("authorization"), request.cookies.get(ACCESS_COOKIE)
            )
            if self.permission:
                runtime.auth.ensure_permission(session, self.permission)

        data: dict[str, Any] = {}
        if self.schema is not None:
            payload = await self._payload(request)
            result = runtime.validator.validate(payload, self.schema)
            if not result.is_valid:
                raise ValidationError("request payload rejected", field_errors=result.errors)
            data = result.sanitized_data

        apply_rate_limit_headers(response, decision)
        return GuardContext(identity=identity, rate_limit=decision, session=session, data=data)

    async def _check_rate_limit(
        self, runtime: Runtime, identity: str, path: str
    ) -> RateLimitDecision:
        blocked = runtime.penalty_limiter.blocked(identity)
        if blocked is not None:
            logger.warning("rate_limit_identity_blocked", identity=identity, path=path)
            raise RateLimitedError("identity blocked after repeated violations", headers=blocked.headers())

        tier = self._resolve_tier(path, runtime)
        decision = await runtime.rate_limiter.check(
            f"{identity}:{path}",
            runtime.penalty_limiter.limit_for(identity, tier.limit),
            tier.window_seconds,
            strategy=self.strategy,
        )
        if not decision.allowed:
            runtime.penalty_limiter.record_violation(identity)
            raise RateLimitedError(
                f"{tier.name} tier quota exhausted",
                headers=decision.headers(),
                detail={"tier": tier.name, "path": path},
            )
        return decision

    @staticmethod
    async def _payload(request: Request) -> dict[str, Any]:
        if request.method.upper() in ("GET", "HEAD", "DELETE"):
            return dict(request.query_params)
        body = await request.body()
        if not body:
            return {}
        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ValidationError(
                "request body is not JSON", field_errors={"body": ["Invalid JSON payload"]}
            ) from exc
        if not isinstance(payload, dict):
            raise ValidationError(
                "request body is not an object", field_errors={"body": ["Expected a JSON object"]}
            )
        try:
            validate_json_depth(payload)
        except ValueError as exc:
            raise ValidationError(
                "request body too deep or too large", field_errors={"body": [str(exc)]}
            ) from exc
        return payload
