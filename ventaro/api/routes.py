from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, Request, Response

from ventaro.api.pipeline import GuardContext, RequestGuard, presented_session_id
from ventaro.api.schemas import (
    AdminUserResponse,
    CheckoutResponse,
    CSRFTokenResponse,
    Envelope,
    LoginResponse,
    LogoutResponse,
    PurchaseGrantResponse,
    RefreshResponse,
    SessionInfoResponse,
    SubscribeResponse,
    VerifyPurchaseResponse,
    VerifySessionResponse,
    WebhookResponse,
)
from ventaro.logging import get_correlation_id, get_logger
from ventaro.service.auth import ACCESS_COOKIE, REFRESH_COOKIE, REFRESH_COOKIE_PATH, TokenPair
from ventaro.service.errors import ValidationError
from ventaro.service.payments import CHECKOUT_COMPLETED
from ventaro.service.runtime import Runtime, get_runtime
from ventaro.service.validation import CommonSchemas
from ventaro.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

# Refresh is a login-class operation but counted over the hour
_REFRESH_WINDOW_SECONDS = 60 * 60


def _ok(data: Any) -> Envelope:
    return Envelope(status="ok", data=data, request_id=get_correlation_id() or str(uuid4()))


def _as_datetime(epoch: float) -> datetime:
    return datetime.fromtimestamp(epoch, tz=timezone.utc)


def _user_payload(user: User) -> AdminUserResponse:
    return AdminUserResponse(
        id=user.id,
        username=user.username,
        role=user.role.value,
        permissions=sorted(user.permissions),
    )


def _apply_session_cookies(response: Response, runtime: Runtime, tokens: TokenPair) -> None:
    secure = runtime.settings.is_production
    response.set_cookie(
        ACCESS_COOKIE,
        tokens.access_token,
        httponly=True,
        secure=secure,
        samesite="strict",
        max_age=runtime.settings.access_token_ttl_seconds,
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh_token,
        httponly=True,
        secure=secure,
        samesite="strict",
        max_age=runtime.settings.refresh_token_ttl_seconds,
        path=REFRESH_COOKIE_PATH,
    )


def _clear_session_cookies(response: Response, runtime: Runtime) -> None:
    secure = runtime.settings.is_production
    response.delete_cookie(ACCESS_COOKIE, path="/", secure=secure, httponly=True, samesite="strict")
    response.delete_cookie(
        REFRESH_COOKIE, path=REFRESH_COOKIE_PATH, secure=secure, httponly=True, samesite="strict"
    )


@router.get("/csrf-token", response_model=Envelope, tags=["security"])
async def issue_csrf_token(request: Request, guard: GuardContext = Depends(RequestGuard())):
    """Hand out a single-use CSRF token, bound to the caller's session if they present one."""
    runtime = get_runtime()
    session_id = presented_session_id(request, runtime.tokens)
    token = await runtime.csrf.issue(session_id)
    return _ok(CSRFTokenResponse(csrf_token=token.token, expires_at=_as_datetime(token.expires_at)))


@router.post("/admin/login", response_model=Envelope, tags=["admin"])
async def admin_login(
    response: Response,
    guard: GuardContext = Depends(RequestGuard(csrf=True, schema=CommonSchemas.admin_login)),
):
    runtime = get_runtime()
    login = await runtime.auth.authenticate_admin(
        guard.data["username"], guard.data["password"], guard.identity
    )
    _apply_session_cookies(response, runtime, login.tokens)
    csrf = await runtime.csrf.issue(login.tokens.session_id)
    return _ok(
        LoginResponse(
            user=_user_payload(login.user),
            access_token=login.tokens.access_token,
            expires_at=login.tokens.expires_at,
            csrf_token=csrf.token,
        )
    )


@router.get("/admin/login", response_model=Envelope, tags=["admin"])
async def admin_session(guard: GuardContext = Depends(RequestGuard(tier="admin", auth=True))):
    """Describe the current admin session."""
    runtime = get_runtime()
    session = guard.session
    csrf = await runtime.csrf.issue(session.session_id)
    user = User(
        id=session.user_id,
        username=session.username,
        role=session.role,
        permissions=session.permissions,
    )
    return _ok(
        SessionInfoResponse(
            user=_user_payload(user),
            session_id=session.session_id,
            expires_at=session.expires_at,
            csrf_token=csrf.token,
        )
    )


@router.delete("/admin/login", response_model=Envelope, tags=["admin"])
async def admin_logout(
    response: Response,
    guard: GuardContext = Depends(RequestGuard(tier="admin", csrf=True, auth=True)),
):
    runtime = get_runtime()
    await runtime.auth.logout(guard.session)
    _clear_session_cookies(response, runtime)
    return _ok(LogoutResponse())


@router.post("/admin/refresh", response_model=Envelope, tags=["admin"])
async def admin_refresh(
    request: Request,
    response: Response,
    guard: GuardContext = Depends(
        RequestGuard(tier="auth", window_seconds=_REFRESH_WINDOW_SECONDS)
    ),
):
    """Rotate the refresh cookie into a new token pair."""
    runtime = get_runtime()
    tokens = await runtime.auth.refresh(request.cookies.get(REFRESH_COOKIE))
    _apply_session_cookies(response, runtime, tokens)
    csrf = await runtime.csrf.issue(tokens.session_id)
    return _ok(
        RefreshResponse(
            access_token=tokens.access_token,
            expires_at=tokens.expires_at,
            csrf_token=csrf.token,
        )
    )


@router.post("/admin/purchases", response_model=Envelope, tags=["admin"])
async def grant_purchase(
    guard: GuardContext = Depends(
        RequestGuard(csrf=True, permission="admin:write", schema=CommonSchemas.purchase_grant)
    ),
):
    """Record a purchase by hand, e.g. for a payment settled outside checkout."""
    runtime = get_runtime()
    email = guard.data["email"]
    checkout_session_id = guard.data["checkout_session_id"]
    await runtime.record_purchase(email, checkout_session_id)
    logger.info(
        "purchase_granted",
        session_id=guard.session.session_id,
        checkout_session_id=checkout_session_id,
    )
    csrf = await runtime.csrf.issue(guard.session.session_id)
    return _ok(
        PurchaseGrantResponse(
            email=email, checkout_session_id=checkout_session_id, csrf_token=csrf.token
        )
    )


@router.post("/checkout", response_model=Envelope, tags=["payments"])
async def create_checkout(request: Request, guard: GuardContext = Depends(RequestGuard(csrf=True))):
    runtime = get_runtime()
    idempotency_key: Optional[str] = request.headers.get("idempotency-key") or None
    session = await runtime.payments.create_checkout_session(
        runtime.settings.app_base_url, idempotency_key=idempotency_key
    )
    return _ok(CheckoutResponse(session_id=session.id, url=session.url))


@router.get("/verify-session", response_model=Envelope, tags=["payments"])
async def verify_session(
    guard: GuardContext = Depends(RequestGuard(schema=CommonSchemas.checkout_lookup)),
):
    runtime = get_runtime()
    session = await runtime.payments.retrieve_session(guard.data["session_id"])
    if not session.paid:
        raise ValidationError(
            "checkout session not paid",
            detail={"payment_status": session.payment_status},
            user_message="Payment not completed",
        )
    return _ok(
        VerifySessionResponse(
            valid=True,
            session_id=session.id,
            payment_status=session.payment_status,
            customer_email=session.customer_email,
        )
    )


@router.post("/verify-purchase", response_model=Envelope, tags=["payments"])
async def verify_purchase(guard: GuardContext = Depends(RequestGuard(schema=CommonSchemas.email))):
    runtime = get_runtime()
    has_purchased = await runtime.has_purchase(guard.data["email"])
    message = "Purchase verified" if has_purchased else "No purchase found for this email"
    return _ok(VerifyPurchaseResponse(has_purchased=has_purchased, message=message))


@router.post("/subscribe", response_model=Envelope, tags=["marketing"])
async def subscribe(guard: GuardContext = Depends(RequestGuard(csrf=True, schema=CommonSchemas.email))):
    # Delivery of the notification mail belongs to the mail provider; only intake happens here
    logger.info("subscription_received", email=guard.data["email"], identity=guard.identity)
    return _ok(SubscribeResponse())


@router.post("/webhook", response_model=Envelope, tags=["payments"])
async def payment_webhook(request: Request):
    """Accept provider events; only a verified signature makes the body trustworthy."""
    runtime = get_runtime()
    payload = await request.body()
    event = runtime.payments.verify_webhook(payload, request.headers.get("stripe-signature"))
    handled = False
    if event.type == CHECKOUT_COMPLETED:
        checkout = event.object
        details = checkout.get("customer_details") or {}
        email = details.get("email") or checkout.get("customer_email")
        checkout_id = checkout.get("id")
        if isinstance(email, str) and email and isinstance(checkout_id, str):
            await runtime.record_purchase(email, checkout_id)
            handled = True
        else:
            logger.warning("webhook_checkout_missing_fields", event_id=event.id)
    else:
        logger.debug("webhook_event_ignored", event_id=event.id, event_type=event.type)
    return _ok(WebhookResponse(handled=handled))
