from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from ventaro.service.errors import ErrorKind

# Bound nesting depth and array size of JSON bodies before they reach the validator
MAX_JSON_DEPTH = 20
MAX_ARRAY_ITEMS = 1000

_VALID_ERROR_CODES = {kind.value for kind in ErrorKind} | {"csrf_token_invalid"}


def validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    """Raise ValueError if ``obj`` nests deeper than ``max_depth`` or holds oversized arrays."""
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")
    if isinstance(obj, dict):
        for value in obj.values():
            validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        if len(obj) > MAX_ARRAY_ITEMS:
            raise ValueError(f"Array length {len(obj)} exceeds maximum of {MAX_ARRAY_ITEMS}")
        for item in obj:
            validate_json_depth(item, max_depth, current_depth + 1)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope shared by every JSON response."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class CSRFTokenResponse(BaseModel):
    csrf_token: str
    expires_at: datetime


class AdminUserResponse(BaseModel):
    id: str
    username: str
    role: str
    permissions: List[str]


class LoginResponse(BaseModel):
    user: AdminUserResponse
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime
    csrf_token: str


class SessionInfoResponse(BaseModel):
    user: AdminUserResponse
    session_id: str
    expires_at: datetime
    csrf_token: str


class RefreshResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime
    csrf_token: str


class LogoutResponse(BaseModel):
    message: str = "Logged out successfully"


class PurchaseGrantResponse(BaseModel):
    email: str
    checkout_session_id: str
    csrf_token: str


class CheckoutResponse(BaseModel):
    session_id: str
    url: Optional[str] = None


class VerifySessionResponse(BaseModel):
    valid: bool
    session_id: str
    payment_status: Optional[str] = None
    customer_email: Optional[str] = None


class VerifyPurchaseResponse(BaseModel):
    has_purchased: bool
    message: str


class SubscribeResponse(BaseModel):
    subscribed: bool = True
    message: str = "Subscription successful"


class WebhookResponse(BaseModel):
    received: bool = True
    handled: bool
