from __future__ import annotations

import html
import math
import re
from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar, Mapping, Optional, Pattern, Sequence, Union

import bleach

from ventaro.logging import get_logger

logger = get_logger(__name__)

EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
URL_RE = re.compile(
    r"^https?://(www\.)?[-a-zA-Z0-9@:%._+~#=]{1,256}\.[a-zA-Z0-9()]{1,6}\b"
    r"([-a-zA-Z0-9()@:%_+.~#?&/=]*)$"
)

DEFAULT_HTML_TAGS = (
    "p", "br", "strong", "em", "u", "ol", "ul", "li", "a",
    "h1", "h2", "h3", "h4", "h5", "h6",
)
_HTML_ATTRIBUTES = {"a": ["href", "target", "rel"]}
_HTML_PROTOCOLS = ["http", "https", "mailto"]

# bleach re-encodes entities; a few passes reach a fixed point for any input
_MAX_SANITIZE_PASSES = 10

CustomCheck = Callable[[Any], Union[bool, str]]


@dataclass(frozen=True)
class Rule:
    """Constraints for one field.

    The base rule carries no type constraint; the subclasses below each add
    exactly one type recognizer and expose it through ``kind``.
    """

    kind: ClassVar[str] = "any"

    required: bool = False
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    pattern: Optional[Union[str, Pattern[str]]] = None
    allowed_values: Optional[Sequence[Any]] = None
    custom: Optional[CustomCheck] = None
    sanitize: bool = False

    def type_error(self, name: str, value: Any) -> Optional[str]:
        return None

    def sanitize_value(self, value: Any) -> Any:
        if isinstance(value, str):
            return sanitize_text(value)
        return value


@dataclass(frozen=True)
class StringRule(Rule):
    kind: ClassVar[str] = "string"

    def type_error(self, name: str, value: Any) -> Optional[str]:
        if not isinstance(value, str):
            return f"{name} must be a string"
        return None


@dataclass(frozen=True)
class NumberRule(Rule):
    kind: ClassVar[str] = "number"

    def type_error(self, name: str, value: Any) -> Optional[str]:
        if (
            isinstance(value, bool)
            or not isinstance(value, (int, float))
            or not math.isfinite(value)
        ):
            return f"{name} must be a valid number"
        return None


@dataclass(frozen=True)
class EmailRule(Rule):
    kind: ClassVar[str] = "email"

    def type_error(self, name: str, value: Any) -> Optional[str]:
        if not isinstance(value, str) or not EMAIL_RE.match(value):
            return f"{name} must be a valid email address"
        return None

    def sanitize_value(self, value: Any) -> Any:
        if isinstance(value, str):
            return sanitize_text(value).lower()
        return value


@dataclass(frozen=True)
class UrlRule(Rule):
    kind: ClassVar[str] = "url"

    def type_error(self, name: str, value: Any) -> Optional[str]:
        if not isinstance(value, str) or not URL_RE.match(value):
            return f"{name} must be a valid URL"
        return None


@dataclass(frozen=True)
class BooleanRule(Rule):
    kind: ClassVar[str] = "boolean"

    def type_error(self, name: str, value: Any) -> Optional[str]:
        if not isinstance(value, bool):
            return f"{name} must be a boolean"
        return None


@dataclass(frozen=True)
class ArrayRule(Rule):
    kind: ClassVar[str] = "array"

    def type_error(self, name: str, value: Any) -> Optional[str]:
        if not isinstance(value, (list, tuple)):
            return f"{name} must be an array"
        return None


@dataclass(frozen=True)
class ObjectRule(Rule):
    kind: ClassVar[str] = "object"

    def type_error(self, name: str, value: Any) -> Optional[str]:
        if not isinstance(value, dict):
            return f"{name} must be an object"
        return None


Schema = Mapping[str, Rule]


@dataclass
class ValidationResult:
    is_valid: bool
    errors: dict[str, list[str]] = field(default_factory=dict)
    sanitized_data: dict[str, Any] = field(default_factory=dict)


def _is_empty(value: Any) -> bool:
    return value is None or value == ""


def sanitize_text(value: str) -> str:
    """Reduce ``value`` to trimmed plain text with every tag removed.

    Entities that bleach emits are decoded again so the result reads as the
    caller typed it; passes repeat until the output stops changing, which
    makes the function idempotent.
    """
    current = value
    for _ in range(_MAX_SANITIZE_PASSES):
        cleaned = html.unescape(bleach.clean(current, tags=[], strip=True)).strip()
        if cleaned == current:
            return cleaned
        current = cleaned
    logger.warning("sanitize_text_not_converged", length=len(value))
    return current


class InputValidator:
    """Apply a schema to a payload, collecting every field error."""

    def validate(self, data: Mapping[str, Any], schema: Schema) -> ValidationResult:
        errors: dict[str, list[str]] = {}
        sanitized: dict[str, Any] = {}
        for name, rule in schema.items():
            value = data.get(name) if isinstance(data, Mapping) else None
            if _is_empty(value):
                if rule.required:
                    errors[name] = [f"{name} is required"]
                elif isinstance(data, Mapping) and name in data:
                    sanitized[name] = value
                continue

            type_error = rule.type_error(name, value)
            if type_error:
                errors[name] = [type_error]
                continue

            field_errors = self._check_constraints(name, value, rule)
            if field_errors:
                errors[name] = field_errors
                continue
            sanitized[name] = rule.sanitize_value(value) if rule.sanitize else value

        if errors:
            logger.debug("validation_failed", fields=sorted(errors))
        return ValidationResult(is_valid=not errors, errors=errors, sanitized_data=sanitized)

    @staticmethod
    def _check_constraints(name: str, value: Any, rule: Rule) -> list[str]:
        problems: list[str] = []
        if hasattr(value, "__len__"):
            if rule.min_length is not None and len(value) < rule.min_length:
                problems.append(f"{name} must be at least {rule.min_length} characters")
            if rule.max_length is not None and len(value) > rule.max_length:
                problems.append(f"{name} must not exceed {rule.max_length} characters")
        if rule.pattern is not None:
            pattern = re.compile(rule.pattern) if isinstance(rule.pattern, str) else rule.pattern
            text = value if isinstance(value, str) else str(value)
            if not pattern.search(text):
                problems.append(f"{name} format is invalid")
        if rule.allowed_values is not None and value not in rule.allowed_values:
            choices = ", ".join(str(v) for v in rule.allowed_values)
            problems.append(f"{name} must be one of: {choices}")
        if rule.custom is not None:
            outcome = rule.custom(value)
            if outcome is not True:
                problems.append(outcome if isinstance(outcome, str) else f"{name} is invalid")
        return problems


def sanitize_html(html_text: str, allowed_tags: Optional[Sequence[str]] = None) -> str:
    """Keep a fixed set of formatting tags and drop everything else.

    Only ``href``, ``target`` and ``rel`` survive, and only on links; ``data-*``
    attributes and non-http(s)/mailto link schemes are removed.
    """
    tags = list(allowed_tags) if allowed_tags is not None else list(DEFAULT_HTML_TAGS)
    return bleach.clean(
        html_text,
        tags=tags,
        attributes=_HTML_ATTRIBUTES,
        protocols=_HTML_PROTOCOLS,
        strip=True,
    )


_SQL_KEYWORDS_RE = re.compile(
    r"xp_|sp_|execute|exec|union|select|insert|update|delete|drop|create|alter|truncate",
    re.IGNORECASE,
)
_OPERATOR_FRAGMENT_RE = re.compile(r"\$\w+")


def strip_sql_metacharacters(text: Any) -> Any:
    """Best-effort scrub of SQL metacharacters; never a substitute for bound parameters."""
    if not isinstance(text, str):
        return text
    cleaned = text.replace("'", "''").replace('"', '""')
    for token in (";", "--", "/*", "*/"):
        cleaned = cleaned.replace(token, "")
    return _SQL_KEYWORDS_RE.sub("", cleaned)


def strip_operator_keys(value: Any) -> Any:
    """Recursively drop ``$``-prefixed keys and ``$word`` fragments from strings."""
    if isinstance(value, str):
        return _OPERATOR_FRAGMENT_RE.sub("", value)
    if isinstance(value, dict):
        return {
            key: strip_operator_keys(item)
            for key, item in value.items()
            if not (isinstance(key, str) and key.startswith("$"))
        }
    if isinstance(value, (list, tuple)):
        return [strip_operator_keys(item) for item in value]
    return value


@dataclass
class FileCheck:
    is_valid: bool
    error: Optional[str] = None


def validate_file(
    filename: str,
    size: int,
    content_type: str,
    *,
    max_size: int = 5 * 1024 * 1024,
    allowed_types: Sequence[str] = (),
    allowed_extensions: Sequence[str] = (),
) -> FileCheck:
    if size > max_size:
        return FileCheck(False, f"File size must not exceed {round(max_size / 1024 / 1024)}MB")
    if allowed_types and content_type not in allowed_types:
        return FileCheck(False, f"File type {content_type} is not allowed")
    if allowed_extensions:
        extension = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
        if not extension or extension not in allowed_extensions:
            return FileCheck(False, f"File extension .{extension} is not allowed")
    return FileCheck(True)


def _search_query_safe(value: str) -> Union[bool, str]:
    if re.search(r"[<>\"'&\\]", value):
        return "Search query contains invalid characters"
    return True


class CommonSchemas:
    """Schemas shared by the public and admin routes."""

    email: Schema = {
        "email": EmailRule(required=True, max_length=254, sanitize=True),
    }

    contact: Schema = {
        "name": StringRule(
            required=True,
            min_length=2,
            max_length=100,
            pattern=r"^[a-zA-Z\s'-]+$",
            sanitize=True,
        ),
        "email": EmailRule(required=True, max_length=254, sanitize=True),
        "message": StringRule(required=True, min_length=10, max_length=1000, sanitize=True),
    }

    # Strength is scored separately at login and enforced when the hash is minted
    admin_login: Schema = {
        "username": StringRule(
            required=True,
            min_length=3,
            max_length=50,
            pattern=r"^[a-zA-Z0-9_]+$",
            sanitize=True,
        ),
        "password": StringRule(required=True, min_length=8, max_length=128),
    }

    url: Schema = {
        "url": UrlRule(required=True, max_length=2048, sanitize=True),
    }

    search_query: Schema = {
        "query": StringRule(
            required=True,
            min_length=1,
            max_length=200,
            sanitize=True,
            custom=_search_query_safe,
        ),
    }

    purchase_grant: Schema = {
        "email": EmailRule(required=True, max_length=254, sanitize=True),
        "checkout_session_id": StringRule(
            required=True,
            min_length=3,
            max_length=255,
            pattern=r"^[A-Za-z0-9_]+$",
        ),
    }

    checkout_lookup: Schema = {
        "session_id": StringRule(
            required=True,
            min_length=3,
            max_length=255,
            pattern=r"^[A-Za-z0-9_]+$",
        ),
    }
