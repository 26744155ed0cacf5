"""Input validation helpers shared by the JSON routes."""

from __future__ import annotations

import re
from typing import Any, Iterable, List, Mapping

from flask import current_app, has_app_context

from services.errors import ValidationError

USERNAME_RE = re.compile(r"^[A-Za-z0-9_]{3,20}$")
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MIN_PASSWORD_LENGTH = 8

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off", ""}


def log_validation_error(err: ValidationError, *, context: str | None = None) -> None:
    if not has_app_context():
        return
    suffix = f" ({context})" if context else ""
    current_app.logger.warning(
        "Validation error%s: field=%s invalid=%s message=%s",
        suffix,
        err.field,
        err.invalid,
        err.message,
    )


def parse_positive_int(value: Any, *, field: str = "id", min_value: int = 1) -> int:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"Missing {field}.", field=field, invalid=[value])
    if isinstance(value, bool):
        raise ValidationError(f"Invalid {field}.", field=field, invalid=[value])
    try:
        out = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {field}.", field=field, invalid=[value])
    if out < min_value:
        raise ValidationError(f"Invalid {field}.", field=field, invalid=[value])
    return out


def parse_optional_positive_int(value: Any, *, field: str = "id", min_value: int = 1) -> int | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return parse_positive_int(value, field=field, min_value=min_value)


def parse_int(value: Any, *, field: str, default: int) -> int:
    """Lenient integer parse for quantities, where zero and negatives are meaningful."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return default
    if isinstance(value, bool):
        raise ValidationError(f"Invalid {field}.", field=field, invalid=[value])
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {field}.", field=field, invalid=[value])


def parse_optional_float(value: Any, *, field: str) -> float | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {field}.", field=field, invalid=[value])


def parse_bool(value: Any, *, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    text = str(value).strip().lower()
    if text in _TRUTHY:
        return True
    if text in _FALSY:
        return False
    return default


def _flatten(values: Iterable[Any]) -> Iterable[Any]:
    for value in values:
        if isinstance(value, (list, tuple, set)):
            yield from _flatten(value)
        else:
            yield value


def parse_positive_int_list(values: Iterable[Any], *, field: str = "ids", min_value: int = 1) -> list[int]:
    """Parse ids from lists and/or comma separated strings, de-duplicated in order."""
    invalid: list[Any] = []
    output: list[int] = []
    for raw in _flatten(values):
        if raw is None:
            continue
        text = str(raw).strip()
        if not text:
            continue
        for part in (p.strip() for p in text.split(",")):
            if not part:
                continue
            try:
                val = int(part)
            except (TypeError, ValueError):
                invalid.append(part)
                continue
            if val < min_value:
                invalid.append(part)
                continue
            if val not in output:
                output.append(val)
    if invalid:
        raise ValidationError(f"Invalid {field}.", field=field, invalid=invalid)
    return output


def split_csv_arg(raw: str | None) -> List[str]:
    if not raw:
        return []
    return [part.strip() for part in raw.split(",") if part.strip()]


def require_fields(payload: Mapping[str, Any], *fields: str, message: str | None = None) -> None:
    missing = [name for name in fields if payload.get(name) in (None, "")]
    if missing:
        raise ValidationError(
            message or f"Missing required field(s): {', '.join(missing)}.",
            field=missing[0],
            invalid=missing,
        )


def validate_username(username: str) -> str:
    cleaned = (username or "").strip()
    if not USERNAME_RE.match(cleaned):
        raise ValidationError(
            "Invalid username. Must be 3-20 characters, alphanumeric and underscores only.",
            field="username",
        )
    return cleaned


def validate_email(email: str) -> str:
    cleaned = (email or "").strip()
    if not EMAIL_RE.match(cleaned):
        raise ValidationError("Invalid email format.", field="email")
    return cleaned


def validate_password(password: str | None) -> str:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters long.",
            field="password",
        )
    return password


__all__ = [
    "ValidationError",
    "log_validation_error",
    "parse_positive_int",
    "parse_optional_positive_int",
    "parse_int",
    "parse_optional_float",
    "parse_bool",
    "parse_positive_int_list",
    "split_csv_arg",
    "require_fields",
    "validate_username",
    "validate_email",
    "validate_password",
]
