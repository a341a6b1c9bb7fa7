from __future__ import annotations

from typing import Any


# Thresholds are stored per product; 0 or 100+ make no sense for a snack shelf
MIN_LOW_STOCK_THRESHOLD = 1
MAX_LOW_STOCK_THRESHOLD = 99

# Maximum price: 999,999.99 (99,999,999 cents)
MAX_PRICE_CENTS = 99_999_999


class ValidationError(ValueError):
    """400-level input problem."""

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field


class NotFoundError(ValueError):
    """404-level: referenced entity does not exist."""


class ConflictError(ValueError):
    """409-level business rule conflict (e.g., transition out of a terminal state)."""

    def __init__(self, message: str, current_status: str | None = None):
        super().__init__(message)
        self.current_status = current_status


class StorageUnavailableError(RuntimeError):
    """503-level: the database rejected or could not complete a write."""


def coerce_int(value: Any, *, field: str, minimum: int | None = None, maximum: int | None = None) -> int:
    """
    Strict integer coercion for request values.

    Rejects bools, floats, decimals and scientific notation.
    """
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer", field=field)

    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer", field=field)
        # Reject scientific notation (e.g., "1e15", "1E10")
        if "e" in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)", field=field)
        if "." in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)", field=field)
        try:
            parsed = int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer", field=field)
    elif isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal", field=field)
    else:
        raise ValidationError(f"{field} must be an integer", field=field)

    if minimum is not None and parsed < minimum:
        raise ValidationError(f"{field} must be greater than or equal to {minimum}", field=field)
    if maximum is not None and parsed > maximum:
        raise ValidationError(f"{field} must be less than or equal to {maximum}", field=field)
    return parsed


def coerce_bool(value: Any, *, field: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "false"}:
        return value.strip().lower() == "true"
    raise ValidationError(f"{field} must be a boolean", field=field)


def enforce_rules_product(patch: dict) -> None:
    """
    Business rules that are not captured by SQLAlchemy metadata alone.
    Keep these small and centralized.
    """
    if "price_cents" in patch and patch["price_cents"] is not None:
        price = patch["price_cents"]
        if price < 0:
            raise ValidationError("price_cents must be >= 0", field="price_cents")
        if price > MAX_PRICE_CENTS:
            raise ValidationError(f"price_cents cannot exceed {MAX_PRICE_CENTS}", field="price_cents")

    if "low_stock_threshold" in patch and patch["low_stock_threshold"] is not None:
        threshold = patch["low_stock_threshold"]
        if not MIN_LOW_STOCK_THRESHOLD <= threshold <= MAX_LOW_STOCK_THRESHOLD:
            raise ValidationError(
                f"low_stock_threshold must be between {MIN_LOW_STOCK_THRESHOLD} and {MAX_LOW_STOCK_THRESHOLD}",
                field="low_stock_threshold",
            )


def enforce_rules_stock_update(patch: dict) -> None:
    # Manual update requires a non-zero signed delta
    if patch.get("delta") in (None, 0):
        raise ValidationError("delta must be non-zero", field="delta")


def enforce_rules_target_adjustment(patch: dict) -> None:
    # "Set to X" requires X >= 0; a negative target would fabricate a discrepancy
    target = patch.get("target_balance")
    if target is None or target < 0:
        raise ValidationError("target_balance must be >= 0", field="target_balance")


DomainError = (ValidationError, NotFoundError, ConflictError, StorageUnavailableError)


def error_response(exc: Exception) -> tuple[dict, int]:
    """Translate a domain exception into the JSON error body and status code."""
    if isinstance(exc, ValidationError):
        body = {"error": str(exc)}
        if exc.field:
            body["field"] = exc.field
        return body, 400
    if isinstance(exc, NotFoundError):
        return {"error": str(exc)}, 404
    if isinstance(exc, ConflictError):
        return {"error": str(exc), "current_status": exc.current_status}, 409
    if isinstance(exc, StorageUnavailableError):
        return {"error": str(exc), "retryable": True}, 503
    return {"error": "Internal server error"}, 500


def parse_pagination(args, *, default_limit: int = 50, max_limit: int = 500) -> tuple[int, int]:
    limit = coerce_int(args.get("limit", default_limit), field="limit", minimum=1, maximum=max_limit)
    offset = coerce_int(args.get("offset", 0), field="offset", minimum=0)
    return limit, offset
