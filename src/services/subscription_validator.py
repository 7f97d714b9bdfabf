"""Field-level checks for subscription records.

The checks are pure: they read the candidate and either return or raise
:class:`~src.core.exceptions.ValidationError` naming the first field that
fails.
"""
from __future__ import annotations

import datetime as dt
import math
import re
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional

from src.core.exceptions import ValidationError
from src.db.models.enums import SubscriptionStatus
from src.services.plans import ALLOWED_PLAN_IDS

CURRENCY_PATTERN = re.compile(r"^[A-Z]{3}$")

REQUIRED_FIELDS = (
    "tenant_id",
    "plan_id",
    "status",
    "created_by",
    "base_price",
    "currency",
)

_MISSING = object()


def _read(candidate: Any, name: str) -> Any:
    if isinstance(candidate, Mapping):
        return candidate.get(name, _MISSING)
    return getattr(candidate, name, _MISSING)


def as_utc(value: dt.datetime) -> dt.datetime:
    """Attach UTC to naive datetimes (SQLite drops the offset)."""

    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value


def is_valid_currency(value: Any) -> bool:
    return isinstance(value, str) and CURRENCY_PATTERN.fullmatch(value) is not None


def is_valid_status(value: Any) -> bool:
    try:
        SubscriptionStatus(value)
    except ValueError:
        return False
    return True


def is_valid_plan_id(value: Any) -> bool:
    return isinstance(value, str) and value in ALLOWED_PLAN_IDS


def is_valid_price(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        return False
    if isinstance(value, Decimal):
        return value.is_finite() and value >= 0
    return math.isfinite(value) and value >= 0


def validate_subscription(
    candidate: Any,
    *,
    now: Optional[dt.datetime] = None,
    skip: Iterable[str] = (),
) -> None:
    """Validate a subscription mapping or object.

    Args:
        candidate: Mapping or object exposing the subscription fields.
        now: Reference time for the grace deadline check. Defaults to the
            current UTC time.
        skip: Field names to leave unchecked.

    Raises:
        ValidationError: For the first missing or invalid field.
    """

    skipped = set(skip)

    for name in REQUIRED_FIELDS:
        if name in skipped:
            continue
        value = _read(candidate, name)
        if value is _MISSING or value is None or value == "":
            raise ValidationError(f"{name} is required", field=name)

    checks = (
        ("status", is_valid_status, "status must be one of {choices}"),
        ("base_price", is_valid_price, "base_price must be a non-negative number"),
        ("currency", is_valid_currency, "currency must be a 3-letter uppercase ISO code"),
    )
    for name, check, message in checks:
        if name in skipped:
            continue
        if not check(_read(candidate, name)):
            choices = ", ".join(status.value for status in SubscriptionStatus)
            raise ValidationError(message.format(choices=choices), field=name)

    if "grace_period_ends_at" in skipped:
        return

    ends_at = _read(candidate, "grace_period_ends_at")
    if ends_at is _MISSING or ends_at is None:
        return
    if not isinstance(ends_at, dt.datetime):
        raise ValidationError(
            "grace_period_ends_at must be a datetime", field="grace_period_ends_at"
        )
    reference = as_utc(now) if now is not None else dt.datetime.now(dt.timezone.utc)
    if as_utc(ends_at) <= reference:
        raise ValidationError(
            "grace_period_ends_at must be in the future",
            field="grace_period_ends_at",
        )
