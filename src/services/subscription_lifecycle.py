"""Allowed subscription status transitions.

Every status change goes through :func:`apply_event` (or
:func:`resolve_transition` for a requested target status), so the table
below is the single place that decides which moves are legal.
"""
from __future__ import annotations

from enum import Enum
from typing import Optional

from src.core.exceptions import ValidationError
from src.db.models.enums import SubscriptionStatus as S


class LifecycleEvent(str, Enum):
    ACTIVATE = "ACTIVATE"
    START_TRIAL = "START_TRIAL"
    ENTER_GRACE = "ENTER_GRACE"
    MARK_PAST_DUE = "MARK_PAST_DUE"
    DEACTIVATE = "DEACTIVATE"
    CANCEL = "CANCEL"
    REACTIVATE = "REACTIVATE"
    RENEW = "RENEW"
    CONVERT_GRACE = "CONVERT_GRACE"


E = LifecycleEvent

TRANSITIONS: dict[tuple[S, LifecycleEvent], S] = {
    (S.INACTIVE, E.ACTIVATE): S.ACTIVE,
    (S.TRIALING, E.ACTIVATE): S.ACTIVE,
    (S.PAST_DUE, E.ACTIVATE): S.ACTIVE,
    (S.INACTIVE, E.START_TRIAL): S.TRIALING,
    (S.ACTIVE, E.ENTER_GRACE): S.GRACE_PERIOD,
    (S.TRIALING, E.ENTER_GRACE): S.GRACE_PERIOD,
    (S.PAST_DUE, E.ENTER_GRACE): S.GRACE_PERIOD,
    (S.ACTIVE, E.MARK_PAST_DUE): S.PAST_DUE,
    (S.GRACE_PERIOD, E.MARK_PAST_DUE): S.PAST_DUE,
    (S.ACTIVE, E.DEACTIVATE): S.INACTIVE,
    (S.TRIALING, E.DEACTIVATE): S.INACTIVE,
    (S.GRACE_PERIOD, E.DEACTIVATE): S.INACTIVE,
    (S.PAST_DUE, E.DEACTIVATE): S.INACTIVE,
    (S.ACTIVE, E.CANCEL): S.CANCELLED,
    (S.INACTIVE, E.CANCEL): S.CANCELLED,
    (S.TRIALING, E.CANCEL): S.CANCELLED,
    (S.GRACE_PERIOD, E.CANCEL): S.CANCELLED,
    (S.PAST_DUE, E.CANCEL): S.CANCELLED,
    (S.CANCELLED, E.REACTIVATE): S.ACTIVE,
    (S.ACTIVE, E.RENEW): S.ACTIVE,
    (S.TRIALING, E.RENEW): S.ACTIVE,
    (S.PAST_DUE, E.RENEW): S.ACTIVE,
    (S.GRACE_PERIOD, E.CONVERT_GRACE): S.ACTIVE,
}

# Events reachable through a plain status update; the rest have dedicated
# service operations because they touch more than the status field.
DIRECT_UPDATE_EVENTS: tuple[LifecycleEvent, ...] = (
    E.ACTIVATE,
    E.START_TRIAL,
    E.ENTER_GRACE,
    E.MARK_PAST_DUE,
    E.DEACTIVATE,
)


def apply_event(current: S | str, event: LifecycleEvent) -> S:
    """Return the status reached by ``event`` from ``current``."""

    status = S(current)
    target = TRANSITIONS.get((status, event))
    if target is None:
        raise ValidationError(
            f"Cannot apply {event.value} to a subscription in status {status.value}",
            field="status",
        )
    return target


def can_apply(current: S | str, event: LifecycleEvent) -> bool:
    return (S(current), event) in TRANSITIONS


def resolve_transition(
    current: S | str,
    target: S | str,
    allowed_events: tuple[LifecycleEvent, ...] = DIRECT_UPDATE_EVENTS,
) -> Optional[LifecycleEvent]:
    """Find the event that moves ``current`` to ``target``.

    Returns ``None`` when the status does not change.

    Raises:
        ValidationError: If no allowed event performs the transition.
    """

    source = S(current)
    destination = S(target)
    if source is destination:
        return None
    for event in allowed_events:
        if TRANSITIONS.get((source, event)) is destination:
            return event
    raise ValidationError(
        f"Status transition {source.value} -> {destination.value} is not allowed",
        field="status",
    )
