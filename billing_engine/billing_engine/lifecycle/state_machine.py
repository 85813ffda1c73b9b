"""Subscription status transitions.

The table below is the single source of truth for which lifecycle trigger
may move a subscription from which status to which status.  Services call
:func:`transition` before writing a new status; the function never touches
storage.
"""

from __future__ import annotations

from enum import Enum

from billing_engine.errors import InvalidTransitionError
from billing_engine.models.subscription import SubscriptionStatus

_A = SubscriptionStatus.ACTIVE
_O = SubscriptionStatus.OVERDUE
_S = SubscriptionStatus.SUSPENDED
_P = SubscriptionStatus.PAUSED


class Trigger(str, Enum):
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    SCHEDULE_CANCEL = "schedule_cancel"
    FINALIZE_CANCEL = "finalize_cancel"
    REACTIVATE = "reactivate"
    PAUSE = "pause"
    SUSPEND = "suspend"
    RESUME = "resume"
    COMPLETE = "complete"
    MARK_OVERDUE = "mark_overdue"
    RECOVER = "recover"
    FAIL = "fail"
    EXPIRE = "expire"


# trigger -> {from_status: to_status}
_TRANSITIONS: dict[Trigger, dict[SubscriptionStatus, SubscriptionStatus]] = {
    Trigger.UPGRADE: {_A: _A},
    Trigger.DOWNGRADE: {_A: _A},
    Trigger.SCHEDULE_CANCEL: {_A: _A, _O: _O},
    Trigger.FINALIZE_CANCEL: {
        _A: SubscriptionStatus.CANCELLED,
        _O: SubscriptionStatus.CANCELLED,
        _S: SubscriptionStatus.CANCELLED,
    },
    Trigger.REACTIVATE: {_A: _A, _O: _O},
    Trigger.PAUSE: {_A: _S},
    Trigger.SUSPEND: {_A: _S, _O: _S},
    Trigger.RESUME: {_S: _A},
    Trigger.COMPLETE: {_A: SubscriptionStatus.COMPLETED, _O: SubscriptionStatus.COMPLETED},
    Trigger.MARK_OVERDUE: {_A: _O},
    Trigger.RECOVER: {_O: _A},
    Trigger.FAIL: {_A: SubscriptionStatus.FAILED, _O: SubscriptionStatus.FAILED, _S: SubscriptionStatus.FAILED},
    Trigger.EXPIRE: {
        _A: SubscriptionStatus.EXPIRED,
        _O: SubscriptionStatus.EXPIRED,
        _S: SubscriptionStatus.EXPIRED,
        _P: SubscriptionStatus.EXPIRED,
    },
}


def allowed_sources(trigger: Trigger) -> frozenset[SubscriptionStatus]:
    """Statuses from which *trigger* may fire."""
    return frozenset(_TRANSITIONS[trigger])


def can_transition(status: SubscriptionStatus | str, trigger: Trigger) -> bool:
    return SubscriptionStatus(status) in _TRANSITIONS[trigger]


def transition(status: SubscriptionStatus | str, trigger: Trigger) -> SubscriptionStatus:
    """Return the status *trigger* moves *status* to.

    Raises
    ------
    InvalidTransitionError
        If *trigger* is not allowed from *status*.
    """
    current = SubscriptionStatus(status)
    try:
        return _TRANSITIONS[trigger][current]
    except KeyError:
        raise InvalidTransitionError(trigger.value, current.value) from None
