"""Error taxonomy shared by the billing engine and its workers.

Every error carries an :class:`ErrorKind` so that sweeps and callers can
decide how to react without matching on concrete classes:

* ``validation`` / ``not_found`` / ``conflict`` are rejected immediately and
  never leave side effects behind.
* ``execution_unavailable`` is the only settlement failure that is safe to
  retry as a fresh submission.
* ``execution_rejected`` needs customer or delegation remediation.
* ``bookkeeping_failure`` needs reconciliation and must never lead to a
  second on-chain submission.
* ``configuration_error`` makes a sweep skip the affected item.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    EXECUTION_REJECTED = "execution_rejected"
    EXECUTION_UNAVAILABLE = "execution_unavailable"
    BOOKKEEPING_FAILURE = "bookkeeping_failure"
    CONFIGURATION_ERROR = "configuration_error"
    NOTIFICATION_FAILURE = "notification_failure"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class BillingError(Exception):
    """Base exception for all billing errors."""

    kind: ErrorKind = ErrorKind.VALIDATION
    retryable: bool = False


class BillingValidationError(BillingError):
    """Input failed validation; nothing was written."""

    kind = ErrorKind.VALIDATION


class InvalidTransitionError(BillingValidationError):
    """The requested lifecycle transition is not allowed from the current status."""

    def __init__(self, trigger: str, status: str) -> None:
        super().__init__(f"Cannot {trigger} a subscription in status '{status}'")
        self.trigger = trigger
        self.status = status


class DelegationExpiredError(BillingValidationError):
    """The subscription's delegation has lapsed, so it can no longer be charged."""


class NotFoundError(BillingError):
    """A referenced record does not exist."""

    kind = ErrorKind.NOT_FOUND


class ConflictError(BillingError):
    """The write would duplicate or race an existing record."""

    kind = ErrorKind.CONFLICT


class ExecutionRejectedError(BillingError):
    """The execution service refused the settlement (balance, expired delegation, ...)."""

    kind = ErrorKind.EXECUTION_REJECTED


class ExecutionUnavailableError(BillingError):
    """The execution service could not be reached or timed out."""

    kind = ErrorKind.EXECUTION_UNAVAILABLE
    retryable = True

    def __init__(self, message: str, *, timed_out: bool = False) -> None:
        super().__init__(message)
        self.timed_out = timed_out


class BookkeepingError(BillingError):
    """Settlement succeeded on-chain but the local ledger write did not complete."""

    kind = ErrorKind.BOOKKEEPING_FAILURE

    def __init__(
        self,
        message: str,
        *,
        transaction_hash: str,
        completed_steps: list[str],
        failed_step: str | None = None,
    ) -> None:
        super().__init__(message)
        self.transaction_hash = transaction_hash
        self.completed_steps = completed_steps
        self.failed_step = failed_step


class ConfigurationError(BillingError):
    """Stored configuration is missing or invalid."""

    kind = ErrorKind.CONFIGURATION_ERROR


class NotificationError(BillingError):
    """A notification could not be delivered."""

    kind = ErrorKind.NOTIFICATION_FAILURE
    retryable = True
