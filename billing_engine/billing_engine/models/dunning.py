"""Dunning policy and campaign models.

The stored dunning configuration is plain JSON (intervals, attempt count,
attempt-to-actions map).  :class:`DunningPolicy` is the validated form every
sweep works with; rows that fail validation surface as
:class:`~billing_engine.errors.ConfigurationError`.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from billing_engine.errors import ConfigurationError


class DunningAction(str, Enum):
    """Action kinds a campaign attempt can run."""

    RETRY_PAYMENT = "retry_payment"
    EMAIL = "email"
    IN_APP = "in_app"


class FinalAction(str, Enum):
    """What happens to the subscription once attempts are exhausted."""

    MARK_FAILED = "mark_failed"
    CANCEL = "cancel"
    PAUSE = "pause"
    NONE = "none"


class CampaignStatus(str, Enum):
    ACTIVE = "active"
    RECOVERED = "recovered"
    FAILED = "failed"


class AttemptStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


DEFAULT_ACTIONS: tuple[DunningAction, ...] = (DunningAction.RETRY_PAYMENT,)

# Attempts from this number on use the final-notice template.
FINAL_NOTICE_ATTEMPT = 3


class DunningPolicy(BaseModel):
    """Validated dunning configuration."""

    max_attempts: int = Field(default=3, ge=1, le=50)
    retry_interval_days: list[int] = Field(
        default_factory=lambda: [3, 7, 14],
        description="Wait before attempt 1, then after attempt k at index k.",
    )
    attempt_actions: dict[int, list[DunningAction]] = Field(default_factory=dict)
    final_action: FinalAction = FinalAction.MARK_FAILED
    grace_period_hours: int = Field(default=0, ge=0)

    @field_validator("retry_interval_days")
    @classmethod
    def _positive_intervals(cls, v: list[int]) -> list[int]:
        if any(days <= 0 for days in v):
            raise ValueError("retry intervals must be positive day counts")
        return v

    @model_validator(mode="after")
    def _attempts_in_range(self) -> DunningPolicy:
        for attempt, actions in self.attempt_actions.items():
            if not 1 <= attempt <= self.max_attempts:
                raise ValueError(f"attempt {attempt} is outside 1..{self.max_attempts}")
            if not actions:
                raise ValueError(f"attempt {attempt} has an empty action list")
        return self

    def actions_for(self, attempt_number: int) -> list[DunningAction]:
        """Actions to run for *attempt_number*, defaulting to a payment retry."""
        return list(self.attempt_actions.get(attempt_number) or DEFAULT_ACTIONS)

    def interval_after(self, attempt_number: int) -> int | None:
        """Days to wait after *attempt_number*, or ``None`` once the list is exhausted.

        ``attempt_number`` 0 is the wait between campaign creation and the
        first attempt.
        """
        if attempt_number < len(self.retry_interval_days):
            return self.retry_interval_days[attempt_number]
        return None

    @classmethod
    def from_stored(
        cls,
        *,
        max_attempts: int,
        retry_interval_days: Any,
        attempt_actions: Any,
        final_action: str,
        grace_period_hours: int = 0,
    ) -> DunningPolicy:
        """Build a policy from stored column values, raising ``ConfigurationError`` on bad data."""
        try:
            actions = {int(k): v for k, v in (attempt_actions or {}).items()}
            return cls(
                max_attempts=max_attempts,
                retry_interval_days=list(retry_interval_days or []),
                attempt_actions=actions,
                final_action=final_action,
                grace_period_hours=grace_period_hours,
            )
        except (ValidationError, ValueError, TypeError, AttributeError) as exc:
            raise ConfigurationError(f"Invalid dunning configuration: {exc}") from exc
