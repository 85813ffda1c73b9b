"""Subscription lifecycle rules."""

from billing_engine.lifecycle.state_machine import Trigger, allowed_sources, can_transition, transition

__all__ = ["Trigger", "allowed_sources", "can_transition", "transition"]
