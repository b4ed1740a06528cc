"""
Failure taxonomy of the dispatch pipeline.

Every delivery-path error maps onto a DispatchOutcome; the dispatcher turns
them into outcomes at its boundary instead of letting them escape.
"""
from typing import Optional

from .schemas import DispatchOutcome


class ReminderEngineError(Exception):
    outcome: DispatchOutcome = DispatchOutcome.SEND_FAILED

    def __init__(self, message: str = "", *, reminder_id: Optional[str] = None):
        super().__init__(message)
        self.reminder_id = reminder_id


class PolicyDenied(ReminderEngineError):
    """The user's plan does not allow a delivery right now (expected skip)."""
    outcome = DispatchOutcome.SKIPPED_BY_POLICY


class ContactMissing(ReminderEngineError):
    """The user has no delivery address configured (expected skip)."""
    outcome = DispatchOutcome.SKIPPED_NO_CONTACT


class GatewayDisconnected(ReminderEngineError):
    """The messaging gateway is not connected; no attempt was made."""


class DeliveryUnreachable(ReminderEngineError):
    """No address candidate was both reachable and accepted the message."""


class TransientSendFailure(ReminderEngineError):
    """Network error or timeout talking to the gateway."""


class MalformedScheduleRule(ReminderEngineError):
    """The stored recurrence value is not a known rule."""

    def __init__(self, rule: object, *, reminder_id: Optional[str] = None):
        super().__init__(f"unknown recurrence rule: {rule!r}", reminder_id=reminder_id)
        self.rule = rule
