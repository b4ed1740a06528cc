"""
Value types shared by the dispatch pipeline
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class DispatchOutcome(str, Enum):
    """Result of dispatching one reminder occurrence"""
    SENT = "sent"
    SKIPPED_BY_POLICY = "skipped_by_policy"
    SKIPPED_NO_CONTACT = "skipped_no_contact"
    SEND_FAILED = "send_failed"
    CLAIM_LOST = "claim_lost"  # another tick claimed this occurrence first


class Recurrence(str, Enum):
    """Recurrence rules a reminder can carry"""
    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"

    @classmethod
    def parse(cls, value: Optional[str]) -> "Recurrence":
        """Map a stored value (including legacy authoring labels) to a rule.

        Raises ValueError for anything unrecognised.
        """
        if value is None:
            return cls.NONE
        key = str(value).strip().lower()
        if key in RECURRENCE_ALIASES:
            return RECURRENCE_ALIASES[key]
        return cls(key)


# Labels written by the chat/app authoring flows
RECURRENCE_ALIASES = {
    "": Recurrence.NONE,
    "none": Recurrence.NONE,
    "não repetir": Recurrence.NONE,
    "diariamente": Recurrence.DAILY,
    "semanalmente": Recurrence.WEEKLY,
    "mensalmente": Recurrence.MONTHLY,
    "anualmente": Recurrence.YEARLY,
}


class PlanTier(str, Enum):
    FREE = "free"
    PLUS = "plus"
    PREMIUM = "premium"


@dataclass(frozen=True)
class PlanPolicy:
    delivers: bool
    monthly_cap: Optional[int] = None  # None means unlimited


@dataclass(frozen=True)
class Entitlement:
    plan: PlanTier
    allowed: bool
    used: int = 0
    cap: Optional[int] = None


@dataclass(frozen=True)
class ReminderSnapshot:
    """Detached copy of a due reminder, safe to hand to worker threads"""
    id: str
    user_id: str
    title: str
    trigger_at: datetime
    recurrence: Optional[str]
    delivered: bool = False
