"""
Contact lookup and phone-number candidate generation.

Stored numbers come straight from user input: with or without country code,
with or without the leading 9 that mobile numbers gained, punctuation and
trunk prefixes included. Which form the messaging network knows cannot be
decided from the digits alone, so delivery tries a short, fixed list of
candidates instead of a single normalised number.
"""
import re
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from reminder_engine.core.config import settings
from .models import User

NATIONAL_LENGTHS = (10, 11)  # area code (2) + 8 or 9 digit subscriber number
MOBILE_PREFIX = "9"


def _national_number(digits: str, country_code: str) -> Optional[str]:
    if digits.startswith("0"):
        digits = digits.lstrip("0")
    # Length decides whether a leading country code is present, so an
    # area code equal to the country code is not stripped by mistake
    if digits.startswith(country_code) and len(digits) - len(country_code) in NATIONAL_LENGTHS:
        return digits[len(country_code):]
    if len(digits) in NATIONAL_LENGTHS:
        return digits
    return None


def phone_candidates(raw: Optional[str], country_code: Optional[str] = None) -> List[str]:
    """Ordered delivery candidates for a raw phone string.

    First the form with the mobile 9, then the form without it, both with
    country code. Returns an empty list when the input is not a usable number.
    """
    country_code = country_code or settings.DEFAULT_COUNTRY_CODE
    digits = re.sub(r"\D", "", raw or "")
    national = _national_number(digits, country_code)
    if national is None:
        return []

    area, subscriber = national[:2], national[2:]
    if len(subscriber) == 8:
        with_prefix, without_prefix = MOBILE_PREFIX + subscriber, subscriber
    elif subscriber.startswith(MOBILE_PREFIX):
        with_prefix, without_prefix = subscriber, subscriber[1:]
    else:
        # 9 digits without the mobile prefix: nothing to vary
        with_prefix = without_prefix = subscriber

    candidates: List[str] = []
    for subscriber_form in (with_prefix, without_prefix):
        candidate = f"{country_code}{area}{subscriber_form}"
        if candidate not in candidates:
            candidates.append(candidate)
    return candidates


class ContactResolver:
    """Maps a user id to the raw delivery address stored on the user record"""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def resolve_address(self, user_id: str) -> Optional[str]:
        db = self.session_factory()
        try:
            user = db.get(User, user_id)
        finally:
            db.close()
        if user is None:
            return None
        number = (user.whatsapp_number or "").strip()
        return number or None
