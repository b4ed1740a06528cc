"""
Due-reminder dispatch loop.

Per reminder: claim -> entitlement check -> contact + delivery -> advance or
retire. The claim is written before any network call and is never reverted
inside a cycle: a crash mid-send loses that occurrence, but two overlapping
ticks can never both deliver it.
"""
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from reminder_engine.core.config import settings
from reminder_engine.utils.timezone import format_local_time, get_zoneinfo, to_utc_aware, utcnow
from .contacts import ContactResolver
from .entitlement import EntitlementResolver
from .errors import ContactMissing, MalformedScheduleRule, PolicyDenied, ReminderEngineError
from .gateway import DeliveryGateway, deliver
from .metrics import malformed_schedule_total, reminders_dispatched_total, scheduler_scans_total
from .recurrence import RecurrenceCalculator
from .repository import claim_reminder, due_reminders, reschedule_reminder, retire_reminder
from .schemas import DispatchOutcome, Recurrence, ReminderSnapshot

logger = logging.getLogger(__name__)


def format_reminder_message(title: str, trigger_at: datetime, tz: Optional[ZoneInfo] = None) -> str:
    return f'⏰ Reminder: "{title}" starts at {format_local_time(trigger_at, tz)}!'


class ReminderDispatcher:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        gateway: DeliveryGateway,
        entitlement: Optional[EntitlementResolver] = None,
        contacts: Optional[ContactResolver] = None,
        calculator: Optional[RecurrenceCalculator] = None,
        tz: Optional[ZoneInfo] = None,
        country_code: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.tz = tz or get_zoneinfo()
        self.entitlement = entitlement or EntitlementResolver(session_factory, tz=self.tz)
        self.contacts = contacts or ContactResolver(session_factory)
        self.calculator = calculator or RecurrenceCalculator(self.tz)
        self.country_code = country_code or settings.DEFAULT_COUNTRY_CODE

    def dispatch(self, reminder: ReminderSnapshot, now: Optional[datetime] = None) -> DispatchOutcome:
        """Handle one due occurrence. Never raises; failures come back as outcomes."""
        now = to_utc_aware(now) if now else utcnow()
        db = self.session_factory()
        try:
            try:
                claimed = claim_reminder(db, reminder.id, reminder.trigger_at)
            except Exception:
                db.rollback()
                logger.exception(f"❌ [Dispatch] Claim failed for reminder {reminder.id}; will retry next tick")
                return self._report(reminder, DispatchOutcome.SEND_FAILED)
            if not claimed:
                logger.info(f"🔒 [Dispatch] Reminder {reminder.id} already claimed by another tick")
                return self._report(reminder, DispatchOutcome.CLAIM_LOST)

            outcome = self._attempt_delivery(reminder, now)
            self._advance(db, reminder, outcome, now)
        finally:
            db.close()
        return self._report(reminder, outcome)

    def run_due_reminders(
        self,
        now: Optional[datetime] = None,
        lookback: Optional[timedelta] = None,
        limit: Optional[int] = None,
        max_workers: Optional[int] = None,
    ) -> Dict[str, int]:
        """Scan once and dispatch every due reminder through a bounded worker pool.

        Returns the number of reminders per outcome.
        """
        now = to_utc_aware(now) if now else utcnow()
        lookback = lookback or timedelta(minutes=settings.LOOKBACK_MINUTES)
        summary: Dict[str, int] = {o.value: 0 for o in DispatchOutcome}

        scheduler_scans_total.inc()
        # One worker per user: the quota check, send and usage record of a
        # user's reminders must not interleave
        by_user: Dict[str, List[ReminderSnapshot]] = {}
        for r in due_reminders(self.session_factory, now, lookback, limit or settings.BATCH_SIZE):
            by_user.setdefault(r.user_id, []).append(r)

        with ThreadPoolExecutor(max_workers=max_workers or settings.WORKER_CONCURRENCY) as pool:
            futures = {pool.submit(self._dispatch_user, group, now): group for group in by_user.values()}
            for future in as_completed(futures):
                try:
                    outcomes = future.result()
                except Exception:
                    logger.exception("❌ [Dispatch] Worker raised outside the dispatch boundary")
                    outcomes = [DispatchOutcome.SEND_FAILED] * len(futures[future])
                for outcome in outcomes:
                    summary[outcome.value] += 1

        total = sum(summary.values())
        if total:
            logger.info(f"📊 [Dispatch] Tick at {now.isoformat()} handled {total} reminders: {summary}")
        else:
            logger.debug(f"📊 [Dispatch] Tick at {now.isoformat()}: nothing due")
        return summary

    def _dispatch_user(self, reminders: List[ReminderSnapshot], now: datetime) -> List[DispatchOutcome]:
        """Dispatch one user's due reminders in trigger order."""
        return [self.dispatch(r, now) for r in reminders]

    def _attempt_delivery(self, reminder: ReminderSnapshot, now: datetime) -> DispatchOutcome:
        try:
            if not self.entitlement.can_deliver(reminder.user_id, now):
                raise PolicyDenied(f"plan does not allow delivery for user {reminder.user_id}", reminder_id=reminder.id)
            address = self.contacts.resolve_address(reminder.user_id)
            if address is None:
                raise ContactMissing(f"user {reminder.user_id} has no delivery address", reminder_id=reminder.id)
            target = deliver(
                self.gateway,
                address,
                format_reminder_message(reminder.title, reminder.trigger_at, self.tz),
                self.country_code,
            )
        except (PolicyDenied, ContactMissing) as e:
            logger.info(f"⏭️  [Dispatch] Reminder {reminder.id} skipped: {e}")
            return e.outcome
        except ReminderEngineError as e:
            logger.warning(f"❌ [Dispatch] Reminder {reminder.id} not delivered ({type(e).__name__}): {e}")
            return e.outcome
        except Exception:
            logger.exception(f"❌ [Dispatch] Unexpected failure delivering reminder {reminder.id}")
            return DispatchOutcome.SEND_FAILED

        logger.info(f"✅ [Dispatch] Reminder {reminder.id} sent to {target}")
        try:
            self.entitlement.record_delivery(reminder.user_id, now)
        except Exception:
            logger.exception(f"❌ [Dispatch] Usage not recorded for user {reminder.user_id}")
        return DispatchOutcome.SENT

    def _advance(self, db: Session, reminder: ReminderSnapshot, outcome: DispatchOutcome, now: datetime) -> None:
        """Retire a one-shot reminder or move a recurring one to its next occurrence."""
        try:
            try:
                rule = Recurrence.parse(reminder.recurrence)
            except ValueError:
                raise MalformedScheduleRule(reminder.recurrence, reminder_id=reminder.id)

            if rule is Recurrence.NONE:
                retire_reminder(db, reminder.id, outcome)
                logger.info(f"🏁 [Dispatch] Reminder {reminder.id} completed ({outcome.value})")
                return

            next_at = self.calculator.next_trigger(rule, reminder.trigger_at, now)
            reschedule_reminder(db, reminder.id, next_at, outcome)
            logger.info(f"🔄 [Dispatch] Reminder {reminder.id} rescheduled to {next_at.isoformat()}")
        except MalformedScheduleRule as e:
            malformed_schedule_total.inc()
            logger.error(f"❌ [Dispatch] Reminder {reminder.id} left claimed: {e}")
            try:
                retire_reminder(db, reminder.id, outcome)
            except Exception:
                db.rollback()
                logger.exception(f"❌ [Dispatch] Could not record outcome for reminder {reminder.id}")
        except Exception:
            db.rollback()
            logger.exception(f"❌ [Dispatch] Could not advance reminder {reminder.id}; it stays claimed")

    @staticmethod
    def _report(reminder: ReminderSnapshot, outcome: DispatchOutcome) -> DispatchOutcome:
        reminders_dispatched_total.labels(outcome=outcome.value).inc()
        return outcome
