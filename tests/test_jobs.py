from reminder_engine.reminders.gateway import ConnectionState
import pytest

from reminder_engine.reminders.entitlement import EntitlementResolver
from reminder_engine.reminders.jobs import notify_quota_reset, premium_tip_for, send_daily_digest, send_premium_tips
from reminder_engine.reminders.models import UsageCounter
from reminder_engine.reminders.schemas import PlanTier

from .conftest import PRICE_PLANS
from .fakes import UTC, utc

MORNING = utc(2024, 5, 10, 8, 0)
FIRST_OF_MONTH = utc(2024, 5, 1, 10, 0)


def test_digest_lists_todays_reminders_for_entitled_users(
    session_factory, gateway, entitlement, make_user, make_reminder, db
):
    ana = make_user(name="Ana Souza", plan=PlanTier.PLUS)
    make_reminder(ana, utc(2024, 5, 10, 14, 30), title="Gym")
    make_reminder(ana, utc(2024, 5, 10, 9, 0), title="Dentist")
    make_reminder(ana, utc(2024, 5, 11, 9, 0), title="Tomorrow")
    bruno = make_user(name="Bruno")
    make_reminder(bruno, utc(2024, 5, 10, 9, 0))
    make_user(name="Carla", plan=PlanTier.PREMIUM)

    assert send_daily_digest(session_factory, gateway, entitlement, now=MORNING, tz=UTC) == 1
    assert gateway.sent == [
        (
            "5511987654321",
            "Good morning, Ana! You have 2 reminders today:\n\n"
            "- [09:00] Dentist\n"
            "- [14:30] Gym\n\n"
            "Open the app for the details.",
        )
    ]
    # Digests do not count against the quota
    assert db.get(UsageCounter, ana.id) is None


def test_digest_skipped_while_disconnected(session_factory, gateway, entitlement, make_user, make_reminder):
    make_reminder(make_user(plan=PlanTier.PLUS), utc(2024, 5, 10, 9, 0))
    gateway.state = ConnectionState.RECONNECTING

    assert send_daily_digest(session_factory, gateway, entitlement, now=MORNING, tz=UTC) == 0
    assert gateway.sent == []


def test_quota_reset_notice_is_sent_once(session_factory, gateway, entitlement, make_user, set_usage, db):
    capped = make_user(name="Ana", plan=PlanTier.PLUS)
    set_usage(capped, 30, "2024-04")
    set_usage(make_user(name="Bruno", plan=PlanTier.PLUS, number="11 98888-7777"), 5, "2024-04")
    set_usage(make_user(name="Davi", plan=PlanTier.PLUS, number="11 97777-6666"), 30, "2024-05")

    assert notify_quota_reset(session_factory, gateway, entitlement, now=FIRST_OF_MONTH) == 1
    address, message = gateway.sent[0]
    assert address == "5511987654321"
    assert message.startswith("Hi, Ana! ✨")
    assert "30 monthly reminders are available again" in message

    db.expire_all()
    assert db.get(UsageCounter, capped.id).reset_notified

    assert notify_quota_reset(session_factory, gateway, entitlement, now=FIRST_OF_MONTH) == 0
    assert len(gateway.sent) == 1


def test_quota_reset_marks_downgraded_users_silently(session_factory, gateway, entitlement, make_user, set_usage, db):
    downgraded = make_user(name="Carla", plan=PlanTier.PLUS, status="canceled")
    set_usage(downgraded, 30, "2024-04")

    assert notify_quota_reset(session_factory, gateway, entitlement, now=FIRST_OF_MONTH) == 0
    assert gateway.sent == []
    db.expire_all()
    assert db.get(UsageCounter, downgraded.id).reset_notified


def test_quota_reset_waits_for_gateway(session_factory, gateway, entitlement, make_user, set_usage, db):
    capped = make_user(plan=PlanTier.PLUS)
    set_usage(capped, 30, "2024-04")
    gateway.state = ConnectionState.NOT_CONNECTED

    assert notify_quota_reset(session_factory, gateway, entitlement, now=FIRST_OF_MONTH) == 0
    db.expire_all()
    assert not db.get(UsageCounter, capped.id).reset_notified

    gateway.state = ConnectionState.CONNECTED
    assert notify_quota_reset(session_factory, gateway, entitlement, now=FIRST_OF_MONTH) == 1


@pytest.mark.parametrize(
    "hour, opening",
    [
        (8, "Good morning, Ana ☀️"),
        (12, "Hey Ana, lunch time!"),
        (16, "Good afternoon, Ana, coffee time!"),
        (18, "The day is wrapping up, Ana!"),
        (21, "Time to relax, Ana!"),
    ],
)
def test_premium_tip_depends_on_hour(hour, opening):
    assert premium_tip_for(hour, "Ana").startswith(opening)


@pytest.mark.parametrize("hour", [0, 7, 9, 13, 22])
def test_no_premium_tip_outside_tip_hours(hour):
    assert premium_tip_for(hour, "Ana") is None


def test_premium_tips_go_only_to_active_premium_users(
    session_factory, gateway, entitlement, make_user, db
):
    premium = make_user(name="Ana Souza", plan=PlanTier.PREMIUM)
    trialing = make_user(name="Bruno", plan=PlanTier.PREMIUM, status="trialing", number="11 97777-6666")
    make_user(name="Carla", plan=PlanTier.PREMIUM, status="canceled", number="11 96666-5555")
    make_user(name="Davi", plan=PlanTier.PLUS, number="11 95555-4444")
    make_user(name="Eva", number="11 94444-3333")
    make_user(name="Fabio", plan=PlanTier.PREMIUM, number="")

    sent = send_premium_tips(session_factory, gateway, entitlement, now=utc(2024, 5, 10, 12, 0), tz=UTC)

    assert sent == 2
    assert sorted(address for address, _ in gateway.sent) == ["5511977776666", "5511987654321"]
    assert all("lunch time" in message for _, message in gateway.sent)
    # Tips do not count against the quota
    assert db.get(UsageCounter, premium.id) is None
    assert db.get(UsageCounter, trialing.id) is None


def test_premium_tips_outside_tip_hours_or_disconnected(session_factory, gateway, entitlement, make_user):
    make_user(plan=PlanTier.PREMIUM)
    assert send_premium_tips(session_factory, gateway, entitlement, now=utc(2024, 5, 10, 10, 0), tz=UTC) == 0

    gateway.state = ConnectionState.NOT_CONNECTED
    assert send_premium_tips(session_factory, gateway, entitlement, now=utc(2024, 5, 10, 8, 0), tz=UTC) == 0
    assert gateway.sent == []


def test_premium_tips_need_a_premium_price(session_factory, gateway, make_user):
    make_user(plan=PlanTier.PREMIUM)
    plus_only = {price: plan for price, plan in PRICE_PLANS.items() if plan is PlanTier.PLUS}
    resolver = EntitlementResolver(session_factory, price_plans=plus_only, tz=UTC)

    assert send_premium_tips(session_factory, gateway, resolver, now=utc(2024, 5, 10, 8, 0)) == 0
    assert gateway.sent == []
