"""Shared fixtures: a throwaway SQLite store and builders for users, plans and reminders."""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from reminder_engine.db.base import Base
from reminder_engine.reminders.entitlement import EntitlementResolver, default_plan_policies
from reminder_engine.reminders.models import Reminder, Subscription, UsageCounter, User
from reminder_engine.reminders.schemas import PlanTier

from .fakes import UTC, FakeGateway

PRICE_PLANS = {
    "price_plus": PlanTier.PLUS,
    "price_premium": PlanTier.PREMIUM,
}


@pytest.fixture
def engine(tmp_path):
    # File-backed so dispatch worker threads each get their own connection
    eng = create_engine(f"sqlite:///{tmp_path / 'reminders.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def entitlement(session_factory):
    return EntitlementResolver(
        session_factory,
        price_plans=PRICE_PLANS,
        policies=default_plan_policies(plus_cap=30),
        tz=UTC,
    )


@pytest.fixture
def make_user(db):
    def _make(name="Ana Souza", number="11987654321", plan=None, status="active"):
        user = User(name=name, whatsapp_number=number)
        db.add(user)
        db.flush()
        if plan is not None:
            price = {PlanTier.PLUS: "price_plus", PlanTier.PREMIUM: "price_premium"}.get(plan)
            db.add(Subscription(user_id=user.id, status=status, price_id=price))
        db.commit()
        return user
    return _make


@pytest.fixture
def make_reminder(db):
    def _make(user, trigger_at, title="Dentist", recurrence=None, delivered=False):
        reminder = Reminder(
            user_id=user.id,
            title=title,
            trigger_at=trigger_at,
            recurrence=recurrence,
            delivered=delivered,
        )
        db.add(reminder)
        db.commit()
        return reminder
    return _make


@pytest.fixture
def set_usage(db):
    def _set(user, count, period, reset_notified=False):
        db.merge(UsageCounter(user_id=user.id, count=count, period=period, reset_notified=reset_notified))
        db.commit()
    return _set
