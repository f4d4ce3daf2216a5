"""Shared BDD step definitions for all feature files.

Step definitions live here (not in common_steps.py) because pytest-bdd
registers step fixtures in the caller module's locals. Only conftest.py
modules are auto-discovered by pytest, so steps MUST be defined here for
pytest-bdd to find them across all test files in this directory.

All parametric steps use parsers.parse(); quoted parameters are kept
between distinct literal words so two step texts never match each other.
"""
from datetime import timedelta
from decimal import Decimal

import pytest
from pytest_bdd import given, parsers, then, when
from sqlalchemy import func, select

from payhook.models import Payment, Subscription, User, WebhookEvent, as_utc
from payhook.state_machine import SubscriptionStatus
from tests.fixtures.payloads import make_webhook_payload
from tests.step_defs.common_steps import _active_subscriptions, _post_webhook, _record


@pytest.fixture
def context():
    return {}


# ── Given ──────────────────────────────────────────────────────────────────────

def _create_user_with_subscription(db_session, email, plan, start, end) -> Subscription:
    user = User(email=email)
    db_session.add(user)
    db_session.flush()
    subscription = Subscription(
        user_id=user.id,
        plan_id=plan,
        status=SubscriptionStatus.ACTIVE.value,
        current_period_start=start,
        current_period_end=end,
    )
    db_session.add(subscription)
    db_session.commit()
    return subscription


@given(parsers.parse('a user "{email}" has an active "{plan}" subscription ending in {days:d} days'))
def active_subscription_ending_in(email, plan, days, db_session, clock):
    end = clock.now + timedelta(days=days)
    return _create_user_with_subscription(db_session, email, plan, end - timedelta(days=30), end)


@given(parsers.parse('a user "{email}" has an active "{plan}" subscription that ended {days:d} days ago'))
def active_subscription_ended(email, plan, days, db_session, clock):
    end = clock.now - timedelta(days=days)
    return _create_user_with_subscription(db_session, email, plan, end - timedelta(days=30), end)


@given(parsers.parse('a pending payment "{pid}" exists without a subscription'))
def pending_payment_without_subscription(pid, db_session):
    payment = Payment(
        external_payment_id=pid,
        amount=Decimal("49.99"),
        currency="USD",
        status="pending",
    )
    db_session.add(payment)
    db_session.commit()
    return payment


@given(parsers.parse('I have sent a "{event_type}" webhook with id "{eid}" for payment "{pid}"'))
def pre_send_webhook(event_type, eid, pid, client):
    payload = make_webhook_payload(event_type=event_type, payment_id=pid, event_id=eid)
    response = _post_webhook(client, payload)
    assert response.status_code == 200, response.text


# ── When ───────────────────────────────────────────────────────────────────────

@when(parsers.parse('I send a "{event_type}" webhook with id "{eid}" for payment "{pid}"'))
def send_with_id(event_type, eid, pid, client, context):
    payload = make_webhook_payload(event_type=event_type, payment_id=pid, event_id=eid)
    context["last_payload"] = payload
    _record(context, _post_webhook(client, payload))


@when(parsers.parse('I send a "{event_type}" webhook without an id for payment "{pid}"'))
def send_without_id(event_type, pid, client, context):
    payload = make_webhook_payload(event_type=event_type, payment_id=pid, include_id=False)
    context["last_payload"] = payload
    _record(context, _post_webhook(client, payload))


@when("I send the same webhook again")
def send_same_again(client, context):
    _record(context, _post_webhook(client, context["last_payload"]))


# ── Then ───────────────────────────────────────────────────────────────────────

@then(parsers.parse("the response status should be {code:d}"))
def check_status_code(code, context):
    assert context["response"].status_code == code, (
        f"Expected {code}, got {context['response'].status_code}: "
        f"{context['response'].text}"
    )


@then(parsers.parse("all responses should have status {code:d}"))
def all_responses_status(code, context):
    for resp in context.get("responses", []):
        assert resp.status_code == code, (
            f"Expected {code}, got {resp.status_code}: {resp.text}"
        )


@then("the response should not leak internal details")
def check_no_leak(context):
    body = context["response"].json()
    assert set(body) <= {"status", "duplicate"}, f"Unexpected keys in body: {body}"


@then(parsers.parse('webhook event "{eid}" should have status "{status}"'))
def check_event_status(eid, status, db_session):
    db_session.expire_all()
    event = db_session.execute(
        select(WebhookEvent).where(WebhookEvent.external_event_id == eid)
    ).scalar_one_or_none()
    assert event is not None, f"No webhook event {eid!r}"
    assert event.status == status, f"Expected {status!r}, got {event.status!r}"


@then(parsers.parse('there should be exactly one payment "{pid}" in "{status}" status'))
def check_single_payment(pid, status, db_session):
    db_session.expire_all()
    payments = db_session.execute(
        select(Payment).where(Payment.external_payment_id == pid)
    ).scalars().all()
    assert len(payments) == 1, f"Expected 1 payment {pid!r}, found {len(payments)}"
    assert payments[0].status == status, (
        f"Expected status {status!r}, got {payments[0].status!r}"
    )


@then(parsers.parse('there should be no payment "{pid}"'))
def check_no_payment(pid, db_session):
    db_session.expire_all()
    count = db_session.scalar(
        select(func.count()).select_from(Payment).where(Payment.external_payment_id == pid)
    )
    assert count == 0


@then(parsers.parse('there should be exactly one active "{plan}" subscription for "{email}"'))
def check_single_active(plan, email, db_session):
    subscriptions = _active_subscriptions(db_session, email, plan)
    assert len(subscriptions) == 1, f"Expected 1 active subscription, found {len(subscriptions)}"


@then(parsers.parse('the "{plan}" subscription for "{email}" should end {days:d} days from now'))
def check_period_end(plan, email, days, db_session, clock):
    subscriptions = _active_subscriptions(db_session, email, plan)
    assert len(subscriptions) == 1, f"Expected 1 active subscription, found {len(subscriptions)}"
    expected = clock.now + timedelta(days=days)
    actual = as_utc(subscriptions[0].current_period_end)
    assert actual == expected, f"Expected period end {expected}, got {actual}"


@then(parsers.parse('payment "{pid}" should be linked to the active "{plan}" subscription for "{email}"'))
def check_payment_linked(pid, plan, email, db_session):
    subscriptions = _active_subscriptions(db_session, email, plan)
    assert len(subscriptions) == 1
    payment = db_session.execute(
        select(Payment).where(Payment.external_payment_id == pid)
    ).scalar_one()
    assert payment.subscription_id == subscriptions[0].id
    assert payment.user_id == subscriptions[0].user_id


@then("no webhook events, payments or subscriptions should exist")
def check_nothing_persisted(db_session):
    db_session.expire_all()
    for model in (WebhookEvent, Payment, Subscription, User):
        count = db_session.scalar(select(func.count()).select_from(model))
        assert count == 0, f"Expected no {model.__name__} rows, found {count}"

