import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from payhook.errors import PaymentSettledError
from payhook.models import Payment, Subscription, User, WebhookEvent, as_utc, utc_now
from payhook.plans import PlanCatalog
from payhook.schemas import PaymentData, WebhookPayload
from payhook.state_machine import (
    PaymentStatus,
    SubscriptionStatus,
    WebhookEventStatus,
    check_event_transition,
    check_payment_transition,
    check_subscription_transition,
    is_terminal_payment_status,
    map_event_type_to_payment_status,
)

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


@dataclass(frozen=True)
class ReconciliationResult:
    payment_id: str
    payment_status: str
    user_id: str | None
    subscription_id: str | None


class ReconciliationEngine:
    """
    Apply one validated, non-duplicate event to users, subscriptions and payments.

    Everything happens in a single transaction on ``db``: the event moves
    received -> validated -> processed, the customer is resolved, the
    subscription is granted or extended under a row lock and the payment is
    written in place by its provider id. On any error the transaction is
    rolled back and the exception re-raised; recording the failure on the
    event is the caller's job since it must happen outside this transaction.
    """

    def __init__(self, plan_catalog: PlanCatalog, clock: Callable[[], datetime] = utc_now):
        self.plan_catalog = plan_catalog
        self.clock = clock

    def apply(self, db: Session, event: WebhookEvent, payload: WebhookPayload) -> ReconciliationResult:
        try:
            result = self._apply(db, event, payload)
            db.commit()
        except Exception:
            db.rollback()
            raise
        return result

    def _apply(self, db: Session, event: WebhookEvent, payload: WebhookPayload) -> ReconciliationResult:
        now = self.clock()
        data = payload.data
        target_status = map_event_type_to_payment_status(payload.event_type)

        # 1. received -> validated (a replayed event may already be validated)
        if event.status != WebhookEventStatus.VALIDATED.value:
            self._advance_event(event, WebhookEventStatus.VALIDATED)
            db.flush()

        # Lock the payment row and re-check it under the lock; the settled
        # check before this transaction can be overtaken by a concurrent event.
        payment = self._lock_payment(db, data.payment_id)
        if payment is not None:
            if is_terminal_payment_status(payment.status):
                raise PaymentSettledError(
                    f"Payment '{data.payment_id}' is already '{payment.status}'."
                )
            check_payment_transition(payment.status, target_status.value)

        # 2. customer
        user = self._resolve_user(db, data, create=target_status is PaymentStatus.SUCCEEDED)

        # 3. access grant, only for money actually received
        subscription = None
        if target_status is PaymentStatus.SUCCEEDED and user is not None and data.plan_id:
            subscription = self._grant_subscription(db, user.id, data.plan_id, now)

        # 4. payment, reusing the row left by an earlier partial run
        payment = self._upsert_payment(
            db, payment, event, payload, target_status, user, subscription, now,
        )

        # 5. validated -> processed
        self._advance_event(event, WebhookEventStatus.PROCESSED)
        event.processed_at = now
        event.error_message = None
        db.flush()

        logger.info(
            "Webhook event %s reconciled: payment=%s status=%s user=%s subscription=%s",
            event.id, payment.id, payment.status,
            user.id if user else None,
            subscription.id if subscription else None,
        )
        return ReconciliationResult(
            payment_id=payment.id,
            payment_status=payment.status,
            user_id=payment.user_id,
            subscription_id=payment.subscription_id,
        )

    @staticmethod
    def _advance_event(event: WebhookEvent, target: WebhookEventStatus) -> None:
        check_event_transition(event.status, target.value)
        event.status = target.value

    @staticmethod
    def _lock_payment(db: Session, external_payment_id: str) -> Payment | None:
        stmt = (
            select(Payment)
            .where(Payment.external_payment_id == external_payment_id)
            .with_for_update()
        )
        return db.execute(stmt).scalar_one_or_none()

    def _resolve_user(self, db: Session, data: PaymentData, create: bool) -> User | None:
        """Find the customer by email, else by provider customer id.

        Customers are only created for successful payments; other events
        are linked to a customer that already exists, if any.
        """
        if data.customer_email:
            return self._find_or_create_user(
                db, User.email, data.customer_email, create, email=data.customer_email,
            )
        if data.customer_id:
            return self._find_or_create_user(
                db, User.external_customer_id, data.customer_id, create,
                external_customer_id=data.customer_id,
            )
        return None

    @staticmethod
    def _find_or_create_user(db: Session, column, value: str, create: bool, **fields) -> User | None:
        user = db.execute(select(User).where(column == value)).scalar_one_or_none()
        if user is None and create:
            user = User(**fields)
            db.add(user)
            db.flush()
            logger.info("Created user %s", user.id)
        return user

    def _grant_subscription(
        self, db: Session, user_id: str, plan_id: str, now: datetime,
    ) -> Subscription:
        duration = self.plan_catalog.get_duration(plan_id)

        # The lock is held across lookup and decision; the partial unique
        # index catches the case where no row existed to lock.
        stmt = (
            select(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.plan_id == plan_id,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
            )
            .with_for_update()
        )
        subscription = db.execute(stmt).scalar_one_or_none()

        if subscription is None:
            subscription = Subscription(
                user_id=user_id,
                plan_id=plan_id,
                status=SubscriptionStatus.ACTIVE.value,
                current_period_start=now,
                current_period_end=now + duration,
            )
            db.add(subscription)
        else:
            check_subscription_transition(subscription.status, SubscriptionStatus.ACTIVE.value)
            base = max(as_utc(subscription.current_period_end), now)
            subscription.current_period_end = base + duration
            subscription.status = SubscriptionStatus.ACTIVE.value
        db.flush()
        return subscription

    @staticmethod
    def _upsert_payment(
        db: Session,
        payment: Payment | None,
        event: WebhookEvent,
        payload: WebhookPayload,
        status: PaymentStatus,
        user: User | None,
        subscription: Subscription | None,
        now: datetime,
    ) -> Payment:
        data = payload.data
        if payment is None:
            payment = Payment(external_payment_id=data.payment_id)
            db.add(payment)
        if user is not None:
            payment.user_id = user.id
        if subscription is not None:
            payment.subscription_id = subscription.id
        payment.external_event_id = payload.id
        payment.status = status.value
        payment.amount = data.amount.quantize(CENTS)
        payment.currency = data.currency
        payment.raw_payload_id = event.id
        payment.paid_at = data.paid_at or now
        db.flush()
        return payment
