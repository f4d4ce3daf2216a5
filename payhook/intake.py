import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from payhook.dedup import PaymentDeduplicationIndex
from payhook.errors import InvalidTransitionError, LedgerWriteError, PaymentSettledError
from payhook.ledger import AlreadyExists, IdempotencyLedger
from payhook.models import WebhookEvent, utc_now
from payhook.plans import PlanCatalog
from payhook.reconciliation import ReconciliationEngine
from payhook.schemas import WebhookPayload
from payhook.signature import HmacSignatureVerifier, SignatureVerifier
from payhook.state_machine import WebhookEventStatus, is_supported_event_type

logger = logging.getLogger(__name__)

REPLAYABLE_STATES = {
    WebhookEventStatus.RECEIVED.value,
    WebhookEventStatus.VALIDATED.value,
    WebhookEventStatus.FAILED.value,
}


class IntakeOutcome(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    RETRYABLE_FAILURE = "error"

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self]


_HTTP_STATUS = {
    IntakeOutcome.ACCEPTED: 200,
    IntakeOutcome.REJECTED: 400,
    IntakeOutcome.RETRYABLE_FAILURE: 500,
}


@dataclass(frozen=True)
class IntakeResult:
    outcome: IntakeOutcome
    disposition: str
    webhook_event_id: int | None = None

    @property
    def http_status(self) -> int:
        return self.outcome.http_status

    @property
    def duplicate(self) -> bool:
        return self.disposition == "duplicate"


class WebhookIntakeHandler:
    """
    Entry point for one provider notification.

    Gates, in order: shape, signature, ledger insert, payment-level
    duplicate check, reconciliation. The caller only ever learns whether
    the notification was accepted, rejected, or should be resent.
    """

    def __init__(
        self,
        secret: str,
        plan_catalog: PlanCatalog,
        verifier: SignatureVerifier | None = None,
        ledger: IdempotencyLedger | None = None,
        dedup: PaymentDeduplicationIndex | None = None,
        engine: ReconciliationEngine | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.secret = secret
        self.verifier = verifier or HmacSignatureVerifier()
        self.ledger = ledger or IdempotencyLedger()
        self.dedup = dedup or PaymentDeduplicationIndex()
        self.engine = engine or ReconciliationEngine(plan_catalog, clock=clock)

    def handle(
        self,
        db: Session,
        raw_body: bytes,
        signature: str | None,
        document: Any,
    ) -> IntakeResult:
        # 1. Shape. Nothing is persisted for malformed input.
        if not isinstance(document, dict) or "eventType" not in document or "data" not in document:
            logger.warning("Webhook rejected: missing eventType or data")
            return IntakeResult(IntakeOutcome.REJECTED, "malformed")
        try:
            payload = WebhookPayload.model_validate(document)
        except ValidationError as exc:
            logger.warning("Webhook rejected: %d validation error(s)", exc.error_count())
            return IntakeResult(IntakeOutcome.REJECTED, "malformed")

        # 2. Signature over the exact bytes received, never a re-serialized copy
        if not self.verifier.verify(raw_body, signature, self.secret):
            logger.warning("Webhook rejected: invalid signature for %s", payload.event_type)
            return IntakeResult(IntakeOutcome.REJECTED, "invalid_signature")

        # 3. Durable receipt before any business logic
        try:
            recorded = self.ledger.record(db, payload, document)
        except LedgerWriteError:
            logger.exception("Failed to persist webhook event %s", payload.id)
            return IntakeResult(IntakeOutcome.RETRYABLE_FAILURE, "ledger_error")

        event = recorded.event
        if isinstance(recorded, AlreadyExists):
            if event.status != WebhookEventStatus.FAILED.value or not self._claim(db, event):
                logger.info("Duplicate webhook by external event id %s", payload.id)
                return IntakeResult(IntakeOutcome.ACCEPTED, "duplicate", event.id)
            logger.info("Retrying failed webhook event %s (%s)", event.id, payload.id)

        return self._process(db, event, payload)

    def replay(self, db: Session, webhook_event_id: int) -> IntakeResult:
        """Re-run a stored notification that never reached a final status.

        Raises LookupError for an unknown id and ValueError when the event
        is already processed, duplicate or ignored.
        """
        event = db.get(WebhookEvent, webhook_event_id)
        if event is None:
            raise LookupError(f"Webhook event {webhook_event_id} not found")
        if event.status not in REPLAYABLE_STATES:
            raise ValueError(
                f"Webhook event {webhook_event_id} is '{event.status}' and cannot be replayed"
            )
        if event.status == WebhookEventStatus.FAILED.value and not self._claim(db, event):
            return IntakeResult(IntakeOutcome.ACCEPTED, "duplicate", event.id)

        payload = WebhookPayload.model_validate(event.payload)
        logger.info("Replaying webhook event %s", event.id)
        return self._process(db, event, payload)

    def _claim(self, db: Session, event: WebhookEvent) -> bool:
        try:
            return self.ledger.claim_retry(db, event)
        except SQLAlchemyError:
            logger.exception("Could not claim failed webhook event %s for retry", event.id)
            return False

    def _process(self, db: Session, event: WebhookEvent, payload: WebhookPayload) -> IntakeResult:
        event_id = event.id
        try:
            if not is_supported_event_type(payload.event_type):
                self.ledger.mark_ignored(db, event, f"Unsupported event type '{payload.event_type}'")
                logger.info("Ignoring webhook event %s of type %s", event_id, payload.event_type)
                return IntakeResult(IntakeOutcome.ACCEPTED, "ignored", event_id)

            # 4. Payment already settled: acknowledge without touching state
            if self.dedup.is_settled(db, payload.data.payment_id):
                self.ledger.mark_duplicate(db, event)
                logger.info(
                    "Duplicate webhook by external payment id %s", payload.data.payment_id,
                )
                return IntakeResult(IntakeOutcome.ACCEPTED, "duplicate", event_id)
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Pre-reconciliation checks failed for webhook event %s", event_id)
            return self._fail(db, event, "Pre-reconciliation checks failed")

        # 5. Reconciliation, one transaction
        try:
            self.engine.apply(db, event, payload)
        except PaymentSettledError as exc:
            logger.info("Webhook event %s lost the race to settle: %s", event_id, exc)
            return self._acknowledge(db, event, "duplicate", self.ledger.mark_duplicate)
        except InvalidTransitionError as exc:
            logger.warning("Ignoring webhook event %s: %s", event_id, exc)
            reason = str(exc)
            return self._acknowledge(
                db, event, "ignored",
                lambda db, event: self.ledger.mark_ignored(db, event, reason),
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("Webhook processing failed for event %s", event_id)
            return self._fail(db, event, f"{type(exc).__name__}: {exc}")

        return IntakeResult(IntakeOutcome.ACCEPTED, "processed", event_id)

    def _acknowledge(
        self,
        db: Session,
        event: WebhookEvent,
        disposition: str,
        mark: Callable[[Session, WebhookEvent], bool],
    ) -> IntakeResult:
        event_id = event.id
        try:
            mark(db, event)
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Could not mark webhook event %s as %s", event_id, disposition)
            return self._fail(db, event, f"Could not mark event as {disposition}")
        return IntakeResult(IntakeOutcome.ACCEPTED, disposition, event_id)

    def _fail(self, db: Session, event: WebhookEvent, error_message: str) -> IntakeResult:
        event_id = event.id
        try:
            self.ledger.mark_failed(db, event, error_message)
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Could not mark webhook event %s as failed", event_id)
        return IntakeResult(IntakeOutcome.RETRYABLE_FAILURE, "failed", event_id)
