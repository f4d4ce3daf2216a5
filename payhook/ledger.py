import logging
import random
import time
from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from payhook.errors import LedgerWriteError
from payhook.models import WebhookEvent, utc_now
from payhook.schemas import WebhookPayload
from payhook.state_machine import WebhookEventStatus, allowed_event_sources

logger = logging.getLogger(__name__)

MAX_DB_RETRIES = 5
DB_RETRY_DELAY = 0.05  # 50ms base
MAX_ERROR_MESSAGE_LENGTH = 2000


@dataclass(frozen=True)
class Inserted:
    event: WebhookEvent


@dataclass(frozen=True)
class AlreadyExists:
    event: WebhookEvent


RecordResult = Inserted | AlreadyExists


class IdempotencyLedger:
    """
    Durable record of every inbound notification.

    ``record`` commits on its own, before any business transaction starts,
    so a receipt survives whatever happens afterwards. Status changes made
    outside the reconciliation transaction (duplicate, failed, ignored and
    the retry claim) also go through here as compare-and-swap updates.
    """

    def record(self, db: Session, payload: WebhookPayload, document: dict) -> RecordResult:
        event = WebhookEvent(
            external_event_id=payload.id,
            external_payment_id=payload.data.payment_id,
            event_type=payload.event_type,
            payload=document,
            signature_valid=True,
            status=WebhookEventStatus.RECEIVED.value,
            received_at=utc_now(),
        )
        db.add(event)
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            try:
                existing = self._find(db, payload.id)
                db.commit()  # end the read so no lock outlives the lookup
            except SQLAlchemyError as lookup_exc:
                db.rollback()
                raise LedgerWriteError(
                    f"Could not look up existing webhook event: {lookup_exc}"
                ) from lookup_exc
            if existing is None:
                raise LedgerWriteError(f"Could not record webhook event: {exc}") from exc
            return AlreadyExists(existing)
        except SQLAlchemyError as exc:
            db.rollback()
            raise LedgerWriteError(f"Could not record webhook event: {exc}") from exc
        return Inserted(event)

    def _find(self, db: Session, external_event_id: str | None) -> WebhookEvent | None:
        if external_event_id is None:
            return None
        return db.execute(
            select(WebhookEvent).where(WebhookEvent.external_event_id == external_event_id)
        ).scalar_one_or_none()

    def claim_retry(self, db: Session, event: WebhookEvent) -> bool:
        """Take a failed event back to ``received`` so a resend can re-run it.

        Only one concurrent resend wins the claim.
        """
        return self._transition(db, event, WebhookEventStatus.RECEIVED, error_message=None)

    def mark_duplicate(self, db: Session, event: WebhookEvent) -> bool:
        return self._transition(db, event, WebhookEventStatus.DUPLICATE, processed_at=utc_now())

    def mark_ignored(self, db: Session, event: WebhookEvent, reason: str) -> bool:
        return self._transition(
            db, event, WebhookEventStatus.IGNORED,
            error_message=reason[:MAX_ERROR_MESSAGE_LENGTH],
            processed_at=utc_now(),
        )

    def mark_failed(self, db: Session, event: WebhookEvent, error_message: str) -> bool:
        return self._transition(
            db, event, WebhookEventStatus.FAILED,
            error_message=(error_message or "unknown error")[:MAX_ERROR_MESSAGE_LENGTH],
        )

    def _transition(
        self,
        db: Session,
        event: WebhookEvent,
        target: WebhookEventStatus,
        **values,
    ) -> bool:
        event_id = event.id
        stmt = (
            update(WebhookEvent)
            .where(
                WebhookEvent.id == event_id,
                WebhookEvent.status.in_(allowed_event_sources(target.value)),
            )
            .values(status=target.value, **values)
            .execution_options(synchronize_session=False)
        )
        # Lock contention on the ledger row is retried; anything else propagates.
        for attempt in range(MAX_DB_RETRIES):
            try:
                result = db.execute(stmt)
                db.commit()
                break
            except OperationalError:
                db.rollback()
                if attempt == MAX_DB_RETRIES - 1:
                    raise
                jitter = random.uniform(0, DB_RETRY_DELAY)
                time.sleep(DB_RETRY_DELAY * (attempt + 1) + jitter)
        db.expire(event)
        changed = result.rowcount == 1
        if not changed:
            logger.info(
                "Webhook event %s not moved to %s; status changed concurrently",
                event_id, target.value,
            )
        return changed
