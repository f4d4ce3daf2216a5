from sqlalchemy import select
from sqlalchemy.orm import Session

from payhook.models import Payment
from payhook.state_machine import is_terminal_payment_status


class PaymentDeduplicationIndex:
    """Answers whether a payment already reached a terminal outcome."""

    def is_settled(self, db: Session, external_payment_id: str) -> bool:
        status = db.execute(
            select(Payment.status).where(Payment.external_payment_id == external_payment_id)
        ).scalar_one_or_none()
        return status is not None and is_terminal_payment_status(status)
