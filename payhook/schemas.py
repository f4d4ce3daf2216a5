from datetime import datetime, timezone
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, StrictStr, field_validator


class PaymentData(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    payment_id: StrictStr = Field(..., alias="paymentId", min_length=1, max_length=255)
    amount: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)
    currency: StrictStr = Field(..., min_length=3, max_length=3)
    customer_email: StrictStr | None = Field(default=None, alias="customerEmail")
    customer_id: StrictStr | None = Field(default=None, alias="customerId")
    plan_id: StrictStr | None = Field(default=None, alias="planId")
    paid_at: datetime | None = Field(default=None, alias="paidAt")

    @field_validator("currency")
    @classmethod
    def currency_upper(cls, v: str) -> str:
        return v.upper()

    @field_validator("customer_email")
    @classmethod
    def email_normalized(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip().lower()
        return v or None

    @field_validator("paid_at")
    @classmethod
    def paid_at_utc(cls, v: datetime | None) -> datetime | None:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class WebhookPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: StrictStr | None = Field(default=None, max_length=255)
    event_type: StrictStr = Field(..., alias="eventType", min_length=1, max_length=100)
    data: PaymentData
