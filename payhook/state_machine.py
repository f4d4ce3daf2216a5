from enum import Enum

from payhook.errors import InvalidTransitionError


class WebhookEventStatus(str, Enum):
    RECEIVED = "received"
    VALIDATED = "validated"
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    FAILED = "failed"
    IGNORED = "ignored"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"
    CHARGEBACK = "chargeback"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELED = "canceled"
    PENDING = "pending"


# failed -> received is the claim taken when the provider resends a failed notification
EVENT_TRANSITIONS: dict[WebhookEventStatus, set[WebhookEventStatus]] = {
    WebhookEventStatus.RECEIVED: {
        WebhookEventStatus.VALIDATED,
        WebhookEventStatus.DUPLICATE,
        WebhookEventStatus.FAILED,
        WebhookEventStatus.IGNORED,
    },
    WebhookEventStatus.VALIDATED: {
        WebhookEventStatus.PROCESSED,
        WebhookEventStatus.FAILED,
    },
    WebhookEventStatus.FAILED: {
        WebhookEventStatus.RECEIVED,
    },
}

PAYMENT_TRANSITIONS: dict[PaymentStatus, set[PaymentStatus]] = {
    PaymentStatus.PENDING: {
        PaymentStatus.PENDING,
        PaymentStatus.SUCCEEDED,
        PaymentStatus.FAILED,
    },
    PaymentStatus.SUCCEEDED: {
        PaymentStatus.REFUNDED,
        PaymentStatus.CHARGEBACK,
    },
}

SUBSCRIPTION_TRANSITIONS: dict[SubscriptionStatus, set[SubscriptionStatus]] = {
    SubscriptionStatus.PENDING: {SubscriptionStatus.ACTIVE},
    SubscriptionStatus.ACTIVE: {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.EXPIRED,
        SubscriptionStatus.CANCELED,
    },
}

# Terminal with respect to payment-level deduplication
TERMINAL_PAYMENT_STATES: set[PaymentStatus] = {
    PaymentStatus.SUCCEEDED,
    PaymentStatus.FAILED,
    PaymentStatus.REFUNDED,
    PaymentStatus.CHARGEBACK,
}

EVENT_TYPE_TO_PAYMENT_STATUS: dict[str, PaymentStatus] = {
    "payment.pending": PaymentStatus.PENDING,
    "payment.succeeded": PaymentStatus.SUCCEEDED,
    "payment.failed": PaymentStatus.FAILED,
    "payment.refunded": PaymentStatus.REFUNDED,
    "payment.chargeback": PaymentStatus.CHARGEBACK,
}


def is_supported_event_type(event_type: str) -> bool:
    return event_type in EVENT_TYPE_TO_PAYMENT_STATUS


def is_terminal_payment_status(status: str) -> bool:
    return PaymentStatus(status) in TERMINAL_PAYMENT_STATES


def map_event_type_to_payment_status(event_type: str) -> PaymentStatus:
    """
    Map a provider event type onto the payment status it produces.

    Raises InvalidTransitionError for event types this pipeline does not act on.
    """
    try:
        return EVENT_TYPE_TO_PAYMENT_STATUS[event_type]
    except KeyError:
        raise InvalidTransitionError(
            f"Event type '{event_type}' does not map to a payment status."
        ) from None


def _check(table: dict, kind: str, current: str, target: str, enum_cls) -> None:
    current_status = enum_cls(current)
    target_status = enum_cls(target)
    if target_status not in table.get(current_status, set()):
        raise InvalidTransitionError(
            f"{kind} cannot move from '{current_status.value}' to '{target_status.value}'."
        )


def check_event_transition(current: str, target: str) -> None:
    _check(EVENT_TRANSITIONS, "Webhook event", current, target, WebhookEventStatus)


def check_payment_transition(current: str, target: str) -> None:
    _check(PAYMENT_TRANSITIONS, "Payment", current, target, PaymentStatus)


def check_subscription_transition(current: str, target: str) -> None:
    _check(SUBSCRIPTION_TRANSITIONS, "Subscription", current, target, SubscriptionStatus)


def allowed_event_sources(target: str) -> list[str]:
    """Statuses a webhook event may hold for a move to ``target`` to be legal."""
    target_status = WebhookEventStatus(target)
    return [
        source.value
        for source, targets in EVENT_TRANSITIONS.items()
        if target_status in targets
    ]
