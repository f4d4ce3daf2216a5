class PayhookError(Exception):
    """Base class for errors raised by the webhook pipeline."""


class LedgerWriteError(PayhookError):
    """The receipt of a notification could not be recorded."""


class InvalidTransitionError(PayhookError):
    """A status change that the state machine does not allow."""


class PaymentSettledError(PayhookError):
    """The payment reached a terminal status before this event could apply."""


class UnknownPlanError(PayhookError):
    """The plan catalog has no duration for the requested plan."""
