"""
Error taxonomy for purchase reconciliation and cancellation.

Provider- and network-facing failures are converted into one of these kinds
at the reconciliation boundary. Routes turn them into HTTP responses.
"""
from typing import Optional

RETRY_MESSAGE = "Please try again in a few minutes."
SUPPORT_MESSAGE = "If the problem persists, please contact support."


class EntitlementError(Exception):
    """Base class for user-facing entitlement failures."""

    kind = "entitlement_error"
    retryable = False
    status_code = 400
    default_message = "Something went wrong with your subscription."

    def __init__(self, message: Optional[str] = None, detail: Optional[str] = None):
        self.user_message = message or self.default_message
        self.detail = detail
        super().__init__(self.user_message)

    def to_dict(self) -> dict:
        return {
            "error": self.kind,
            "detail": self.detail or self.user_message,
            "retryable": self.retryable,
        }


class PlanNotFound(EntitlementError):
    kind = "plan_not_found"
    status_code = 404
    default_message = "The selected plan is not available. Please choose another plan."


class CheckoutAborted(EntitlementError):
    """The user closed the checkout widget. Not a failure."""

    kind = "checkout_aborted"
    retryable = True
    status_code = 200
    default_message = "Checkout was cancelled."


class CheckoutFailed(EntitlementError):
    kind = "checkout_failed"
    retryable = True
    status_code = 502
    default_message = f"We could not start the checkout. {RETRY_MESSAGE}"


class LinkFailure(EntitlementError):
    kind = "link_failure"
    retryable = True
    status_code = 502
    default_message = f"Your subscription could not be confirmed. {RETRY_MESSAGE} {SUPPORT_MESSAGE}"


class LinkTimeout(LinkFailure):
    kind = "link_timeout"


class TransportError(LinkFailure):
    kind = "transport_error"


class UnconfirmedAfterPolling(EntitlementError):
    kind = "unconfirmed_after_polling"
    retryable = False
    status_code = 504
    default_message = (
        "We have not received confirmation of your subscription yet. "
        "It may take a few minutes to appear. " + SUPPORT_MESSAGE
    )


class NoActiveSubscription(EntitlementError):
    kind = "no_active_subscription"
    status_code = 404
    default_message = "No active subscription was found to cancel."


class ProviderError(EntitlementError):
    """Raised by the provider adapter; carries the provider's own message."""

    kind = "provider_error"
    retryable = True
    status_code = 502

    def __init__(self, message: Optional[str] = None, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class ProviderCancellationFailed(EntitlementError):
    kind = "provider_cancellation_failed"
    retryable = True
    status_code = 502


class PurchaseInProgress(EntitlementError):
    kind = "purchase_in_progress"
    status_code = 409
    default_message = "A purchase is already being processed for this plan type."


class IntentNotFound(EntitlementError):
    kind = "intent_not_found"
    status_code = 404
    default_message = "Your checkout session has expired. Please select a plan again."
