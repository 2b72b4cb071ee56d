"""
Payment gateway contract.

Defines the calls the billing subsystem makes to the payment gateway
(Stripe in production, an in-memory fake in tests). Business logic depends
only on this Protocol so the provider can be swapped.

Every call may raise GatewayError (retryable) or GatewayTimeoutError.
"""
from dataclasses import dataclass
from typing import Optional, Protocol

from subsync.core.config import settings
from subsync.models.events import GatewaySubscriptionSnapshot


@dataclass(frozen=True)
class CheckoutSession:
    """Hosted checkout session returned to the client."""
    session_id: str
    url: str


class PaymentGateway(Protocol):
    """
    Gateway operations used by the reconciler and billing service.

    Implementations must:
    - Attach the local user id to checkout-created subscriptions (metadata)
    - Return None from retrieve_subscription when the id is unknown
    - Raise GatewayError / GatewayTimeoutError on transport or API failure
    """

    def ensure_customer(self, user_id: str, email: Optional[str] = None) -> str:
        """
        Create (or find) the gateway customer for a user.

        Returns:
            Gateway customer id
        """
        ...

    def create_checkout_session(
        self,
        *,
        user_id: str,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        ...

    def create_customer_portal_session(self, customer_id: str, return_url: str) -> str:
        """Returns the portal URL."""
        ...

    def request_cancel_at_period_end(self, subscription_id: str) -> None:
        ...

    def request_resume(self, subscription_id: str) -> None:
        ...

    def retrieve_subscription(self, subscription_id: str) -> Optional[GatewaySubscriptionSnapshot]:
        ...


_gateway: Optional[PaymentGateway] = None


def init_gateway(gateway: Optional[PaymentGateway] = None) -> Optional[PaymentGateway]:
    """
    Install the process-wide gateway.

    Without an explicit gateway, a StripeGateway is built when
    STRIPE_SECRET_KEY is configured; otherwise billing stays disabled.
    """
    global _gateway
    if gateway is None and settings.STRIPE_SECRET_KEY:
        from subsync.features.billing.stripe_gateway import StripeGateway

        gateway = StripeGateway(settings.STRIPE_SECRET_KEY)
    _gateway = gateway
    return _gateway


def get_gateway() -> Optional[PaymentGateway]:
    if _gateway is None:
        return init_gateway()
    return _gateway


def reset_gateway() -> None:
    global _gateway
    _gateway = None


def billing_enabled() -> bool:
    return get_gateway() is not None
