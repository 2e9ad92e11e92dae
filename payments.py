"""Payment gateway abstraction: pluggable payment-intent provider.

The storefront only needs two calls from a payment provider: create a
payment intent for an amount (returning an opaque client handle) and check
that the shopper completed it. Everything else happens in the provider's
own widget.
"""

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Optional
from uuid import uuid4

import requests
import stripe
import structlog

from schemas import ShippingAddress

logger = structlog.get_logger(__name__)

DEFAULT_CURRENCY = "usd"
PAYMENT_TIMEOUT_SECONDS = float(os.getenv("PAYMENT_TIMEOUT_SECONDS", "10"))


class PaymentError(Exception):
    """The payment provider refused or failed the request."""


class PaymentTimeout(PaymentError):
    """The payment provider did not answer in time."""


@dataclass
class PaymentIntent:
    id: str
    client_secret: str
    amount: float
    currency: str = DEFAULT_CURRENCY
    status: str = "requires_payment_method"
    metadata: Dict[str, str] = field(default_factory=dict)
    shipping: Optional[ShippingAddress] = None


def to_cents(amount: float) -> int:
    return int(round(amount * 100))


def intent_id_from_secret(client_secret: str) -> str:
    """Client secrets have the form ``<intent id>_secret_<random>``."""
    intent_id, sep, _ = client_secret.partition("_secret_")
    if not sep or not intent_id:
        raise PaymentError("Malformed payment handle")
    return intent_id


class PaymentGateway(ABC):
    """Abstract interface for payment providers."""

    @abstractmethod
    def create_payment_intent(
        self,
        amount: float,
        currency: str = DEFAULT_CURRENCY,
        metadata: Optional[Dict[str, str]] = None,
        shipping: Optional[ShippingAddress] = None,
    ) -> PaymentIntent:
        """Create an intent to collect ``amount`` (in dollars) shipped to ``shipping``."""
        ...

    @abstractmethod
    def confirm_payment(self, client_secret: str) -> PaymentIntent:
        """Return the intent once the shopper has paid.

        Raises PaymentError if the payment did not succeed.
        """
        ...


# ----------------------------------------------------------------------------
# Fake provider
# ----------------------------------------------------------------------------

class FakePaymentGateway(PaymentGateway):
    """Deterministic provider for tests and development. Succeeds by default."""

    def __init__(self):
        self.should_succeed = True
        self.failure_reason = "Your card was declined."
        self.fail_on_create = False
        self.intents: Dict[str, PaymentIntent] = {}
        self.confirm_calls = 0

    def configure(
        self,
        should_succeed: bool = True,
        failure_reason: str = "Your card was declined.",
        fail_on_create: bool = False,
    ):
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason
        self.fail_on_create = fail_on_create

    def create_payment_intent(self, amount, currency=DEFAULT_CURRENCY, metadata=None, shipping=None):
        if self.fail_on_create:
            raise PaymentError("Payment provider unavailable")
        if amount <= 0:
            raise PaymentError("Amount must be positive")
        intent_id = f"pi_fake_{uuid4().hex[:16]}"
        intent = PaymentIntent(
            id=intent_id,
            client_secret=f"{intent_id}_secret_{uuid4().hex[:12]}",
            amount=round(amount, 2),
            currency=currency,
            metadata=dict(metadata or {}),
            shipping=shipping,
        )
        self.intents[intent_id] = intent
        return intent

    def confirm_payment(self, client_secret):
        self.confirm_calls += 1
        intent = self.intents.get(intent_id_from_secret(client_secret))
        if intent is None or intent.client_secret != client_secret:
            raise PaymentError("Unknown payment handle")
        if not self.should_succeed:
            intent.status = "requires_payment_method"
            raise PaymentError(self.failure_reason)
        intent.status = "succeeded"
        return intent


# ----------------------------------------------------------------------------
# Stripe
# ----------------------------------------------------------------------------

def _stripe_shipping(address: ShippingAddress) -> dict:
    return {
        "name": address.full_name,
        "address": {
            "line1": address.address,
            "city": address.city,
            "state": address.state,
            "postal_code": address.postal_code,
            "country": address.country,
        },
    }


def _is_timeout(exc: stripe.APIConnectionError) -> bool:
    cause = exc.__cause__ or exc.__context__
    return isinstance(cause, requests.Timeout) or "timed out" in str(exc).lower()


class StripePaymentGateway(PaymentGateway):
    """Stripe through the stripe-python SDK with a bounded request timeout."""

    def __init__(
        self,
        secret_key: str,
        api_base: Optional[str] = None,
        timeout: float = PAYMENT_TIMEOUT_SECONDS,
        client: Optional[stripe.StripeClient] = None,
    ):
        if not secret_key:
            raise ValueError("Missing required Stripe key: STRIPE_SECRET_KEY")
        self.timeout = timeout
        if client is None:
            options = {"http_client": stripe.RequestsClient(timeout=timeout)}
            if api_base:
                options["base_addresses"] = {"api": api_base.rstrip("/")}
            client = stripe.StripeClient(secret_key, **options)
        self.client = client

    def _call(self, operation: str, func, *args, **kwargs):
        try:
            return func(*args, **kwargs)
        except stripe.APIConnectionError as exc:
            if _is_timeout(exc):
                logger.error("Stripe request timed out", operation=operation, timeout=self.timeout)
                raise PaymentTimeout("Payment provider timed out") from exc
            logger.error("Stripe request failed", operation=operation, error=str(exc))
            raise PaymentError("Payment provider unreachable") from exc
        except stripe.StripeError as exc:
            message = exc.user_message or str(exc) or "Payment provider error"
            logger.error("Stripe rejected request", operation=operation, status=exc.http_status, message=message)
            raise PaymentError(message) from exc

    @staticmethod
    def _to_intent(obj, shipping: Optional[ShippingAddress] = None) -> PaymentIntent:
        return PaymentIntent(
            id=obj.id,
            client_secret=obj.client_secret,
            amount=obj.amount / 100,
            currency=obj.currency or DEFAULT_CURRENCY,
            status=obj.status or "",
            metadata=dict(obj.metadata or {}),
            shipping=shipping,
        )

    def create_payment_intent(self, amount, currency=DEFAULT_CURRENCY, metadata=None, shipping=None):
        params = {
            "amount": to_cents(amount),
            "currency": currency,
            "metadata": dict(metadata or {}),
        }
        if shipping is not None:
            params["shipping"] = _stripe_shipping(shipping)
        obj = self._call("create_payment_intent", self.client.payment_intents.create, params=params)
        return self._to_intent(obj, shipping)

    def confirm_payment(self, client_secret):
        intent_id = intent_id_from_secret(client_secret)
        obj = self._call("confirm_payment", self.client.payment_intents.retrieve, intent_id)
        intent = self._to_intent(obj)
        if intent.client_secret != client_secret:
            raise PaymentError("Unknown payment handle")
        if intent.status != "succeeded":
            raise PaymentError(f"Payment not completed (status: {intent.status})")
        return intent


# ----------------------------------------------------------------------------
# Configuration
# ----------------------------------------------------------------------------

_gateway_instance: Optional[PaymentGateway] = None


def get_payment_gateway() -> PaymentGateway:
    """Return the configured payment gateway (singleton).

    Uses FakePaymentGateway by default. Set PAYMENT_GATEWAY=stripe and
    STRIPE_SECRET_KEY for the real provider.
    """
    global _gateway_instance
    if _gateway_instance is None:
        adapter = os.getenv("PAYMENT_GATEWAY", "fake")
        if adapter == "fake":
            _gateway_instance = FakePaymentGateway()
        elif adapter == "stripe":
            _gateway_instance = StripePaymentGateway(
                secret_key=os.getenv("STRIPE_SECRET_KEY", ""),
                api_base=os.getenv("STRIPE_API_BASE"),
            )
        else:
            raise ValueError(f"Unknown payment gateway: {adapter}")
    return _gateway_instance


def reset_payment_gateway():
    """Reset the gateway singleton (useful for testing)."""
    global _gateway_instance
    _gateway_instance = None
