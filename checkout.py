"""
Checkout sequencer

A linear flow over three steps: shipping -> payment -> confirmation.

- shipping: validate the address, price the order and obtain a payment
  handle from the payment gateway.
- payment: confirm the payment, record the order and empty the cart.
- confirmation: terminal.

Confirming is safe to retry. Once the gateway reports success the session
remembers it, and recording the order is keyed by the payment reference, so
a retry after a failed write finishes the same order instead of charging
again or creating a second one.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple, Union

import structlog
from pydantic import ValidationError

from cart import Cart
from payments import PaymentGateway, PaymentIntent
from schemas import CartItem, Order, OrderCreate, ShippingAddress

logger = structlog.get_logger(__name__)

TAX_RATE = 0.09
FREE_SHIPPING_THRESHOLD = 100.00


# ----------------------------------------------------------------------------
# Errors
# ----------------------------------------------------------------------------

class CheckoutError(Exception):
    """Base class for checkout failures."""


class InvalidShippingAddress(CheckoutError):

    def __init__(self, errors: List[dict]):
        self.errors = errors
        fields = ", ".join(".".join(str(p) for p in e.get("loc", ())) for e in errors)
        super().__init__(f"Invalid shipping address: {fields}")


class ShippingMethodUnavailable(CheckoutError):
    pass


class InvalidCheckoutState(CheckoutError):
    pass


# ----------------------------------------------------------------------------
# Pricing
# ----------------------------------------------------------------------------

@dataclass(frozen=True)
class ShippingMethod:
    id: str
    name: str
    price: float
    days: str
    min_amount: Optional[float] = None

    def is_available(self, subtotal: float) -> bool:
        return self.min_amount is None or subtotal >= self.min_amount


SHIPPING_METHODS: Tuple[ShippingMethod, ...] = (
    ShippingMethod("standard", "Standard", 9.99, "3-5"),
    ShippingMethod("express", "Express", 19.99, "1-2"),
    ShippingMethod("free", "Free Shipping", 0.00, "5-7", min_amount=FREE_SHIPPING_THRESHOLD),
)

DEFAULT_SHIPPING_METHOD = "standard"


def get_shipping_method(method_id: str) -> ShippingMethod:
    for method in SHIPPING_METHODS:
        if method.id == method_id:
            return method
    raise ShippingMethodUnavailable(f"Unknown shipping method: {method_id}")


def available_shipping_methods(subtotal: float) -> List[ShippingMethod]:
    return [m for m in SHIPPING_METHODS if m.is_available(subtotal)]


def shipping_fee(method_id: str, subtotal: float) -> float:
    """Fee for a method at the given subtotal.

    A method whose minimum subtotal is not met is refused rather than
    charged at some other price.
    """
    method = get_shipping_method(method_id)
    if not method.is_available(subtotal):
        raise ShippingMethodUnavailable(
            f"{method.name} requires a subtotal of at least {method.min_amount:.2f}"
        )
    return method.price


def calculate_tax(subtotal: float) -> float:
    return subtotal * TAX_RATE


@dataclass(frozen=True)
class OrderTotals:
    subtotal: float
    shipping: float
    tax: float
    total: float


def calculate_totals(subtotal: float, method_id: str = DEFAULT_SHIPPING_METHOD) -> OrderTotals:
    shipping = shipping_fee(method_id, subtotal)
    tax = calculate_tax(subtotal)
    return OrderTotals(
        subtotal=round(subtotal, 2),
        shipping=round(shipping, 2),
        tax=round(tax, 2),
        total=round(subtotal + shipping + tax, 2),
    )


# ----------------------------------------------------------------------------
# Sequencer
# ----------------------------------------------------------------------------

class CheckoutStep(str, Enum):
    SHIPPING = "shipping"
    PAYMENT = "payment"
    CONFIRMATION = "confirmation"


# Records a paid order; must return the existing order when the payment
# reference was already recorded.
OrderFinalizer = Callable[[OrderCreate], Order]


def store_finalizer(store) -> OrderFinalizer:
    """Finalizer backed by a MemoryStore."""

    def finalize(data: OrderCreate) -> Order:
        order, _ = store.finalize_order(data)
        return order

    return finalize


class CheckoutSession:
    """One shopper's pass through checkout. Not safe for concurrent use."""

    def __init__(
        self,
        cart: Cart,
        gateway: PaymentGateway,
        finalize_order: OrderFinalizer,
        user_id: int,
        shipping_method: str = DEFAULT_SHIPPING_METHOD,
    ):
        self.cart = cart
        self.gateway = gateway
        self.finalize_order = finalize_order
        self.user_id = user_id

        self.step = CheckoutStep.SHIPPING
        self.shipping_method = get_shipping_method(shipping_method).id
        self.shipping_address: Optional[ShippingAddress] = None
        self.totals: Optional[OrderTotals] = None
        self.payment_intent: Optional[PaymentIntent] = None
        self.order: Optional[Order] = None

        self._items: List[CartItem] = []
        self._paid = False

    @property
    def paid(self) -> bool:
        return self._paid

    def _require(self, step: CheckoutStep) -> None:
        if self.step != step:
            raise InvalidCheckoutState(f"Expected step '{step.value}', current step is '{self.step.value}'")

    # --- Shipping -------------------------------------------------------------

    def available_methods(self) -> List[ShippingMethod]:
        return available_shipping_methods(self.cart.total())

    def select_shipping_method(self, method_id: str) -> ShippingMethod:
        self._require(CheckoutStep.SHIPPING)
        method = get_shipping_method(method_id)
        shipping_fee(method.id, self.cart.total())
        self.shipping_method = method.id
        return method

    def quote(self) -> OrderTotals:
        return calculate_totals(self.cart.total(), self.shipping_method)

    def submit_shipping(
        self,
        address: Union[ShippingAddress, Dict[str, str]],
        shipping_method: Optional[str] = None,
    ) -> PaymentIntent:
        """Validate the address, price the order and request a payment handle.

        Stays on the shipping step if anything fails.
        """
        self._require(CheckoutStep.SHIPPING)
        if self.cart.is_empty():
            raise CheckoutError("Cart is empty")

        if isinstance(address, ShippingAddress):
            address = address.model_dump()
        try:
            shipping_address = ShippingAddress.model_validate(address)
        except ValidationError as exc:
            raise InvalidShippingAddress(exc.errors(include_url=False)) from exc

        if shipping_method is not None:
            self.select_shipping_method(shipping_method)

        items = self.cart.items
        totals = calculate_totals(self.cart.total(), self.shipping_method)

        self.shipping_address = shipping_address
        intent = self.gateway.create_payment_intent(
            totals.total,
            metadata={"user_id": str(self.user_id)},
            shipping=shipping_address,
        )

        self._items = items
        self.totals = totals
        self.payment_intent = intent
        self.step = CheckoutStep.PAYMENT
        logger.info(
            "Checkout awaiting payment",
            user_id=self.user_id,
            total=totals.total,
            payment_intent_id=intent.id,
        )
        return intent

    def back_to_shipping(self) -> None:
        self._require(CheckoutStep.PAYMENT)
        if self._paid:
            raise InvalidCheckoutState("Payment already captured; the order must be completed")
        self.step = CheckoutStep.SHIPPING

    # --- Payment --------------------------------------------------------------

    def confirm_payment(self) -> Order:
        """Confirm payment, record the order and clear the cart.

        Only what was bought leaves the cart: lines added after the shipping
        step, or extra quantity on a bought line, stay for a later checkout.
        On a payment failure the session stays on the payment step with the
        cart untouched. On a failure to record the order the payment is kept
        and calling this again only retries the recording.
        """
        self._require(CheckoutStep.PAYMENT)

        if not self._paid:
            self.payment_intent = self.gateway.confirm_payment(self.payment_intent.client_secret)
            self._paid = True
            logger.info("Payment captured", user_id=self.user_id, payment_intent_id=self.payment_intent.id)

        order = self.finalize_order(
            OrderCreate(
                user_id=self.user_id,
                items=self._items,
                total=self.totals.total,
                shipping_address=self.shipping_address,
                payment_intent_id=self.payment_intent.id,
            )
        )

        self.order = order
        self._remove_purchased_lines()
        self.step = CheckoutStep.CONFIRMATION
        logger.info("Checkout complete", user_id=self.user_id, order_id=order.id)
        return order

    def _remove_purchased_lines(self) -> None:
        bought = {item.id: item.quantity for item in self._items}
        remaining = self.cart.items
        if all(line.quantity <= bought.get(line.id, 0) for line in remaining):
            self.cart.clear()
            return
        for line in remaining:
            if line.id not in bought:
                continue
            if line.quantity > bought[line.id]:
                self.cart.set_quantity(line.id, line.quantity - bought[line.id])
            else:
                self.cart.remove_item(line.id)
