"""
In-memory data store for the ShopHub API

Tables are plain dicts keyed by integer ids handed out from per-table
counters. One MemoryStore is created per application and handed to the
request handlers, so tests can build isolated instances.

Lookups return None for missing records; they never raise.
"""

from datetime import datetime
from itertools import count
from typing import Dict, List, Optional, Tuple

import structlog

from schemas import (
    Category,
    CategoryCreate,
    Order,
    OrderCreate,
    Product,
    ProductCreate,
    User,
    utcnow,
)

logger = structlog.get_logger(__name__)


def _detached(order: Optional[Order]) -> Optional[Order]:
    """Copy handed to callers; only the option maps inside lines are mutable."""
    return order.model_copy(deep=True) if order is not None else None


class DuplicateKeyError(ValueError):
    """A unique key (slug, username, email, payment reference) is already taken."""

    def __init__(self, field: str, value):
        self.field = field
        self.value = value
        super().__init__(f"{field} '{value}' already exists")


class MemoryStore:
    def __init__(self):
        self.users: Dict[int, User] = {}
        self.categories: Dict[int, Category] = {}
        self.products: Dict[int, Product] = {}
        self.orders: Dict[int, Order] = {}

        self._user_ids = count(1)
        self._category_ids = count(1)
        self._product_ids = count(1)
        self._order_ids = count(1)

        # payment reference -> order id
        self._orders_by_payment: Dict[str, int] = {}

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def get_user(self, user_id: int) -> Optional[User]:
        return self.users.get(user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        username = username.lower()
        return next((u for u in self.users.values() if u.username.lower() == username), None)

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = email.lower()
        return next((u for u in self.users.values() if u.email.lower() == email), None)

    def create_user(
        self,
        username: str,
        password_hash: str,
        email: str,
        full_name: Optional[str] = None,
        is_admin: bool = False,
    ) -> User:
        if self.get_user_by_username(username):
            raise DuplicateKeyError("username", username)
        if self.get_user_by_email(email):
            raise DuplicateKeyError("email", email)
        user = User(
            id=next(self._user_ids),
            username=username,
            password=password_hash,
            email=email,
            full_name=full_name,
            is_admin=is_admin,
        )
        self.users[user.id] = user
        logger.info("User created", user_id=user.id, is_admin=is_admin)
        return user

    # ------------------------------------------------------------------
    # Categories
    # ------------------------------------------------------------------

    def list_categories(self) -> List[Category]:
        return list(self.categories.values())

    def get_category_by_slug(self, slug: str) -> Optional[Category]:
        return next((c for c in self.categories.values() if c.slug == slug), None)

    def create_category(self, data: CategoryCreate) -> Category:
        if self.get_category_by_slug(data.slug):
            raise DuplicateKeyError("slug", data.slug)
        category = Category(id=next(self._category_ids), **data.model_dump())
        self.categories[category.id] = category
        return category

    # ------------------------------------------------------------------
    # Products
    # ------------------------------------------------------------------

    def list_products(
        self,
        search: Optional[str] = None,
        category: Optional[str] = None,
        featured: bool = False,
        limit: Optional[int] = None,
    ) -> List[Product]:
        """Products matching every given filter, in store order.

        ``category`` is a slug; an unknown slug matches nothing. ``limit``
        truncates the result and is ignored unless positive.
        """
        products = list(self.products.values())

        if search:
            term = search.lower()
            products = [
                p for p in products
                if term in p.name.lower() or (p.description and term in p.description.lower())
            ]

        if category:
            found = self.get_category_by_slug(category)
            if found is None:
                return []
            products = [p for p in products if p.category_id == found.id]

        if featured:
            products = [p for p in products if p.is_featured]

        if limit and limit > 0:
            products = products[:limit]

        return products

    def new_arrivals(self, limit: int = 4) -> List[Product]:
        ordered = sorted(self.products.values(), key=lambda p: (p.created_at, p.id), reverse=True)
        return ordered[:limit]

    def featured_products(self, limit: int = 3) -> List[Product]:
        return [p for p in self.products.values() if p.is_featured][:limit]

    def get_product_by_id(self, product_id: int) -> Optional[Product]:
        return self.products.get(product_id)

    def get_product_by_slug(self, slug: str) -> Optional[Product]:
        return next((p for p in self.products.values() if p.slug == slug), None)

    def create_product(self, data: ProductCreate, created_at: Optional[datetime] = None) -> Product:
        if self.get_product_by_slug(data.slug):
            raise DuplicateKeyError("slug", data.slug)
        product = Product(
            id=next(self._product_ids),
            created_at=created_at or utcnow(),
            **data.model_dump(),
        )
        self.products[product.id] = product
        return product

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def create_order(self, data: OrderCreate) -> Order:
        if data.payment_intent_id and data.payment_intent_id in self._orders_by_payment:
            raise DuplicateKeyError("payment_intent_id", data.payment_intent_id)

        # Validating from a dump snapshots the lines and address into
        # frozen copies; later cart edits never reach the order
        order = Order(id=next(self._order_ids), **data.model_dump())

        self.orders[order.id] = order
        if order.payment_intent_id:
            self._orders_by_payment[order.payment_intent_id] = order.id
        logger.info(
            "Order created",
            order_id=order.id,
            user_id=order.user_id,
            total=order.total,
            payment_intent_id=order.payment_intent_id,
        )
        return _detached(order)

    def get_order(self, order_id: int) -> Optional[Order]:
        return _detached(self.orders.get(order_id))

    def get_order_by_payment_intent(self, payment_intent_id: str) -> Optional[Order]:
        order_id = self._orders_by_payment.get(payment_intent_id)
        return self.get_order(order_id) if order_id is not None else None

    def finalize_order(self, data: OrderCreate) -> Tuple[Order, bool]:
        """Record a paid order exactly once per payment reference.

        Returns ``(order, created)``. Replaying the same payment reference
        returns the order stored the first time instead of a duplicate, so
        callers can retry after a failure without losing or doubling the
        purchase.
        """
        if data.payment_intent_id:
            existing = self.get_order_by_payment_intent(data.payment_intent_id)
            if existing is not None:
                logger.info(
                    "Order already finalized",
                    order_id=existing.id,
                    payment_intent_id=data.payment_intent_id,
                )
                return existing, False
        return self.create_order(data), True

    def list_orders_by_user(self, user_id: int) -> List[Order]:
        orders = [o for o in self.orders.values() if o.user_id == user_id]
        return [_detached(o) for o in sorted(orders, key=lambda o: (o.created_at, o.id), reverse=True)]

    def list_orders(self) -> List[Order]:
        orders = sorted(self.orders.values(), key=lambda o: (o.created_at, o.id), reverse=True)
        return [_detached(o) for o in orders]

    def set_order_status(self, order_id: int, status: str) -> Optional[Order]:
        """Replace the status of an order.

        Any status may follow any other; no transition table is enforced.
        """
        order = self.orders.get(order_id)
        if order is None:
            return None
        updated = order.model_copy(update={"status": status})
        self.orders[order_id] = updated
        logger.info("Order status changed", order_id=order_id, old=order.status, new=status)
        return _detached(updated)

    def counts(self) -> Dict[str, int]:
        return {
            "users": len(self.users),
            "categories": len(self.categories),
            "products": len(self.products),
            "orders": len(self.orders),
        }
