"""
Schemas for the ShopHub storefront

Each Pydantic model below is either a record held by the in-memory store
(Category, Product, User, Order) or a value embedded in one (CartItem,
ShippingAddress). Request bodies that only exist at the HTTP boundary live
in main.py.

We store:
- User (password kept as a hash, never returned in public responses)
- Category
- Product
- Order (frozen snapshot of the cart and shipping address)
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, EmailStr, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class CartItem(BaseModel):
    id: int = Field(..., description="Product id; at most one cart line per product")
    name: str = Field(..., description="Product name at the time it was added")
    price: float = Field(..., ge=0, description="Unit price in dollars")
    image_url: Optional[str] = Field(None, description="Product image URL")
    quantity: int = Field(1, ge=1, description="Quantity for the product")
    options: Optional[Dict[str, str]] = Field(None, description="Selected variant options")


class ShippingAddress(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    full_name: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    postal_code: str = Field(..., min_length=1)
    country: str = Field(..., min_length=1)


class CategoryCreate(BaseModel):
    name: str = Field(..., min_length=1, description="Display name")
    slug: str = Field(..., min_length=1, pattern=r"^[a-z0-9]+(?:-[a-z0-9]+)*$", description="Unique URL key")
    image_url: Optional[str] = Field(None, description="Category image URL")


class Category(CategoryCreate):
    """
    Categories table
    Created once, immutable afterwards.
    """
    id: int


class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1, description="Product name")
    slug: str = Field(..., min_length=1, pattern=r"^[a-z0-9]+(?:-[a-z0-9]+)*$", description="Unique URL key")
    description: Optional[str] = Field(None, description="Product description")
    price: float = Field(..., ge=0, description="Price in dollars")
    compare_at_price: Optional[float] = Field(None, ge=0, description="Previous price, for discount display")
    image_url: Optional[str] = Field(None, description="Image URL")
    category_id: Optional[int] = Field(None, description="Owning category id")
    in_stock: bool = Field(True, description="Whether product is in stock")
    is_new: bool = Field(False, description="Shown with a 'new' badge")
    is_featured: bool = Field(False, description="Listed among featured products")


class Product(ProductCreate):
    """
    Products table
    Never deleted; a change replaces the whole record.
    """
    id: int
    rating: float = Field(0, ge=0, le=5, description="Average rating 0-5")
    num_reviews: int = Field(0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)


class User(BaseModel):
    """
    Users table
    Username and email are unique, compared case-insensitively.
    """
    id: int
    username: str
    password: str = Field(..., description="Hashed password")
    email: EmailStr
    full_name: Optional[str] = None
    is_admin: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class UserPublic(BaseModel):
    id: int
    username: str
    email: EmailStr
    full_name: Optional[str] = None
    is_admin: bool = False
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserPublic":
        return cls(**user.model_dump(exclude={"password"}))


class OrderCreate(BaseModel):
    user_id: int
    items: List[CartItem] = Field(..., min_length=1)
    total: float = Field(..., ge=0, description="subtotal + shipping + tax")
    status: str = Field(OrderStatus.PENDING.value, description="pending | processing | shipped | delivered | cancelled")
    shipping_address: ShippingAddress
    payment_intent_id: Optional[str] = Field(None, description="External payment reference")


class OrderLine(CartItem):
    """Cart line as captured on an order."""
    model_config = ConfigDict(frozen=True)


class OrderAddress(ShippingAddress):
    model_config = ConfigDict(frozen=True)


class Order(OrderCreate):
    """
    Orders table
    Items, total and shipping address are frozen at creation; only the
    status is replaced afterwards.
    """
    model_config = ConfigDict(frozen=True)

    id: int
    items: Tuple[OrderLine, ...] = Field(..., min_length=1)
    shipping_address: OrderAddress
    created_at: datetime = Field(default_factory=utcnow)
