import os
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import jwt
import structlog
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr, Field

from checkout import available_shipping_methods
from database import DuplicateKeyError, MemoryStore
from logs import bind_request_context, clear_request_context, configure_logging
from payments import PaymentError, PaymentGateway, PaymentTimeout, get_payment_gateway
from schemas import (
    CartItem,
    Category,
    CategoryCreate,
    Order,
    OrderCreate,
    OrderStatus,
    Product,
    ProductCreate,
    ShippingAddress,
    User,
    UserPublic,
    utcnow,
)

logger = structlog.get_logger(__name__)

# ----------------------------------------------------------------------------
# Security Setup
# ----------------------------------------------------------------------------

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALG = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24 * 7  # 7 days
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=BCRYPT_ROUNDS)
# /api/login takes JSON; the form-encoded twin serves the OAuth2 password flow
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/token", auto_error=False)


# ----------------------------------------------------------------------------
# Utilities
# ----------------------------------------------------------------------------

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(plain, hashed)


def create_access_token(subject: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = subject.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALG)


def get_store(request: Request) -> MemoryStore:
    return request.app.state.store


def get_gateway(request: Request) -> PaymentGateway:
    return request.app.state.payment_gateway


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=401, detail=detail, headers={"WWW-Authenticate": "Bearer"})


async def get_current_user(
    token: Optional[str] = Depends(oauth2_scheme),
    store: MemoryStore = Depends(get_store),
) -> User:
    if not token:
        raise _unauthorized("Not authenticated")
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
        user_id = int(payload.get("sub"))
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Token expired")
    except (jwt.InvalidTokenError, TypeError, ValueError):
        raise _unauthorized("Invalid authentication")
    user = store.get_user(user_id)
    if not user:
        raise _unauthorized("User not found")
    bind_request_context(user_id=user.id)
    return user


async def get_current_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


# ----------------------------------------------------------------------------
# Models (request bodies)
# ----------------------------------------------------------------------------

class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=3)
    email: EmailStr
    password: str = Field(..., min_length=6)
    full_name: Optional[str] = None


class LoginRequest(BaseModel):
    username: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserPublic


class OrderRequest(BaseModel):
    items: List[CartItem] = Field(..., min_length=1)
    total: float = Field(..., ge=0)
    shipping_address: ShippingAddress
    status: OrderStatus = OrderStatus.PENDING
    payment_intent_id: Optional[str] = None


class OrderStatusRequest(BaseModel):
    status: OrderStatus


class PaymentIntentRequest(BaseModel):
    amount: float = Field(..., gt=0, description="Order total in dollars")
    shipping_address: Optional[ShippingAddress] = None


class PaymentIntentResponse(BaseModel):
    client_secret: str
    payment_intent_id: str


router = APIRouter()


# ----------------------------------------------------------------------------
# Auth Endpoints
# ----------------------------------------------------------------------------

def _token_for(user: User) -> TokenResponse:
    token = create_access_token({"sub": str(user.id)})
    return TokenResponse(access_token=token, user=UserPublic.from_user(user))


@router.post("/api/register", response_model=TokenResponse, status_code=201)
def register(body: RegisterRequest, store: MemoryStore = Depends(get_store)):
    try:
        user = store.create_user(
            username=body.username,
            password_hash=hash_password(body.password),
            email=body.email,
            full_name=body.full_name,
        )
    except DuplicateKeyError as exc:
        raise HTTPException(status_code=400, detail=f"{exc.field.capitalize()} already registered")
    return _token_for(user)


def _authenticate(store: MemoryStore, username: str, password: str) -> User:
    user = store.get_user_by_username(username)
    if not user or not verify_password(password, user.password):
        raise _unauthorized("Invalid credentials")
    return user


@router.post("/api/login", response_model=TokenResponse)
def login(body: LoginRequest, store: MemoryStore = Depends(get_store)):
    return _token_for(_authenticate(store, body.username, body.password))


@router.post("/api/token", response_model=TokenResponse)
def login_form(form: OAuth2PasswordRequestForm = Depends(), store: MemoryStore = Depends(get_store)):
    return _token_for(_authenticate(store, form.username, form.password))


@router.get("/api/user", response_model=UserPublic)
def me(current: User = Depends(get_current_user)):
    return UserPublic.from_user(current)


# ----------------------------------------------------------------------------
# Categories
# ----------------------------------------------------------------------------

@router.get("/api/categories", response_model=List[Category])
def list_categories(store: MemoryStore = Depends(get_store)):
    return store.list_categories()


@router.post("/api/categories", response_model=Category, status_code=201)
def create_category(
    body: CategoryCreate,
    user: User = Depends(get_current_admin),
    store: MemoryStore = Depends(get_store),
):
    try:
        return store.create_category(body)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Category slug already exists")


# ----------------------------------------------------------------------------
# Products
# ----------------------------------------------------------------------------

@router.get("/api/products", response_model=List[Product])
def list_products(
    search: Optional[str] = Query(None),
    category: Optional[str] = Query(None, description="Category slug"),
    featured: bool = Query(False),
    limit: Optional[int] = Query(None, ge=1),
    store: MemoryStore = Depends(get_store),
):
    return store.list_products(search=search, category=category, featured=featured, limit=limit)


@router.get("/api/products/new-arrivals", response_model=List[Product])
def new_arrivals(limit: int = Query(4, ge=1), store: MemoryStore = Depends(get_store)):
    return store.new_arrivals(limit)


@router.get("/api/products/featured", response_model=List[Product])
def featured_products(limit: int = Query(3, ge=1), store: MemoryStore = Depends(get_store)):
    return store.featured_products(limit)


@router.get("/api/products/{slug}", response_model=Product)
def get_product(slug: str, store: MemoryStore = Depends(get_store)):
    product = store.get_product_by_slug(slug)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


@router.post("/api/products", response_model=Product, status_code=201)
def create_product(
    body: ProductCreate,
    user: User = Depends(get_current_admin),
    store: MemoryStore = Depends(get_store),
):
    if body.category_id is not None and body.category_id not in store.categories:
        raise HTTPException(status_code=400, detail="Unknown category")
    try:
        return store.create_product(body)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Product slug already exists")


# ----------------------------------------------------------------------------
# Orders
# ----------------------------------------------------------------------------

@router.get("/api/orders", response_model=List[Order])
def list_orders(current: User = Depends(get_current_user), store: MemoryStore = Depends(get_store)):
    return store.list_orders_by_user(current.id)


@router.post("/api/orders", response_model=Order, status_code=201)
def create_order(
    body: OrderRequest,
    response: Response,
    current: User = Depends(get_current_user),
    store: MemoryStore = Depends(get_store),
):
    """Record an order for the caller.

    With a payment reference this is idempotent: posting the same
    ``payment_intent_id`` again returns the stored order with 200.
    """
    if body.payment_intent_id:
        existing = store.get_order_by_payment_intent(body.payment_intent_id)
        if existing and existing.user_id != current.id:
            raise HTTPException(status_code=409, detail="Payment reference already used")

    data = OrderCreate(
        user_id=current.id,
        items=body.items,
        total=body.total,
        status=body.status.value,
        shipping_address=body.shipping_address,
        payment_intent_id=body.payment_intent_id,
    )
    order, created = store.finalize_order(data)
    if not created:
        response.status_code = 200
    return order


@router.patch("/api/orders/{order_id}/status", response_model=Order)
def update_order_status(
    order_id: int,
    body: OrderStatusRequest,
    user: User = Depends(get_current_admin),
    store: MemoryStore = Depends(get_store),
):
    order = store.set_order_status(order_id, body.status.value)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


@router.get("/api/admin/orders", response_model=List[Order])
def admin_orders(user: User = Depends(get_current_admin), store: MemoryStore = Depends(get_store)):
    return store.list_orders()


# ----------------------------------------------------------------------------
# Checkout
# ----------------------------------------------------------------------------

@router.get("/api/shipping-methods")
def shipping_methods(subtotal: float = Query(0, ge=0)):
    return [asdict(m) for m in available_shipping_methods(subtotal)]


@router.post("/api/create-payment-intent", response_model=PaymentIntentResponse)
def create_payment_intent(
    body: PaymentIntentRequest,
    current: User = Depends(get_current_user),
    gateway: PaymentGateway = Depends(get_gateway),
):
    intent = gateway.create_payment_intent(
        body.amount,
        metadata={"user_id": str(current.id)},
        shipping=body.shipping_address,
    )
    logger.info("Payment intent created", payment_intent_id=intent.id, amount=body.amount)
    return PaymentIntentResponse(client_secret=intent.client_secret, payment_intent_id=intent.id)


# ----------------------------------------------------------------------------
# Health
# ----------------------------------------------------------------------------

@router.get("/")
def root():
    return {"message": "ShopHub API running"}


@router.get("/api/health")
def health(store: MemoryStore = Depends(get_store)):
    return {"backend": "ok", "store": store.counts()}


# ----------------------------------------------------------------------------
# Error handlers
# ----------------------------------------------------------------------------

async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", ""), "type": err.get("type", "")}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"detail": "Invalid data", "errors": errors})


async def payment_error_handler(request: Request, exc: PaymentError):
    logger.error("Payment provider error", path=request.url.path, error=str(exc))
    status_code = 504 if isinstance(exc, PaymentTimeout) else 502
    return JSONResponse(status_code=status_code, content={"detail": f"Payment provider error: {exc}"})


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error", path=request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# ----------------------------------------------------------------------------
# Seed Data (idempotent)
# ----------------------------------------------------------------------------

SAMPLE_CATEGORIES = [
    {
        "name": "Electronics",
        "slug": "electronics",
        "image_url": "https://images.unsplash.com/photo-1661961112835-ca6f5811d2af?auto=format&fit=crop&w=300&h=300&q=80",
    },
    {
        "name": "Clothing",
        "slug": "clothing",
        "image_url": "https://images.unsplash.com/photo-1489987707025-afc232f7ea0f?auto=format&fit=crop&w=300&h=300&q=80",
    },
    {
        "name": "Home & Kitchen",
        "slug": "home-kitchen",
        "image_url": "https://images.unsplash.com/photo-1583845112203-29329902332e?auto=format&fit=crop&w=300&h=300&q=80",
    },
    {
        "name": "Beauty",
        "slug": "beauty",
        "image_url": "https://images.unsplash.com/photo-1512418490979-92798cec1380?auto=format&fit=crop&w=300&h=300&q=80",
    },
]

SAMPLE_PRODUCTS = [
    {
        "name": "Smart Watch Series 5",
        "slug": "smart-watch-series-5",
        "description": "Premium smartwatch with heart rate monitor, GPS, and fitness tracking features.",
        "price": 299.99,
        "compare_at_price": 349.99,
        "image_url": "https://images.unsplash.com/photo-1546868871-7041f2a55e12?auto=format&fit=crop&w=400&h=400&q=80",
        "category": "electronics",
        "is_new": True,
    },
    {
        "name": "Wireless Headphones",
        "slug": "wireless-headphones",
        "description": "Noise-cancelling wireless headphones with 30-hour battery life and premium sound quality.",
        "price": 199.99,
        "image_url": "https://images.unsplash.com/photo-1600185365926-3a2ce3cdb9eb?auto=format&fit=crop&w=400&h=400&q=80",
        "category": "electronics",
        "is_new": True,
    },
    {
        "name": "Ultra Boost Running Shoes",
        "slug": "ultra-boost-running-shoes",
        "description": "Lightweight running shoes with responsive cushioning and breathable mesh upper.",
        "price": 129.99,
        "compare_at_price": 159.99,
        "image_url": "https://images.unsplash.com/photo-1525966222134-fcfa99b8ae77?auto=format&fit=crop&w=400&h=400&q=80",
        "category": "clothing",
    },
    {
        "name": "Smart Video Doorbell",
        "slug": "smart-video-doorbell",
        "description": "HD video doorbell with motion detection, two-way audio, and night vision.",
        "price": 159.99,
        "image_url": "https://images.unsplash.com/photo-1541643600914-78b084683601?auto=format&fit=crop&w=400&h=400&q=80",
        "category": "electronics",
        "is_new": True,
    },
    {
        "name": "Professional Coffee Maker",
        "slug": "professional-coffee-maker",
        "description": "Premium coffee maker with programmable settings and built-in grinder for the perfect brew every time.",
        "price": 349.99,
        "image_url": "https://images.unsplash.com/photo-1585565804112-f201f68c48b4?auto=format&fit=crop&w=300&h=300&q=80",
        "category": "home-kitchen",
        "is_featured": True,
    },
    {
        "name": "Wireless Bluetooth Earbuds",
        "slug": "wireless-bluetooth-earbuds",
        "description": "True wireless earbuds with active noise cancellation and 8-hour battery life for immersive audio experience.",
        "price": 129.99,
        "image_url": "https://images.unsplash.com/photo-1505740420928-5e560c06d30e?auto=format&fit=crop&w=300&h=300&q=80",
        "category": "electronics",
        "is_featured": True,
    },
    {
        "name": "Premium Denim Jacket",
        "slug": "premium-denim-jacket",
        "description": "Classic denim jacket with premium stitching and comfortable fit, perfect for any casual occasion.",
        "price": 89.99,
        "image_url": "https://images.unsplash.com/photo-1529374255404-311a2a4f1fd9?auto=format&fit=crop&w=300&h=300&q=80",
        "category": "clothing",
        "is_featured": True,
    },
]


def seed_data(store: MemoryStore) -> None:
    if not store.get_user_by_username("admin"):
        store.create_user(
            username="admin",
            password_hash=hash_password("admin123"),
            email="admin@example.com",
            full_name="Admin User",
            is_admin=True,
        )

    if not store.categories:
        for c in SAMPLE_CATEGORIES:
            store.create_category(CategoryCreate(**c))

    if not store.products:
        # Later entries are newer
        base = utcnow() - timedelta(minutes=len(SAMPLE_PRODUCTS))
        for i, p in enumerate(SAMPLE_PRODUCTS):
            p = dict(p)
            category = store.get_category_by_slug(p.pop("category"))
            store.create_product(
                ProductCreate(category_id=category.id if category else None, **p),
                created_at=base + timedelta(minutes=i),
            )
    logger.info("Seed data ready", **store.counts())


# ----------------------------------------------------------------------------
# App
# ----------------------------------------------------------------------------

def create_app(
    store: Optional[MemoryStore] = None,
    payment_gateway: Optional[PaymentGateway] = None,
    seed: Optional[bool] = None,
) -> FastAPI:
    app = FastAPI(title="ShopHub API")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):
        clear_request_context()
        bind_request_context(method=request.method, path=request.url.path)
        return await call_next(request)

    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(PaymentError, payment_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.state.store = store if store is not None else MemoryStore()
    app.state.payment_gateway = payment_gateway if payment_gateway is not None else get_payment_gateway()

    if seed is None:
        seed = os.getenv("SEED_DATA", "1") != "0"
    if seed:
        seed_data(app.state.store)

    app.include_router(router)
    return app


configure_logging()
app = create_app()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
