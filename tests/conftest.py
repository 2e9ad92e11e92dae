import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("PAYMENT_GATEWAY", "fake")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from cart import Cart, MemoryBlobStorage  # noqa: E402
from database import MemoryStore  # noqa: E402
from main import create_app, seed_data  # noqa: E402
from payments import FakePaymentGateway  # noqa: E402


@pytest.fixture()
def store():
    store = MemoryStore()
    seed_data(store)
    return store


@pytest.fixture()
def empty_store():
    return MemoryStore()


@pytest.fixture()
def gateway():
    return FakePaymentGateway()


@pytest.fixture()
def blob_storage():
    return MemoryBlobStorage()


@pytest.fixture()
def cart(blob_storage):
    return Cart(storage=blob_storage)


@pytest.fixture()
def client(store, gateway):
    app = create_app(store=store, payment_gateway=gateway, seed=False)
    return TestClient(app)
