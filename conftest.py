import hashlib
import hmac
import os
import tempfile

# main.py builds a default app at import time; keep it away from ./temp.
os.environ.setdefault("STUDIO_DB_PATH", os.path.join(tempfile.mkdtemp(prefix="studio-test-"), "app_data.db"))
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
from fastapi.testclient import TestClient

from config import Settings
from entitlement_store import EntitlementStore

SECRET = "s3cr3t"
IMAGE_URL = "https://img.example.com/pages/dragon.png"


def sign(order_id: str, payment_id: str, secret: str = SECRET) -> str:
    return hmac.new(secret.encode(), f"{order_id}|{payment_id}".encode(), hashlib.sha256).hexdigest()


def make_user(store: EntitlementStore, user_id: str, count: int = 0, subscribed: bool = False):
    store.create_entitlement(user_id, email=f"{user_id}@example.com")
    for _ in range(count):
        store.increment_generation_count(user_id)
    if subscribed:
        store.set_subscribed(user_id, f"order_{user_id}", f"pay_{user_id}")
    return store.get_entitlement(user_id)


class FakeGateway:
    """Stands in for the generation webhook."""

    def __init__(self, image_url: str = IMAGE_URL, error: Exception = None):
        self.image_url = image_url
        self.error = error
        self.calls = []

    async def generate(self, prompt: str, user_id: str) -> str:
        self.calls.append((prompt, user_id))
        if self.error:
            raise self.error
        return self.image_url


class FakeRazorpay:
    key_id = "rzp_test_key"

    def __init__(self, error: Exception = None):
        self.error = error
        self.calls = []

    async def create_order(self, user_id: str, amount: int, currency: str = "INR"):
        self.calls.append((user_id, amount, currency))
        if self.error:
            raise self.error
        return {"id": "order_test_1", "amount": amount, "currency": currency, "status": "created"}


@pytest.fixture
def store(tmp_path):
    s = EntitlementStore(db_path=str(tmp_path / "studio.db"))
    s.init_schema()
    yield s
    s.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def razorpay():
    return FakeRazorpay()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        environment="development",
        log_level="WARNING",
        db_path=str(tmp_path / "studio.db"),
        razorpay_key_id="rzp_test_key",
        razorpay_key_secret=SECRET,
        generation_webhook_url="https://hooks.example.com/generate",
        rate_limit_enabled=False,
    )


@pytest.fixture
def build_client(settings, store, gateway, razorpay):
    """Factory for clients with overridden collaborators."""
    from main import create_app

    clients = []

    def _build(app_settings=None, **overrides):
        deps = {"store": store, "gateway": gateway, "razorpay": razorpay}
        deps.update(overrides)
        app = create_app(app_settings or settings, **deps)
        c = TestClient(app)
        clients.append(c)
        return c

    yield _build
    for c in clients:
        c.close()


@pytest.fixture
def client(build_client):
    return build_client()
