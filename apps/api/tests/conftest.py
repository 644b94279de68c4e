import pytest
from fakes import (
    LEMONSQUEEZY_WEBHOOK_SECRET,
    NOW,
    STRIPE_WEBHOOK_SECRET,
    FakeProviderAPI,
    FakeStripeAPI,
    FrozenClock,
)

from app.billing.service import SubscriptionService
from app.billing.store import InMemorySubscriptionRepository
from app.core.settings import get_settings
from app.integrations.lemonsqueezy import LemonSqueezyClient
from app.integrations.stripe import StripeClient


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(NOW)


@pytest.fixture
def repository() -> InMemorySubscriptionRepository:
    return InMemorySubscriptionRepository()


@pytest.fixture
def stripe_api(monkeypatch: pytest.MonkeyPatch) -> FakeStripeAPI:
    api = FakeStripeAPI()
    api.install(monkeypatch)
    return api


@pytest.fixture
def lemonsqueezy_api() -> FakeProviderAPI:
    return FakeProviderAPI()


@pytest.fixture
def service(
    repository: InMemorySubscriptionRepository,
    clock: FrozenClock,
    stripe_api: FakeStripeAPI,
    lemonsqueezy_api: FakeProviderAPI,
) -> SubscriptionService:
    return SubscriptionService(
        repository=repository,
        stripe=StripeClient(secret_key="sk_test_123"),
        lemonsqueezy=LemonSqueezyClient(api_key="ls_api_key", transport=lemonsqueezy_api.transport),
        trial_days=3,
        stripe_webhook_secret=STRIPE_WEBHOOK_SECRET,
        lemonsqueezy_webhook_secret=LEMONSQUEEZY_WEBHOOK_SECRET,
        price_map=get_settings().stripe_price_map,
        checkout_success_url="http://localhost:5173/checkout-success?session_id={CHECKOUT_SESSION_ID}",
        checkout_cancel_url="http://localhost:5173/subscription",
        clock=clock,
    )
