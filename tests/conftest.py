"""
Pytest configuration and fixtures for fulfillment tests.
"""
import os
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

# Set test environment before importing app modules
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./fulfillment_test.db"
os.environ["ORIGIN_NAME"] = "Fulfillment Center"
os.environ["ORIGIN_ADDRESS_LINE1"] = "1 Main Street"
os.environ["ORIGIN_CITY"] = "Paterson"
os.environ["ORIGIN_STATE"] = "NJ"
os.environ["ORIGIN_POSTAL_CODE"] = "07505"
os.environ["ORIGIN_COUNTRY"] = "US"
os.environ["ORIGIN_LATITUDE"] = "40.9168"
os.environ["ORIGIN_LONGITUDE"] = "-74.1718"
os.environ["INTERNAL_API_TOKEN"] = ""
os.environ["REDIS_URL"] = ""
os.environ["ARQ_REDIS_URL"] = ""
os.environ["NOTIFICATION_WEBHOOK_URL"] = ""
os.environ["PAGERDUTY_ENABLED"] = "false"

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402

from fulfillment.core.database import init_models  # noqa: E402
from fulfillment.models import (  # noqa: E402
    FulfillmentState,
    ServiceLevel,
    Shelf,
    ShippableOrder,
)
from fulfillment.modules.shipping.carriers import CarrierFactory  # noqa: E402
from fulfillment.modules.shipping.carriers.sandbox import SandboxCarrier  # noqa: E402
from fulfillment.services.notifications import NotificationError, NotificationService  # noqa: E402
from fulfillment.services.shipment_orchestrator import ShipmentOrchestrator  # noqa: E402


class RecordingNotifications(NotificationService):
    """Collects emitted events; optionally fails every call."""

    def __init__(self, fail: bool = False):
        self.events: List[Dict[str, Any]] = []
        self.fail = fail

    async def track(self, user_id: str, event: str, properties: Dict[str, Any]) -> None:
        if self.fail:
            raise NotificationError(f"{event} rejected")
        self.events.append({"user_id": user_id, "event": event, "properties": properties})

    def named(self, event: str) -> List[Dict[str, Any]]:
        return [e for e in self.events if e["event"] == event]


class CountingSandboxCarrier(SandboxCarrier):
    """Sandbox gateway that counts calls per operation."""

    def __init__(self, code: str = "SANDBOX_GROUND", webhook_secret: Optional[str] = None):
        super().__init__(code, webhook_secret=webhook_secret)
        self.calls: Dict[str, int] = {"validate_address": 0, "get_rate": 0, "purchase_label": 0}

    async def validate_address(self, address):
        self.calls["validate_address"] += 1
        return await super().validate_address(address)

    async def get_rate(self, origin, destination, packages, service_code):
        self.calls["get_rate"] += 1
        return await super().get_rate(origin, destination, packages, service_code)

    async def purchase_label(self, request):
        self.calls["purchase_label"] += 1
        return await super().purchase_label(request)


@pytest_asyncio.fixture
async def engine(tmp_path):
    """File-backed sqlite database per test (real transactions and locking)."""
    db_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'fulfillment.db'}",
        connect_args={"timeout": 30},
    )
    await init_models(bind=db_engine)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def gateways() -> Dict[str, CountingSandboxCarrier]:
    """Fresh sandbox gateways registered with the carrier factory."""
    CarrierFactory.reset()
    ShipmentOrchestrator.reset_carrier_throttles()
    registered = {
        "SANDBOX_GROUND": CountingSandboxCarrier("SANDBOX_GROUND"),
        "SANDBOX_AIR": CountingSandboxCarrier("SANDBOX_AIR"),
    }
    for gateway in registered.values():
        CarrierFactory.register_instance(gateway)
    yield registered
    CarrierFactory.reset()
    ShipmentOrchestrator.reset_carrier_throttles()


@pytest.fixture
def notifications() -> RecordingNotifications:
    return RecordingNotifications()


@pytest.fixture
def sample_order_data() -> dict:
    """A ready order a few blocks from the origin."""
    return {
        "external_order_id": "ORD-1001",
        "order_number": "1001",
        "customer_email": "buyer@example.com",
        "recipient_name": "Jane Buyer",
        "company_name": "Buyer Supply Co",
        "address_line1": "100 Market Street",
        "city": "Paterson",
        "state_province": "NJ",
        "postal_code": "07505",
        "country_code": "US",
        "latitude": 40.9200,
        "longitude": -74.1700,
        "weight": 2.0,
        "service_level": "standard",
    }


FAR_AWAY = {
    "address_line1": "200 N Spring Street",
    "city": "Los Angeles",
    "state_province": "CA",
    "postal_code": "90012",
    "latitude": 34.0537,
    "longitude": -118.2428,
}


_order_seq = {"n": 0}


async def create_order(session_factory, **overrides) -> ShippableOrder:
    """Insert a ShippableOrder with sensible defaults."""
    _order_seq["n"] += 1
    n = _order_seq["n"]
    values = {
        "external_order_id": f"EXT-{n}",
        "order_number": f"{5000 + n}",
        "customer_email": f"buyer{n}@example.com",
        "recipient_name": "Jane Buyer",
        "address_line1": "100 Market Street",
        "city": "Paterson",
        "state_province": "NJ",
        "postal_code": "07505",
        "country_code": "US",
        "latitude": 40.9200,
        "longitude": -74.1700,
        "weight": 2.0,
        "service_level": ServiceLevel.STANDARD,
        "fulfillment_state": FulfillmentState.PENDING_ROUTING,
    }
    values.update(overrides)
    async with session_factory() as session:
        order = ShippableOrder(**values)
        session.add(order)
        await session.commit()
        return order


async def create_shelf(session_factory, code: str = "A1", capacity: int = 5, occupied: int = 0) -> Shelf:
    async with session_factory() as session:
        shelf = Shelf(code=code, name=f"Shelf {code}", capacity=capacity, occupied=occupied, is_active=True)
        session.add(shelf)
        await session.commit()
        return shelf


async def fetch_order(session_factory, order_id: int) -> ShippableOrder:
    async with session_factory() as session:
        return await session.get(ShippableOrder, order_id)
