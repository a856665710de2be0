"""
Shared fixtures for the DeliveryBay test suite.

Key Components:
1. A fresh file-backed SQLite database per test (threads can share it)
2. Network-free routing providers and an inline job scheduler
3. An in-memory notification publisher with synchronous dispatch
4. A seeded marketplace (seller and couriers); order helpers live in fixtures.marketplace
"""

import logging
from decimal import Decimal

import pytest

from database import build_engine, build_session_factory, create_tables
from routes.dependencies import build_services
from services.notification_publisher import InMemoryPublisher
from tests.fixtures import FailingRoutingProvider, FixedRoutingProvider, RecordingScheduler
from tests.fixtures.marketplace import COURIER_IDS, SELLER_ID, SELLER_LOCATION

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@pytest.fixture
def engine(tmp_path):
    test_engine = build_engine(f"sqlite:///{tmp_path / 'deliverybay_test.db'}")
    assert create_tables(test_engine), "Schema should be created"
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def publisher():
    return InMemoryPublisher()


@pytest.fixture
def scheduler():
    return RecordingScheduler()


@pytest.fixture
def routing_provider():
    """6 km for every leg so settlement figures are exact"""
    return FixedRoutingProvider(distance_km=6.0, duration_min=15.0)


@pytest.fixture
def failing_provider():
    return FailingRoutingProvider()


@pytest.fixture
def services(session_factory, routing_provider, publisher, scheduler):
    container = build_services(
        session_factory,
        routing_provider=routing_provider,
        publisher=publisher,
        scheduler=scheduler,
        synchronous_notifications=True,
        confirmation_delay_seconds=10,
    )
    yield container
    container.shutdown()


@pytest.fixture
def marketplace(services):
    """One seller at a fixed location plus five registered couriers"""
    services.intake.register_seller(
        SELLER_ID, "Spice Route Kitchen", SELLER_LOCATION[0], SELLER_LOCATION[1], "percentage", Decimal("10")
    )
    for courier_id in COURIER_IDS:
        services.intake.register_courier(courier_id, courier_id.title())
    return services
