"""
Pytest configuration and fixtures for CourierHub tests.

Every test gets a fresh in-memory SQLite schema. The engine uses a
StaticPool, so the test session, request sessions and the sessions opened
by background jobs and carrier adapters all share one connection: commit
fixture data before calling code that opens its own session.
"""
import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

# Set test environment before importing app modules
os.environ["ENVIRONMENT"] = "development"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["SECRET_KEY"] = "test-secret-key-for-unit-tests-only"
os.environ["FULFILLMENT_JOBS_ENABLED"] = "false"
os.environ["RATE_LIMIT_ENABLED"] = "false"

from courierhub.core.database import AsyncSessionLocal, Base, engine  # noqa: E402
from courierhub.core.encryption import encrypt_credentials, encrypt_value  # noqa: E402
from courierhub.core.feature_flags import FeatureFlags  # noqa: E402
from courierhub.models import (  # noqa: E402
    CarrierIntegration,
    CarrierProvider,
    Company,
    Order,
    Shipment,
    ShipmentStatus,
    Warehouse,
)
from courierhub.modules.shipping.carriers import CarrierFactory  # noqa: E402
from courierhub.services.collaborators import NotificationResult  # noqa: E402


@pytest.fixture(autouse=True)
def reset_caches():
    """Feature flag and adapter caches are process-global."""
    FeatureFlags.invalidate_cache()
    CarrierFactory.clear_cache()
    yield
    FeatureFlags.invalidate_cache()
    CarrierFactory.clear_cache()


@pytest.fixture
async def db():
    """Async session on a freshly created schema."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with AsyncSessionLocal() as session:
        # Warm the flag cache on this session so later lookups do not open their own
        await FeatureFlags.get_module_flags("carriers", session)
        yield session

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
async def company(db) -> Company:
    company = Company(
        name="Acme Retail",
        email="ops@acme.example",
        kyc_tier=1,
        wallet_balance=Decimal("1000.00"),
        wallet_version=0,
    )
    db.add(company)
    await db.commit()
    return company


@pytest.fixture
async def warehouse(db, company) -> Warehouse:
    warehouse = Warehouse(
        company_id=company.id,
        name="Acme Bhiwandi",
        contact_name="Ravi Kumar",
        phone="9876543210",
        email="wh@acme.example",
        address_line1="Plot 12, MIDC",
        city="Bhiwandi",
        state="Maharashtra",
        pincode="421302",
        is_default=True,
    )
    db.add(warehouse)
    await db.commit()
    return warehouse


def make_order(company, warehouse, **overrides) -> Order:
    values = dict(
        company_id=company.id,
        warehouse_id=warehouse.id,
        order_number="ORD-1001",
        customer_name="Priya Sharma",
        customer_phone="9123456780",
        customer_email="priya@example.com",
        address_line1="14 MG Road",
        city="Bengaluru",
        state="Karnataka",
        pincode="560001",
        items=[{"sku": "TSHIRT-M", "name": "T-Shirt", "quantity": 2, "price": 500}],
        weight=0.5,
        length=20.0,
        width=15.0,
        height=5.0,
        currency="INR",
        subtotal=Decimal("1000.00"),
        total=Decimal("1000.00"),
        payment_method="prepaid",
    )
    values.update(overrides)
    return Order(**values)


@pytest.fixture
async def order(db, company, warehouse) -> Order:
    order = make_order(company, warehouse)
    db.add(order)
    await db.commit()
    return order


@pytest.fixture
async def cod_order(db, company, warehouse) -> Order:
    order = make_order(company, warehouse, order_number="ORD-2001", payment_method="cod")
    db.add(order)
    await db.commit()
    return order


def make_integration(company, provider: CarrierProvider, warehouse=None, **overrides) -> CarrierIntegration:
    """Integration with a still-valid cached token so adapters skip authentication."""
    values = dict(
        company_id=company.id,
        provider=provider.value,
        credentials_encrypted=encrypt_credentials({"username": "api-user", "password": "api-pass"}),
        webhook_secret="whsec-test",
        token_encrypted=encrypt_value("cached-token"),
        token_expires_at=datetime.now(timezone.utc) + timedelta(hours=12),
        warehouse_refs={str(warehouse.id): "WH-REMOTE-1"} if warehouse is not None else {},
        config_json={"base_url": f"https://{provider.value}.test"},
        config_version=1,
    )
    values.update(overrides)
    return CarrierIntegration(**values)


@pytest.fixture
async def velocity_integration(db, company, warehouse) -> CarrierIntegration:
    integration = make_integration(company, CarrierProvider.VELOCITY, warehouse)
    db.add(integration)
    await db.commit()
    return integration


def make_shipment(order, **overrides) -> Shipment:
    values = dict(
        order_id=order.id,
        company_id=order.company_id,
        warehouse_id=order.warehouse_id,
        provider="velocity",
        carrier_name="Delhivery Surface",
        service_code="12",
        tracking_number="AWB100001",
        status=ShipmentStatus.IN_TRANSIT.value,
        declared_weight=order.weight,
        payment_type=order.payment_method,
        cod_amount=order.total if order.payment_method == "cod" else Decimal("0"),
        shipping_charge=Decimal("86.25"),
        shipping_paid_from_wallet=True,
    )
    values.update(overrides)
    return Shipment(**values)


@pytest.fixture
async def shipment(db, order) -> Shipment:
    shipment = make_shipment(order)
    db.add(shipment)
    await db.commit()
    return shipment


@pytest.fixture
async def cod_shipment(db, cod_order) -> Shipment:
    shipment = make_shipment(cod_order, tracking_number="AWB200001")
    db.add(shipment)
    await db.commit()
    return shipment


class RecordingNotifier:
    """NotificationSender that remembers what it was asked to send."""

    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.sent = []

    async def _send(self, channel, recipient, template, data):
        self.sent.append((channel, recipient, template))
        if not self.succeed:
            return NotificationResult(success=False, error="provider_down")
        return NotificationResult(success=True, provider_message_id=f"{channel}-{len(self.sent)}")

    async def send_call(self, recipient, template, data):
        return await self._send("call", recipient, template, data)

    async def send_whatsapp(self, recipient, template, data):
        return await self._send("whatsapp", recipient, template, data)

    async def send_email(self, recipient, template, data):
        return await self._send("email", recipient, template, data)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
async def client(db):
    """HTTP client bound to the app; requests share the test schema."""
    from httpx import ASGITransport, AsyncClient

    from courierhub.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client
