"""
Pytest configuration and shared test fixtures.

Every test gets a fresh in-memory SQLite database with the full schema,
a session bound to it, a seeder for marketplace data, and (for API tests)
an async HTTP client wired to the same database.
"""

import os

# Must be set before any delivery_service module reads settings
os.environ["APP_ENVIRONMENT"] = "test"
os.environ["APP_DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ.setdefault("APP_LOG_LEVEL", "WARNING")

import json
import uuid
from decimal import Decimal
from typing import Any, AsyncGenerator, Optional, Type

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from delivery_service.core.config import Settings
from delivery_service.core.security import Role, create_access_token
from delivery_service.database.base import Base
from delivery_service.database.connection import (
    build_session_factory,
    create_all_tables,
    create_engine,
    get_db,
)
from delivery_service.database.models import (
    Customer,
    DeliveryPartner,
    Order,
    OrderItem,
    Vendor,
)
from delivery_service.services.delivery.service import DeliveryService


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
def settings() -> Settings:
    """Test settings with no backoff delay in fallback retries."""
    return Settings(fallback_retry_delay=0, fallback_max_retries=2)


@pytest.fixture
async def engine(settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    """Fresh in-memory database with every table created."""
    engine = create_engine(settings)
    await create_all_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


@pytest.fixture
async def session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def delivery_service(session: AsyncSession, settings: Settings) -> DeliveryService:
    return DeliveryService(session, settings)


# ============================================================================
# Test Data Factory
# ============================================================================


VENDOR_ADDRESS = {"line1": "4 Market Street", "city": "Bengaluru", "pincode": "560002"}


class DeliverySeeder:
    """
    Creates marketplace rows for tests.

    Every method commits before returning, so seeded rows are visible to
    any other session and no transaction is left open.
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self._counter = 0

    async def _save(self, *objects: Base) -> None:
        self.session.add_all(objects)
        await self.session.commit()

    async def customer(self, full_name: str = "Asha Rao", phone: str = "9876543210") -> Customer:
        customer = Customer(id=uuid.uuid4(), full_name=full_name, phone=phone)
        await self._save(customer)
        return customer

    async def vendor(
        self, business_name: str = "Green Grocers", phone: str = "9123456780"
    ) -> Vendor:
        vendor = Vendor(
            id=uuid.uuid4(),
            business_name=business_name,
            phone=phone,
            address=dict(VENDOR_ADDRESS),
        )
        await self._save(vendor)
        return vendor

    async def partner(
        self,
        full_name: str = "Ravi Kumar",
        is_available: bool = True,
        is_active: bool = True,
        rating: str = "4.50",
        total_deliveries: int = 10,
        service_pincodes: Optional[list[str]] = None,
    ) -> DeliveryPartner:
        partner = DeliveryPartner(
            id=uuid.uuid4(),
            full_name=full_name,
            phone="9000000000",
            is_available=is_available,
            is_active=is_active,
            is_verified=True,
            rating=Decimal(rating),
            total_deliveries=total_deliveries,
            successful_deliveries=total_deliveries,
            service_pincodes=service_pincodes if service_pincodes is not None else ["560001"],
        )
        await self._save(partner)
        return partner

    async def order(
        self,
        status: str = "confirmed",
        customer: Optional[Customer] = None,
        vendor: Optional[Vendor] = None,
        pincode: Optional[str] = "560001",
        payment_method: str = "upi",
        notes: Optional[str] = None,
        total_amount: str = "499.00",
        quantity: int = 1,
    ) -> tuple[Order, OrderItem]:
        """Order with a single line item."""
        self._counter += 1
        address: dict[str, Any] = {"line1": "12 MG Road", "city": "Bengaluru"}
        if pincode:
            address["pincode"] = pincode

        order = Order(
            id=uuid.uuid4(),
            order_number=f"ORD-{self._counter:05d}-{uuid.uuid4().hex[:6]}",
            customer_id=customer.id if customer else None,
            total_amount=Decimal(total_amount),
            status=status,
            payment_method=payment_method,
            delivery_address=address,
        )
        item = OrderItem(
            id=uuid.uuid4(),
            order_id=order.id,
            vendor_id=vendor.id if vendor else None,
            product_name="Basmati Rice 5kg",
            quantity=quantity,
            unit_price=Decimal(total_amount),
            line_total=Decimal(total_amount),
            item_status="confirmed",
            notes=notes,
        )
        await self._save(order, item)
        return order, item

    async def reload(self, model: Type[Base], record_id: uuid.UUID) -> Any:
        """Read a row fresh from the database and end the read transaction."""
        record = await self.session.get(model, record_id, populate_existing=True)
        await self.session.commit()
        return record


@pytest.fixture
def seed(session: AsyncSession) -> DeliverySeeder:
    return DeliverySeeder(session)


@pytest.fixture
def legacy_notes():
    """Build the notes payload older allocations wrote for pending orders."""

    def build(pickup_otp: str, delivery_otp: str) -> str:
        return json.dumps(
            {
                "pending_assignment": True,
                "pickup_otp": pickup_otp,
                "delivery_otp": delivery_otp,
            }
        )

    return build


# ============================================================================
# API Fixtures
# ============================================================================


@pytest.fixture
async def async_client(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncClient, None]:
    """
    Async client for the application, backed by the test database.

    Each request gets its own session, committed on success like the
    production dependency.
    """
    from delivery_service.main import app

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as db:
            try:
                yield db
                await db.commit()
            except Exception:
                await db.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


def auth_headers(user_id: uuid.UUID, role: Role) -> dict[str, str]:
    """Authorization header carrying a token for ``user_id`` in ``role``."""
    return {"Authorization": f"Bearer {create_access_token(user_id, role)}"}


@pytest.fixture
def headers():
    """
    Build auth headers inside a test.

    Example:
        response = await async_client.get(
            "/api/v1/delivery/my-orders",
            headers=headers(partner.id, Role.DELIVERY_PARTNER),
        )
    """
    return auth_headers
