"""
Pytest configuration and fixtures for async database testing.

Each test gets a fresh database: a throwaway SQLite file by default, or the
database named by TEST_DATABASE_URL (tables are created and dropped around
every test, so never point it at a real database).
"""
import os
import uuid
from datetime import date, timedelta
from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from kuaforun.core.config import Settings
from kuaforun.core.db import Base, get_session
from kuaforun.main import create_app
from kuaforun.models import Service, Shop, ShopHours, Staff, StaffRole

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")

# Far enough ahead that lead-time rules never interfere
FUTURE_DAY = date.today() + timedelta(days=30)


def auth_headers(user_id=None, role=None, tenant="kuaforun") -> dict:
    headers = {"X-Tenant-Id": tenant}
    if user_id is not None:
        headers["X-User-Id"] = str(user_id)
    if role is not None:
        headers["X-User-Role"] = role
    return headers


@pytest.fixture(scope="function")
def database_url(tmp_path):
    return TEST_DATABASE_URL or f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"


@pytest.fixture(scope="function")
async def async_engine(database_url):
    """
    Create async SQLAlchemy engine with all tables.

    Engine is created per test to ensure clean state.
    """
    engine = create_async_engine(database_url, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine):
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(scope="function")
async def async_session(session_factory):
    """Session for seeding and asserting outside of HTTP requests."""
    async with session_factory() as session:
        yield session


@pytest.fixture(scope="function")
def settings(database_url):
    return Settings(
        DATABASE_URL=database_url,
        DEFAULT_TENANT_ID="kuaforun",
        CREATE_TABLES=False,
    )


@pytest.fixture(scope="function")
async def client(settings, session_factory):
    """
    Create FastAPI AsyncClient bound to the test database.

    Every request gets its own session, as in production.
    """
    app = create_app(settings)

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    await app.state.engine.dispose()


class Factory:
    """Seeds rows directly through the ORM."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def shop(self, tenant_id="kuaforun", **kwargs) -> Shop:
        shop = Shop(tenant_id=tenant_id, name=kwargs.pop("name", "Fade Street"), **kwargs)
        self.session.add(shop)
        await self.session.commit()
        return shop

    async def staff(self, shop: Shop, role=StaffRole.BARBER, is_active=True, user_id=None) -> Staff:
        staff = Staff(
            tenant_id=shop.tenant_id,
            shop_id=shop.id,
            user_id=user_id or uuid.uuid4(),
            role=role,
            is_active=is_active,
        )
        self.session.add(staff)
        await self.session.commit()
        return staff

    async def service(self, shop: Shop, name="Haircut", price="25.00", duration=30, is_active=True) -> Service:
        service = Service(
            tenant_id=shop.tenant_id,
            shop_id=shop.id,
            name=name,
            price=Decimal(price),
            duration_minutes=duration,
            is_active=is_active,
        )
        self.session.add(service)
        await self.session.commit()
        return service

    async def hours(self, shop: Shop, weekday: int, open_minutes: int, close_minutes: int, open_24h=False):
        hours = ShopHours(
            shop_id=shop.id,
            weekday=weekday,
            open_minutes=open_minutes,
            close_minutes=close_minutes,
            open_24h=open_24h,
        )
        self.session.add(hours)
        await self.session.commit()
        return hours


@pytest.fixture(scope="function")
def factory(async_session):
    return Factory(async_session)
