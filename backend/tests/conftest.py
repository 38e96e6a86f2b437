import os
import tempfile
import uuid
from datetime import date, timedelta
from decimal import Decimal
from pathlib import Path

# Must be set before anything imports clickwork.core.dependencies (engine is built at import).
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite:///{Path(tempfile.gettempdir()) / f'clickwork_test_{os.getpid()}.db'}",
)
os.environ.setdefault("ENVIRONMENT", "test")

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from clickwork.core.config import get_settings  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    # Tests that patch env vars clear the cache; don't leak a patched Settings instance.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(scope="session")
def engine():
    from clickwork.core.dependencies import engine as db_engine
    from clickwork.models.marketplace import Base

    if db_engine is None:
        pytest.skip("DATABASE_URL is not configured")
    Base.metadata.drop_all(bind=db_engine)
    Base.metadata.create_all(bind=db_engine)
    yield db_engine
    Base.metadata.drop_all(bind=db_engine)


@pytest.fixture(autouse=True)
def _clean_tables(engine):
    from clickwork.models.marketplace import Base
    from clickwork.services.change_feed import change_feed
    from clickwork.utils.alerting import alert_tracker

    yield
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())
    change_feed.clear()
    alert_tracker.reset()


@pytest.fixture
def db(engine):
    from clickwork.core.dependencies import SessionLocal

    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_user(db):
    from clickwork.models.marketplace import User

    def _make(user_type="client", *, first_name="Test", last_name="User", user_id=None):
        user = User(
            id=user_id or uuid.uuid4(),
            email=f"{uuid.uuid4().hex[:10]}@example.com",
            first_name=first_name,
            last_name=last_name,
            user_type=user_type,
        )
        db.add(user)
        db.commit()
        return user

    return _make


@pytest.fixture
def make_provider(db, make_user):
    from clickwork.models.marketplace import ServiceProvider

    def _make(user=None, *, brand_name="Acme Studio", city="Lisbon", services=None, rating=0, total_reviews=0):
        owner = user or make_user("provider")
        provider = ServiceProvider(
            user_id=owner.id,
            brand_name=brand_name,
            business_type="individual",
            description="Web design and development",
            city=city,
            country="Portugal",
            services=services if services is not None else ["web design"],
            languages=["English"],
            rating=Decimal(str(rating)),
            total_reviews=total_reviews,
        )
        db.add(provider)
        db.commit()
        return provider

    return _make


@pytest.fixture
def make_request(db, make_user, make_provider):
    """Insert a request directly in any status, bypassing the lifecycle."""
    from clickwork.models.marketplace import ServiceRequest

    def _make(*, status="pending", client=None, provider=None, budget="500.00"):
        req = ServiceRequest(
            client_id=(client or make_user("client")).id,
            provider_id=(provider or make_provider()).id,
            title="Landing page",
            description="Build a landing page",
            budget=Decimal(budget),
            deadline=date.today() + timedelta(days=30),
            location="Remote",
            status=status,
        )
        db.add(req)
        db.commit()
        return req

    return _make


def _install_test_auth_override(app):
    """Resolve the current user from X-Test-* headers instead of a JWT."""
    from fastapi import Request

    from clickwork.core.auth import CurrentUser, get_current_user

    def _test_get_current_user(request: Request):
        return CurrentUser(
            id=request.headers.get("x-test-sub", "00000000-0000-0000-0000-000000000001"),
            role=request.headers.get("x-test-role", "CLIENT"),
            email=request.headers.get("x-test-email"),
            first_name=request.headers.get("x-test-first-name"),
            last_name=request.headers.get("x-test-last-name"),
        )

    app.dependency_overrides[get_current_user] = _test_get_current_user


@pytest_asyncio.fixture
async def api_client():
    """Factory for in-process clients authenticated as a given user."""
    from clickwork.main import app

    _install_test_auth_override(app)
    clients: list[httpx.AsyncClient] = []

    def _make(*, role="CLIENT", sub=None, first_name="Test", last_name="User"):
        headers = {
            "X-Test-Role": role,
            "X-Test-Sub": str(sub or uuid.uuid4()),
            "X-Test-First-Name": first_name,
            "X-Test-Last-Name": last_name,
        }
        client = httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app),
            base_url="http://test",
            headers=headers,
        )
        clients.append(client)
        return client

    yield _make

    for client in clients:
        await client.aclose()
    app.dependency_overrides.clear()
