"""
Test configuration and fixtures.

Provides:
- A throwaway SQLite database, tables recreated for every test
- HTTPX AsyncClient bound to the FastAPI app
- TicketApiClient talking to the same app in-process
- Seed helpers for users and tickets
"""
import os
import tempfile
from typing import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient

# Must be set before ticketdesk builds its engine
_DB_DIR = tempfile.mkdtemp(prefix="ticketdesk-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_DIR}/test.db"
os.environ["API_BASE_URL"] = "http://test"

from ticketdesk.main import app
from ticketdesk.schemas.ticket import UserOut
from ticketdesk.services.api_client import TicketApiClient
from ticketdesk.storage.db import close_db, drop_db, get_session, init_db
from ticketdesk.storage.repositories import ticket_create, user_create


# =============================================================================
# Database / client fixtures
# =============================================================================

@pytest.fixture(scope="function")
async def database() -> AsyncGenerator[None, None]:
    await init_db()
    yield
    await drop_db()
    # Pooled aiosqlite connections belong to this test's event loop
    await close_db()


@pytest.fixture(scope="function")
async def client(database) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


@pytest.fixture(scope="function")
def api(database) -> TicketApiClient:
    return TicketApiClient("http://test", transport=ASGITransport(app=app))


# =============================================================================
# Seed helpers
# =============================================================================

@pytest.fixture(scope="function")
async def agent(database) -> UserOut:
    async with get_session() as session:
        u = await user_create(session, name="Dana Agent", email="dana@example.com")
        return UserOut(id=u.id, name=u.name, email=u.email)


@pytest.fixture(scope="function")
def make_ticket(database):
    async def _make(title: str = "Where is my order?", **fields) -> int:
        fields.setdefault("description", "Hi, I ordered last week and have not heard back.")
        fields.setdefault("sender_email", "john@example.com")
        async with get_session() as session:
            t = await ticket_create(session, title=title, **fields)
            return t.id

    return _make
