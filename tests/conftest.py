import itertools

import pytest
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

from talkcart.database import ensure_indexes
from talkcart.server import app

_counter = itertools.count()


@pytest.fixture
async def db():
    client = AsyncMongoMockClient()
    database = client["talkcart_test"]
    await ensure_indexes(database)
    app.state.db = database
    yield database


@pytest.fixture
async def client(db):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def register(client, db):
    """Register a user and return ``(user, headers)``.

    ``role="admin"`` is applied directly in the database since there is no
    public route for it.
    """
    async def _register(name=None, role="user", **fields):
        name = name or f"user{next(_counter)}"
        resp = await client.post("/api/auth/register", json={
            "username": name,
            "email": f"{name}@example.com",
            "password": "secret123",
            "display_name": name.title(),
            "role": "vendor" if role == "vendor" else "user",
        })
        assert resp.status_code == 201, resp.text
        # each test user authenticates by header only
        client.cookies.clear()
        body = resp.json()
        user = body["user"]
        updates = dict(fields)
        if role == "admin":
            updates["role"] = "admin"
        if updates:
            await db.users.update_one({"id": user["id"]}, {"$set": updates})
            user.update(updates)
        return user, {"Authorization": f"Bearer {body['session_token']}"}

    return _register
