import os
import sys

import pytest
import pytest_asyncio

sys.path.insert(0, os.path.dirname(__file__))

from app.core.db import close_db, init_db
from app.models.outbox import OutboxMessage
from helpers import at, payload


@pytest_asyncio.fixture
async def db():
    """Fresh in-memory database for every test."""
    await init_db(db_url="sqlite://:memory:")
    yield
    await close_db()


@pytest.fixture
def make_message(db):
    """Factory writing an outbox message; `seq` orders creation and tags the payload."""
    async def _make(seq: int, **overrides) -> OutboxMessage:
        values = {
            "event_type": "OrderCreatedEvent",
            "content": payload(seq),
            "created_at": at(seq - 3600),
        }
        values.update(overrides)
        return await OutboxMessage.create(**values)
    return _make
