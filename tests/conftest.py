# tests/conftest.py
# Shared fixtures: a seeded in-memory store, a recording sink and an engine
# wired to both. No Redis or network needed.

import asyncio
import os
import sys
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

# Add parent dir to path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from lifecycle import LifecycleEngine
from shared_types import UserRecord
from store import MemoryStore

DIRECTORY = [
    UserRecord(id="op-1", role="operator", name="Olga"),
    UserRecord(id="op-2", role="operator", name="Omar"),
    UserRecord(id="tech-1", role="technician", name="Xavier"),
    UserRecord(id="tech-2", role="technician", name="Yara"),
    UserRecord(id="tech-idle", role="technician", name="Ivo", is_active=False),
    UserRecord(id="lead-1", role="lead", name="Lena"),
    UserRecord(id="admin-1", role="admin", name="Ada"),
]


class RecordingSink:
    """Captures every delivered intent; optionally blows up on delivery."""

    inline = True

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.delivered = []

    async def deliver(self, intent, actor):
        if self.fail:
            raise RuntimeError("sink offline")
        self.delivered.append((intent, actor))

    def of_type(self, kind: str):
        return [i for i, _ in self.delivered if i.type == kind]


class TickingClock:
    """Each call is one second later, so ordering by timestamp is stable."""

    def __init__(self):
        self.now = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


async def seed_directory(store) -> None:
    for user in DIRECTORY:
        await store.put_user(user)


@pytest_asyncio.fixture
async def store():
    s = MemoryStore()
    await seed_directory(s)
    return s


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def failing_sink():
    return RecordingSink(fail=True)


@pytest.fixture
def engine(store, sink):
    return LifecycleEngine(store, sinks=[sink], clock=TickingClock())


class YieldingStore(MemoryStore):
    """MemoryStore whose reads hand control back to the loop, so concurrent operations interleave."""

    async def get_request(self, request_id):
        await asyncio.sleep(0)
        return await super().get_request(request_id)

    async def get_assignment(self, assignment_id):
        await asyncio.sleep(0)
        return await super().get_assignment(assignment_id)

    async def list_assignments(self, request_id=None, technician_id=None):
        await asyncio.sleep(0)
        return await super().list_assignments(request_id, technician_id)


@pytest_asyncio.fixture
async def yielding_store():
    s = YieldingStore()
    await seed_directory(s)
    return s
