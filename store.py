# store.py  ──  persistent record store used by the lifecycle engine
#
# Both backends keep requests as JSON-shaped dicts (status_rules wire format)
# and enforce optimistic concurrency on Request.version: a commit only lands
# if the stored version still equals the version the caller read.

import asyncio
import functools
import json
import logging
from dataclasses import asdict
from typing import Iterable, Optional, Protocol

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from config import REDIS_KEY_PREFIX, REDIS_URL, STORE_BACKEND
from errors import AssigneeBackingError, StaleWriteError, StoreUnavailable
from shared_types import Assignment, Request, UserRecord
from status_rules import assignment_from_dict, assignment_to_dict, request_from_dict, request_to_dict

logger = logging.getLogger(__name__)


class RecordStore(Protocol):
    backend: str

    async def get_request(self, request_id: str) -> Optional[Request]: ...
    async def list_requests(self) -> list[Request]: ...
    async def insert_request(self, request: Request, assignments: Iterable[Assignment] = ()) -> Request: ...
    async def commit_request(self, request: Request, expected_version: int,
                             assignments: Iterable[Assignment] = ()) -> Request: ...
    async def delete_request(self, request_id: str, expected_version: int) -> list[str]: ...
    async def get_assignment(self, assignment_id: str) -> Optional[Assignment]: ...
    async def list_assignments(self, request_id: Optional[str] = None,
                               technician_id: Optional[str] = None) -> list[Assignment]: ...
    # Refuses (AssigneeBackingError) to drop the last entry backing the current assignee
    async def delete_assignment(self, assignment_id: str) -> bool: ...
    async def get_user(self, user_id: str) -> Optional[UserRecord]: ...
    async def list_users(self, role: Optional[str] = None) -> list[UserRecord]: ...
    async def put_user(self, user: UserRecord) -> None: ...


def _with_version(request: Request, version: int) -> dict:
    data = request_to_dict(request)
    data["version"] = version
    return data


def _sorted_assignments(items: Iterable[Assignment]) -> list[Assignment]:
    return sorted(items, key=lambda a: (a.assigned_at, a.id))


# ─────────────────────────────────────────────────────────────────────────────
# In-memory backend (default, tests, single process)
# ─────────────────────────────────────────────────────────────────────────────

class MemoryStore:
    backend = "memory"

    def __init__(self):
        self._requests: dict[str, dict] = {}
        self._assignments: dict[str, dict] = {}
        self._users: dict[str, dict] = {}
        self._lock = asyncio.Lock()

    async def get_request(self, request_id: str) -> Optional[Request]:
        record = self._requests.get(request_id)
        return request_from_dict(record) if record else None

    async def list_requests(self) -> list[Request]:
        return [request_from_dict(r) for r in list(self._requests.values())]

    async def insert_request(self, request: Request, assignments: Iterable[Assignment] = ()) -> Request:
        async with self._lock:
            if request.id in self._requests:
                raise StaleWriteError(f"request:{request.id}", 0, self._requests[request.id]["version"])
            record = _with_version(request, 1)
            self._requests[request.id] = record
            for assignment in assignments:
                self._assignments[assignment.id] = assignment_to_dict(assignment)
            return request_from_dict(record)

    async def commit_request(self, request: Request, expected_version: int,
                             assignments: Iterable[Assignment] = ()) -> Request:
        async with self._lock:
            current = self._requests.get(request.id)
            actual = current["version"] if current else None
            if actual != expected_version:
                raise StaleWriteError(f"request:{request.id}", expected_version, actual)
            record = _with_version(request, expected_version + 1)
            self._requests[request.id] = record
            for assignment in assignments:
                self._assignments[assignment.id] = assignment_to_dict(assignment)
            return request_from_dict(record)

    async def delete_request(self, request_id: str, expected_version: int) -> list[str]:
        async with self._lock:
            current = self._requests.get(request_id)
            actual = current["version"] if current else None
            if actual != expected_version:
                raise StaleWriteError(f"request:{request_id}", expected_version, actual)
            del self._requests[request_id]
            removed = [aid for aid, a in self._assignments.items() if a["requestId"] == request_id]
            for aid in removed:
                del self._assignments[aid]
            return removed

    async def get_assignment(self, assignment_id: str) -> Optional[Assignment]:
        record = self._assignments.get(assignment_id)
        return assignment_from_dict(record) if record else None

    async def list_assignments(self, request_id: Optional[str] = None,
                               technician_id: Optional[str] = None) -> list[Assignment]:
        items = [assignment_from_dict(a) for a in list(self._assignments.values())]
        if request_id is not None:
            items = [a for a in items if a.request_id == request_id]
        if technician_id is not None:
            items = [a for a in items if a.technician_id == technician_id]
        return _sorted_assignments(items)

    async def delete_assignment(self, assignment_id: str) -> bool:
        async with self._lock:
            record = self._assignments.get(assignment_id)
            if record is None:
                return False
            request = self._requests.get(record["requestId"]) or {}
            assignee = request.get("assignedTo")
            if assignee and record.get("technicianId") == assignee:
                backing = [a for a in self._assignments.values()
                           if a["requestId"] == record["requestId"] and a.get("technicianId") == assignee]
                if len(backing) <= 1:
                    raise AssigneeBackingError(assignment_id, record["requestId"], assignee)
            del self._assignments[assignment_id]
            return True

    async def get_user(self, user_id: str) -> Optional[UserRecord]:
        record = self._users.get(user_id)
        return UserRecord(**record) if record else None

    async def list_users(self, role: Optional[str] = None) -> list[UserRecord]:
        users = [UserRecord(**u) for u in self._users.values()]
        return [u for u in users if role is None or u.role == role]

    async def put_user(self, user: UserRecord) -> None:
        self._users[user.id] = asdict(user)


# ─────────────────────────────────────────────────────────────────────────────
# Redis backend (shared across API replicas and the worker)
# ─────────────────────────────────────────────────────────────────────────────

def _guard(fn):
    """Translate Redis connectivity failures into StoreUnavailable."""
    @functools.wraps(fn)
    async def wrapper(self, *args, **kwargs):
        try:
            return await fn(self, *args, **kwargs)
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.error("Redis unavailable during %s: %s", fn.__name__, e)
            raise StoreUnavailable(str(e)) from e
    return wrapper


class RedisStore:
    """
    Key layout (prefix defaults to "mrl"):
      {p}:request:{id}                   JSON request document
      {p}:requests                       set of request ids
      {p}:request:{id}:assignments       set of assignment ids for a request
      {p}:assignment:{id}                JSON assignment document
      {p}:technician:{id}:assignments    set of assignment ids for a technician
      {p}:user:{id} / {p}:users          user directory
    Writes to a request use WATCH/MULTI/EXEC so a concurrent commit aborts ours.
    """

    backend = "redis"

    def __init__(self, client: aioredis.Redis, prefix: str = REDIS_KEY_PREFIX):
        self._redis = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str = REDIS_URL, prefix: str = REDIS_KEY_PREFIX) -> "RedisStore":
        return cls(aioredis.from_url(url, decode_responses=True), prefix)

    @property
    def client(self) -> aioredis.Redis:
        return self._redis

    async def ping(self) -> None:
        await self._redis.ping()

    async def close(self) -> None:
        await self._redis.aclose()

    def _key(self, *parts: str) -> str:
        return ":".join((self._prefix,) + parts)

    def _queue_assignment(self, pipe, assignment: Assignment) -> None:
        pipe.set(self._key("assignment", assignment.id), json.dumps(assignment_to_dict(assignment)))
        pipe.sadd(self._key("request", assignment.request_id, "assignments"), assignment.id)
        if assignment.technician_id:
            pipe.sadd(self._key("technician", assignment.technician_id, "assignments"), assignment.id)

    @staticmethod
    def _version_of(raw: Optional[str]) -> Optional[int]:
        return int(json.loads(raw).get("version") or 0) if raw else None

    @_guard
    async def get_request(self, request_id: str) -> Optional[Request]:
        raw = await self._redis.get(self._key("request", request_id))
        return request_from_dict(json.loads(raw)) if raw else None

    @_guard
    async def list_requests(self) -> list[Request]:
        ids = await self._redis.smembers(self._key("requests"))
        if not ids:
            return []
        raws = await self._redis.mget([self._key("request", rid) for rid in ids])
        return [request_from_dict(json.loads(raw)) for raw in raws if raw]

    @_guard
    async def insert_request(self, request: Request, assignments: Iterable[Assignment] = ()) -> Request:
        key = self._key("request", request.id)
        record = _with_version(request, 1)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                existing = await pipe.get(key)
                if existing:
                    raise StaleWriteError(key, 0, self._version_of(existing))
                pipe.multi()
                pipe.set(key, json.dumps(record))
                pipe.sadd(self._key("requests"), request.id)
                for assignment in assignments:
                    self._queue_assignment(pipe, assignment)
                await pipe.execute()
        except WatchError as e:
            raise StaleWriteError(key, 0, None) from e
        return request_from_dict(record)

    @_guard
    async def commit_request(self, request: Request, expected_version: int,
                             assignments: Iterable[Assignment] = ()) -> Request:
        key = self._key("request", request.id)
        record = _with_version(request, expected_version + 1)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                actual = self._version_of(await pipe.get(key))
                if actual != expected_version:
                    raise StaleWriteError(key, expected_version, actual)
                pipe.multi()
                pipe.set(key, json.dumps(record))
                for assignment in assignments:
                    self._queue_assignment(pipe, assignment)
                await pipe.execute()
        except WatchError as e:
            raise StaleWriteError(key, expected_version, None) from e
        return request_from_dict(record)

    @_guard
    async def delete_request(self, request_id: str, expected_version: int) -> list[str]:
        key = self._key("request", request_id)
        index_key = self._key("request", request_id, "assignments")
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                await pipe.watch(key, index_key)
                actual = self._version_of(await pipe.get(key))
                if actual != expected_version:
                    raise StaleWriteError(key, expected_version, actual)
                assignment_ids = sorted(await pipe.smembers(index_key))
                docs = await pipe.mget([self._key("assignment", aid) for aid in assignment_ids]) if assignment_ids else []
                pipe.multi()
                pipe.delete(key, index_key)
                pipe.srem(self._key("requests"), request_id)
                for aid, raw in zip(assignment_ids, docs):
                    pipe.delete(self._key("assignment", aid))
                    technician_id = json.loads(raw).get("technicianId") if raw else None
                    if technician_id:
                        pipe.srem(self._key("technician", technician_id, "assignments"), aid)
                await pipe.execute()
        except WatchError as e:
            raise StaleWriteError(key, expected_version, None) from e
        return assignment_ids

    @_guard
    async def get_assignment(self, assignment_id: str) -> Optional[Assignment]:
        raw = await self._redis.get(self._key("assignment", assignment_id))
        return assignment_from_dict(json.loads(raw)) if raw else None

    @_guard
    async def list_assignments(self, request_id: Optional[str] = None,
                               technician_id: Optional[str] = None) -> list[Assignment]:
        if request_id is not None:
            ids = await self._redis.smembers(self._key("request", request_id, "assignments"))
        elif technician_id is not None:
            ids = await self._redis.smembers(self._key("technician", technician_id, "assignments"))
        else:
            ids = set()
            for rid in await self._redis.smembers(self._key("requests")):
                ids |= set(await self._redis.smembers(self._key("request", rid, "assignments")))
        if not ids:
            return []
        raws = await self._redis.mget([self._key("assignment", aid) for aid in ids])
        items = [assignment_from_dict(json.loads(raw)) for raw in raws if raw]
        if technician_id is not None:
            items = [a for a in items if a.technician_id == technician_id]
        return _sorted_assignments(items)

    @_guard
    async def delete_assignment(self, assignment_id: str) -> bool:
        assignment = await self.get_assignment(assignment_id)
        if assignment is None:
            return False
        key = self._key("assignment", assignment_id)
        request_key = self._key("request", assignment.request_id)
        index_key = self._key("request", assignment.request_id, "assignments")
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                # A commit that changes the assignee, or a delete of a sibling
                # entry, touches one of these keys and aborts ours.
                await pipe.watch(key, request_key, index_key)
                if not await pipe.exists(key):
                    return False
                raw = await pipe.get(request_key)
                assignee = json.loads(raw).get("assignedTo") if raw else None
                if assignee and assignment.technician_id == assignee:
                    ids = sorted(await pipe.smembers(index_key))
                    docs = await pipe.mget([self._key("assignment", aid) for aid in ids]) if ids else []
                    backing = [d for d in docs if d and json.loads(d).get("technicianId") == assignee]
                    if len(backing) <= 1:
                        raise AssigneeBackingError(assignment_id, assignment.request_id, assignee)
                pipe.multi()
                pipe.delete(key)
                pipe.srem(index_key, assignment_id)
                if assignment.technician_id:
                    pipe.srem(self._key("technician", assignment.technician_id, "assignments"), assignment_id)
                await pipe.execute()
        except WatchError as e:
            raise StaleWriteError(key, 0, None) from e
        return True

    @_guard
    async def get_user(self, user_id: str) -> Optional[UserRecord]:
        raw = await self._redis.get(self._key("user", user_id))
        return UserRecord(**json.loads(raw)) if raw else None

    @_guard
    async def list_users(self, role: Optional[str] = None) -> list[UserRecord]:
        ids = await self._redis.smembers(self._key("users"))
        if not ids:
            return []
        raws = await self._redis.mget([self._key("user", uid) for uid in ids])
        users = [UserRecord(**json.loads(raw)) for raw in raws if raw]
        return [u for u in users if role is None or u.role == role]

    @_guard
    async def put_user(self, user: UserRecord) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(self._key("user", user.id), json.dumps(asdict(user)))
            pipe.sadd(self._key("users"), user.id)
            await pipe.execute()


def build_store() -> RecordStore:
    if STORE_BACKEND == "redis":
        return RedisStore.from_url(REDIS_URL)
    return MemoryStore()
