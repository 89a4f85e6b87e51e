# sinks.py  ──  consumers of the engine's side-effect intents
#
# Intents are delivered only after the mutation committed. Delivery is
# best-effort: dispatch() logs a failing sink and moves on, so nothing here
# can roll back or fail an operation. Outbound sinks (webhook, worker queue)
# run as background tasks; in-process ones finish before the caller resumes.

import asyncio
import functools
import json
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional, Protocol

import httpx
import redis.asyncio as aioredis

from config import HISTORY_LIMIT, INTENT_QUEUE_KEY, NOTIFICATION_LIMIT, WEBHOOK_TIMEOUT_SECONDS, WEBHOOK_URL
from errors import NotFound
from permissions import Action, require
from shared_types import Intent, Principal, utcnow

logger = logging.getLogger(__name__)


class IntentSink(Protocol):
    # In-process sinks run before the operation returns; the rest run as background tasks
    inline: bool

    async def deliver(self, intent: Intent, actor: Principal) -> None: ...


# Strong references to in-flight background deliveries (the loop only keeps weak ones)
_background: set[asyncio.Task] = set()


def _delivery_failed(sink, intent: Intent, e: BaseException) -> None:
    logger.warning(
        "⚠️  Intent delivery failed (%s, %s → %s): %s",
        type(sink).__name__, intent.type, intent.target, e,
    )


def _background_done(sink, intent: Intent, task: asyncio.Task) -> None:
    _background.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        _delivery_failed(sink, intent, exc)


async def dispatch(intents: Iterable[Intent], sinks: Iterable[IntentSink], actor: Principal,
                   background: bool = True) -> None:
    """
    Deliver intents to every sink. Inline sinks are awaited in order; other
    sinks get one task per delivery so a slow webhook or queue never holds up
    the caller. With background=False everything is awaited (the worker).
    """
    sinks = list(sinks)
    for intent in intents:
        for sink in sinks:
            if background and not getattr(sink, "inline", False):
                task = asyncio.create_task(sink.deliver(intent, actor))
                _background.add(task)
                task.add_done_callback(functools.partial(_background_done, sink, intent))
                continue
            try:
                await sink.deliver(intent, actor)
            except Exception as e:
                _delivery_failed(sink, intent, e)


async def drain() -> None:
    """Wait for background deliveries started so far (shutdown, tests)."""
    while _background:
        await asyncio.gather(*list(_background), return_exceptions=True)
        # let done-callbacks run before checking again
        await asyncio.sleep(0)


# ── History log ───────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class HistoryEntry:
    id: str
    user_id: str
    action: str
    details: str
    request_id: str
    participants: tuple[str, ...]
    timestamp: datetime

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "action": self.action,
            "details": self.details,
            "relatedResource": {"requestId": self.request_id, "participants": list(self.participants)},
            "timestamp": self.timestamp.isoformat(),
        }


class HistoryLog:
    """Bounded in-process audit trail built from `log` intents."""

    inline = True

    def __init__(self, limit: int = HISTORY_LIMIT):
        self._entries: deque[HistoryEntry] = deque(maxlen=limit)

    async def deliver(self, intent: Intent, actor: Principal) -> None:
        if intent.type != "log":
            return
        self._entries.append(HistoryEntry(
            id=uuid.uuid4().hex,
            user_id=actor.id,
            action=intent.title,
            details=intent.message,
            request_id=intent.target,
            participants=tuple(intent.audience),
            timestamp=utcnow(),
        ))

    def list_for(self, principal: Principal) -> list[HistoryEntry]:
        require(principal, Action.VIEW_HISTORY)
        entries = list(self._entries)
        if principal.role not in ("admin", "lead"):
            entries = [e for e in entries if e.user_id == principal.id or principal.id in e.participants]
        return sorted(entries, key=lambda e: e.timestamp, reverse=True)


# ── Notification inbox ────────────────────────────────────────────────────────

@dataclass
class Notification:
    id: str
    user_id: str
    title: str
    message: str
    read: bool = False
    deleted: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "title": self.title,
            "message": self.message,
            "read": self.read,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }


class NotificationInbox:
    """
    In-process inbox built from `notify` intents. Holds at most `limit` items:
    soft-deleted ones are dropped first, then the oldest.
    """

    inline = True

    def __init__(self, limit: int = NOTIFICATION_LIMIT):
        self.limit = limit
        self._items: dict[str, Notification] = {}

    async def deliver(self, intent: Intent, actor: Principal) -> None:
        if intent.type != "notify":
            return
        item = Notification(id=uuid.uuid4().hex, user_id=intent.target, title=intent.title, message=intent.message)
        self._items[item.id] = item
        if len(self._items) > self.limit:
            self._evict()

    def _evict(self) -> None:
        for notification_id in [k for k, n in self._items.items() if n.deleted]:
            del self._items[notification_id]
        # dicts keep insertion order, so the first keys are the oldest
        while len(self._items) > self.limit:
            del self._items[next(iter(self._items))]

    def list_for(self, principal: Principal) -> list[Notification]:
        require(principal, Action.VIEW_NOTIFICATIONS)
        items = [
            n for n in self._items.values()
            if not n.deleted and (principal.role in ("admin", "lead") or n.user_id == principal.id)
        ]
        return sorted(items, key=lambda n: n.created_at, reverse=True)

    def mark(self, principal: Principal, ids: Iterable[str], read: bool) -> dict:
        """Mark several notifications read/unread. Partial success is reported, not raised."""
        require(principal, Action.UPDATE_NOTIFICATIONS)
        updated, failed = [], []
        for notification_id in ids:
            item = self._items.get(notification_id)
            if item is None or item.deleted:
                failed.append({"id": notification_id, "error": "Notification not found"})
                continue
            if item.user_id != principal.id and principal.role != "admin":
                failed.append({"id": notification_id, "error": "Not authorized for this notification"})
                continue
            item.read = read
            item.updated_at = utcnow()
            updated.append(notification_id)
        return {"updated": updated, "failed": failed}

    def delete(self, principal: Principal, notification_id: str) -> Notification:
        require(principal, Action.DELETE_NOTIFICATIONS, resource_id=notification_id)
        item = self._items.get(notification_id)
        if item is None or item.deleted:
            raise NotFound("Notification not found", action=Action.DELETE_NOTIFICATIONS.value,
                           resource_id=notification_id)
        item.deleted = True
        item.updated_at = utcnow()
        return item


# ── Outbound ──────────────────────────────────────────────────────────────────

class WebhookSink:
    """POST notify intents to Slack/Discord."""

    inline = False

    def __init__(self, url: Optional[str] = WEBHOOK_URL, timeout: float = WEBHOOK_TIMEOUT_SECONDS):
        self.url = url
        self.timeout = timeout

    async def deliver(self, intent: Intent, actor: Principal) -> None:
        if not self.url or intent.type != "notify":
            return
        payload = {
            "text": (
                f"🔔 *{intent.title or 'Maintenance request'}*\n"
                f"*To:* `{intent.target}`\n"
                f"*By:* {actor.id} ({actor.role})\n"
                f"{intent.message[:300]}"
            )
        }
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(self.url, json=payload)
            resp.raise_for_status()


def encode_intent(intent: Intent, actor: Principal) -> str:
    return json.dumps({
        "intent": {**intent.to_dict(), "audience": list(intent.audience)},
        "actor": {"id": actor.id, "role": actor.role},
    })


def decode_intent(raw: str) -> tuple[Intent, Principal]:
    data = json.loads(raw)
    body = data["intent"]
    intent = Intent(
        type=body["type"],
        target=body["target"],
        message=body.get("message", ""),
        title=body.get("title", ""),
        audience=tuple(body.get("audience") or ()),
    )
    return intent, Principal(id=data["actor"]["id"], role=data["actor"]["role"])


class QueueSink:
    """Hand intents to worker.py through a Redis list."""

    inline = False

    def __init__(self, client: aioredis.Redis, key: str = INTENT_QUEUE_KEY):
        self._redis = client
        self.key = key

    async def deliver(self, intent: Intent, actor: Principal) -> None:
        await self._redis.lpush(self.key, encode_intent(intent, actor))
