# worker.py
# Background worker: pulls committed intents off the Redis queue and delivers
# them to the outbound sinks (webhook). Fire-and-forget: a failed delivery is
# logged, never re-enqueued.

import asyncio
import json
import logging
from typing import Iterable, Optional

import redis.asyncio as aioredis

from config import (
    INTENT_QUEUE_KEY,
    LOG_FORMAT,
    LOG_LEVEL,
    REDIS_URL,
    WORKER_BLPOP_TIMEOUT_SECONDS,
    WORKER_RECONNECT_DELAY_SECONDS,
)
from sinks import IntentSink, WebhookSink, decode_intent, dispatch

logger = logging.getLogger(__name__)


# ── Core Intent Processor ─────────────────────────────────────────────────────

async def _process_intent(raw: str, sinks: Iterable[IntentSink]) -> bool:
    """
    Decode one queued payload and hand it to every sink.
    Returns False when the payload was malformed and dropped.
    """
    try:
        intent, actor = decode_intent(raw)
    except (json.JSONDecodeError, KeyError, TypeError) as e:
        logger.warning("🗑️  Dropping malformed intent payload (%s): %.200s", e, raw)
        return False

    logger.info("📨 %s intent for %s (by %s)", intent.type, intent.target, actor.id)
    await dispatch([intent], sinks, actor, background=False)
    return True


# ── Main Worker Loop ──────────────────────────────────────────────────────────

async def run_worker(
    redis: Optional[aioredis.Redis] = None,
    sinks: Optional[Iterable[IntentSink]] = None,
    max_items: Optional[int] = None,
) -> int:
    """
    BLPOP loop on the intent queue; blocks until an intent arrives.
    `max_items` stops the loop after that many payloads (tests, one-shot drains).
    Returns the number of payloads taken off the queue.
    """
    redis = redis or aioredis.from_url(REDIS_URL, decode_responses=True)
    sinks = list(sinks) if sinks is not None else [WebhookSink()]
    logger.info("👷 Worker started, listening on %s", INTENT_QUEUE_KEY)

    handled = 0
    while max_items is None or handled < max_items:
        try:
            result = await redis.blpop(INTENT_QUEUE_KEY, timeout=WORKER_BLPOP_TIMEOUT_SECONDS)
            if result is None:
                continue  # timeout, loop again
            _, raw = result
            handled += 1
            await _process_intent(raw, sinks)

        except aioredis.ConnectionError as e:
            logger.error("❌ Redis connection lost: %s. Retrying in %.0fs", e, WORKER_RECONNECT_DELAY_SECONDS)
            await asyncio.sleep(WORKER_RECONNECT_DELAY_SECONDS)
        except Exception:
            logger.exception("❌ Unexpected error in worker loop")
            await asyncio.sleep(1)
    return handled


if __name__ == "__main__":
    logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
    asyncio.run(run_worker())
