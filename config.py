# config.py
# All configuration and environment variables live here.
# No hardcoded values anywhere in api_server.py, store.py or worker.py

import os

# ── Store ─────────────────────────────────────────────────────────────────────
STORE_BACKEND: str = os.getenv("STORE_BACKEND", "memory")   # "memory" | "redis"
REDIS_URL: str = os.getenv("REDIS_URL", "redis://redis:6379")
REDIS_KEY_PREFIX: str = os.getenv("REDIS_KEY_PREFIX", "mrl")

# ── Intent queue (worker.py) ──────────────────────────────────────────────────
INTENT_QUEUE_KEY: str = "intents_queue"
WORKER_BLPOP_TIMEOUT_SECONDS: int = 5
WORKER_RECONNECT_DELAY_SECONDS: float = 3.0

# ── API ───────────────────────────────────────────────────────────────────────
API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
API_PORT: int = int(os.getenv("API_PORT", "8000"))

# ── Identity ──────────────────────────────────────────────────────────────────
# Static principals for local runs: "token:user_id:role,token2:user_id2:role2"
API_TOKENS: str = os.getenv("API_TOKENS", "")
IDENTITY_URL: str | None = os.getenv("IDENTITY_URL")       # external token verifier
IDENTITY_TIMEOUT_SECONDS: float = 5.0

# ── Webhook ───────────────────────────────────────────────────────────────────
WEBHOOK_URL: str | None = os.getenv("WEBHOOK_URL")          # Slack/Discord
WEBHOOK_TIMEOUT_SECONDS: float = 5.0

# ── History / notifications ───────────────────────────────────────────────────
HISTORY_LIMIT: int = 500
NOTIFICATION_LIMIT: int = 1000                               # per API instance

# ── Logging ───────────────────────────────────────────────────────────────────
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"
