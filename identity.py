# identity.py  ──  bearer token -> Principal
# Token verification belongs to the external identity provider; this module
# only adapts its answer into a Principal the gate understands.

import logging
from typing import Mapping, Optional, Protocol

import httpx

from config import API_TOKENS, IDENTITY_TIMEOUT_SECONDS, IDENTITY_URL
from shared_types import ROLES, Principal

logger = logging.getLogger(__name__)


class PrincipalResolver(Protocol):
    async def resolve(self, token: str) -> Optional[Principal]: ...


def parse_token_spec(spec: str) -> dict[str, Principal]:
    """'tok1:user1:admin,tok2:user2:operator' -> {token: Principal}"""
    tokens: dict[str, Principal] = {}
    for item in filter(None, (part.strip() for part in spec.split(","))):
        try:
            token, user_id, role = item.split(":")
        except ValueError:
            logger.warning("Ignoring malformed API_TOKENS entry %r", item)
            continue
        if role not in ROLES:
            logger.warning("Ignoring API_TOKENS entry for %s: unknown role %r", user_id, role)
            continue
        tokens[token] = Principal(id=user_id, role=role)
    return tokens


class StaticTokenResolver:
    def __init__(self, tokens: Mapping[str, Principal]):
        self._tokens = dict(tokens)

    async def resolve(self, token: str) -> Optional[Principal]:
        return self._tokens.get(token)

    def principals(self) -> list[Principal]:
        return list(dict.fromkeys(self._tokens.values()))


class HttpTokenResolver:
    """
    Ask the identity provider who owns a token.
    Expected response: 200 {"id": "...", "role": "..."}; anything else is a rejection.
    """

    def __init__(self, url: str, timeout: float = IDENTITY_TIMEOUT_SECONDS):
        self.url = url
        self.timeout = timeout

    async def resolve(self, token: str) -> Optional[Principal]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(self.url, headers={"Authorization": f"Bearer {token}"})
        except httpx.HTTPError as e:
            logger.warning("⚠️  Identity provider unreachable: %s", e)
            return None
        if resp.status_code != 200:
            return None
        try:
            data = resp.json()
        except ValueError as e:
            logger.warning("⚠️  Identity provider sent a non-JSON body: %s", e)
            return None
        if not isinstance(data, dict):
            logger.warning("⚠️  Identity provider sent %s instead of an object", type(data).__name__)
            return None
        if not data.get("id") or data.get("role") not in ROLES:
            return None
        return Principal(id=str(data["id"]), role=data["role"])


def build_resolver() -> PrincipalResolver:
    if IDENTITY_URL:
        return HttpTokenResolver(IDENTITY_URL)
    return StaticTokenResolver(parse_token_spec(API_TOKENS))
