# api_server.py
# FastAPI transport over the lifecycle engine.
# Every route: resolve bearer token -> Principal, call one engine operation,
# translate the Outcome into JSON (success body or stable error kind + status).

import logging
import re
from contextlib import asynccontextmanager
from typing import Any, Iterable, Optional

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Header, HTTPException, Request as HttpRequest
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from redis.exceptions import ConnectionError as RedisConnectionError

from config import LOG_FORMAT, LOG_LEVEL
from errors import LifecycleError, StoreUnavailable
from identity import PrincipalResolver, StaticTokenResolver, build_resolver
from lifecycle import LifecycleEngine
from permissions import allowed_actions
from shared_types import Assignment, Outcome, Principal, Request, UserRecord
from sinks import HistoryLog, IntentSink, NotificationInbox, QueueSink, WebhookSink, drain
from status_rules import assignment_to_dict, request_to_dict
from store import MemoryStore, RecordStore, RedisStore, build_store

logger = logging.getLogger(__name__)

# ── Wiring (module-level so tests can swap pieces, see configure()) ───────────

_redis_client: aioredis.Redis | None = None
_store: RecordStore = MemoryStore()
_history = HistoryLog()
_inbox = NotificationInbox()
_resolver: PrincipalResolver = build_resolver()
_engine = LifecycleEngine(_store, sinks=[_history, _inbox, WebhookSink()])


def configure(
    store: RecordStore,
    resolver: Optional[PrincipalResolver] = None,
    outbound: Optional[Iterable[IntentSink]] = None,
) -> LifecycleEngine:
    """Rebuild the engine around a store. History and inbox start empty."""
    global _store, _history, _inbox, _resolver, _engine
    _store = store
    _history = HistoryLog()
    _inbox = NotificationInbox()
    if resolver is not None:
        _resolver = resolver
    outbound = [WebhookSink()] if outbound is None else list(outbound)
    _engine = LifecycleEngine(store, sinks=[_history, _inbox, *outbound])
    return _engine


# ── App Lifespan ──────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    global _redis_client
    logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
    store = build_store()
    if isinstance(store, RedisStore):
        try:
            await store.ping()
            _redis_client = store.client
            # Intents go through the worker queue; the worker owns webhook delivery
            configure(store, outbound=[QueueSink(store.client)])
            logger.info("✅  Redis connected, using the shared store")
        except (RedisConnectionError, OSError) as e:
            logger.warning("⚠️  Redis unavailable (%s). Running on the in-memory store.", e)
            await store.close()
    await _seed_directory()
    yield
    await drain()
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None


async def _seed_directory() -> None:
    """Static token principals double as the user directory for local runs."""
    if not isinstance(_resolver, StaticTokenResolver):
        return
    for principal in _resolver.principals():
        if await _store.get_user(principal.id) is None:
            await _store.put_user(UserRecord(id=principal.id, role=principal.role))
            logger.info("👤 Registered %s (%s)", principal.id, principal.role)


app = FastAPI(
    title="Maintenance Request Lifecycle",
    version="1.0.0",
    lifespan=lifespan,
)

_ERROR_STATUS = {
    "Unauthorized": 403,
    "NotFound": 404,
    "Conflict": 409,
    "ValidationError": 422,
    "ConfigurationError": 500,
}


@app.exception_handler(LifecycleError)
async def _lifecycle_error(request: HttpRequest, exc: LifecycleError):
    return JSONResponse(status_code=_ERROR_STATUS.get(exc.kind, 400), content=exc.to_failure().to_dict())


@app.exception_handler(StoreUnavailable)
async def _store_unavailable(request: HttpRequest, exc: StoreUnavailable):
    return JSONResponse(
        status_code=503,
        content={"error": "StoreUnavailable", "message": "Record store unavailable, retry later",
                 "action": None, "resourceId": None},
    )


@app.exception_handler(RequestValidationError)
async def _invalid_body(request: HttpRequest, exc: RequestValidationError):
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()) if p != 'body')}: {err.get('msg')}" for err in exc.errors()
    )
    return JSONResponse(
        status_code=422,
        content={"error": "ValidationError", "message": problems or "Invalid request body",
                 "action": None, "resourceId": request.path_params.get("request_id")},
    )


# ── Request / Response Models ─────────────────────────────────────────────────

class CreateRequestBody(BaseModel):
    title: str | None = None
    description: str = ""
    machineId: str | None = None
    priority: str = "Medium"


class UpdateRequestBody(BaseModel):
    # Only the keys the client sent are applied (model_dump(exclude_unset=True)).
    title: str | None = None
    description: str | None = None
    machineId: str | None = None
    priority: str | None = None
    status: str | None = None


class StatusBody(BaseModel):
    status: str | None = None


class AssignBody(BaseModel):
    technicianId: str | None = None


class ProposeBody(BaseModel):
    status: str | None = None
    resolution: str | None = None      # older clients send the proposal here


class DecisionBody(BaseModel):
    decision: str | None = None
    approval: str | None = None        # older clients send the decision here


class MarkNotificationsBody(BaseModel):
    ids: list[str]
    read: bool = True


# ── Helpers ───────────────────────────────────────────────────────────────────

_BEARER = re.compile(r"^Bearer (.+)$")


async def current_principal(authorization: str | None = Header(default=None)) -> Principal:
    match = _BEARER.match(authorization or "")
    if not match:
        raise HTTPException(status_code=401, detail="Bearer token required")
    principal = await _resolver.resolve(match.group(1))
    if principal is None:
        raise HTTPException(status_code=401, detail="Invalid or unknown token")
    return principal


def _serialize(value: Any) -> Any:
    if isinstance(value, Request):
        return request_to_dict(value)
    if isinstance(value, Assignment):
        return assignment_to_dict(value)
    if isinstance(value, list):
        return [_serialize(v) for v in value]
    if hasattr(value, "to_dict"):
        return value.to_dict()
    return value


def _respond(outcome: Outcome, status_code: int = 200) -> JSONResponse:
    if not outcome.ok:
        return JSONResponse(status_code=_ERROR_STATUS.get(outcome.error.kind, 400), content=outcome.error.to_dict())
    return JSONResponse(
        status_code=status_code,
        content={"data": _serialize(outcome.value), "intents": [i.to_dict() for i in outcome.intents]},
    )


# ── Requests ──────────────────────────────────────────────────────────────────

@app.post("/requests")
async def create_request(body: CreateRequestBody, principal: Principal = Depends(current_principal)):
    return _respond(await _engine.create(principal, body.model_dump()), status_code=201)


@app.get("/requests")
async def list_requests(principal: Principal = Depends(current_principal)):
    return _respond(await _engine.list_requests(principal))


@app.get("/requests/{request_id}")
async def get_request(request_id: str, principal: Principal = Depends(current_principal)):
    return _respond(await _engine.get_request(principal, request_id))


@app.patch("/requests/{request_id}")
async def update_request(request_id: str, body: UpdateRequestBody, principal: Principal = Depends(current_principal)):
    return _respond(await _engine.update_request(principal, request_id, body.model_dump(exclude_unset=True)))


@app.patch("/requests/{request_id}/status")
async def update_status(request_id: str, body: StatusBody, principal: Principal = Depends(current_principal)):
    return _respond(await _engine.update_status(principal, request_id, body.status))


@app.post("/requests/{request_id}/assign")
async def assign(request_id: str, body: AssignBody, principal: Principal = Depends(current_principal)):
    return _respond(await _engine.assign(principal, request_id, body.technicianId))


@app.post("/requests/{request_id}/reassign")
async def reassign(request_id: str, body: AssignBody, principal: Principal = Depends(current_principal)):
    return _respond(await _engine.reassign(principal, request_id, body.technicianId))


@app.post("/requests/{request_id}/unassign")
async def unassign(request_id: str, principal: Principal = Depends(current_principal)):
    return _respond(await _engine.unassign(principal, request_id))


@app.patch("/requests/{request_id}/propose-resolution")
async def propose_resolution(request_id: str, body: ProposeBody, principal: Principal = Depends(current_principal)):
    return _respond(await _engine.propose_resolution(principal, request_id, body.status or body.resolution))


@app.patch("/requests/{request_id}/approve-resolution")
async def approve_resolution(request_id: str, body: DecisionBody, principal: Principal = Depends(current_principal)):
    return _respond(await _engine.approve_resolution(principal, request_id, body.decision or body.approval))


@app.patch("/requests/{request_id}/approval")
async def user_approval(request_id: str, body: DecisionBody, principal: Principal = Depends(current_principal)):
    return _respond(await _engine.user_approve_resolution(principal, request_id, body.decision or body.approval))


@app.delete("/requests/{request_id}")
async def delete_request(request_id: str, principal: Principal = Depends(current_principal)):
    return _respond(await _engine.delete(principal, request_id))


@app.post("/requests/{request_id}/request-delete")
async def request_deletion(request_id: str, principal: Principal = Depends(current_principal)):
    return _respond(await _engine.request_deletion(principal, request_id))


@app.post("/requests/{request_id}/approve-delete")
async def approve_deletion(request_id: str, principal: Principal = Depends(current_principal)):
    return _respond(await _engine.approve_deletion(principal, request_id))


@app.post("/requests/{request_id}/reject-delete")
async def reject_deletion(request_id: str, principal: Principal = Depends(current_principal)):
    return _respond(await _engine.reject_deletion(principal, request_id))


# ── Assignments ───────────────────────────────────────────────────────────────

@app.get("/assignments")
async def list_assignments(technicianId: str | None = None, requestId: str | None = None,
                           principal: Principal = Depends(current_principal)):
    return _respond(await _engine.list_assignments(principal, technicianId, requestId))


@app.get("/assignments/{assignment_id}")
async def get_assignment(assignment_id: str, principal: Principal = Depends(current_principal)):
    return _respond(await _engine.get_assignment(principal, assignment_id))


@app.delete("/assignments/{assignment_id}")
async def delete_assignment(assignment_id: str, principal: Principal = Depends(current_principal)):
    return _respond(await _engine.delete_assignment(principal, assignment_id))


# ── History / notifications ───────────────────────────────────────────────────

@app.get("/history")
async def history(principal: Principal = Depends(current_principal)):
    return {"data": [e.to_dict() for e in _history.list_for(principal)]}


@app.get("/notifications")
async def notifications(principal: Principal = Depends(current_principal)):
    return {"data": [n.to_dict() for n in _inbox.list_for(principal)]}


@app.patch("/notifications")
async def mark_notifications(body: MarkNotificationsBody, principal: Principal = Depends(current_principal)):
    result = _inbox.mark(principal, body.ids, body.read)
    if body.ids and not result["updated"]:
        return JSONResponse(status_code=404, content={"error": "NotFound",
                                                      "message": "No notifications updated", **result})
    return {"data": result}


@app.delete("/notifications/{notification_id}")
async def delete_notification(notification_id: str, principal: Principal = Depends(current_principal)):
    return {"data": _inbox.delete(principal, notification_id).to_dict()}


# ── Principal info / health ───────────────────────────────────────────────────

@app.get("/me/permissions")
async def my_permissions(principal: Principal = Depends(current_principal)):
    return {"id": principal.id, "role": principal.role, "actions": allowed_actions(principal.role)}


@app.get("/health")
async def health_check():
    return {"status": "ok", "store": _store.backend}


# ── Entry Point ───────────────────────────────────────────────────────────────

if __name__ == "__main__":
    import uvicorn
    from config import API_HOST, API_PORT
    uvicorn.run("api_server:app", host=API_HOST, port=API_PORT, reload=True)
