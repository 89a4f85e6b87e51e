# lifecycle.py  ──  Request Lifecycle Engine
#
# Stateless operation set over the record store. Every operation:
#   1. consults the permission gate,
#   2. loads a snapshot and validates preconditions against it,
#   3. commits with compare-and-swap on Request.version (a lost race is a Conflict),
#   4. only then dispatches side-effect intents (best-effort).
# Domain failures come back as Outcome.failure(...); only StoreUnavailable
# propagates, since that one is transient and the caller decides on retries.

import functools
import logging
import uuid
from dataclasses import replace
from typing import Callable, Iterable, Optional

from errors import (
    AssigneeBackingError,
    Conflict,
    LifecycleError,
    NotFound,
    StaleWriteError,
    Unauthorized,
    ValidationError,
)
from permissions import Action, can_perform, check, require
from shared_types import (
    Assignment,
    CanonicalStatus,
    Intent,
    Outcome,
    Principal,
    Request,
    Resolution,
    UserRecord,
    utcnow,
)
from sinks import IntentSink, dispatch
from status_rules import (
    merge_participants,
    normalize_status,
    parse_decision,
    parse_priority,
    parse_proposed_status,
)
from store import RecordStore

logger = logging.getLogger(__name__)

# Fields an operator/technician may edit; leads and admins may also set status
_BASIC_FIELDS = ("title", "description", "priority", "machineId")
_MANAGER_ROLES = ("lead", "admin")


def _require_strings(fields: dict, names: Iterable[str], action: Action, resource_id: Optional[str] = None) -> None:
    bad = sorted(k for k in names if fields.get(k) is not None and not isinstance(fields[k], str))
    if bad:
        raise ValidationError(f"Fields must be strings: {', '.join(bad)}",
                              action=action.value, resource_id=resource_id)


def _outcome(action: Action):
    """
    Turn domain exceptions into a failure Outcome. Failures raised without an
    action or resource id (input parsing) get the operation's action and its
    first positional argument (the request / assignment id) filled in.
    """
    def decorator(fn):
        @functools.wraps(fn)
        async def wrapper(self, principal, *args, **kwargs):
            try:
                return await fn(self, principal, *args, **kwargs)
            except LifecycleError as e:
                e.action = e.action or action.value
                if e.resource_id is None and args and isinstance(args[0], str):
                    e.resource_id = args[0]
                logger.info(
                    "%s refused for %s: %s (%s)",
                    fn.__name__, getattr(principal, "id", None), e.kind, e.message,
                )
                return Outcome.failure(e.to_failure())
        return wrapper
    return decorator


def _log(request: Request, action: str, details: str) -> Intent:
    return Intent(type="log", target=request.id, title=action, message=details,
                  audience=tuple(request.participants))


def _notify(user_id: Optional[str], title: str, message: str, actor: Principal) -> list[Intent]:
    if not user_id or user_id == actor.id:
        return []
    return [Intent(type="notify", target=user_id, title=title, message=message)]


class LifecycleEngine:
    def __init__(
        self,
        store: RecordStore,
        sinks: Iterable[IntentSink] = (),
        clock: Callable = utcnow,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ):
        self.store = store
        self.sinks = list(sinks)
        self._clock = clock
        self._new_id = id_factory

    # ── helpers ───────────────────────────────────────────────────────────────

    async def _load(self, request_id: str, action: Action) -> Request:
        request = await self.store.get_request(request_id) if request_id else None
        if request is None:
            raise NotFound(f"Request '{request_id}' not found", action=action.value, resource_id=request_id)
        return request

    async def _technician(self, technician_id: Optional[str], action: Action, request_id: str) -> UserRecord:
        if not technician_id:
            raise ValidationError("technicianId is required", action=action.value, resource_id=request_id)
        user = await self.store.get_user(technician_id)
        if user is None:
            raise NotFound(f"Technician '{technician_id}' not found", action=action.value, resource_id=request_id)
        if user.role != "technician":
            raise ValidationError(
                f"User '{technician_id}' has role '{user.role}' and cannot be assigned",
                action=action.value, resource_id=request_id,
            )
        if not user.is_active:
            raise Conflict(f"Technician '{technician_id}' is inactive", action=action.value, resource_id=request_id)
        return user

    async def _manager_ids(self) -> list[str]:
        ids = []
        for role in _MANAGER_ROLES:
            ids += [u.id for u in await self.store.list_users(role) if u.is_active]
        return list(dict.fromkeys(ids))

    async def _commit(self, action: Action, before: Request, after: Request,
                      assignments: Iterable[Assignment] = ()) -> Request:
        try:
            stored = await self.store.commit_request(after, before.version, assignments)
        except StaleWriteError as e:
            logger.warning("🔒 Lost update race on %s during %s: %s", before.id, action.value, e)
            raise Conflict(
                f"Request '{before.id}' was modified concurrently; reload and retry",
                action=action.value, resource_id=before.id,
            ) from e
        logger.info("✅ %s committed on %s (v%d)", action.value, stored.id, stored.version)
        return stored

    async def _finish(self, principal: Principal, value, intents: list[Intent]) -> Outcome:
        await dispatch(intents, self.sinks, principal)
        return Outcome.success(value, intents)

    def _apply_status(self, request: Request, status: CanonicalStatus, actor: Principal) -> Request:
        resolution = request.resolution
        if status == "Done" and request.has_pending_resolution:
            # Closing through the fast path settles the open proposal
            resolution = replace(resolution, phase="approved", decided_by=actor.id, decided_at=self._clock())
        return replace(request, status=status, resolution=resolution)

    # ── creation ──────────────────────────────────────────────────────────────

    @_outcome(Action.CREATE_REQUEST)
    async def create(self, principal: Principal, fields: dict) -> Outcome:
        action = Action.CREATE_REQUEST
        require(principal, action)

        _require_strings(fields, _BASIC_FIELDS + ("machine_id",), action)
        title = (fields.get("title") or "").strip()
        if not title:
            raise ValidationError("title is required", action=action.value)
        priority = parse_priority(fields.get("priority") or "Medium")

        now = self._clock()
        request = Request(
            id=self._new_id(),
            title=title,
            description=fields.get("description") or "",
            machine_id=fields.get("machineId") or fields.get("machine_id"),
            priority=priority,
            status="Pending",
            created_by=principal.id,
            created_at=now,
            participants=[principal.id],
        )
        placeholder = Assignment(
            id=self._new_id(), request_id=request.id, technician_id=None,
            assigned_by=None, assigned_at=now, kind="placeholder",
        )
        stored = await self.store.insert_request(request, [placeholder])
        logger.info("🎫 Request %s created by %s", stored.id, principal.id)

        intents = [_log(stored, "Created Request", f'Request "{title}" created by {principal.id}')]
        for uid in await self._manager_ids():
            intents += _notify(uid, "New Request", f'A new request "{title}" was created.', principal)
        return await self._finish(principal, stored, intents)

    # ── assignment ────────────────────────────────────────────────────────────

    @_outcome(Action.ASSIGN_TASK)
    async def assign(self, principal: Principal, request_id: str, technician_id: str) -> Outcome:
        action = Action.ASSIGN_TASK
        require(principal, action, resource_id=request_id)
        request = await self._load(request_id, action)
        await self._technician(technician_id, action, request_id)

        if request.assigned_to and request.assigned_to != technician_id:
            raise Conflict(
                f"Request '{request_id}' is already assigned to '{request.assigned_to}'; reassign instead",
                action=action.value, resource_id=request_id,
            )

        after = replace(
            request,
            assigned_to=technician_id,
            assigned_by=principal.id,
            participants=merge_participants(request.participants, technician_id, request.created_by),
        )
        entry = Assignment(
            id=self._new_id(), request_id=request.id, technician_id=technician_id,
            assigned_by=principal.id, assigned_at=self._clock(), kind="assigned",
        )
        stored = await self._commit(action, request, after, [entry])

        intents = [_log(stored, "Assigned Request", f'Request "{stored.title}" assigned to {technician_id}')]
        intents += _notify(technician_id, "New Assignment",
                           f'You have been assigned to "{stored.title}".', principal)
        intents += _notify(stored.created_by, "Request Assigned",
                           f'Your request "{stored.title}" was assigned to a technician.', principal)
        return await self._finish(principal, stored, intents)

    @_outcome(Action.REASSIGN_TASK)
    async def reassign(self, principal: Principal, request_id: str, technician_id: str) -> Outcome:
        action = Action.REASSIGN_TASK
        require(principal, action, resource_id=request_id)
        request = await self._load(request_id, action)
        await self._technician(technician_id, action, request_id)

        previous = request.assigned_to
        if not previous:
            raise Conflict(f"Request '{request_id}' is not assigned; assign it first",
                           action=action.value, resource_id=request_id)
        if previous == technician_id:
            raise Conflict(f"Request '{request_id}' is already assigned to '{technician_id}'",
                           action=action.value, resource_id=request_id)

        after = replace(
            request,
            assigned_to=technician_id,
            assigned_by=principal.id,
            participants=merge_participants(request.participants, technician_id, request.created_by),
        )
        entry = Assignment(
            id=self._new_id(), request_id=request.id, technician_id=technician_id,
            assigned_by=principal.id, assigned_at=self._clock(), kind="reassigned",
        )
        stored = await self._commit(action, request, after, [entry])

        intents = [_log(stored, "Reassigned Request",
                        f'Request "{stored.title}" reassigned from {previous} to {technician_id}')]
        intents += _notify(technician_id, "New Assignment",
                           f'You have been assigned to "{stored.title}".', principal)
        intents += _notify(previous, "Assignment Removed",
                           f'"{stored.title}" was reassigned to another technician.', principal)
        return await self._finish(principal, stored, intents)

    @_outcome(Action.UNASSIGN_TASK)
    async def unassign(self, principal: Principal, request_id: str) -> Outcome:
        action = Action.UNASSIGN_TASK
        require(principal, action, resource_id=request_id)
        request = await self._load(request_id, action)

        previous = request.assigned_to
        if not previous:
            raise Conflict(f"Request '{request_id}' is not assigned", action=action.value, resource_id=request_id)

        after = replace(
            request,
            assigned_to=None,
            assigned_by=None,
            participants=[p for p in request.participants if p != previous or p == request.created_by],
        )
        entry = Assignment(
            id=self._new_id(), request_id=request.id, technician_id=None,
            assigned_by=principal.id, assigned_at=self._clock(), kind="unassigned",
        )
        stored = await self._commit(action, request, after, [entry])

        intents = [_log(stored, "Unassigned Request", f'Request "{stored.title}" unassigned from {previous}')]
        intents += _notify(previous, "Assignment Removed",
                           f'You are no longer assigned to "{stored.title}".', principal)
        return await self._finish(principal, stored, intents)

    # ── resolution workflow ───────────────────────────────────────────────────

    @_outcome(Action.PROPOSE_RESOLUTION)
    async def propose_resolution(self, principal: Principal, request_id: str, proposed_status: str) -> Outcome:
        action = Action.PROPOSE_RESOLUTION
        require(principal, action, resource_id=request_id)
        proposed = parse_proposed_status(proposed_status)
        request = await self._load(request_id, action)

        if request.assigned_to != principal.id:
            raise Unauthorized(
                f"Only the assigned technician may propose a resolution for '{request_id}'",
                action=action.value, resource_id=request_id,
            )
        if request.has_pending_resolution:
            raise Conflict(f"A resolution proposal is already pending for '{request_id}'",
                           action=action.value, resource_id=request_id)
        if request.status == "Done":
            raise Conflict(f"Request '{request_id}' is already closed", action=action.value, resource_id=request_id)

        after = replace(
            request,
            resolution=Resolution(phase="pending", status=proposed, by=principal.id, at=self._clock()),
        )
        stored = await self._commit(action, request, after)

        intents = [_log(stored, "Proposed Resolution", f'Resolution "{proposed}" proposed for "{stored.title}"')]
        intents += _notify(stored.created_by, "Resolution Proposed",
                           f'A technician marked "{stored.title}" as {proposed}; please review.', principal)
        return await self._finish(principal, stored, intents)

    async def _settle(self, principal: Principal, request: Request, decision: str, action: Action) -> Outcome:
        if not request.has_pending_resolution:
            raise Conflict(f"No resolution proposal is pending for '{request.id}'",
                           action=action.value, resource_id=request.id)

        resolution = replace(request.resolution, phase=decision, decided_by=principal.id, decided_at=self._clock())
        status: CanonicalStatus = "Done" if decision == "approved" else "Pending"
        stored = await self._commit(action, request, replace(request, status=status, resolution=resolution))

        intents = [_log(stored, f"Resolution {decision.capitalize()}",
                        f'Resolution "{resolution.status}" {decision} for "{stored.title}"')]
        intents += _notify(resolution.by, f"Resolution {decision.capitalize()}",
                           f'Your resolution for "{stored.title}" was {decision}.', principal)
        intents += _notify(stored.created_by, f"Resolution {decision.capitalize()}",
                           f'The resolution for "{stored.title}" was {decision}.', principal)
        return await self._finish(principal, stored, intents)

    @_outcome(Action.APPROVE_RESOLUTION)
    async def approve_resolution(self, principal: Principal, request_id: str, decision: str) -> Outcome:
        action = Action.APPROVE_RESOLUTION
        gate = check(principal, action)
        if not gate.allowed:
            # Creators may decide on their own ticket without the approveResolution role.
            # Anyone else is refused whether or not the request exists.
            request = await self.store.get_request(request_id) if principal is not None and request_id else None
            if request is None or principal.id != request.created_by:
                require(principal, action, resource_id=request_id)
        decision = parse_decision(decision)
        request = await self._load(request_id, action)
        return await self._settle(principal, request, decision, action)

    @_outcome(Action.USER_APPROVE_RESOLUTION)
    async def user_approve_resolution(self, principal: Principal, request_id: str, decision: str) -> Outcome:
        action = Action.USER_APPROVE_RESOLUTION
        require(principal, action, resource_id=request_id)
        request = await self.store.get_request(request_id) if request_id else None
        if request is None or principal.id != request.created_by:
            raise Unauthorized(
                f"Only the creator of '{request_id}' may approve its resolution this way",
                action=action.value, resource_id=request_id,
            )
        return await self._settle(principal, request, parse_decision(decision), action)

    # ── status / field updates ────────────────────────────────────────────────

    @_outcome(Action.UPDATE_REQUEST_STATUS)
    async def update_status(self, principal: Principal, request_id: str, raw_status: Optional[str],
                            via: Action = Action.UPDATE_REQUEST_STATUS) -> Outcome:
        require(principal, via, resource_id=request_id)
        status = normalize_status(raw_status)
        request = await self._load(request_id, via)
        if status == request.status:
            return Outcome.success(request)

        stored = await self._commit(via, request, self._apply_status(request, status, principal))
        intents = [_log(stored, "Updated Request Status",
                        f'Status for "{stored.title}" changed from {request.status} to {status}')]
        intents += _notify(stored.created_by, "Request Status Updated",
                           f'Status changed to {status} for "{stored.title}".', principal)
        return await self._finish(principal, stored, intents)

    @_outcome(Action.UPDATE_REQUEST)
    async def update_request(self, principal: Principal, request_id: str, fields: dict) -> Outcome:
        action = Action.UPDATE_REQUEST
        require(principal, action, resource_id=request_id)
        request = await self._load(request_id, action)
        require(principal, action, request, resource_id=request_id)

        allowed = _BASIC_FIELDS + (("status",) if principal.role in _MANAGER_ROLES else ())
        updates = {k: v for k, v in fields.items() if k in allowed}
        if not updates:
            raise ValidationError(f"No updatable fields supplied; allowed: {list(allowed)}",
                                  action=action.value, resource_id=request_id)
        _require_strings(updates, updates, action, request_id)

        after = replace(request)
        if "title" in updates:
            title = (updates["title"] or "").strip()
            if not title:
                raise ValidationError("title cannot be empty", action=action.value, resource_id=request_id)
            after.title = title
        if "description" in updates:
            after.description = updates["description"] or ""
        if "priority" in updates:
            after.priority = parse_priority(updates["priority"])
        if "machineId" in updates:
            after.machine_id = updates["machineId"]
        if "status" in updates:
            after = self._apply_status(after, normalize_status(updates["status"]), principal)

        stored = await self._commit(action, request, after)
        intents = [_log(stored, "Updated Request", f'Request "{stored.title}" updated ({", ".join(sorted(updates))})')]
        if stored.status != request.status:
            intents += _notify(stored.created_by, "Request Status Updated",
                               f'Status changed to {stored.status} for "{stored.title}".', principal)
        return await self._finish(principal, stored, intents)

    # ── deletion ──────────────────────────────────────────────────────────────

    async def _delete(self, principal: Principal, request: Request, action: Action) -> Outcome:
        try:
            removed = await self.store.delete_request(request.id, request.version)
        except StaleWriteError as e:
            logger.warning("🔒 Lost delete race on %s: %s", request.id, e)
            raise Conflict(f"Request '{request.id}' was modified concurrently; reload and retry",
                           action=action.value, resource_id=request.id) from e
        logger.info("🗑️  Request %s deleted by %s (%d assignment entries)", request.id, principal.id, len(removed))

        intents = [_log(request, "Deleted Request", f'Request "{request.title}" deleted by {principal.id}')]
        intents += _notify(request.created_by, "Request Deleted",
                           f'Your request "{request.title}" has been deleted by an admin.', principal)
        if request.deletion_requested_by and request.deletion_requested_by != request.created_by:
            intents += _notify(request.deletion_requested_by, "Request Deletion Approved",
                               f'Your deletion request for "{request.title}" was approved.', principal)
        return await self._finish(principal, {"id": request.id, "removedAssignmentIds": removed}, intents)

    @_outcome(Action.DELETE_REQUEST)
    async def delete(self, principal: Principal, request_id: str) -> Outcome:
        action = Action.DELETE_REQUEST
        require(principal, action, resource_id=request_id)
        request = await self._load(request_id, action)
        return await self._delete(principal, request, action)

    @_outcome(Action.REQUEST_DELETE_REQUEST)
    async def request_deletion(self, principal: Principal, request_id: str) -> Outcome:
        action = Action.REQUEST_DELETE_REQUEST
        require(principal, action, resource_id=request_id)
        request = await self._load(request_id, action)
        require(principal, Action.VIEW_REQUEST, request, resource_id=request_id)

        if request.deletion_requested_by == principal.id:
            return Outcome.success(request)
        if request.deletion_requested_by:
            raise Conflict(f"Deletion of '{request_id}' was already requested",
                           action=action.value, resource_id=request_id)

        after = replace(request, deletion_requested_by=principal.id, deletion_requested_at=self._clock())
        stored = await self._commit(action, request, after)

        intents = [_log(stored, "Requested Deletion",
                        f'User {principal.id} requested deletion of request "{stored.title}"')]
        for uid in await self._manager_ids():
            intents += _notify(uid, "Request Deletion Requested",
                               f'User {principal.id} requested deletion of request "{stored.title}".', principal)
        return await self._finish(principal, stored, intents)

    @_outcome(Action.DELETE_REQUEST)
    async def approve_deletion(self, principal: Principal, request_id: str) -> Outcome:
        action = Action.DELETE_REQUEST
        require(principal, action, resource_id=request_id)
        request = await self._load(request_id, action)
        if not request.deletion_requested_by:
            raise Conflict(f"No deletion request is pending for '{request_id}'",
                           action=action.value, resource_id=request_id)
        return await self._delete(principal, request, action)

    @_outcome(Action.DELETE_REQUEST)
    async def reject_deletion(self, principal: Principal, request_id: str) -> Outcome:
        action = Action.DELETE_REQUEST
        require(principal, action, resource_id=request_id)
        request = await self._load(request_id, action)
        requester = request.deletion_requested_by
        if not requester:
            raise Conflict(f"No deletion request is pending for '{request_id}'",
                           action=action.value, resource_id=request_id)

        stored = await self._commit(action, request,
                                    replace(request, deletion_requested_by=None, deletion_requested_at=None))
        intents = [_log(stored, "Rejected Deletion", f'Deletion of "{stored.title}" rejected by {principal.id}')]
        intents += _notify(requester, "Request Deletion Rejected",
                           f'Your deletion request for "{stored.title}" was rejected.', principal)
        return await self._finish(principal, stored, intents)

    # ── reads ─────────────────────────────────────────────────────────────────

    @_outcome(Action.VIEW_REQUEST)
    async def get_request(self, principal: Principal, request_id: str) -> Outcome:
        action = Action.VIEW_REQUEST
        require(principal, action, resource_id=request_id)
        request = await self._load(request_id, action)
        require(principal, action, request, resource_id=request_id)
        return Outcome.success(request)

    @_outcome(Action.VIEW_REQUEST)
    async def list_requests(self, principal: Principal) -> Outcome:
        require(principal, Action.VIEW_REQUEST)
        requests = await self.store.list_requests()
        if not can_perform(principal, Action.VIEW_ALL_REQUESTS):
            requests = [r for r in requests if can_perform(principal, Action.VIEW_REQUEST, r)]
        requests.sort(key=lambda r: r.created_at, reverse=True)
        return Outcome.success(requests)

    @_outcome(Action.GET_ASSIGNMENTS_FOR_USER)
    async def list_assignments(self, principal: Principal, technician_id: Optional[str] = None,
                               request_id: Optional[str] = None) -> Outcome:
        if can_perform(principal, Action.GET_ALL_ASSIGNMENTS):
            return Outcome.success(await self.store.list_assignments(request_id, technician_id))

        action = Action.GET_ASSIGNMENTS_FOR_USER
        require(principal, action)
        if technician_id not in (None, principal.id):
            raise Unauthorized("Technicians may only list their own assignments", action=action.value)
        items = await self.store.list_assignments(technician_id=principal.id)
        if request_id is not None:
            items = [a for a in items if a.request_id == request_id]
        return Outcome.success([a for a in items if can_perform(principal, Action.VIEW_ASSIGNMENT, a)])

    @_outcome(Action.VIEW_ASSIGNMENT)
    async def get_assignment(self, principal: Principal, assignment_id: str) -> Outcome:
        action = Action.VIEW_ASSIGNMENT
        require(principal, action, resource_id=assignment_id)
        assignment = await self.store.get_assignment(assignment_id)
        if assignment is None:
            raise NotFound(f"Assignment '{assignment_id}' not found", action=action.value, resource_id=assignment_id)
        require(principal, action, assignment, resource_id=assignment_id)
        return Outcome.success(assignment)

    @_outcome(Action.DELETE_ASSIGNMENT)
    async def delete_assignment(self, principal: Principal, assignment_id: str) -> Outcome:
        action = Action.DELETE_ASSIGNMENT
        require(principal, action, resource_id=assignment_id)
        assignment = await self.store.get_assignment(assignment_id)
        if assignment is None:
            raise NotFound(f"Assignment '{assignment_id}' not found", action=action.value, resource_id=assignment_id)

        request = await self.store.get_request(assignment.request_id)

        # The backing check runs inside the store's delete, against the state it deletes from
        try:
            deleted = await self.store.delete_assignment(assignment_id)
        except AssigneeBackingError as e:
            raise Conflict(
                f"Assignment '{assignment_id}' backs the current assignee of '{e.request_id}'; unassign first",
                action=action.value, resource_id=assignment_id,
            ) from e
        except StaleWriteError as e:
            logger.warning("🔒 Lost delete race on assignment %s: %s", assignment_id, e)
            raise Conflict(f"Assignment '{assignment_id}' changed concurrently; reload and retry",
                           action=action.value, resource_id=assignment_id) from e
        if not deleted:
            raise NotFound(f"Assignment '{assignment_id}' not found", action=action.value, resource_id=assignment_id)

        intents = [_log(request, "Deleted Assignment", f"Assignment {assignment_id} deleted by {principal.id}")] \
            if request is not None else []
        return await self._finish(principal, assignment, intents)
