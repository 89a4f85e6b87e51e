# tests/test_lifecycle.py
# Request lifecycle engine against the in-memory store.
# Run: pytest tests/test_lifecycle.py -v

import asyncio
from dataclasses import replace

import pytest

from errors import StaleWriteError, StoreUnavailable
from lifecycle import LifecycleEngine
from shared_types import CANONICAL_STATUSES, Principal
from sinks import drain

OPERATOR = Principal(id="op-1", role="operator")
OTHER_OPERATOR = Principal(id="op-2", role="operator")
TECH_X = Principal(id="tech-1", role="technician")
TECH_Y = Principal(id="tech-2", role="technician")
LEAD = Principal(id="lead-1", role="lead")
ADMIN = Principal(id="admin-1", role="admin")


async def _new_request(engine, creator=OPERATOR, title="Hydraulic press leaking"):
    outcome = await engine.create(creator, {"title": title, "priority": "High", "machineId": "m-7"})
    assert outcome.ok, outcome.error
    return outcome.value


async def _assigned_request(engine, technician=TECH_X):
    request = await _new_request(engine)
    outcome = await engine.assign(LEAD, request.id, technician.id)
    assert outcome.ok, outcome.error
    return outcome.value


# ─────────────────────────────────────────────────────────────────────────────
# Create
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_starts_pending_with_creator_as_participant(engine, store, sink):
    request = await _new_request(engine)
    assert request.status == "Pending"
    assert request.participants == [OPERATOR.id]
    assert request.priority == "High"
    assert request.version == 1

    entries = await store.list_assignments(request_id=request.id)
    assert [a.kind for a in entries] == ["placeholder"]
    assert entries[0].technician_id is None

    notified = {i.target for i in sink.of_type("notify")}
    assert notified == {"lead-1", "admin-1"}
    assert [i.title for i in sink.of_type("log")] == ["Created Request"]


@pytest.mark.asyncio
async def test_create_requires_title(engine):
    outcome = await engine.create(OPERATOR, {"title": "   "})
    assert not outcome.ok
    assert outcome.error.kind == "ValidationError"
    assert outcome.error.action == "createRequest"


@pytest.mark.asyncio
async def test_create_rejects_unknown_priority(engine):
    outcome = await engine.create(OPERATOR, {"title": "Fan", "priority": "whenever"})
    assert outcome.error.kind == "ValidationError"


# ─────────────────────────────────────────────────────────────────────────────
# Assignment
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_assign_same_technician_twice_keeps_participants_a_set(engine):
    request = await _assigned_request(engine)
    again = await engine.assign(LEAD, request.id, TECH_X.id)
    assert again.ok
    assert again.value.participants.count(TECH_X.id) == 1
    assert again.value.participants == [OPERATOR.id, TECH_X.id]


@pytest.mark.asyncio
async def test_assign_records_entry_and_notifies(engine, store, sink):
    request = await _assigned_request(engine)
    assert request.assigned_to == TECH_X.id
    assert request.assigned_by == LEAD.id

    entries = await store.list_assignments(request_id=request.id)
    assert [a.kind for a in entries] == ["placeholder", "assigned"]
    assert TECH_X.id in {i.target for i in sink.of_type("notify")}


@pytest.mark.asyncio
async def test_assign_to_other_technician_when_assigned_is_conflict(engine):
    request = await _assigned_request(engine)
    outcome = await engine.assign(LEAD, request.id, TECH_Y.id)
    assert outcome.error.kind == "Conflict"


@pytest.mark.asyncio
@pytest.mark.parametrize("technician_id, kind", [
    (None, "ValidationError"),
    ("ghost", "NotFound"),
    ("lead-1", "ValidationError"),
    ("tech-idle", "Conflict"),
])
async def test_assign_validates_technician(engine, technician_id, kind):
    request = await _new_request(engine)
    outcome = await engine.assign(LEAD, request.id, technician_id)
    assert outcome.error.kind == kind


@pytest.mark.asyncio
async def test_operator_cannot_assign(engine):
    request = await _new_request(engine)
    outcome = await engine.assign(OPERATOR, request.id, TECH_X.id)
    assert outcome.error.kind == "Unauthorized"
    assert outcome.error.resource_id == request.id


@pytest.mark.asyncio
async def test_assign_missing_request_is_not_found(engine):
    outcome = await engine.assign(LEAD, "nope", TECH_X.id)
    assert outcome.error.kind == "NotFound"


@pytest.mark.asyncio
async def test_reassign_moves_request_and_logs_entry(engine, store):
    request = await _assigned_request(engine)
    outcome = await engine.reassign(ADMIN, request.id, TECH_Y.id)
    assert outcome.ok
    assert outcome.value.assigned_to == TECH_Y.id
    assert TECH_Y.id in outcome.value.participants

    kinds = [a.kind for a in await store.list_assignments(request_id=request.id)]
    assert kinds[-1] == "reassigned"


@pytest.mark.asyncio
async def test_reassign_requires_admin_and_existing_assignee(engine):
    request = await _new_request(engine)
    assert (await engine.reassign(LEAD, request.id, TECH_Y.id)).error.kind == "Unauthorized"
    assert (await engine.reassign(ADMIN, request.id, TECH_Y.id)).error.kind == "Conflict"


@pytest.mark.asyncio
async def test_unassign_clears_assignee_and_participant(engine, store):
    request = await _assigned_request(engine)
    outcome = await engine.unassign(ADMIN, request.id)
    assert outcome.ok
    assert outcome.value.assigned_to is None
    assert outcome.value.participants == [OPERATOR.id]

    last = (await store.list_assignments(request_id=request.id))[-1]
    assert last.kind == "unassigned"
    assert last.technician_id is None

    again = await engine.unassign(ADMIN, request.id)
    assert again.error.kind == "Conflict"


# ─────────────────────────────────────────────────────────────────────────────
# Resolution workflow
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_unassigned_technician_cannot_propose(engine, store):
    request = await _assigned_request(engine)
    outcome = await engine.propose_resolution(TECH_Y, request.id, "Resolved")
    assert outcome.error.kind == "Unauthorized"

    after = await store.get_request(request.id)
    assert after.resolution is None
    assert after.version == request.version


@pytest.mark.asyncio
async def test_second_proposal_while_pending_is_conflict(engine, store):
    request = await _assigned_request(engine)
    first = await engine.propose_resolution(TECH_X, request.id, "Resolved")
    assert first.ok

    second = await engine.propose_resolution(TECH_X, request.id, "NotAbleToFix")
    assert second.error.kind == "Conflict"
    stored = await store.get_request(request.id)
    assert stored.resolution == first.value.resolution
    assert stored.resolution.status == "Resolved"


@pytest.mark.asyncio
async def test_concurrent_proposals_only_one_wins(engine, store):
    request = await _assigned_request(engine)
    results = await asyncio.gather(
        engine.propose_resolution(TECH_X, request.id, "Resolved"),
        engine.propose_resolution(TECH_X, request.id, "NotAbleToFix"),
    )
    assert sorted(r.ok for r in results) == [False, True]
    loser = next(r for r in results if not r.ok)
    assert loser.error.kind == "Conflict"
    assert (await store.get_request(request.id)).has_pending_resolution


@pytest.mark.asyncio
async def test_invalid_proposed_status_is_validation_error(engine):
    request = await _assigned_request(engine)
    outcome = await engine.propose_resolution(TECH_X, request.id, "Done")
    assert outcome.error.kind == "ValidationError"
    assert outcome.error.resource_id == request.id


@pytest.mark.asyncio
async def test_approving_not_able_to_fix_closes_request(engine):
    request = await _assigned_request(engine)
    await engine.propose_resolution(TECH_X, request.id, "NotAbleToFix")
    outcome = await engine.approve_resolution(LEAD, request.id, "approved")
    assert outcome.ok
    assert outcome.value.status == "Done"
    assert outcome.value.resolution.phase == "approved"
    assert outcome.value.resolution.status == "NotAbleToFix"


@pytest.mark.asyncio
async def test_rejecting_reverts_to_pending_and_allows_new_proposal(engine):
    request = await _assigned_request(engine)
    await engine.update_status(TECH_X, request.id, "in progress")
    await engine.propose_resolution(TECH_X, request.id, "Resolved")

    rejected = await engine.approve_resolution(ADMIN, request.id, "rejected")
    assert rejected.value.status == "Pending"
    assert not rejected.value.has_pending_resolution

    retry = await engine.propose_resolution(TECH_X, request.id, "Resolved")
    assert retry.ok
    assert retry.value.has_pending_resolution


@pytest.mark.asyncio
async def test_approve_without_pending_proposal_is_conflict(engine):
    request = await _assigned_request(engine)
    outcome = await engine.approve_resolution(LEAD, request.id, "approved")
    assert outcome.error.kind == "Conflict"


@pytest.mark.asyncio
async def test_non_creator_operator_cannot_approve(engine):
    request = await _assigned_request(engine)
    await engine.propose_resolution(TECH_X, request.id, "Resolved")
    outcome = await engine.approve_resolution(OTHER_OPERATOR, request.id, "approved")
    assert outcome.error.kind == "Unauthorized"


@pytest.mark.asyncio
async def test_user_approval_is_creator_only(engine):
    request = await _assigned_request(engine)
    await engine.propose_resolution(TECH_X, request.id, "Resolved")

    stranger = await engine.user_approve_resolution(OTHER_OPERATOR, request.id, "approved")
    assert stranger.error.kind == "Unauthorized"

    outcome = await engine.user_approve_resolution(OPERATOR, request.id, "approved")
    assert outcome.ok
    assert outcome.value.status == "Done"
    assert outcome.value.resolution.decided_by == OPERATOR.id


@pytest.mark.asyncio
async def test_approval_on_missing_request_only_reveals_absence_to_managers(engine):
    for principal in (OTHER_OPERATOR, TECH_X):
        outcome = await engine.approve_resolution(principal, "missing", "approved")
        assert outcome.error.kind == "Unauthorized"
    assert (await engine.user_approve_resolution(OPERATOR, "missing", "approved")).error.kind == "Unauthorized"
    assert (await engine.approve_resolution(LEAD, "missing", "approved")).error.kind == "NotFound"


@pytest.mark.asyncio
async def test_closing_via_status_settles_pending_proposal(engine):
    request = await _assigned_request(engine)
    await engine.propose_resolution(TECH_X, request.id, "Resolved")
    outcome = await engine.update_status(LEAD, request.id, "Completed")
    assert outcome.value.status == "Done"
    assert outcome.value.resolution.phase == "approved"
    assert outcome.value.resolution.decided_by == LEAD.id


# ─────────────────────────────────────────────────────────────────────────────
# Status and field updates
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
@pytest.mark.parametrize("raw, expected", [
    ("NOT STARTED", "Pending"),
    ("In Progress", "In Progress"),
    ("Unfixable", "Done"),
    ("something odd", "Pending"),
])
async def test_update_status_always_lands_on_canonical_value(engine, raw, expected):
    request = await _assigned_request(engine)
    outcome = await engine.update_status(TECH_X, request.id, raw)
    assert outcome.ok
    assert outcome.value.status == expected
    assert outcome.value.status in CANONICAL_STATUSES


@pytest.mark.asyncio
async def test_update_status_unchanged_is_a_quiet_success(engine, sink):
    request = await _new_request(engine)
    before = len(sink.delivered)
    outcome = await engine.update_status(LEAD, request.id, "pending")
    assert outcome.ok
    assert outcome.intents == []
    assert outcome.value.version == request.version
    assert len(sink.delivered) == before


@pytest.mark.asyncio
async def test_operator_cannot_update_status(engine):
    request = await _new_request(engine)
    outcome = await engine.update_status(OPERATOR, request.id, "Done")
    assert outcome.error.kind == "Unauthorized"


@pytest.mark.asyncio
async def test_update_request_fields(engine):
    request = await _assigned_request(engine)
    outcome = await engine.update_request(TECH_X, request.id, {"description": "Seal replaced", "priority": "low"})
    assert outcome.ok
    assert outcome.value.description == "Seal replaced"
    assert outcome.value.priority == "Low"


@pytest.mark.asyncio
async def test_technician_cannot_edit_foreign_request(engine):
    request = await _assigned_request(engine)
    outcome = await engine.update_request(TECH_Y, request.id, {"title": "Mine now"})
    assert outcome.error.kind == "Unauthorized"


@pytest.mark.asyncio
async def test_update_request_status_field_is_manager_only(engine):
    request = await _assigned_request(engine)
    tech = await engine.update_request(TECH_X, request.id, {"status": "Done"})
    assert tech.error.kind == "ValidationError"

    lead = await engine.update_request(LEAD, request.id, {"status": "in progress"})
    assert lead.value.status == "In Progress"


@pytest.mark.asyncio
@pytest.mark.parametrize("fields", [
    {"title": 42},
    {"machineId": {"id": "m-1"}},
    {"description": ["seal", "gasket"]},
    {"priority": 3},
])
async def test_update_request_rejects_non_string_fields(engine, fields):
    request = await _new_request(engine)
    outcome = await engine.update_request(LEAD, request.id, fields)
    assert outcome.error.kind == "ValidationError"
    assert outcome.error.resource_id == request.id


@pytest.mark.asyncio
async def test_create_rejects_non_string_title(engine):
    outcome = await engine.create(OPERATOR, {"title": ["Press", "leak"]})
    assert outcome.error.kind == "ValidationError"


# ─────────────────────────────────────────────────────────────────────────────
# Deletion
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_delete_cascades_assignments(engine, store):
    request = await _assigned_request(engine)
    outcome = await engine.delete(ADMIN, request.id)
    assert outcome.ok
    assert len(outcome.value["removedAssignmentIds"]) == 2
    assert await store.get_request(request.id) is None
    assert await store.list_assignments(request_id=request.id) == []


@pytest.mark.asyncio
async def test_only_admin_deletes(engine):
    request = await _new_request(engine)
    assert (await engine.delete(LEAD, request.id)).error.kind == "Unauthorized"
    assert (await engine.delete(ADMIN, "missing")).error.kind == "NotFound"


@pytest.mark.asyncio
async def test_deletion_request_workflow(engine, store, sink):
    request = await _new_request(engine)
    asked = await engine.request_deletion(OPERATOR, request.id)
    assert asked.ok
    assert asked.value.deletion_requested_by == OPERATOR.id
    assert {"lead-1", "admin-1"} <= {i.target for i in asked.intents if i.type == "notify"}

    # same user again is a no-op
    again = await engine.request_deletion(OPERATOR, request.id)
    assert again.ok
    assert again.value.version == asked.value.version

    rejected = await engine.reject_deletion(ADMIN, request.id)
    assert rejected.value.deletion_requested_by is None

    await engine.request_deletion(OPERATOR, request.id)
    approved = await engine.approve_deletion(ADMIN, request.id)
    assert approved.ok
    assert await store.get_request(request.id) is None


@pytest.mark.asyncio
async def test_outsider_cannot_request_deletion(engine):
    request = await _new_request(engine)
    outcome = await engine.request_deletion(OTHER_OPERATOR, request.id)
    assert outcome.error.kind == "Unauthorized"


@pytest.mark.asyncio
async def test_approve_deletion_without_request_is_conflict(engine):
    request = await _new_request(engine)
    outcome = await engine.approve_deletion(ADMIN, request.id)
    assert outcome.error.kind == "Conflict"


# ─────────────────────────────────────────────────────────────────────────────
# Reads
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_list_requests_is_scoped_by_role(engine):
    mine = await _new_request(engine, creator=OPERATOR, title="Mine")
    await _new_request(engine, creator=OTHER_OPERATOR, title="Theirs")

    own = await engine.list_requests(OPERATOR)
    assert [r.id for r in own.value] == [mine.id]

    everything = await engine.list_requests(LEAD)
    assert len(everything.value) == 2


@pytest.mark.asyncio
async def test_get_request_hides_foreign_request(engine):
    request = await _new_request(engine)
    assert (await engine.get_request(OTHER_OPERATOR, request.id)).error.kind == "Unauthorized"
    assert (await engine.get_request(OPERATOR, request.id)).value.id == request.id


@pytest.mark.asyncio
async def test_technician_lists_only_own_assignments(engine):
    first = await _assigned_request(engine, technician=TECH_X)
    await _assigned_request(engine, technician=TECH_Y)

    own = await engine.list_assignments(TECH_X)
    assert {a.technician_id for a in own.value} == {TECH_X.id}
    assert {a.request_id for a in own.value} == {first.id}

    foreign = await engine.list_assignments(TECH_X, technician_id=TECH_Y.id)
    assert foreign.error.kind == "Unauthorized"

    everything = await engine.list_assignments(LEAD)
    assert len(everything.value) == 4


@pytest.mark.asyncio
async def test_get_assignment_resource_check(engine, store):
    request = await _assigned_request(engine)
    entry = (await store.list_assignments(technician_id=TECH_X.id))[0]
    assert (await engine.get_assignment(TECH_X, entry.id)).ok
    assert (await engine.get_assignment(TECH_Y, entry.id)).error.kind == "Unauthorized"
    assert (await engine.get_assignment(LEAD, "nope")).error.kind == "NotFound"
    assert entry.request_id == request.id


@pytest.mark.asyncio
async def test_delete_assignment_refuses_only_backing_entry(engine, store):
    request = await _assigned_request(engine)
    entries = await store.list_assignments(request_id=request.id)
    backing = next(a for a in entries if a.technician_id == TECH_X.id)
    placeholder = next(a for a in entries if a.kind == "placeholder")

    assert (await engine.delete_assignment(ADMIN, backing.id)).error.kind == "Conflict"
    assert (await engine.delete_assignment(ADMIN, placeholder.id)).ok
    assert await store.get_assignment(placeholder.id) is None


@pytest.mark.asyncio
async def test_concurrent_assignment_deletes_keep_one_backing_entry(yielding_store, sink):
    engine = LifecycleEngine(yielding_store, sinks=[sink])
    request = await _assigned_request(engine)
    assert (await engine.assign(LEAD, request.id, TECH_X.id)).ok
    backing = [a for a in await yielding_store.list_assignments(request_id=request.id)
               if a.technician_id == TECH_X.id]
    assert len(backing) == 2

    outcomes = await asyncio.gather(*(engine.delete_assignment(ADMIN, a.id) for a in backing))

    assert sorted(o.ok for o in outcomes) == [False, True]
    assert next(o for o in outcomes if not o.ok).error.kind == "Conflict"
    stored = await yielding_store.get_request(request.id)
    assert stored.assigned_to == TECH_X.id
    left = [a for a in await yielding_store.list_assignments(request_id=request.id)
            if a.technician_id == TECH_X.id]
    assert len(left) == 1


@pytest.mark.asyncio
async def test_assignment_delete_losing_store_race_is_conflict(engine, store):
    request = await _new_request(engine)
    placeholder = (await store.list_assignments(request_id=request.id))[0]

    async def raced_delete(assignment_id):
        raise StaleWriteError(f"assignment:{assignment_id}", 0, None)

    store.delete_assignment = raced_delete
    outcome = await engine.delete_assignment(ADMIN, placeholder.id)
    assert outcome.error.kind == "Conflict"
    assert outcome.error.resource_id == placeholder.id


# ─────────────────────────────────────────────────────────────────────────────
# Concurrency and side effects
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_lost_race_is_conflict_and_keeps_winner(engine, store):
    request = await _assigned_request(engine)
    real_commit = store.commit_request

    async def racing_commit(after, expected_version, assignments=()):
        # another writer lands between our snapshot and our commit
        await real_commit(replace(request, title="winner"), request.version)
        return await real_commit(after, expected_version, assignments)

    store.commit_request = racing_commit
    outcome = await engine.update_status(TECH_X, request.id, "in progress")
    store.commit_request = real_commit

    assert outcome.error.kind == "Conflict"
    assert outcome.intents == []
    stored = await store.get_request(request.id)
    assert stored.title == "winner"
    assert stored.status == "Pending"
    with pytest.raises(StaleWriteError):
        await store.commit_request(replace(request, title="late"), request.version)


@pytest.mark.asyncio
async def test_failing_sink_does_not_fail_operation(store, failing_sink, caplog):
    engine = LifecycleEngine(store, sinks=[failing_sink])
    outcome = await engine.create(OPERATOR, {"title": "Chiller alarm"})
    assert outcome.ok
    assert await store.get_request(outcome.value.id) is not None
    assert "sink offline" in caplog.text


class SlowOutbound:
    """Outbound sink (webhook-like) that takes its time and may fail."""

    inline = False

    def __init__(self, delay: float = 0.5, fail: bool = False):
        self.delay = delay
        self.fail = fail
        self.delivered = []

    async def deliver(self, intent, actor):
        await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("webhook timed out")
        self.delivered.append(intent)


@pytest.mark.asyncio
async def test_slow_outbound_sink_does_not_hold_up_the_operation(store, sink):
    slow = SlowOutbound(delay=0.5)
    engine = LifecycleEngine(store, sinks=[sink, slow])
    loop = asyncio.get_running_loop()

    started = loop.time()
    outcome = await engine.create(OPERATOR, {"title": "Chiller alarm"})
    elapsed = loop.time() - started

    assert outcome.ok
    assert elapsed < 0.25
    assert len(sink.delivered) == len(outcome.intents)    # in-process sinks are already done
    assert slow.delivered == []

    await drain()
    assert len(slow.delivered) == len(outcome.intents)
    assert all(intent in outcome.intents for intent in slow.delivered)


@pytest.mark.asyncio
async def test_background_delivery_failure_is_logged(store, caplog):
    engine = LifecycleEngine(store, sinks=[SlowOutbound(delay=0, fail=True)])
    outcome = await engine.create(OPERATOR, {"title": "Chiller alarm"})
    assert outcome.ok
    await drain()
    assert "webhook timed out" in caplog.text


@pytest.mark.asyncio
async def test_intents_are_not_emitted_for_failed_operations(engine, sink):
    request = await _new_request(engine)
    before = len(sink.delivered)
    outcome = await engine.assign(OPERATOR, request.id, TECH_X.id)
    assert not outcome.ok
    assert outcome.intents == []
    assert len(sink.delivered) == before


@pytest.mark.asyncio
async def test_store_unavailable_propagates():
    class DownStore:
        backend = "down"

        async def get_request(self, request_id):
            raise StoreUnavailable("redis gone")

    engine = LifecycleEngine(DownStore())
    with pytest.raises(StoreUnavailable):
        await engine.get_request(LEAD, "req-1")


# ─────────────────────────────────────────────────────────────────────────────
# End-to-end
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_full_ticket_lifecycle(engine, store):
    created = await engine.create(OPERATOR, {"title": "Lathe spindle noise"})
    request = created.value
    assert request.status == "Pending"
    assert request.participants == [OPERATOR.id]

    assigned = (await engine.assign(LEAD, request.id, TECH_X.id)).value
    assert assigned.assigned_to == TECH_X.id
    assert assigned.participants == [OPERATOR.id, TECH_X.id]

    proposed = (await engine.propose_resolution(TECH_X, request.id, "Resolved")).value
    assert proposed.resolution.status == "Resolved"
    assert proposed.resolution.phase == "pending"
    assert proposed.status == "Pending"

    approved = (await engine.approve_resolution(OPERATOR, request.id, "approved")).value
    assert approved.status == "Done"
    assert approved.resolution.phase == "approved"

    deleted = await engine.delete(ADMIN, request.id)
    assert deleted.ok
    assert await store.get_request(request.id) is None
    assert await store.list_assignments(request_id=request.id) == []
