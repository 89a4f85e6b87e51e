# status_rules.py
# Status normalization, input parsing, and the record <-> wire mapping.
#
# Every request that leaves the core goes through request_to_dict, and every
# stored record comes back through request_from_dict, so raw / legacy status
# strings and the old dual approval fields never reach callers.

from datetime import datetime
from typing import Any, Iterable, Optional

from errors import ValidationError
from shared_types import (
    PRIORITIES,
    Assignment,
    CanonicalStatus,
    Decision,
    Priority,
    ProposedStatus,
    Request,
    Resolution,
)

_STATUS_MAP: dict[str, CanonicalStatus] = {
    "pending": "Pending",
    "not started": "Pending",
    "in progress": "In Progress",
    "resolved": "Done",
    "done": "Done",
    "completed": "Done",
    "unfixable": "Done",
    "not able to fix": "Done",
}

_PROPOSED_MAP: dict[str, ProposedStatus] = {
    "resolved": "Resolved",
    "notabletofix": "NotAbleToFix",
    "unfixable": "NotAbleToFix",
}


def normalize_status(raw: Optional[str]) -> CanonicalStatus:
    """Map any free-text status to Pending / In Progress / Done. Unknown -> Pending."""
    if not raw or not isinstance(raw, str):
        return "Pending"
    return _STATUS_MAP.get(raw.strip().lower(), "Pending")


def parse_proposed_status(raw: Any) -> ProposedStatus:
    key = "".join(ch for ch in str(raw or "").lower() if ch.isalnum())
    if key not in _PROPOSED_MAP:
        raise ValidationError(f"Invalid proposed status {raw!r}; expected 'Resolved' or 'NotAbleToFix'")
    return _PROPOSED_MAP[key]


def parse_decision(raw: Any) -> Decision:
    value = str(raw or "").strip().lower()
    if value not in ("approved", "rejected"):
        raise ValidationError(f"Invalid decision {raw!r}; expected 'approved' or 'rejected'")
    return value  # type: ignore[return-value]


def parse_priority(raw: Any) -> Priority:
    value = str(raw or "").strip().lower()
    for priority in PRIORITIES:
        if priority.lower() == value:
            return priority  # type: ignore[return-value]
    raise ValidationError(f"Invalid priority {raw!r}; expected one of {list(PRIORITIES)}")


# ── Participants ──────────────────────────────────────────────────────────────

def merge_participants(existing: Iterable[str], *ids: Optional[str]) -> list[str]:
    """Ordered set union. Calling it twice with the same id is a no-op."""
    merged = list(dict.fromkeys(existing))
    for uid in ids:
        if uid and uid not in merged:
            merged.append(uid)
    return merged


def reconcile_participants(request: Request) -> Request:
    # Records written before participants existed only carry createdBy/assignedTo
    request.participants = merge_participants([request.created_by], *request.participants, request.assigned_to)
    return request


# ── Timestamps ────────────────────────────────────────────────────────────────

def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


# ── Resolution sub-state ──────────────────────────────────────────────────────

def _resolution_to_dict(resolution: Optional[Resolution]) -> Optional[dict]:
    if resolution is None:
        return None
    return {
        "phase": resolution.phase,
        "status": resolution.status,
        "by": resolution.by,
        "at": _iso(resolution.at),
        "decidedBy": resolution.decided_by,
        "decidedAt": _iso(resolution.decided_at),
    }


def resolution_from_legacy(record: dict) -> Optional[Resolution]:
    """
    Fold the overlapping approval fields of older records
    (pendingResolution / proposedResolution, resolutionRequestStatus /
    resolutionStatus, userApproval) into one Resolution.
    """
    current = record.get("resolution")
    if isinstance(current, dict) and current.get("phase"):
        return Resolution(
            phase=current["phase"],
            status=parse_proposed_status(current.get("status")),
            by=current.get("by") or "",
            at=_parse_dt(current.get("at")),
            decided_by=current.get("decidedBy"),
            decided_at=_parse_dt(current.get("decidedAt")),
        )

    pending = record.get("pendingResolution")
    if not pending and record.get("proposedResolution"):
        pending = {"status": record["proposedResolution"]}
    request_status = record.get("resolutionRequestStatus") or record.get("resolutionStatus")
    user_approval = record.get("userApproval")

    if not pending and not request_status and not user_approval:
        return None

    if request_status == "pending_approval":
        phase = "pending"
    elif request_status in ("approved", "rejected"):
        phase = request_status
    elif user_approval in ("approved", "rejected"):
        phase = user_approval
    elif pending:
        phase = "pending"
    else:
        return None

    pending = pending if isinstance(pending, dict) else {"status": pending}
    try:
        proposed = parse_proposed_status(pending.get("status"))
    except ValidationError:
        proposed = "Resolved"

    if phase == "pending" and normalize_status(record.get("status")) == "Done":
        # A closed ticket cannot still be awaiting approval
        phase = "approved"

    decided_by = record.get("createdBy") if user_approval in ("approved", "rejected") and phase != "pending" else None
    return Resolution(
        phase=phase,
        status=proposed,
        by=pending.get("by") or record.get("assignedTo") or "",
        at=_parse_dt(pending.get("at")) or _parse_dt(record.get("createdAt")),
        decided_by=decided_by,
    )


def resolution_to_legacy(request: Request) -> dict:
    resolution = request.resolution
    if resolution is None:
        return {"pendingResolution": None, "resolutionRequestStatus": None, "userApproval": None}

    pending = None
    if resolution.phase == "pending":
        pending = {"status": resolution.status, "by": resolution.by, "at": _iso(resolution.at)}

    user_approval = None
    if resolution.phase != "pending" and resolution.decided_by == request.created_by:
        user_approval = resolution.phase

    return {
        "pendingResolution": pending,
        "resolutionRequestStatus": "pending_approval" if resolution.phase == "pending" else resolution.phase,
        "userApproval": user_approval,
    }


# ── Wire mapping ──────────────────────────────────────────────────────────────

def request_to_dict(request: Request) -> dict:
    data = {
        "id": request.id,
        "title": request.title,
        "description": request.description,
        "machineId": request.machine_id,
        "priority": request.priority,
        "status": normalize_status(request.status),
        "createdBy": request.created_by,
        "createdAt": _iso(request.created_at),
        "assignedTo": request.assigned_to,
        "assignedBy": request.assigned_by,
        "participants": list(request.participants),
        "resolution": _resolution_to_dict(request.resolution),
        "deletionRequested": request.deletion_requested_by is not None,
        "deletionRequestedBy": request.deletion_requested_by,
        "deletionRequestedAt": _iso(request.deletion_requested_at),
        "version": request.version,
    }
    data.update(resolution_to_legacy(request))
    return data


def request_from_dict(record: dict) -> Request:
    try:
        priority = parse_priority(record.get("priority"))
    except ValidationError:
        priority = "Medium"

    request = Request(
        id=record["id"],
        title=record.get("title") or "",
        description=record.get("description") or "",
        machine_id=record.get("machineId"),
        priority=priority,
        status=normalize_status(record.get("status")),
        created_by=record.get("createdBy") or "",
        created_at=_parse_dt(record.get("createdAt")),
        assigned_to=record.get("assignedTo"),
        assigned_by=record.get("assignedBy"),
        participants=list(record.get("participants") or []),
        resolution=resolution_from_legacy(record),
        deletion_requested_by=record.get("deletionRequestedBy"),
        deletion_requested_at=_parse_dt(record.get("deletionRequestedAt")),
        version=int(record.get("version") or 0),
    )
    return reconcile_participants(request)


def assignment_to_dict(assignment: Assignment) -> dict:
    return {
        "id": assignment.id,
        "requestId": assignment.request_id,
        "taskId": assignment.request_id,
        "technicianId": assignment.technician_id,
        "assignedBy": assignment.assigned_by,
        "assignedAt": _iso(assignment.assigned_at),
        "kind": assignment.kind,
    }


def assignment_from_dict(record: dict) -> Assignment:
    return Assignment(
        id=record["id"],
        request_id=record.get("requestId") or record.get("taskId"),
        technician_id=record.get("technicianId"),
        assigned_by=record.get("assignedBy"),
        assigned_at=_parse_dt(record.get("assignedAt") or record.get("timestamp") or record.get("createdAt")),
        kind=record.get("kind") or ("assigned" if record.get("technicianId") else "placeholder"),
    )
