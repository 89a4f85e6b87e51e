# shared_types.py  ──  the only file every module shares
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Optional

Role = Literal['operator', 'technician', 'lead', 'admin']
ROLES: tuple[str, ...] = ('operator', 'technician', 'lead', 'admin')

CanonicalStatus = Literal['Pending', 'In Progress', 'Done']
CANONICAL_STATUSES: tuple[str, ...] = ('Pending', 'In Progress', 'Done')

Priority = Literal['Low', 'Medium', 'High', 'Critical']
PRIORITIES: tuple[str, ...] = ('Low', 'Medium', 'High', 'Critical')

ProposedStatus = Literal['Resolved', 'NotAbleToFix']
Decision = Literal['approved', 'rejected']
ResolutionPhase = Literal['pending', 'approved', 'rejected']
AssignmentKind = Literal['placeholder', 'assigned', 'reassigned', 'unassigned']
IntentType = Literal['notify', 'log']


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Principal:
    id: str
    role: Role


@dataclass
class UserRecord:
    id: str
    role: Role
    name: str = ""
    is_active: bool = True


@dataclass(frozen=True)
class Resolution:
    phase: ResolutionPhase
    status: ProposedStatus                 # Resolved | NotAbleToFix, kept after the decision
    by: str                                # proposing technician
    at: datetime
    decided_by: Optional[str] = None
    decided_at: Optional[datetime] = None


@dataclass
class Request:
    id: str
    title: str
    created_by: str
    created_at: datetime
    description: str = ""
    machine_id: Optional[str] = None
    priority: Priority = 'Medium'
    status: CanonicalStatus = 'Pending'
    assigned_to: Optional[str] = None
    assigned_by: Optional[str] = None
    participants: list[str] = field(default_factory=list)
    resolution: Optional[Resolution] = None
    deletion_requested_by: Optional[str] = None
    deletion_requested_at: Optional[datetime] = None
    version: int = 0                       # bumped by the store on every commit

    @property
    def has_pending_resolution(self) -> bool:
        return self.resolution is not None and self.resolution.phase == 'pending'


@dataclass(frozen=True)
class Assignment:
    id: str
    request_id: str
    technician_id: Optional[str]
    assigned_by: Optional[str]
    assigned_at: datetime
    kind: AssignmentKind = 'assigned'


@dataclass(frozen=True)
class RoleChange:
    """Resource for elevateRole / demoteRole checks."""
    user_id: str
    target_role: str


@dataclass(frozen=True)
class Intent:
    type: IntentType
    target: str          # user id for notify, request id for log
    message: str
    title: str = ""
    audience: tuple[str, ...] = ()   # participants who may read a log entry

    def to_dict(self) -> dict:
        return {"type": self.type, "target": self.target, "title": self.title, "message": self.message}


@dataclass(frozen=True)
class Failure:
    kind: str            # Unauthorized | NotFound | Conflict | ValidationError | ConfigurationError
    message: str
    action: Optional[str] = None
    resource_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "error": self.kind,
            "message": self.message,
            "action": self.action,
            "resourceId": self.resource_id,
        }


@dataclass
class Outcome:
    ok: bool
    value: Any = None
    intents: list[Intent] = field(default_factory=list)
    error: Optional[Failure] = None

    @classmethod
    def success(cls, value: Any, intents: Optional[list[Intent]] = None) -> "Outcome":
        return cls(ok=True, value=value, intents=list(intents or []))

    @classmethod
    def failure(cls, error: Failure) -> "Outcome":
        return cls(ok=False, error=error)
