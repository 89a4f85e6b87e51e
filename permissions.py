# permissions.py  ──  Authorization Gate
# Static role table + resource checks. Pure: no I/O, never mutates its inputs.

import logging
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Literal, Mapping, Optional, Union

from errors import ConfigurationError, Unauthorized
from shared_types import ROLES, Assignment, Principal, Request, RoleChange

logger = logging.getLogger(__name__)


class Action(str, Enum):
    # Requests
    CREATE_REQUEST = "createRequest"
    VIEW_REQUEST = "viewRequest"
    VIEW_ALL_REQUESTS = "viewAllRequests"
    UPDATE_REQUEST = "updateRequest"
    UPDATE_REQUEST_STATUS = "updateRequestStatus"
    DELETE_REQUEST = "deleteRequest"
    REQUEST_DELETE_REQUEST = "requestDeleteRequest"
    COUNT_REQUESTS = "countRequests"

    # Resolution workflow
    PROPOSE_RESOLUTION = "proposeResolution"
    APPROVE_RESOLUTION = "approveResolution"
    USER_APPROVE_RESOLUTION = "userApproveResolution"

    # Assignments
    ASSIGN_TASK = "assignTask"
    REASSIGN_TASK = "reassignTask"
    UNASSIGN_TASK = "unassignTask"
    DELETE_ASSIGNMENT = "deleteAssignment"
    VIEW_ASSIGNMENT = "viewAssignment"
    VIEW_ASSIGNMENTS = "viewAssignments"
    UPDATE_ASSIGNMENT = "updateAssignment"
    GET_ASSIGNMENTS_FOR_USER = "getAssignmentsForUser"
    GET_ALL_ASSIGNMENTS = "getAllAssignments"

    # Machines
    VIEW_MACHINES = "viewMachines"
    CREATE_MACHINE = "createMachine"
    UPDATE_MACHINE = "updateMachine"
    DELETE_MACHINE = "deleteMachine"
    ADD_MACHINE_TYPE = "addMachineType"
    GET_MACHINE_TYPES = "getMachineTypes"

    # Team / role management
    VIEW_USERS = "viewUsers"
    ELEVATE_ROLE = "elevateRole"
    DEMOTE_ROLE = "demoteRole"
    INVITE_USER = "inviteUser"
    REMOVE_USER = "removeUser"

    # Notifications / history / dashboard
    VIEW_NOTIFICATIONS = "viewNotifications"
    UPDATE_NOTIFICATIONS = "updateNotifications"
    DELETE_NOTIFICATIONS = "deleteNotifications"
    VIEW_HISTORY = "viewHistory"
    VIEW_DASHBOARD = "viewDashboard"


_ALL = frozenset(ROLES)
_STAFF = frozenset({'technician', 'lead', 'admin'})
_MANAGERS = frozenset({'lead', 'admin'})
_ADMIN = frozenset({'admin'})

PERMISSIONS: Mapping[Action, frozenset] = MappingProxyType({
    Action.CREATE_REQUEST: _ALL,
    Action.VIEW_REQUEST: _ALL,
    Action.VIEW_ALL_REQUESTS: _MANAGERS,
    Action.UPDATE_REQUEST: _STAFF,
    Action.UPDATE_REQUEST_STATUS: _STAFF,
    Action.DELETE_REQUEST: _ADMIN,
    Action.REQUEST_DELETE_REQUEST: frozenset({'operator', 'technician'}),
    Action.COUNT_REQUESTS: _MANAGERS,

    Action.PROPOSE_RESOLUTION: frozenset({'technician'}),
    Action.APPROVE_RESOLUTION: _MANAGERS,
    Action.USER_APPROVE_RESOLUTION: _ALL,

    Action.ASSIGN_TASK: _MANAGERS,
    Action.REASSIGN_TASK: _ADMIN,
    Action.UNASSIGN_TASK: _ADMIN,
    Action.DELETE_ASSIGNMENT: _ADMIN,
    Action.VIEW_ASSIGNMENT: _STAFF,
    Action.VIEW_ASSIGNMENTS: _STAFF,
    Action.UPDATE_ASSIGNMENT: _STAFF,
    Action.GET_ASSIGNMENTS_FOR_USER: _STAFF,
    Action.GET_ALL_ASSIGNMENTS: _MANAGERS,

    Action.VIEW_MACHINES: _ALL,
    Action.CREATE_MACHINE: _MANAGERS,
    Action.UPDATE_MACHINE: _MANAGERS,
    Action.DELETE_MACHINE: _ADMIN,
    Action.ADD_MACHINE_TYPE: _MANAGERS,
    Action.GET_MACHINE_TYPES: _ALL,

    Action.VIEW_USERS: _MANAGERS,
    Action.ELEVATE_ROLE: _ADMIN,
    Action.DEMOTE_ROLE: _ADMIN,
    Action.INVITE_USER: _MANAGERS,
    Action.REMOVE_USER: _ADMIN,

    Action.VIEW_NOTIFICATIONS: _ALL,
    Action.UPDATE_NOTIFICATIONS: _ALL,
    Action.DELETE_NOTIFICATIONS: _ADMIN,
    Action.VIEW_HISTORY: _ALL,
    Action.VIEW_DASHBOARD: _ALL,
})

# Actions where a technician only passes for their own assignment entries
_ASSIGNMENT_SCOPED = frozenset({
    Action.VIEW_ASSIGNMENT,
    Action.VIEW_ASSIGNMENTS,
    Action.UPDATE_ASSIGNMENT,
    Action.GET_ASSIGNMENTS_FOR_USER,
})

Resource = Union[Request, Assignment, RoleChange, None]
Reason = Literal['allowed', 'role_denied', 'resource_denied', 'unknown_action', 'no_principal']


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    reason: Reason
    action: str

    def __bool__(self) -> bool:
        return self.allowed


def _resolve_action(action: Union[Action, str]) -> Optional[Action]:
    if isinstance(action, Action):
        return action
    try:
        return Action(action)
    except ValueError:
        return None


def _resource_allows(principal: Principal, action: Action, resource: Resource) -> bool:
    """Attribute checks layered on top of the role table. They only ever narrow."""
    if isinstance(resource, Assignment) and action in _ASSIGNMENT_SCOPED:
        if principal.role == 'technician':
            return resource.technician_id == principal.id
        return True

    if isinstance(resource, Request):
        if action == Action.VIEW_REQUEST and principal.role in ('operator', 'technician'):
            return (
                principal.id in resource.participants
                or principal.id == resource.created_by
                or principal.id == resource.assigned_to
            )
        if action == Action.UPDATE_REQUEST and principal.role == 'technician':
            return principal.id in (resource.created_by, resource.assigned_to)
        return True

    if isinstance(resource, RoleChange) and action in (Action.ELEVATE_ROLE, Action.DEMOTE_ROLE):
        return resource.target_role in ROLES

    return True


def check(principal: Optional[Principal], action: Union[Action, str], resource: Resource = None) -> GateDecision:
    """
    Full gate decision with the reason attached.
    Unknown action names are denied and reported as a configuration problem,
    distinct from an ordinary role denial.
    """
    resolved = _resolve_action(action)
    name = resolved.value if resolved else str(action)

    if resolved is None:
        logger.warning("Permission check for unknown action %r, denying (not in permission table)", name)
        return GateDecision(False, 'unknown_action', name)

    if principal is None:
        return GateDecision(False, 'no_principal', name)

    if principal.role not in PERMISSIONS[resolved]:
        return GateDecision(False, 'role_denied', name)

    if resource is not None and not _resource_allows(principal, resolved, resource):
        return GateDecision(False, 'resource_denied', name)

    return GateDecision(True, 'allowed', name)


def can_perform(principal: Optional[Principal], action: Union[Action, str], resource: Resource = None) -> bool:
    return check(principal, action, resource).allowed


def require(principal: Optional[Principal], action: Union[Action, str], resource: Resource = None,
            resource_id: Optional[str] = None) -> None:
    """Raise instead of returning False. Used by the lifecycle engine."""
    decision = check(principal, action, resource)
    if decision.allowed:
        return
    if decision.reason == 'unknown_action':
        raise ConfigurationError(
            f"Action '{decision.action}' is not defined in the permission table",
            action=decision.action, resource_id=resource_id,
        )
    role = principal.role if principal else "anonymous"
    raise Unauthorized(
        f"Role '{role}' is not allowed to perform '{decision.action}'"
        + (f" on {resource_id}" if resource_id else ""),
        action=decision.action, resource_id=resource_id,
    )


def allowed_actions(role: str) -> list[str]:
    return sorted(a.value for a, roles in PERMISSIONS.items() if role in roles)
