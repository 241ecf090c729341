"""Request lifecycle rules.

Every path that changes ``ServiceRequest.status`` goes through
:func:`validate_transition`. The table is keyed by the caller's role on the
request, so the same status may be reachable for one party and not the other
(only the provider can accept, only the requester can cancel a pending one).
"""

from typing import Dict, FrozenSet, Optional, Set

from petmarket.models import RequestStatus, ServiceRequest
from petmarket.services.errors import AuthorizationError, InvalidTransitionError


TERMINAL_STATUSES: FrozenSet[str] = frozenset({"completed", "cancelled", "rejected"})

PROVIDER_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "pending": frozenset({"accepted", "rejected"}),
    "accepted": frozenset({"completed", "cancelled"}),
}

REQUESTER_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "pending": frozenset({"cancelled"}),
    "accepted": frozenset({"cancelled"}),
}


def caller_roles(request: ServiceRequest, caller_id: Optional[str]) -> Set[str]:
    roles: Set[str] = set()
    if not caller_id:
        return roles
    if caller_id == request.provider_id:
        roles.add("provider")
    if caller_id == request.requester_id:
        roles.add("requester")
    return roles


def allowed_transitions(request: ServiceRequest, caller_id: Optional[str]) -> FrozenSet[str]:
    """Statuses ``caller_id`` may move ``request`` to; empty for strangers."""
    roles = caller_roles(request, caller_id)
    allowed: Set[str] = set()
    if "provider" in roles:
        allowed |= PROVIDER_TRANSITIONS.get(request.status, frozenset())
    if "requester" in roles:
        allowed |= REQUESTER_TRANSITIONS.get(request.status, frozenset())
    allowed.discard(request.status)
    return frozenset(allowed)


def validate_transition(request: ServiceRequest, caller_id: Optional[str], target_status: RequestStatus) -> None:
    if not caller_roles(request, caller_id):
        raise AuthorizationError("You are not authorized to update this request")

    current_status = request.status
    if current_status in TERMINAL_STATUSES:
        raise InvalidTransitionError(f"Request is already {current_status}")
    if target_status == current_status:
        raise InvalidTransitionError(f"Request is already {current_status}")
    if target_status not in allowed_transitions(request, caller_id):
        raise InvalidTransitionError(f"Cannot change status from {current_status} to {target_status}")
