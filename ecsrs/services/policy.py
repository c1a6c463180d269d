"""
Authorization policy for report transitions.

This is the only place role checks live. The lifecycle engine consults it
once per request, and clients read ``allowed_actions`` instead of
re-deriving permissions from roles.
"""
from enum import Enum
from typing import Iterable, List, Optional
from ecsrs.models.enums import AppRole, ReportStatus


class Action(str, Enum):
    SUBMIT = "submit"
    ASSIGN = "assign"
    UNASSIGN = "unassign"
    START_WORK = "start_work"
    RESOLVE = "resolve"
    OVERRIDE = "override"
    CLOSE = "close"


# Statuses an admin may still move anywhere
OPEN_STATUSES = frozenset({
    ReportStatus.SUBMITTED,
    ReportStatus.ASSIGNED,
    ReportStatus.IN_PROGRESS,
})

ALL_STATUSES = frozenset(ReportStatus)

# action -> (allowed source statuses, allowed target statuses)
TRANSITION_TABLE = {
    Action.SUBMIT: (frozenset({None}), frozenset({ReportStatus.SUBMITTED})),
    Action.ASSIGN: (frozenset({ReportStatus.SUBMITTED}), frozenset({ReportStatus.ASSIGNED})),
    Action.UNASSIGN: (frozenset({ReportStatus.ASSIGNED}), frozenset({ReportStatus.SUBMITTED})),
    Action.START_WORK: (frozenset({ReportStatus.ASSIGNED}), frozenset({ReportStatus.IN_PROGRESS})),
    Action.RESOLVE: (frozenset({ReportStatus.IN_PROGRESS}), frozenset({ReportStatus.RESOLVED})),
    Action.OVERRIDE: (OPEN_STATUSES, ALL_STATUSES),
    Action.CLOSE: (frozenset({ReportStatus.RESOLVED}), frozenset({ReportStatus.CLOSED})),
}

ADMIN_ACTIONS = frozenset({Action.ASSIGN, Action.UNASSIGN, Action.OVERRIDE, Action.CLOSE})
OFFICER_ACTIONS = frozenset({Action.START_WORK, Action.RESOLVE})


def edge_exists(action: Action, from_status: Optional[ReportStatus], to_status: ReportStatus) -> bool:
    """True when the state machine has an edge for this action."""
    sources, targets = TRANSITION_TABLE[action]
    return from_status in sources and to_status in targets


def can_transition(
    role: Optional[AppRole],
    from_status: Optional[ReportStatus],
    to_status: ReportStatus,
    actor_is_assigned_officer: bool,
    action: Action = Action.OVERRIDE
) -> bool:
    """
    Decide whether an actor with ``role`` may perform ``action`` along the edge.

    - Anyone, including anonymous callers (role None), may submit.
    - Assignment, unassignment, overrides and closing need admin or super_admin.
    - Starting work and resolving need the assigned field officer. super_admin
      may also perform them directly.
    """
    if not edge_exists(action, from_status, to_status):
        return False

    if action == Action.SUBMIT:
        return True

    if role is None:
        return False

    if action in ADMIN_ACTIONS:
        return role.is_admin

    if action in OFFICER_ACTIONS:
        if role == AppRole.SUPER_ADMIN:
            return True
        return role == AppRole.FIELD_OFFICER and actor_is_assigned_officer

    return False


def allowed_actions(actor, report) -> List[Action]:
    """Every action the actor could take on the report right now."""
    is_assigned = (
        not actor.is_anonymous
        and report.assigned_officer_id is not None
        and report.assigned_officer_id == actor.id
    )
    actions = []
    for action, (sources, targets) in TRANSITION_TABLE.items():
        if action == Action.SUBMIT or report.status not in sources:
            continue
        if any(
            target != report.status
            and can_transition(actor.role, report.status, target, is_assigned, action)
            for target in targets
        ):
            actions.append(action)
    return actions


def can_view(actor, report) -> bool:
    """
    Full (authenticated) visibility of a report.

    Public tracking by code does not go through this check.
    """
    if actor.is_anonymous:
        return False
    if actor.is_admin:
        return True
    if actor.role == AppRole.FIELD_OFFICER:
        if report.assigned_officer_id == actor.id:
            return True
        return actor.assigned_area_id is not None and report.area_id == actor.assigned_area_id
    return report.reporter_id == actor.id


def rank_assignment_candidates(officers: Iterable, report_area_id: Optional[int]) -> list:
    """
    Order officers for assignment: same-area officers first, then the rest.

    Ordering only; every officer stays assignable. Stable within each group.
    """
    officers = list(officers)
    if report_area_id is None:
        return officers
    return sorted(officers, key=lambda o: o.assigned_area_id != report_area_id)
