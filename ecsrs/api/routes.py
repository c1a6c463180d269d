"""API routes for report submission, triage, field work and public tracking."""
from datetime import datetime
from typing import List, Optional
from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from sqlalchemy.orm import Session

from ecsrs.database import SessionLocal, get_db
from ecsrs.models.enums import ReportCategory, ReportStatus
from ecsrs.services.errors import (
    InvalidTransition,
    LifecycleError,
    NotFound,
    PersistenceError,
    Unauthorized,
    ValidationError,
)
from ecsrs.services.identity import resolve_actor
from ecsrs.services.notifier import Notifier, PreferenceNotifier
from ecsrs.services.state_machine import ReportLifecycle
from ecsrs.services.store import ReportFilter
from ecsrs.api.schemas import (
    AllowedActionsResponse,
    AreaResponse,
    AssignRequest,
    ErrorResponse,
    EvidenceRequest,
    NotesRequest,
    NotificationPreferenceResponse,
    NotificationPreferenceUpdate,
    OfficerCandidate,
    PriorityRequest,
    PublicStatsResponse,
    ReportCreate,
    ReportResponse,
    ReportUpdateResponse,
    ResolveRequest,
    StatusOverrideRequest,
    SubmittedReportResponse,
    TrackingResponse,
)

router = APIRouter()

ERROR_STATUS = {
    ValidationError: 422,
    Unauthorized: 403,
    InvalidTransition: 409,
    NotFound: 404,
    PersistenceError: 503,
}

ERROR_RESPONSES = {
    403: {"model": ErrorResponse, "description": "Actor lacks the role or identity for this action"},
    404: {"model": ErrorResponse, "description": "Report not found"},
    409: {"model": ErrorResponse, "description": "Transition not allowed from the current status"},
    422: {"model": ErrorResponse, "description": "Missing or invalid field"},
    503: {"model": ErrorResponse, "description": "Store unavailable, safe to retry"},
}


def lifecycle_http_error(e: LifecycleError) -> HTTPException:
    """Translate a lifecycle error into the HTTP error the client sees."""
    code = ERROR_STATUS.get(type(e), 400)
    return HTTPException(status_code=code, detail={"error": e.kind, "message": e.message})


# Dependencies
def get_notifier() -> Notifier:
    return PreferenceNotifier(SessionLocal)


def get_lifecycle(
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier)
) -> ReportLifecycle:
    return ReportLifecycle(db, notifier=notifier)


def get_current_actor(
    x_user_id: Optional[str] = Header(None),
    db: Session = Depends(get_db)
):
    """
    The upstream auth gateway sets X-User-Id after verifying the session.
    Requests without it are anonymous.
    """
    return resolve_actor(db, x_user_id)


def _load_report(lifecycle: ReportLifecycle, actor, report_id: int):
    try:
        return lifecycle.view_report(actor, report_id)
    except LifecycleError as e:
        raise lifecycle_http_error(e)


# Submission and listing
@router.post("/reports", response_model=SubmittedReportResponse, status_code=status.HTTP_201_CREATED, responses=ERROR_RESPONSES)
def submit_report(
    data: ReportCreate,
    actor=Depends(get_current_actor),
    lifecycle: ReportLifecycle = Depends(get_lifecycle)
):
    """
    Submit a report. Works signed in or anonymously; returns the tracking code.

    Anonymous submissions also get an evidence_token for attaching media later.
    """
    try:
        return lifecycle.submit_report(
            actor,
            category=data.category,
            title=data.title,
            description=data.description,
            area_id=data.area_id,
            address=data.address,
            latitude=data.latitude,
            longitude=data.longitude,
            media_urls=data.media_urls,
            is_anonymous=data.is_anonymous
        )
    except LifecycleError as e:
        raise lifecycle_http_error(e)


@router.get("/reports", response_model=List[ReportResponse], responses=ERROR_RESPONSES)
def list_reports(
    report_status: Optional[ReportStatus] = Query(None, alias="status"),
    category: Optional[ReportCategory] = None,
    area_id: Optional[int] = None,
    assigned_officer_id: Optional[str] = None,
    created_from: Optional[datetime] = None,
    created_to: Optional[datetime] = None,
    actor=Depends(get_current_actor),
    lifecycle: ReportLifecycle = Depends(get_lifecycle)
):
    """Reports visible to the caller, newest first."""
    report_filter = ReportFilter(
        status=report_status,
        category=category,
        area_id=area_id,
        assigned_officer_id=assigned_officer_id,
        created_from=created_from,
        created_to=created_to
    )
    try:
        return lifecycle.list_reports(actor, report_filter)
    except LifecycleError as e:
        raise lifecycle_http_error(e)


@router.get("/reports/changes", response_model=List[ReportUpdateResponse], responses=ERROR_RESPONSES)
def report_changes(
    after_id: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    actor=Depends(get_current_actor),
    lifecycle: ReportLifecycle = Depends(get_lifecycle)
):
    """
    Poll for status changes. Pass the last seen update id as ``after_id``.
    """
    try:
        return lifecycle.changes_since(actor, after_id, limit)
    except LifecycleError as e:
        raise lifecycle_http_error(e)


@router.get("/reports/{report_id}", response_model=ReportResponse, responses=ERROR_RESPONSES)
def get_report(
    report_id: int,
    actor=Depends(get_current_actor),
    lifecycle: ReportLifecycle = Depends(get_lifecycle)
):
    return _load_report(lifecycle, actor, report_id)


@router.get("/reports/{report_id}/updates", response_model=List[ReportUpdateResponse], responses=ERROR_RESPONSES)
def get_report_updates(
    report_id: int,
    actor=Depends(get_current_actor),
    lifecycle: ReportLifecycle = Depends(get_lifecycle)
):
    """Status history, oldest first."""
    report = _load_report(lifecycle, actor, report_id)
    try:
        return lifecycle.history(actor, report)
    except LifecycleError as e:
        raise lifecycle_http_error(e)


@router.get("/reports/{report_id}/actions", response_model=AllowedActionsResponse, responses=ERROR_RESPONSES)
def get_allowed_actions(
    report_id: int,
    actor=Depends(get_current_actor),
    lifecycle: ReportLifecycle = Depends(get_lifecycle)
):
    """What the caller may do with this report now. Clients render from this."""
    report = _load_report(lifecycle, actor, report_id)
    return AllowedActionsResponse(
        report_id=report.id,
        status=report.status,
        actions=[action.value for action in lifecycle.allowed_actions(actor, report)]
    )


@router.get("/reports/{report_id}/candidates", response_model=List[OfficerCandidate], responses=ERROR_RESPONSES)
def get_assignment_candidates(
    report_id: int,
    actor=Depends(get_current_actor),
    lifecycle: ReportLifecycle = Depends(get_lifecycle)
):
    """Field officers for the assignment picker, same-area officers first."""
    report = _load_report(lifecycle, actor, report_id)
    try:
        officers = lifecycle.assignment_candidates(actor, report)
    except LifecycleError as e:
        raise lifecycle_http_error(e)
    return [
        OfficerCandidate(
            user_id=officer.user_id,
            display_name=officer.display_name,
            assigned_area_id=officer.assigned_area_id,
            same_area=report.area_id is not None and officer.assigned_area_id == report.area_id
        )
        for officer in officers
    ]


# Transitions
@router.post("/reports/{report_id}/assign", response_model=ReportResponse, responses=ERROR_RESPONSES)
def assign_officer(
    report_id: int,
    data: AssignRequest,
    actor=Depends(get_current_actor),
    lifecycle: ReportLifecycle = Depends(get_lifecycle)
):
    report = _load_report(lifecycle, actor, report_id)
    try:
        return lifecycle.assign_officer(actor, report, data.officer_id, notes=data.notes)
    except LifecycleError as e:
        raise lifecycle_http_error(e)


@router.post("/reports/{report_id}/unassign", response_model=ReportResponse, responses=ERROR_RESPONSES)
def unassign_officer(
    report_id: int,
    data: NotesRequest,
    actor=Depends(get_current_actor),
    lifecycle: ReportLifecycle = Depends(get_lifecycle)
):
    report = _load_report(lifecycle, actor, report_id)
    try:
        return lifecycle.unassign_officer(actor, report, notes=data.notes)
    except LifecycleError as e:
        raise lifecycle_http_error(e)


@router.post("/reports/{report_id}/start", response_model=ReportResponse, responses=ERROR_RESPONSES)
def start_work(
    report_id: int,
    data: NotesRequest,
    actor=Depends(get_current_actor),
    lifecycle: ReportLifecycle = Depends(get_lifecycle)
):
    report = _load_report(lifecycle, actor, report_id)
    try:
        return lifecycle.start_work(actor, report, notes=data.notes)
    except LifecycleError as e:
        raise lifecycle_http_error(e)


@router.post("/reports/{report_id}/resolve", response_model=ReportResponse, responses=ERROR_RESPONSES)
def resolve_report(
    report_id: int,
    data: ResolveRequest,
    actor=Depends(get_current_actor),
    lifecycle: ReportLifecycle = Depends(get_lifecycle)
):
    """Resolution notes are required."""
    report = _load_report(lifecycle, actor, report_id)
    try:
        return lifecycle.resolve_report(actor, report, data.notes, media_urls=data.media_urls)
    except LifecycleError as e:
        raise lifecycle_http_error(e)


@router.put("/reports/{report_id}/status", response_model=ReportResponse, responses=ERROR_RESPONSES)
def override_status(
    report_id: int,
    data: StatusOverrideRequest,
    actor=Depends(get_current_actor),
    lifecycle: ReportLifecycle = Depends(get_lifecycle)
):
    """Admin status override for reports that are not yet resolved."""
    report = _load_report(lifecycle, actor, report_id)
    try:
        return lifecycle.override_status(actor, report, data.status, notes=data.notes)
    except LifecycleError as e:
        raise lifecycle_http_error(e)


@router.post("/reports/{report_id}/close", response_model=ReportResponse, responses=ERROR_RESPONSES)
def close_report(
    report_id: int,
    data: NotesRequest,
    actor=Depends(get_current_actor),
    lifecycle: ReportLifecycle = Depends(get_lifecycle)
):
    report = _load_report(lifecycle, actor, report_id)
    try:
        return lifecycle.close_report(actor, report, notes=data.notes)
    except LifecycleError as e:
        raise lifecycle_http_error(e)


@router.put("/reports/{report_id}/priority", response_model=ReportResponse, responses=ERROR_RESPONSES)
def set_priority(
    report_id: int,
    data: PriorityRequest,
    actor=Depends(get_current_actor),
    lifecycle: ReportLifecycle = Depends(get_lifecycle)
):
    report = _load_report(lifecycle, actor, report_id)
    try:
        return lifecycle.set_priority(actor, report, data.priority)
    except LifecycleError as e:
        raise lifecycle_http_error(e)


@router.post("/reports/{report_id}/evidence", response_model=ReportResponse, responses=ERROR_RESPONSES)
def attach_evidence(
    report_id: int,
    data: EvidenceRequest,
    actor=Depends(get_current_actor),
    lifecycle: ReportLifecycle = Depends(get_lifecycle)
):
    """
    Attach media URLs that finished uploading after submission.

    Anonymous submitters pass the evidence_token they got on submission.
    """
    try:
        report = lifecycle.store.get_report(report_id)
        return lifecycle.attach_evidence(actor, report, data.media_urls, evidence_token=data.evidence_token)
    except LifecycleError as e:
        raise lifecycle_http_error(e)


# Field officer
@router.get("/officer/tasks", response_model=List[ReportResponse], responses=ERROR_RESPONSES)
def officer_tasks(
    actor=Depends(get_current_actor),
    lifecycle: ReportLifecycle = Depends(get_lifecycle)
):
    """Assigned reports, most urgent first, then most recent."""
    try:
        return lifecycle.officer_tasks(actor)
    except LifecycleError as e:
        raise lifecycle_http_error(e)


# Signed-in user
@router.get("/me/notification-preferences", response_model=NotificationPreferenceResponse, responses=ERROR_RESPONSES)
def get_notification_preferences(
    actor=Depends(get_current_actor),
    lifecycle: ReportLifecycle = Depends(get_lifecycle)
):
    """The caller's delivery switches; defaults until first saved."""
    try:
        return lifecycle.notification_preferences(actor)
    except LifecycleError as e:
        raise lifecycle_http_error(e)


@router.put("/me/notification-preferences", response_model=NotificationPreferenceResponse, responses=ERROR_RESPONSES)
def update_notification_preferences(
    data: NotificationPreferenceUpdate,
    actor=Depends(get_current_actor),
    lifecycle: ReportLifecycle = Depends(get_lifecycle)
):
    """Upsert the caller's switches. Omitted switches keep their value."""
    try:
        return lifecycle.update_notification_preferences(actor, data.model_dump(exclude_none=True))
    except LifecycleError as e:
        raise lifecycle_http_error(e)


# Public surface
@router.get("/track/{tracking_code}", response_model=TrackingResponse, responses=ERROR_RESPONSES)
def track_report(tracking_code: str, lifecycle: ReportLifecycle = Depends(get_lifecycle)):
    """Public lookup by tracking code. No authentication."""
    try:
        result = lifecycle.track(tracking_code)
    except LifecycleError as e:
        raise lifecycle_http_error(e)
    return TrackingResponse(
        report=ReportResponse.model_validate(result.report),
        updates=[ReportUpdateResponse.model_validate(u) for u in result.updates]
    )


@router.get("/stats", response_model=PublicStatsResponse, responses=ERROR_RESPONSES)
def public_stats(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    category: Optional[ReportCategory] = None,
    area_id: Optional[int] = None,
    report_status: Optional[ReportStatus] = Query(None, alias="status"),
    lifecycle: ReportLifecycle = Depends(get_lifecycle)
):
    """Aggregate counts and resolution rate. Public."""
    try:
        stats = lifecycle.public_stats(
            start=start,
            end=end,
            category=category,
            area_id=area_id,
            status=report_status
        )
    except LifecycleError as e:
        raise lifecycle_http_error(e)
    return PublicStatsResponse.model_validate(stats, from_attributes=True)


@router.get("/areas", response_model=List[AreaResponse])
def list_areas(lifecycle: ReportLifecycle = Depends(get_lifecycle)):
    return lifecycle.store.list_areas()
