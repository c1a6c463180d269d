"""
Report lifecycle engine.

Every status change of a report MUST go through here:

    submitted -> assigned -> in_progress -> resolved -> closed
    assigned -> submitted (unassignment)
    submitted/assigned/in_progress -> any (admin override)

Each transition is checked against the policy, written atomically together
with its ReportUpdate audit entry, published as a ReportTransitioned event and
followed by at most one notification request.
"""
import logging
import secrets
from dataclasses import dataclass, replace
from datetime import datetime
from typing import List, Optional
from sqlalchemy.orm import Session
from ecsrs.models.audit import ReportUpdate
from ecsrs.models.domain import NotificationPreference, Report, UserRole
from ecsrs.models.enums import (
    AppRole,
    CONCLUDED_STATUSES,
    NotificationKind,
    ReportCategory,
    ReportPriority,
    ReportStatus,
)
from ecsrs.services import policy
from ecsrs.services.errors import (
    InvalidTransition,
    NotificationError,
    Unauthorized,
    ValidationError,
)
from ecsrs.services.events import EventBus, ReportTransitioned, default_bus
from ecsrs.services.notifier import LoggingNotifier, NotificationRequest, Notifier
from ecsrs.services.policy import Action
from ecsrs.services.stats import PublicStats, compute_public_stats
from ecsrs.services.store import ReportFilter, ReportStore

logger = logging.getLogger(__name__)


@dataclass
class TrackingResult:
    """Public view of a report: the report plus its status history, oldest first."""
    report: Report
    updates: List[ReportUpdate]


def _coerce(enum_cls, value, field_name: str):
    """Accept enum members or their wire strings; reject anything else."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"Invalid {field_name} '{value}'. Allowed: {allowed}")


def _require_text(value: Optional[str], field_name: str) -> str:
    text = (value or "").strip()
    if not text:
        raise ValidationError(f"{field_name} is required")
    return text


def _clean_urls(urls) -> List[str]:
    return [url.strip() for url in (urls or []) if url and url.strip()]


class ReportLifecycle:
    """Enforces the report state machine, assignment rules and their side effects."""

    def __init__(
        self,
        db: Session,
        notifier: Optional[Notifier] = None,
        events: Optional[EventBus] = None,
        store: Optional[ReportStore] = None
    ):
        self.db = db
        self.store = store or ReportStore(db)
        self.notifier = notifier or LoggingNotifier()
        self.events = events if events is not None else default_bus

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit_report(
        self,
        actor,
        category,
        title: str,
        description: str,
        area_id: Optional[int],
        address: Optional[str] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        media_urls: Optional[List[str]] = None,
        is_anonymous: bool = False
    ) -> Report:
        """
        Create a report in ``submitted`` with its first audit entry.

        Anonymous callers always produce anonymous reports. An authenticated
        citizen may also choose anonymity, in which case no reporter is stored.
        No notification is sent; the caller shows the tracking code instead.
        Anonymous reports carry a one-time evidence_token so the submitter
        can attach media that finishes uploading later.
        """
        category = _coerce(ReportCategory, category, "category")
        title = _require_text(title, "Title")
        description = _require_text(description, "Description")

        if area_id is None:
            raise ValidationError("Area is required")
        if self.store.get_area(area_id) is None:
            raise ValidationError(f"Unknown area {area_id}")

        if (latitude is None) != (longitude is None):
            raise ValidationError("Latitude and longitude must be provided together")
        if latitude is not None:
            if not -90 <= latitude <= 90:
                raise ValidationError(f"Latitude {latitude} is out of range")
            if not -180 <= longitude <= 180:
                raise ValidationError(f"Longitude {longitude} is out of range")

        anonymous = is_anonymous or actor.is_anonymous
        reporter_id = None if anonymous else actor.id

        report = self.store.create_report(
            {
                "category": category,
                "title": title,
                "description": description,
                "area_id": area_id,
                "address": (address or "").strip() or None,
                "latitude": latitude,
                "longitude": longitude,
                "media_urls": _clean_urls(media_urls),
                "reporter_id": reporter_id,
                "is_anonymous": anonymous,
                "evidence_token": secrets.token_urlsafe(24) if anonymous else None,
                "priority": ReportPriority.MEDIUM,
            },
            initial_notes="Report submitted successfully",
            actor_id=reporter_id
        )
        logger.info(
            "Report %s submitted (%s, anonymous=%s)",
            report.tracking_code, category.value, anonymous
        )
        self._publish(report, None, report.updates[-1], reporter_id)
        return report

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def assign_officer(self, actor, report: Report, officer_id: str, notes: Optional[str] = None) -> Report:
        """submitted -> assigned. The officer is notified on the assignment channel."""
        self._authorize(actor, report, Action.ASSIGN, ReportStatus.ASSIGNED)

        officer = self.store.get_role(officer_id) if officer_id else None
        if officer is None or officer.role != AppRole.FIELD_OFFICER:
            logger.warning(
                "Refused assignment of %s to %s: not a field officer",
                report.tracking_code, officer_id
            )
            raise Unauthorized(f"User {officer_id} is not a field officer and cannot be assigned")

        name = officer.display_name or officer.user_id
        return self._apply(
            actor,
            report,
            ReportStatus.ASSIGNED,
            {"assigned_officer_id": officer.user_id, "assigned_at": datetime.utcnow()},
            notes or f"Assigned to field officer {name}",
            NotificationRequest(
                kind=NotificationKind.ASSIGNMENT,
                report_id=report.id,
                recipient_user_id=officer.user_id
            )
        )

    def unassign_officer(self, actor, report: Report, notes: Optional[str] = None) -> Report:
        """assigned -> submitted. Clears the officer and assignment time."""
        self._authorize(actor, report, Action.UNASSIGN, ReportStatus.SUBMITTED)
        return self._apply(
            actor,
            report,
            ReportStatus.SUBMITTED,
            {"assigned_officer_id": None, "assigned_at": None},
            notes or "Officer unassigned"
        )

    def start_work(self, actor, report: Report, notes: Optional[str] = None) -> Report:
        """assigned -> in_progress, by the assigned officer."""
        self._authorize(actor, report, Action.START_WORK, ReportStatus.IN_PROGRESS)
        return self._apply(
            actor,
            report,
            ReportStatus.IN_PROGRESS,
            {},
            notes or "Status updated to in_progress"
        )

    def resolve_report(
        self,
        actor,
        report: Report,
        notes: Optional[str],
        media_urls: Optional[List[str]] = None
    ) -> Report:
        """
        in_progress -> resolved, by the assigned officer.

        Resolution notes are mandatory. The reporter is notified on the
        resolution channel.
        """
        self._authorize(actor, report, Action.RESOLVE, ReportStatus.RESOLVED)
        notes = _require_text(notes, "Resolution notes")

        return self._apply(
            actor,
            report,
            ReportStatus.RESOLVED,
            {
                "resolved_at": datetime.utcnow(),
                "resolution_notes": notes,
                "resolution_media_urls": _clean_urls(media_urls),
            },
            notes,
            NotificationRequest(
                kind=NotificationKind.RESOLUTION,
                report_id=report.id,
                recipient_user_id=report.reporter_id
            )
        )

    def override_status(self, actor, report: Report, new_status, notes: Optional[str] = None) -> Report:
        """
        Admin sets any status on a report that is still open.

        Requesting the current status is an idempotent no-op: nothing is
        written and nobody is notified.
        """
        new_status = _coerce(ReportStatus, new_status, "status")
        self._authorize(actor, report, Action.OVERRIDE, new_status)
        if new_status == report.status:
            logger.info("Override of %s to its current status %s ignored", report.tracking_code, new_status.value)
            return report

        changes = {}
        if new_status == ReportStatus.SUBMITTED:
            # Back in the queue: no officer may stay attached
            changes.update(assigned_officer_id=None, assigned_at=None)
        if new_status in CONCLUDED_STATUSES and report.resolved_at is None:
            changes["resolved_at"] = datetime.utcnow()

        return self._apply(
            actor,
            report,
            new_status,
            changes,
            notes or f"Status updated to {new_status.value}",
            NotificationRequest(
                kind=NotificationKind.STATUS_CHANGE,
                report_id=report.id,
                recipient_user_id=report.reporter_id
            )
        )

    def close_report(self, actor, report: Report, notes: Optional[str] = None) -> Report:
        """resolved -> closed. Closed is terminal."""
        self._authorize(actor, report, Action.CLOSE, ReportStatus.CLOSED)
        changes = {}
        if report.resolved_at is None:
            changes["resolved_at"] = datetime.utcnow()
        return self._apply(actor, report, ReportStatus.CLOSED, changes, notes or "Report closed")

    # ------------------------------------------------------------------
    # Non-status mutations
    # ------------------------------------------------------------------

    def set_priority(self, actor, report: Report, priority) -> Report:
        """Admins triage priority. Not a status change, so no audit entry."""
        if not actor.is_admin:
            raise Unauthorized("Only administrators can change report priority")
        priority = _coerce(ReportPriority, priority, "priority")
        if priority == report.priority:
            return report
        logger.info(
            "Priority of %s changed %s -> %s by %s",
            report.tracking_code, report.priority.value, priority.value, actor.id
        )
        return self.store.update_report(report, priority=priority)

    def attach_evidence(
        self,
        actor,
        report: Report,
        media_urls: List[str],
        evidence_token: Optional[str] = None
    ) -> Report:
        """
        Append already-uploaded media URLs to a report.

        Media uploads finish after the report row exists, so the list may
        arrive late or empty. Anonymous submitters prove ownership with the
        evidence_token from submission; it is spent by the first attach that
        carries URLs.
        """
        is_reporter = not actor.is_anonymous and report.reporter_id == actor.id
        holds_token = (
            bool(evidence_token)
            and report.evidence_token is not None
            and secrets.compare_digest(evidence_token.encode(), report.evidence_token.encode())
        )
        if not (is_reporter or actor.is_admin or holds_token):
            raise Unauthorized("Only the reporter or an administrator can attach evidence")
        urls = _clean_urls(media_urls)
        if not urls:
            return report
        changes = {"media_urls": list(report.media_urls or []) + urls}
        if holds_token:
            changes["evidence_token"] = None
        logger.info("Attached %d media file(s) to %s", len(urls), report.tracking_code)
        return self.store.update_report(report, **changes)

    # ------------------------------------------------------------------
    # Notification preferences
    # ------------------------------------------------------------------

    def notification_preferences(self, actor) -> NotificationPreference:
        if actor.is_anonymous:
            raise Unauthorized("Sign in to manage notification preferences")
        return self.store.get_preferences(actor.id)

    def update_notification_preferences(self, actor, switches: dict) -> NotificationPreference:
        """Upsert the actor's own switches. Only the named switches change."""
        if actor.is_anonymous:
            raise Unauthorized("Sign in to manage notification preferences")
        preference = self.store.save_preferences(actor.id, switches)
        logger.info("Notification preferences of %s updated: %s", actor.id, sorted(switches))
        return preference

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def track(self, tracking_code: str) -> TrackingResult:
        """Public lookup by tracking code. Needs no authentication."""
        report = self.store.get_report_by_tracking_code(tracking_code)
        return TrackingResult(report=report, updates=self.store.list_report_updates(report.id))

    def view_report(self, actor, report_id: int) -> Report:
        report = self.store.get_report(report_id)
        if not policy.can_view(actor, report):
            raise Unauthorized("You do not have access to this report")
        return report

    def history(self, actor, report: Report) -> List[ReportUpdate]:
        if not policy.can_view(actor, report):
            raise Unauthorized("You do not have access to this report")
        return self.store.list_report_updates(report.id)

    def list_reports(self, actor, report_filter: Optional[ReportFilter] = None) -> List[Report]:
        """
        Reports visible to the actor, newest first.

        Citizens only ever see their own reports; field officers see those
        assigned to them or in their area.
        """
        if actor.is_anonymous:
            raise Unauthorized("Sign in to list reports")
        report_filter = report_filter or ReportFilter()
        if actor.role == AppRole.CITIZEN:
            report_filter = replace(report_filter, reporter_id=actor.id)
        reports = self.store.list_reports(report_filter)
        if actor.is_admin:
            return reports
        return [r for r in reports if policy.can_view(actor, r)]

    def officer_tasks(self, actor) -> List[Report]:
        """The officer's assigned reports, most urgent then most recent first."""
        if actor.is_anonymous or actor.role != AppRole.FIELD_OFFICER:
            raise Unauthorized("Only field officers have a task list")
        reports = self.store.list_reports(ReportFilter(assigned_officer_id=actor.id))
        return sorted(
            reports,
            key=lambda r: (r.priority.rank, r.created_at, r.id),
            reverse=True
        )

    def assignment_candidates(self, actor, report: Report) -> List[UserRole]:
        """Every field officer, those covering the report's area first."""
        if not actor.is_admin:
            raise Unauthorized("Only administrators can assign reports")
        return policy.rank_assignment_candidates(self.store.list_officers(), report.area_id)

    def allowed_actions(self, actor, report: Report) -> List[Action]:
        return policy.allowed_actions(actor, report)

    def changes_since(self, actor, after_id: int, limit: int = 100) -> List[ReportUpdate]:
        """
        Polling delivery of the transition stream.

        Admins receive every entry; everyone else only entries of reports
        they can view.
        """
        if actor.is_anonymous:
            raise Unauthorized("Sign in to follow report changes")
        updates = self.store.updates_after(after_id, limit)
        if actor.is_admin:
            return updates
        return [u for u in updates if policy.can_view(actor, u.report)]

    def public_stats(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        category=None,
        area_id: Optional[int] = None,
        status=None
    ) -> PublicStats:
        """Aggregate counts and rates over a time window. Read-only."""
        report_filter = ReportFilter(
            status=_coerce(ReportStatus, status, "status") if status is not None else None,
            category=_coerce(ReportCategory, category, "category") if category is not None else None,
            area_id=area_id,
            created_from=start,
            created_to=end
        )
        reports = self.store.list_reports(report_filter)
        area_names = {area.id: area.name for area in self.store.list_areas()}
        return compute_public_stats(reports, area_names)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _is_assigned_officer(actor, report: Report) -> bool:
        return (
            not actor.is_anonymous
            and report.assigned_officer_id is not None
            and report.assigned_officer_id == actor.id
        )

    def _authorize(self, actor, report: Report, action: Action, to_status: ReportStatus) -> None:
        """Raise InvalidTransition or Unauthorized; never writes."""
        from_status = report.status
        if not policy.edge_exists(action, from_status, to_status):
            logger.warning(
                "Refused %s on %s: no transition %s -> %s",
                action.value, report.tracking_code, from_status.value, to_status.value
            )
            raise InvalidTransition(
                f"Cannot {action.value.replace('_', ' ')} report {report.tracking_code}: "
                f"transition {from_status.value} -> {to_status.value} is not allowed",
                current_status=from_status,
                requested_status=to_status
            )

        role = None if actor.is_anonymous else actor.role
        if not policy.can_transition(
            role,
            from_status,
            to_status,
            self._is_assigned_officer(actor, report),
            action
        ):
            logger.warning(
                "Refused %s on %s for %s (%s)",
                action.value, report.tracking_code, actor.id or "anonymous",
                role.value if role else "anonymous"
            )
            if action in policy.OFFICER_ACTIONS:
                raise Unauthorized("Only the assigned field officer can perform this action")
            raise Unauthorized("Only administrators can perform this action")

    def _apply(
        self,
        actor,
        report: Report,
        to_status: ReportStatus,
        changes: dict,
        notes: Optional[str],
        notification: Optional[NotificationRequest] = None
    ) -> Report:
        """Write the transition, then emit the event and the notification."""
        from_status = report.status
        actor_id = None if actor.is_anonymous else actor.id
        entry = self.store.apply_transition(
            report,
            from_status,
            dict(changes, status=to_status),
            notes,
            actor_id
        )
        logger.info(
            "Report %s: %s -> %s by %s",
            report.tracking_code, from_status.value, to_status.value, actor_id or "system"
        )
        self._publish(report, from_status, entry, actor_id)
        if notification is not None:
            self._dispatch(notification)
        return report

    def _publish(self, report: Report, from_status, entry: ReportUpdate, actor_id) -> None:
        self.events.publish(ReportTransitioned(
            report_id=report.id,
            tracking_code=report.tracking_code,
            from_status=from_status,
            to_status=entry.new_status,
            update_id=entry.id,
            actor_id=actor_id
        ))

    def _dispatch(self, request: NotificationRequest) -> None:
        """Best-effort delivery. Failures are logged, never raised."""
        try:
            self.notifier.notify(request)
        except NotificationError as e:
            logger.error(
                "Notification %s for report %s failed: %s",
                request.kind.value, request.report_id, e.message
            )
        except Exception:
            logger.exception(
                "Notifier crashed sending %s for report %s",
                request.kind.value, request.report_id
            )
