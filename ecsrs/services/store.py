"""
SQLAlchemy-backed report store.

All writes that must be atomic as a unit (report row + audit entry) happen in
a single commit here. Store failures are rolled back and re-raised as
PersistenceError.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from ecsrs import config
from ecsrs.models.audit import ReportUpdate
from ecsrs.models.domain import Area, NotificationPreference, PREFERENCE_DEFAULTS, Report, TrackingSequence, UserRole
from ecsrs.models.enums import AppRole, ReportCategory, ReportStatus
from ecsrs.services.errors import InvalidTransition, NotFound, PersistenceError, ValidationError

logger = logging.getLogger(__name__)

# Attempts at creating a report when a concurrent creator wins the sequence row insert
CREATE_ATTEMPTS = 3

# Tables and columns named in a uniqueness violation that a retry can cure.
# SQLite reports "table.column", PostgreSQL the constraint or index name.
TRACKING_COLLISION_MARKERS = ("tracking_sequences", "tracking_code")


@dataclass
class ReportFilter:
    status: Optional[ReportStatus] = None
    category: Optional[ReportCategory] = None
    area_id: Optional[int] = None
    assigned_officer_id: Optional[str] = None
    reporter_id: Optional[str] = None
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None


def is_tracking_collision(error: IntegrityError) -> bool:
    """True when the violation is a concurrent tracking code allocation, not bad data."""
    text = str(error.orig).lower()
    if "unique" not in text and "duplicate" not in text:
        return False
    return any(marker in text for marker in TRACKING_COLLISION_MARKERS)


def format_tracking_code(prefix: str, year: int, value: int) -> str:
    """Format: PREFIX-YEAR-NNNN, zero padded, wider past 9999."""
    return f"{prefix}-{year}-{value:04d}"


class ReportStore:
    """Persistence operations the lifecycle engine needs, and nothing more."""

    def __init__(self, db: Session, tracking_prefix: Optional[str] = None):
        self.db = db
        # Lookups upper-case the code, so generated codes must be upper case too
        self.tracking_prefix = (tracking_prefix or config.TRACKING_CODE_PREFIX).strip().upper()

    # --- creation ---

    def _next_tracking_code(self, year: int) -> str:
        """
        Increment the per-year sequence inside the current transaction.

        The UPDATE holds the sequence row lock until commit, so concurrent
        creators are serialised by the database.
        """
        bumped = self.db.query(TrackingSequence).filter(
            TrackingSequence.year == year
        ).update(
            {TrackingSequence.last_value: TrackingSequence.last_value + 1},
            synchronize_session=False
        )
        if bumped:
            value = self.db.query(TrackingSequence.last_value).filter(
                TrackingSequence.year == year
            ).scalar()
        else:
            # First report of the year; a concurrent insert surfaces as IntegrityError
            self.db.add(TrackingSequence(year=year, last_value=1))
            self.db.flush()
            value = 1
        return format_tracking_code(self.tracking_prefix, year, value)

    def create_report(self, fields: dict, initial_notes: Optional[str], actor_id: Optional[str]) -> Report:
        """
        Insert a report with a fresh tracking code plus its first audit entry.

        Both rows are committed together or not at all.
        """
        last_error = None
        for attempt in range(1, CREATE_ATTEMPTS + 1):
            try:
                now = datetime.utcnow()
                report = Report(
                    tracking_code=self._next_tracking_code(now.year),
                    status=ReportStatus.SUBMITTED,
                    created_at=now,
                    updated_at=now,
                    **fields
                )
                self.db.add(report)
                self.db.flush()

                self.db.add(ReportUpdate(
                    report_id=report.id,
                    previous_status=None,
                    new_status=ReportStatus.SUBMITTED,
                    notes=initial_notes,
                    updated_by=actor_id,
                    created_at=now
                ))
                self.db.commit()
                self.db.refresh(report)
                return report
            except IntegrityError as e:
                self.db.rollback()
                if not is_tracking_collision(e):
                    raise PersistenceError(f"Could not save report: {e.orig}") from e
                last_error = e
                logger.warning("Tracking code collision on attempt %d, retrying", attempt)
            except SQLAlchemyError as e:
                self.db.rollback()
                raise PersistenceError(f"Could not save report: {e}") from e

        raise PersistenceError(
            f"Could not allocate a unique tracking code after {CREATE_ATTEMPTS} attempts"
        ) from last_error

    # --- reads ---

    def get_report(self, report_id: int) -> Report:
        report = self.db.query(Report).filter(Report.id == report_id).first()
        if report is None:
            raise NotFound(f"Report {report_id} not found")
        return report

    def get_report_by_tracking_code(self, code: str) -> Report:
        normalized = (code or "").strip().upper()
        report = self.db.query(Report).filter(Report.tracking_code == normalized).first()
        if report is None:
            raise NotFound(f"No report with tracking code {normalized or '(empty)'}")
        return report

    def list_reports(self, report_filter: Optional[ReportFilter] = None) -> List[Report]:
        f = report_filter or ReportFilter()
        query = self.db.query(Report)
        if f.status is not None:
            query = query.filter(Report.status == f.status)
        if f.category is not None:
            query = query.filter(Report.category == f.category)
        if f.area_id is not None:
            query = query.filter(Report.area_id == f.area_id)
        if f.assigned_officer_id is not None:
            query = query.filter(Report.assigned_officer_id == f.assigned_officer_id)
        if f.reporter_id is not None:
            query = query.filter(Report.reporter_id == f.reporter_id)
        if f.created_from is not None:
            query = query.filter(Report.created_at >= f.created_from)
        if f.created_to is not None:
            query = query.filter(Report.created_at < f.created_to)
        return query.order_by(Report.created_at.desc(), Report.id.desc()).all()

    def list_report_updates(self, report_id: int) -> List[ReportUpdate]:
        """Audit entries oldest first, ordered by the store sequence."""
        return self.db.query(ReportUpdate).filter(
            ReportUpdate.report_id == report_id
        ).order_by(ReportUpdate.id.asc()).all()

    def updates_after(self, after_id: int, limit: int = 100) -> List[ReportUpdate]:
        """Change feed: every audit entry with a sequence greater than ``after_id``."""
        return self.db.query(ReportUpdate).filter(
            ReportUpdate.id > after_id
        ).order_by(ReportUpdate.id.asc()).limit(limit).all()

    def get_area(self, area_id: int) -> Optional[Area]:
        return self.db.query(Area).filter(Area.id == area_id).first()

    def list_areas(self) -> List[Area]:
        return self.db.query(Area).order_by(Area.name).all()

    def get_role(self, user_id: str) -> Optional[UserRole]:
        return self.db.query(UserRole).filter(UserRole.user_id == user_id).first()

    def list_officers(self) -> List[UserRole]:
        return self.db.query(UserRole).filter(
            UserRole.role == AppRole.FIELD_OFFICER
        ).order_by(UserRole.id).all()

    # --- writes ---

    def update_report(self, report: Report, **fields) -> Report:
        """Field-level update that does not touch status (priority, media)."""
        try:
            for name, value in fields.items():
                setattr(report, name, value)
            report.updated_at = datetime.utcnow()
            self.db.commit()
            self.db.refresh(report)
            return report
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Could not update report {report.tracking_code}: {e}") from e

    def apply_transition(
        self,
        report: Report,
        expected_status: ReportStatus,
        changes: dict,
        notes: Optional[str],
        actor_id: Optional[str]
    ) -> ReportUpdate:
        """
        Move a report out of ``expected_status`` and append the audit entry.

        The report row is only updated while it still holds ``expected_status``;
        if another writer got there first nothing is written and
        InvalidTransition is raised.
        """
        now = datetime.utcnow()
        values = dict(changes)
        values["updated_at"] = now
        new_status = values["status"]

        try:
            matched = self.db.query(Report).filter(
                Report.id == report.id,
                Report.status == expected_status
            ).update(values, synchronize_session=False)

            if not matched:
                self.db.rollback()
                self.db.refresh(report)
                raise InvalidTransition(
                    f"Report {report.tracking_code} is no longer {expected_status.value}; "
                    f"it is now {report.status.value}",
                    current_status=report.status,
                    requested_status=new_status
                )

            entry = ReportUpdate(
                report_id=report.id,
                previous_status=expected_status,
                new_status=new_status,
                notes=notes,
                updated_by=actor_id,
                created_at=now
            )
            self.db.add(entry)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(
                f"Could not record status change for {report.tracking_code}: {e}"
            ) from e

        self.db.refresh(report)
        self.db.refresh(entry)
        return entry

    # --- notification preferences ---

    def get_preferences(self, user_id: str) -> NotificationPreference:
        """Stored switches, or an unsaved row carrying the defaults."""
        preference = self.db.query(NotificationPreference).filter(
            NotificationPreference.user_id == user_id
        ).first()
        return preference or NotificationPreference.defaults_for(user_id)

    def save_preferences(self, user_id: str, switches: dict) -> NotificationPreference:
        """Upsert the given switches; switches not named keep their current value."""
        unknown = sorted(set(switches) - set(PREFERENCE_DEFAULTS))
        if unknown:
            raise ValidationError(f"Unknown notification preference {', '.join(unknown)}")
        try:
            preference = self.db.query(NotificationPreference).filter(
                NotificationPreference.user_id == user_id
            ).first()
            if preference is None:
                preference = NotificationPreference.defaults_for(user_id)
                self.db.add(preference)
            for name, value in switches.items():
                setattr(preference, name, bool(value))
            preference.updated_at = datetime.utcnow()
            self.db.commit()
            self.db.refresh(preference)
            return preference
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Could not save notification preferences for {user_id}: {e}") from e
