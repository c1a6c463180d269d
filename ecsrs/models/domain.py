"""Domain models - reports, areas and the role assignments of users."""
from datetime import datetime
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SQLEnum,
    Float,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
)
from sqlalchemy.orm import relationship
from ecsrs.database import Base
from ecsrs.models.enums import (
    AppRole,
    NotificationChannel,
    NotificationKind,
    ReportCategory,
    ReportPriority,
    ReportStatus,
)


def enum_column_type(enum_cls, name: str) -> SQLEnum:
    """Persist enum *values* (the wire strings) rather than member names."""
    return SQLEnum(
        enum_cls,
        name=name,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


class Area(Base):
    """Administrative area (LGA) a report or an officer belongs to."""
    __tablename__ = "areas"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String, nullable=False, unique=True)

    reports = relationship("Report", back_populates="area")


class Report(Base):
    """
    A citizen complaint: submitted -> assigned -> in_progress -> resolved -> closed.

    Invariants enforced by the lifecycle engine:
    - tracking_code is assigned by the store at creation and never changes
    - category never changes after creation
    - is_anonymous implies reporter_id is None
    - assigned_officer_id set implies status is not submitted
    - resolved_at is set once the report has reached resolved or closed
    """
    __tablename__ = "reports"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    tracking_code = Column(String, nullable=False, unique=True, index=True)

    category = Column(enum_column_type(ReportCategory, "report_category"), nullable=False)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    address = Column(String, nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    area_id = Column(Integer, ForeignKey("areas.id"), nullable=True, index=True)
    media_urls = Column(JSON, nullable=False, default=list)

    status = Column(
        enum_column_type(ReportStatus, "report_status"),
        nullable=False,
        default=ReportStatus.SUBMITTED,
        index=True
    )
    priority = Column(
        enum_column_type(ReportPriority, "report_priority"),
        nullable=False,
        default=ReportPriority.MEDIUM
    )

    assigned_officer_id = Column(String, nullable=True, index=True)
    assigned_at = Column(DateTime, nullable=True)

    resolution_notes = Column(Text, nullable=True)
    resolution_media_urls = Column(JSON, nullable=False, default=list)
    resolved_at = Column(DateTime, nullable=True)

    reporter_id = Column(String, nullable=True, index=True)  # None when anonymous
    is_anonymous = Column(Boolean, nullable=False, default=False)
    # One-time secret returned to anonymous submitters for attaching late media
    evidence_token = Column(String, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    area = relationship("Area", back_populates="reports")
    updates = relationship(
        "ReportUpdate",
        back_populates="report",
        order_by="ReportUpdate.id"
    )


class UserRole(Base):
    """
    Role assignment layered over the external identity provider.

    assigned_area_id is only meaningful for field officers.
    """
    __tablename__ = "user_roles"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(String, nullable=False, unique=True, index=True)
    role = Column(enum_column_type(AppRole, "app_role"), nullable=False, default=AppRole.CITIZEN)
    assigned_area_id = Column(Integer, ForeignKey("areas.id"), nullable=True)
    display_name = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    assigned_area = relationship("Area")


PREFERENCE_DEFAULTS = {
    "email_enabled": True,
    "sms_enabled": False,
    "push_enabled": True,
    "email_on_status_change": True,
    "email_on_assignment": True,
    "email_on_resolution": True,
    "sms_on_status_change": False,
    "sms_on_assignment": False,
    "sms_on_resolution": True,
    "push_on_status_change": True,
    "push_on_assignment": True,
    "push_on_resolution": True,
}


class NotificationPreference(Base):
    """Per-user delivery switches. Users without a row get PREFERENCE_DEFAULTS."""
    __tablename__ = "notification_preferences"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(String, nullable=False, unique=True, index=True)

    email_enabled = Column(Boolean, nullable=False, default=PREFERENCE_DEFAULTS["email_enabled"])
    sms_enabled = Column(Boolean, nullable=False, default=PREFERENCE_DEFAULTS["sms_enabled"])
    push_enabled = Column(Boolean, nullable=False, default=PREFERENCE_DEFAULTS["push_enabled"])

    email_on_status_change = Column(Boolean, nullable=False, default=PREFERENCE_DEFAULTS["email_on_status_change"])
    email_on_assignment = Column(Boolean, nullable=False, default=PREFERENCE_DEFAULTS["email_on_assignment"])
    email_on_resolution = Column(Boolean, nullable=False, default=PREFERENCE_DEFAULTS["email_on_resolution"])
    sms_on_status_change = Column(Boolean, nullable=False, default=PREFERENCE_DEFAULTS["sms_on_status_change"])
    sms_on_assignment = Column(Boolean, nullable=False, default=PREFERENCE_DEFAULTS["sms_on_assignment"])
    sms_on_resolution = Column(Boolean, nullable=False, default=PREFERENCE_DEFAULTS["sms_on_resolution"])
    push_on_status_change = Column(Boolean, nullable=False, default=PREFERENCE_DEFAULTS["push_on_status_change"])
    push_on_assignment = Column(Boolean, nullable=False, default=PREFERENCE_DEFAULTS["push_on_assignment"])
    push_on_resolution = Column(Boolean, nullable=False, default=PREFERENCE_DEFAULTS["push_on_resolution"])

    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    @classmethod
    def defaults_for(cls, user_id: str) -> "NotificationPreference":
        """Transient (unsaved) preference row carrying the default switches."""
        return cls(user_id=user_id, **PREFERENCE_DEFAULTS)

    def wants(self, channel: NotificationChannel, kind: NotificationKind) -> bool:
        """True when both the channel switch and the per-kind switch are on."""
        if not getattr(self, f"{channel.value}_enabled"):
            return False
        return bool(getattr(self, f"{channel.value}_on_{kind.value}"))


class TrackingSequence(Base):
    """Per-year counter behind tracking codes. Only the report store touches it."""
    __tablename__ = "tracking_sequences"

    year = Column(Integer, primary_key=True, autoincrement=False)
    last_value = Column(Integer, nullable=False, default=0)
