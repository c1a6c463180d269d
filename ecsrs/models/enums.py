"""Closed enums for reports - the values are the wire-level contract."""
from enum import Enum


class ReportStatus(str, Enum):
    """The five lifecycle states. No other states are allowed."""
    SUBMITTED = "submitted"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CLOSED = "closed"

    @property
    def label(self) -> str:
        return STATUS_LABELS[self]


# Human-readable labels used in notification messages
STATUS_LABELS = {
    ReportStatus.SUBMITTED: "Submitted",
    ReportStatus.ASSIGNED: "Assigned to Field Officer",
    ReportStatus.IN_PROGRESS: "Investigation In Progress",
    ReportStatus.RESOLVED: "Resolved",
    ReportStatus.CLOSED: "Closed",
}

# Statuses counted as a successful conclusion in aggregate rates
CONCLUDED_STATUSES = (ReportStatus.RESOLVED, ReportStatus.CLOSED)


class ReportCategory(str, Enum):
    """Environmental complaint categories. Immutable once a report exists."""
    ILLEGAL_DUMPING = "illegal_dumping"
    BLOCKED_DRAINAGE = "blocked_drainage"
    OPEN_DEFECATION = "open_defecation"
    NOISE_POLLUTION = "noise_pollution"
    SANITATION_ISSUES = "sanitation_issues"
    ENVIRONMENTAL_NUISANCE = "environmental_nuisance"


class ReportPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    EMERGENCY = "emergency"

    @property
    def rank(self) -> int:
        """Sort weight, higher is more urgent."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    ReportPriority.LOW: 0,
    ReportPriority.MEDIUM: 1,
    ReportPriority.HIGH: 2,
    ReportPriority.EMERGENCY: 3,
}


class AppRole(str, Enum):
    CITIZEN = "citizen"
    FIELD_OFFICER = "field_officer"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"

    @property
    def is_admin(self) -> bool:
        return self in (AppRole.ADMIN, AppRole.SUPER_ADMIN)


class NotificationKind(str, Enum):
    """What happened to the report that the recipient is told about."""
    ASSIGNMENT = "assignment"
    STATUS_CHANGE = "status_change"
    RESOLUTION = "resolution"


class NotificationChannel(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"
