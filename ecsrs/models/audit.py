"""
Append-only audit records.

ReportUpdate is the public status history of a report; NotificationLog records
every channel a notification was dispatched on. Neither is ever edited or
deleted once written.
"""
from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, Text
from sqlalchemy.orm import relationship
from ecsrs.database import Base
from ecsrs.models.domain import enum_column_type
from ecsrs.models.enums import NotificationChannel, NotificationKind, ReportStatus


class ReportUpdate(Base):
    """
    One status change of a report.

    Invariants:
    - Read in id order, a report's updates form a valid walk through the
      status state machine ending at the report's current status
    - The first entry has previous_status None and new_status submitted
    - id is the store-supplied sequence; created_at alone may tie
    """
    __tablename__ = "report_updates"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    report_id = Column(Integer, ForeignKey("reports.id"), nullable=False, index=True)
    previous_status = Column(enum_column_type(ReportStatus, "report_status"), nullable=True)
    new_status = Column(enum_column_type(ReportStatus, "report_status"), nullable=False)
    notes = Column(Text, nullable=True)
    updated_by = Column(String, nullable=True)  # Nullable for system and anonymous entries
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)

    report = relationship("Report", back_populates="updates")


class NotificationLog(Base):
    """A single channel delivery request produced by the notifier."""
    __tablename__ = "notification_log"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    report_id = Column(Integer, ForeignKey("reports.id"), nullable=False, index=True)
    kind = Column(enum_column_type(NotificationKind, "notification_kind"), nullable=False)
    channel = Column(enum_column_type(NotificationChannel, "notification_channel"), nullable=False)
    recipient_user_id = Column(String, nullable=False, index=True)
    message = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
