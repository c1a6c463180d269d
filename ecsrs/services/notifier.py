"""
Outbound notifications.

The lifecycle engine hands a NotificationRequest to a Notifier after a
transition has been committed. Delivery is best-effort: implementations
raise NotificationError on failure and the engine logs and drops it.
"""
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from ecsrs.models.audit import NotificationLog
from ecsrs.models.domain import Report
from ecsrs.models.enums import NotificationChannel, NotificationKind
from ecsrs.services.errors import NotificationError
from ecsrs.services.store import ReportStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationRequest:
    kind: NotificationKind
    report_id: int
    recipient_user_id: Optional[str] = None
    message: Optional[str] = None


class Notifier:
    """Interface. ``notify`` must be fire-and-forget from the caller's view."""

    def notify(self, request: NotificationRequest) -> None:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    """Writes requests to the log. Used when no delivery backend is configured."""

    def notify(self, request: NotificationRequest) -> None:
        logger.info(
            "Notification %s for report %s to %s",
            request.kind.value, request.report_id, request.recipient_user_id or "(no recipient)"
        )


def build_message(report: Report, kind: NotificationKind) -> str:
    if kind == NotificationKind.ASSIGNMENT:
        return f"Report {report.tracking_code} \"{report.title}\" has been assigned to you"
    return (
        f"Your report {report.tracking_code} status has been updated to: "
        f"{report.status.label}"
    )


class PreferenceNotifier(Notifier):
    """
    Resolves the recipient's channel preferences and records one
    NotificationLog row per enabled channel.

    Uses its own session so a delivery failure can never touch the caller's
    transaction.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def channels_for(self, db: Session, user_id: str, kind: NotificationKind) -> List[NotificationChannel]:
        preference = ReportStore(db).get_preferences(user_id)
        return [channel for channel in NotificationChannel if preference.wants(channel, kind)]

    def notify(self, request: NotificationRequest) -> None:
        if not request.recipient_user_id:
            logger.info(
                "No recipient for %s notification on report %s, skipping",
                request.kind.value, request.report_id
            )
            return

        db = self.session_factory()
        try:
            report = db.query(Report).filter(Report.id == request.report_id).first()
            if report is None:
                raise NotificationError(f"Report {request.report_id} not found")

            message = request.message or build_message(report, request.kind)
            channels = self.channels_for(db, request.recipient_user_id, request.kind)
            for channel in channels:
                db.add(NotificationLog(
                    report_id=report.id,
                    kind=request.kind,
                    channel=channel,
                    recipient_user_id=request.recipient_user_id,
                    message=message
                ))
                logger.info("[%s] to %s: %s", channel.value.upper(), request.recipient_user_id, message)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise NotificationError(f"Could not record notification: {e}") from e
        finally:
            db.close()
