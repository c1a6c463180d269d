"""Tests for preference-aware notification delivery."""
import pytest
from ecsrs.models.audit import NotificationLog
from ecsrs.models.domain import NotificationPreference
from ecsrs.models.enums import NotificationChannel, NotificationKind
from ecsrs.services.errors import NotificationError, Unauthorized, ValidationError
from ecsrs.services.identity import ANONYMOUS
from ecsrs.services.notifier import NotificationRequest, PreferenceNotifier
from ecsrs.services.state_machine import ReportLifecycle


def channels_logged(db_session, recipient):
    rows = db_session.query(NotificationLog).filter(
        NotificationLog.recipient_user_id == recipient
    ).order_by(NotificationLog.id).all()
    return [(row.kind, row.channel) for row in rows]


class TestPreferenceNotifier:

    def test_default_preferences_for_assignment(self, session_factory, db_session, officer, submitted_report):
        notifier = PreferenceNotifier(session_factory)

        notifier.notify(NotificationRequest(
            kind=NotificationKind.ASSIGNMENT,
            report_id=submitted_report.id,
            recipient_user_id=officer.id
        ))

        assert channels_logged(db_session, officer.id) == [
            (NotificationKind.ASSIGNMENT, NotificationChannel.EMAIL),
            (NotificationKind.ASSIGNMENT, NotificationChannel.PUSH),
        ]

    def test_sms_is_off_by_default(self, session_factory, db_session, citizen, submitted_report):
        PreferenceNotifier(session_factory).notify(NotificationRequest(
            kind=NotificationKind.RESOLUTION,
            report_id=submitted_report.id,
            recipient_user_id=citizen.id
        ))

        assert [c for _, c in channels_logged(db_session, citizen.id)] == [
            NotificationChannel.EMAIL,
            NotificationChannel.PUSH,
        ]

    def test_enabling_sms_sends_it_for_resolution_only(self, session_factory, db_session, citizen, submitted_report):
        db_session.add(NotificationPreference(user_id=citizen.id, sms_enabled=True))
        db_session.commit()
        notifier = PreferenceNotifier(session_factory)

        for kind in (NotificationKind.STATUS_CHANGE, NotificationKind.RESOLUTION):
            notifier.notify(NotificationRequest(
                kind=kind,
                report_id=submitted_report.id,
                recipient_user_id=citizen.id
            ))

        sms = [kind for kind, channel in channels_logged(db_session, citizen.id) if channel == NotificationChannel.SMS]
        assert sms == [NotificationKind.RESOLUTION]

    def test_stored_preferences_are_respected(self, session_factory, db_session, citizen, submitted_report):
        db_session.add(NotificationPreference(user_id=citizen.id, email_enabled=False, push_on_status_change=False))
        db_session.commit()

        PreferenceNotifier(session_factory).notify(NotificationRequest(
            kind=NotificationKind.STATUS_CHANGE,
            report_id=submitted_report.id,
            recipient_user_id=citizen.id
        ))

        assert channels_logged(db_session, citizen.id) == []

    def test_message_names_tracking_code_and_status(self, session_factory, db_session, citizen, submitted_report):
        PreferenceNotifier(session_factory).notify(NotificationRequest(
            kind=NotificationKind.STATUS_CHANGE,
            report_id=submitted_report.id,
            recipient_user_id=citizen.id
        ))

        row = db_session.query(NotificationLog).first()
        assert row.message == (
            f"Your report {submitted_report.tracking_code} status has been updated to: Submitted"
        )

    def test_missing_recipient_is_skipped(self, session_factory, db_session, submitted_report):
        PreferenceNotifier(session_factory).notify(NotificationRequest(
            kind=NotificationKind.RESOLUTION,
            report_id=submitted_report.id,
            recipient_user_id=None
        ))

        assert db_session.query(NotificationLog).count() == 0

    def test_unknown_report_raises_notification_error(self, session_factory, areas):
        with pytest.raises(NotificationError):
            PreferenceNotifier(session_factory).notify(NotificationRequest(
                kind=NotificationKind.RESOLUTION,
                report_id=424242,
                recipient_user_id="citizen_1"
            ))


class TestLifecycleWithPreferenceNotifier:

    def test_anonymous_reporter_gets_no_resolution_delivery(
        self, session_factory, db_session, events, admin, officer, area_x
    ):
        lifecycle = ReportLifecycle(db_session, notifier=PreferenceNotifier(session_factory), events=events)
        report = lifecycle.submit_report(
            ANONYMOUS,
            category="environmental_nuisance",
            title="Smoke from burning tyres",
            description="Every evening near the motor park",
            area_id=area_x.id
        )
        lifecycle.assign_officer(admin, report, officer.id)
        lifecycle.start_work(officer, report)
        lifecycle.resolve_report(officer, report, "Burning site cleared")

        recipients = {row.recipient_user_id for row in db_session.query(NotificationLog).all()}
        assert recipients == {officer.id}


class TestPreferenceManagement:

    def test_defaults_until_first_save(self, lifecycle, db_session, citizen):
        preference = lifecycle.notification_preferences(citizen)

        assert preference.sms_enabled is False
        assert preference.email_on_resolution is True
        assert db_session.query(NotificationPreference).count() == 0

    def test_update_upserts_only_named_switches(self, lifecycle, db_session, citizen):
        lifecycle.update_notification_preferences(citizen, {"sms_enabled": True})
        lifecycle.update_notification_preferences(citizen, {"push_enabled": False})

        stored = db_session.query(NotificationPreference).filter_by(user_id=citizen.id).one()
        assert stored.sms_enabled is True
        assert stored.push_enabled is False
        assert stored.email_enabled is True

    def test_unknown_switch_is_rejected(self, lifecycle, citizen):
        with pytest.raises(ValidationError):
            lifecycle.update_notification_preferences(citizen, {"fax_enabled": True})

    def test_anonymous_callers_have_no_preferences(self, lifecycle, areas):
        with pytest.raises(Unauthorized):
            lifecycle.notification_preferences(ANONYMOUS)
        with pytest.raises(Unauthorized):
            lifecycle.update_notification_preferences(ANONYMOUS, {"sms_enabled": True})
