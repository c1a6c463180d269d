"""
Tests for the audit trail, tracking code immutability and failure isolation.

These tests prove:
- ReportUpdate rows replay as a valid walk ending at the current status
- Refused and failed transitions write nothing
- Notification and event subscriber failures never undo a transition
- Concurrent identical transitions produce exactly one audit entry
"""
import logging
import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker
from conftest import FailingNotifier, RecordingNotifier
from ecsrs.database import Base
from ecsrs.models.audit import ReportUpdate
from ecsrs.models.domain import Area, UserRole
from ecsrs.models.enums import AppRole, ReportCategory, ReportStatus
from ecsrs.services import policy
from ecsrs.services.errors import (
    InvalidTransition,
    NotFound,
    PersistenceError,
    Unauthorized,
)
from ecsrs.services.events import EventBus
from ecsrs.services.identity import ANONYMOUS, Actor
from ecsrs.services.state_machine import ReportLifecycle


def assert_valid_walk(updates, current_status):
    """The audit entries, oldest first, must replay through the state machine."""
    assert updates[0].previous_status is None
    assert updates[0].new_status == ReportStatus.SUBMITTED
    for before, after in zip(updates, updates[1:]):
        assert after.previous_status == before.new_status
        assert after.id > before.id
        assert any(
            policy.edge_exists(action, after.previous_status, after.new_status)
            for action in policy.Action
        ), f"{after.previous_status} -> {after.new_status} is not an edge"
    assert updates[-1].new_status == current_status


class TestAuditTrail:

    @pytest.mark.parametrize("steps", [
        [],
        ["assign"],
        ["assign", "unassign", "assign"],
        ["assign", "start", "resolve", "close"],
        ["override:in_progress", "override:closed"],
        ["assign", "start", "override:submitted", "assign", "start", "resolve"],
    ])
    def test_updates_replay_to_current_status(
        self, lifecycle, admin, officer, submitted_report, steps
    ):
        """
        INVARIANT: after N transitions there are N+1 entries and the last
        new_status equals the report status.
        """
        report = submitted_report
        for step in steps:
            if step == "assign":
                lifecycle.assign_officer(admin, report, officer.id)
            elif step == "unassign":
                lifecycle.unassign_officer(admin, report)
            elif step == "start":
                lifecycle.start_work(officer, report)
            elif step == "resolve":
                lifecycle.resolve_report(officer, report, "Handled on site")
            elif step == "close":
                lifecycle.close_report(admin, report)
            else:
                lifecycle.override_status(admin, report, step.split(":")[1])

        updates = lifecycle.store.list_report_updates(report.id)

        assert len(updates) == len(steps) + 1
        assert_valid_walk(updates, report.status)

    def test_updates_record_actor(self, lifecycle, admin, officer, citizen, resolved_report):
        updates = lifecycle.store.list_report_updates(resolved_report.id)

        assert [u.updated_by for u in updates] == [citizen.id, admin.id, officer.id, officer.id]

    def test_tracking_lookup_returns_ordered_history(self, lifecycle, resolved_report):
        result = lifecycle.track(resolved_report.tracking_code.lower())

        assert result.report.id == resolved_report.id
        assert [u.new_status for u in result.updates] == [
            ReportStatus.SUBMITTED,
            ReportStatus.ASSIGNED,
            ReportStatus.IN_PROGRESS,
            ReportStatus.RESOLVED,
        ]

    def test_tracking_lookup_unknown_code(self, lifecycle, areas):
        with pytest.raises(NotFound):
            lifecycle.track("ECSRS-2024-9999")

    def test_change_feed_returns_entries_after_sequence(self, lifecycle, admin, assigned_report):
        first, second = lifecycle.store.list_report_updates(assigned_report.id)

        changes = lifecycle.changes_since(admin, first.id)

        assert [c.id for c in changes] == [second.id]

    def test_change_feed_hides_other_citizens_reports(self, lifecycle, db_session, submitted_report):
        db_session.add(UserRole(user_id="citizen_2", role=AppRole.CITIZEN))
        db_session.commit()
        stranger = Actor(id="citizen_2")

        assert lifecycle.changes_since(stranger, 0) == []


class TestTrackingCodeImmutability:

    def test_tracking_code_never_changes(self, lifecycle, admin, submitted_report, officer):
        code = submitted_report.tracking_code

        lifecycle.assign_officer(admin, submitted_report, officer.id)
        lifecycle.set_priority(admin, submitted_report, "high")
        lifecycle.attach_evidence(admin, submitted_report, ["https://media.example/1.jpg"])
        lifecycle.start_work(officer, submitted_report)
        lifecycle.resolve_report(officer, submitted_report, "Done")
        lifecycle.close_report(admin, submitted_report)

        assert submitted_report.tracking_code == code
        assert lifecycle.track(code).report.id == submitted_report.id

    def test_category_is_immutable_through_the_lifecycle(self, lifecycle, resolved_report):
        assert resolved_report.category == ReportCategory.ILLEGAL_DUMPING


class TestNoPartialWrites:

    def test_refused_transition_writes_nothing(self, lifecycle, db_session, citizen, submitted_report):
        before = db_session.query(ReportUpdate).count()

        with pytest.raises(Unauthorized):
            lifecycle.override_status(citizen, submitted_report, ReportStatus.CLOSED)
        with pytest.raises(InvalidTransition):
            lifecycle.close_report(citizen, submitted_report)

        db_session.refresh(submitted_report)
        assert submitted_report.status == ReportStatus.SUBMITTED
        assert db_session.query(ReportUpdate).count() == before

    def test_store_failure_surfaces_as_persistence_error(
        self, lifecycle, db_session, notifier, admin, officer, submitted_report, monkeypatch
    ):
        def broken_commit():
            raise OperationalError("COMMIT", {}, Exception("database is locked"))

        monkeypatch.setattr(db_session, "commit", broken_commit)
        with pytest.raises(PersistenceError) as exc_info:
            lifecycle.assign_officer(admin, submitted_report, officer.id)
        monkeypatch.undo()

        assert isinstance(exc_info.value.__cause__, OperationalError)
        db_session.refresh(submitted_report)
        assert submitted_report.status == ReportStatus.SUBMITTED
        assert submitted_report.assigned_officer_id is None
        assert len(lifecycle.store.list_report_updates(submitted_report.id)) == 1
        assert notifier.sent == []

    def test_attach_evidence_after_submission(self, lifecycle, citizen, submitted_report):
        lifecycle.attach_evidence(citizen, submitted_report, ["https://media.example/a.jpg"])
        lifecycle.attach_evidence(citizen, submitted_report, [])

        assert submitted_report.media_urls == ["https://media.example/a.jpg"]

    def test_strangers_cannot_attach_evidence(self, lifecycle, officer, submitted_report):
        with pytest.raises(Unauthorized):
            lifecycle.attach_evidence(officer, submitted_report, ["https://media.example/a.jpg"])


class TestAnonymousLateEvidence:

    @pytest.fixture
    def anonymous_report(self, lifecycle, area_x):
        return lifecycle.submit_report(
            ANONYMOUS,
            category=ReportCategory.ILLEGAL_DUMPING,
            title="Refuse dumped in the drain",
            description="Seen from the footbridge",
            area_id=area_x.id
        )

    def test_only_anonymous_reports_get_a_token(self, anonymous_report, submitted_report):
        assert anonymous_report.evidence_token
        assert submitted_report.evidence_token is None

    def test_token_lets_anonymous_submitter_attach_media(self, lifecycle, anonymous_report):
        token = anonymous_report.evidence_token

        lifecycle.attach_evidence(
            ANONYMOUS, anonymous_report, ["https://media.example/drain.jpg"], evidence_token=token
        )

        assert anonymous_report.media_urls == ["https://media.example/drain.jpg"]
        assert anonymous_report.evidence_token is None

    def test_token_is_single_use(self, lifecycle, anonymous_report):
        token = anonymous_report.evidence_token
        lifecycle.attach_evidence(ANONYMOUS, anonymous_report, ["https://media.example/1.jpg"], evidence_token=token)

        with pytest.raises(Unauthorized):
            lifecycle.attach_evidence(ANONYMOUS, anonymous_report, ["https://media.example/2.jpg"], evidence_token=token)
        assert anonymous_report.media_urls == ["https://media.example/1.jpg"]

    def test_missing_or_wrong_token_is_refused(self, lifecycle, anonymous_report):
        with pytest.raises(Unauthorized):
            lifecycle.attach_evidence(ANONYMOUS, anonymous_report, ["https://media.example/x.jpg"])
        with pytest.raises(Unauthorized):
            lifecycle.attach_evidence(
                ANONYMOUS, anonymous_report, ["https://media.example/x.jpg"], evidence_token="not-the-token"
            )

        assert anonymous_report.media_urls == []


class TestNotificationIsolation:

    @pytest.mark.parametrize("error", [None, RuntimeError("boom")])
    def test_notification_failure_does_not_block_transition(
        self, db_session, events, admin, officer, submitted_report, caplog, error
    ):
        failing = FailingNotifier(error)
        lifecycle = ReportLifecycle(db_session, notifier=failing, events=events)

        with caplog.at_level(logging.ERROR, logger="ecsrs.services.state_machine"):
            lifecycle.assign_officer(admin, submitted_report, officer.id)

        assert failing.calls == 1
        assert submitted_report.status == ReportStatus.ASSIGNED
        assert len(lifecycle.store.list_report_updates(submitted_report.id)) == 2
        assert "assignment" in caplog.text

    def test_failing_event_subscriber_does_not_block_transition(
        self, db_session, notifier, admin, officer, submitted_report
    ):
        bus = EventBus()
        seen = []

        def explode(event):
            raise ValueError("subscriber bug")

        bus.subscribe(explode)
        bus.subscribe(seen.append)
        lifecycle = ReportLifecycle(db_session, notifier=notifier, events=bus)

        lifecycle.assign_officer(admin, submitted_report, officer.id)

        assert submitted_report.status == ReportStatus.ASSIGNED
        assert [e.to_status for e in seen] == [ReportStatus.ASSIGNED]

    def test_unsubscribe(self):
        bus = EventBus()
        seen = []
        unsubscribe = bus.subscribe(seen.append)
        unsubscribe()
        unsubscribe()

        assert bus._handlers == []


class TestConcurrentTransitions:

    def test_only_one_of_two_racing_start_work_requests_wins(self, tmp_path):
        """
        Two requests both saw the report as assigned. Exactly one
        in_progress entry is written; the loser gets InvalidTransition.
        """
        engine = create_engine(f"sqlite:///{tmp_path / 'race.db'}")
        Base.metadata.create_all(engine)
        Session = sessionmaker(bind=engine)

        setup = Session()
        area = Area(name="Fagge")
        setup.add(area)
        setup.commit()
        setup.add_all([
            UserRole(user_id="admin", role=AppRole.ADMIN),
            UserRole(user_id="officer", role=AppRole.FIELD_OFFICER, assigned_area_id=area.id),
        ])
        setup.commit()
        admin = Actor(id="admin", role=AppRole.ADMIN)
        officer = Actor(id="officer", role=AppRole.FIELD_OFFICER, assigned_area_id=area.id)

        seed = ReportLifecycle(setup, notifier=RecordingNotifier(), events=EventBus())
        report = seed.submit_report(
            Actor(id="citizen"),
            category=ReportCategory.BLOCKED_DRAINAGE,
            title="Blocked drain",
            description="Flooding after rain",
            area_id=area.id
        )
        seed.assign_officer(admin, report, officer.id)
        report_id = report.id
        setup.close()

        first_session, second_session = Session(), Session()
        first = ReportLifecycle(first_session, notifier=RecordingNotifier(), events=EventBus())
        second = ReportLifecycle(second_session, notifier=RecordingNotifier(), events=EventBus())
        first_view = first.store.get_report(report_id)
        second_view = second.store.get_report(report_id)
        assert first_view.status == second_view.status == ReportStatus.ASSIGNED

        first.start_work(officer, first_view)
        with pytest.raises(InvalidTransition):
            second.start_work(officer, second_view)

        check = Session()
        entries = check.query(ReportUpdate).filter(
            ReportUpdate.report_id == report_id,
            ReportUpdate.new_status == ReportStatus.IN_PROGRESS
        ).all()
        assert len(entries) == 1
        assert second_view.status == ReportStatus.IN_PROGRESS

        for session in (first_session, second_session, check):
            session.close()
        engine.dispose()
