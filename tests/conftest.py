"""Pytest configuration and shared fixtures."""
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from ecsrs.database import Base
from ecsrs.models.audit import NotificationLog, ReportUpdate  # noqa: F401
from ecsrs.models.domain import Area, UserRole
from ecsrs.models.enums import AppRole, ReportCategory
from ecsrs.services.events import EventBus
from ecsrs.services.identity import Actor
from ecsrs.services.notifier import Notifier
from ecsrs.services.errors import NotificationError
from ecsrs.services.state_machine import ReportLifecycle


class RecordingNotifier(Notifier):
    """Keeps every request instead of delivering it."""

    def __init__(self):
        self.sent = []

    def notify(self, request):
        self.sent.append(request)

    def kinds(self):
        return [request.kind for request in self.sent]


class FailingNotifier(Notifier):
    def __init__(self, error=None):
        self.error = error or NotificationError("SMS gateway unreachable")
        self.calls = 0

    def notify(self, request):
        self.calls += 1
        raise self.error


@pytest.fixture
def engine():
    """Fresh in-memory database shared by every session of one test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def areas(db_session):
    """Two administrative areas: X (where reports are filed) and Y."""
    area_x = Area(name="Kano Municipal")
    area_y = Area(name="Nassarawa")
    db_session.add_all([area_x, area_y])
    db_session.commit()
    return area_x, area_y


@pytest.fixture
def area_x(areas):
    return areas[0]


@pytest.fixture
def area_y(areas):
    return areas[1]


def _add_role(db_session, user_id, role, area=None, name=None):
    db_session.add(UserRole(
        user_id=user_id,
        role=role,
        assigned_area_id=area.id if area else None,
        display_name=name
    ))
    db_session.commit()
    return Actor(id=user_id, role=role, assigned_area_id=area.id if area else None)


@pytest.fixture
def admin(db_session):
    return _add_role(db_session, "admin_1", AppRole.ADMIN, name="Amina Bello")


@pytest.fixture
def super_admin(db_session):
    return _add_role(db_session, "super_1", AppRole.SUPER_ADMIN, name="Commissioner")


@pytest.fixture
def officer(db_session, area_x):
    return _add_role(db_session, "officer_x", AppRole.FIELD_OFFICER, area=area_x, name="Musa Ibrahim")


@pytest.fixture
def other_officer(db_session, area_y):
    return _add_role(db_session, "officer_y", AppRole.FIELD_OFFICER, area=area_y, name="Hauwa Sani")


@pytest.fixture
def citizen(db_session):
    return _add_role(db_session, "citizen_1", AppRole.CITIZEN)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def events():
    bus = EventBus()
    bus.received = []
    bus.subscribe(bus.received.append)
    return bus


@pytest.fixture
def lifecycle(db_session, notifier, events):
    return ReportLifecycle(db_session, notifier=notifier, events=events)


@pytest.fixture
def submitted_report(lifecycle, citizen, area_x):
    """A report submitted by a signed-in citizen in area X."""
    return lifecycle.submit_report(
        citizen,
        category=ReportCategory.ILLEGAL_DUMPING,
        title="Dumping near market",
        description="Refuse dumped behind the Kurmi market stalls",
        area_id=area_x.id,
        address="Kurmi Market, Kano",
        latitude=12.0,
        longitude=8.52
    )


@pytest.fixture
def assigned_report(lifecycle, admin, officer, submitted_report):
    return lifecycle.assign_officer(admin, submitted_report, officer.id)


@pytest.fixture
def in_progress_report(lifecycle, officer, assigned_report):
    return lifecycle.start_work(officer, assigned_report)


@pytest.fixture
def resolved_report(lifecycle, officer, in_progress_report):
    return lifecycle.resolve_report(officer, in_progress_report, "Cleared and fined offender")
