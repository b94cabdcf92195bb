import itertools
from datetime import date, time

import pytest
from sqlalchemy import select

from app import create_app
from database import StudentPreference, User, db
from slots import SiteService, SlotService

CLINIC_DAY = date(2025, 1, 10)


@pytest.fixture()
def app():
    app = create_app({'TESTING': True, 'SQLALCHEMY_DATABASE_URI': 'sqlite://'})
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def session(app):
    return db.session


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def make_user(session):
    counter = itertools.count(1)

    def _make(role='student', first_name=None):
        n = next(counter)
        user = User(
            email=f'{role}{n}@example.edu',
            first_name=first_name or role.title(),
            last_name=str(n),
            role=role
        )
        session.add(user)
        session.commit()
        return user.id

    return _make


@pytest.fixture()
def admin_id(make_user):
    return make_user('admin', 'Ada')


@pytest.fixture()
def site_id(session):
    return SiteService(session).create_site('County General ED', city='Springfield')['site_id']


@pytest.fixture()
def make_slot(session, site_id):
    def _make(start='08:00', end='12:00', max_students=2, day=CLINIC_DAY, site=None, is_active=True):
        slot_id = SlotService(session).create_slot(
            site_id=site or site_id,
            slot_date=day,
            start_time=time.fromisoformat(start),
            end_time=time.fromisoformat(end),
            max_students=max_students,
            preceptor_name='Medic Rivera'
        )['slot_id']
        if not is_active:
            SlotService(session).update_slot(slot_id, is_active=False)
        return slot_id

    return _make


def ranks_of(session, student_id):
    """[(slot_id, rank), ...] for a student, in rank order."""
    stmt = (
        select(StudentPreference.slot_id, StudentPreference.rank)
        .where(StudentPreference.student_id == student_id)
        .order_by(StudentPreference.rank)
    )
    return [tuple(row) for row in session.execute(stmt)]


def as_user(user_id, role):
    return {'X-User-Id': str(user_id), 'X-User-Role': role}
