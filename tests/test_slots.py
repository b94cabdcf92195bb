from datetime import date, time

import pytest

from assignments import AssignmentEngine
from conftest import CLINIC_DAY, ranks_of
from errors import ConflictError, NotFoundError, ValidationError
from preferences import PreferenceService
from slots import SiteService, SlotService


@pytest.fixture()
def slots(session):
    return SlotService(session)


@pytest.fixture()
def sites(session):
    return SiteService(session)


def test_delete_blocked_while_assigned(session, slots, make_user, make_slot, admin_id):
    slot = make_slot()
    engine = AssignmentEngine(session)
    assignment_id = engine.assign(make_user(), slot, admin_id)

    with pytest.raises(ConflictError) as exc:
        slots.delete_slot(slot)
    assert 'existing assignments' in exc.value.message
    assert exc.value.reason == 'slot_has_assignments'

    engine.remove(assignment_id)
    assert slots.delete_slot(slot) == {'success': True}
    with pytest.raises(NotFoundError):
        slots.get_slot(slot)


def test_delete_missing_slot(slots):
    with pytest.raises(NotFoundError):
        slots.delete_slot(12345)


def test_delete_slot_renumbers_preferences(session, slots, make_user, make_slot):
    a = make_slot(start='06:00', end='07:00')
    b = make_slot(start='08:00', end='09:00')
    c = make_slot(start='10:00', end='11:00')
    student = make_user()
    prefs = PreferenceService(session)
    for rank, slot in enumerate((a, b, c), start=1):
        prefs.set_preference(student, slot, rank)

    slots.delete_slot(b)

    assert ranks_of(session, student) == [(a, 1), (c, 2)]


def test_create_requires_active_site(sites, slots, site_id):
    sites.set_active(site_id, False)
    with pytest.raises(ValidationError):
        slots.create_slot(site_id, CLINIC_DAY, time(8), time(12), 2)
    with pytest.raises(ValidationError):
        slots.create_slot(999, CLINIC_DAY, time(8), time(12), 2)


@pytest.mark.parametrize('start, end, capacity', [
    (time(12), time(8), 2),
    (time(8), time(8), 2),
    (time(8), time(12), 0),
    (time(8), time(12), -1),
])
def test_create_rejects_bad_window_or_capacity(slots, site_id, start, end, capacity):
    with pytest.raises(ValidationError):
        slots.create_slot(site_id, CLINIC_DAY, start, end, capacity)


def test_get_slot_reports_headcount(session, slots, make_user, make_slot, admin_id):
    slot = make_slot(max_students=3)
    AssignmentEngine(session).assign(make_user(), slot, admin_id)

    data = slots.get_slot(slot)

    assert data['assigned_students'] == 1
    assert data['site_name'] == 'County General ED'
    assert data['start_time'] == '08:00'
    assert data['preceptor_name'] == 'Medic Rivera'


def test_update_merges_non_null_fields(slots, make_slot):
    slot = make_slot()

    slots.update_slot(slot, max_students=5, notes='bring stethoscope', preceptor_name=None)

    data = slots.get_slot(slot)
    assert data['max_students'] == 5
    assert data['notes'] == 'bring stethoscope'
    assert data['preceptor_name'] == 'Medic Rivera'
    assert data['end_time'] == '12:00'


def test_update_cannot_shrink_below_headcount(session, slots, make_user, make_slot, admin_id):
    slot = make_slot(max_students=3)
    engine = AssignmentEngine(session)
    engine.assign(make_user(), slot, admin_id)
    engine.assign(make_user(), slot, admin_id)

    with pytest.raises(ConflictError) as exc:
        slots.update_slot(slot, max_students=1)
    assert exc.value.reason == 'capacity_below_headcount'

    slots.update_slot(slot, max_students=2)
    assert slots.get_slot(slot)['max_students'] == 2


def test_update_checks_merged_window(slots, make_slot):
    slot = make_slot(start='08:00', end='12:00')
    with pytest.raises(ValidationError):
        slots.update_slot(slot, start_time=time(13))
    slots.update_slot(slot, start_time=time(13), end_time=time(17))
    assert slots.get_slot(slot)['start_time'] == '13:00'


def test_rescheduling_cannot_double_book_assigned_students(session, slots, make_user, make_slot, admin_id):
    morning = make_slot(start='08:00', end='12:00')
    afternoon = make_slot(start='13:00', end='15:00')
    student = make_user()
    engine = AssignmentEngine(session)
    engine.assign(student, morning, admin_id)
    engine.assign(student, afternoon, admin_id)

    with pytest.raises(ConflictError) as exc:
        slots.update_slot(afternoon, start_time=time(9), end_time=time(11))
    assert exc.value.reason == 'time_overlap'
    assert exc.value.context['conflicting_slot_id'] == morning
    assert slots.get_slot(afternoon)['start_time'] == '13:00'

    slots.update_slot(afternoon, start_time=time(12), end_time=time(14))
    slots.update_slot(afternoon, slot_date=date(2025, 1, 11), start_time=time(9), end_time=time(11))
    assert slots.get_slot(afternoon)['slot_date'] == '2025-01-11'


def test_update_rejects_inactive_site_and_missing_slot(sites, slots, make_slot):
    slot = make_slot()
    closed = sites.create_site('Closed Clinic', is_active=False)['site_id']
    with pytest.raises(ValidationError):
        slots.update_slot(slot, site_id=closed)
    with pytest.raises(NotFoundError):
        slots.update_slot(777, notes='x')


def test_available_slots_filters_and_orders(session, slots, make_user, make_slot, admin_id):
    late = make_slot(start='13:00', end='17:00')
    early = make_slot(start='07:00', end='11:00')
    full = make_slot(start='18:00', end='20:00', max_students=1)
    make_slot(is_active=False)
    make_slot(day=date(2025, 3, 1))
    AssignmentEngine(session).assign(make_user(), full, admin_id)

    found = slots.available_slots(date(2025, 1, 1), date(2025, 1, 31))

    assert [s['slot_id'] for s in found] == [early, late]
    assert all(s['assigned_students'] == 0 for s in found)


def test_available_slots_rejects_inverted_range(slots):
    with pytest.raises(ValidationError):
        slots.available_slots(date(2025, 2, 1), date(2025, 1, 1))


def test_slot_roster_names(session, slots, make_user, make_slot, admin_id):
    slot = make_slot()
    student = make_user('student', 'Sam')
    AssignmentEngine(session).assign(student, slot, admin_id)

    [row] = slots.slot_assignments(slot)

    assert row['student_id'] == student
    assert row['student_name'].startswith('Sam ')
    assert row['assigned_by_name'].startswith('Ada ')


def test_site_names_are_unique(sites, site_id):
    with pytest.raises(ConflictError) as exc:
        sites.create_site('County General ED')
    assert exc.value.reason == 'duplicate_name'

    other = sites.create_site('Lakeside Urgent Care')['site_id']
    with pytest.raises(ConflictError):
        sites.update_site(other, site_name='County General ED')


def test_site_requires_name_and_lists_active(sites, site_id):
    with pytest.raises(ValidationError):
        sites.create_site('   ')
    closed = sites.create_site('Old Station 4')['site_id']
    sites.set_active(closed, False)

    assert [s['site_name'] for s in sites.list_sites(active_only=True)] == ['County General ED']
    assert len(sites.list_sites()) == 2
    assert sites.get_site(closed)['is_active'] is False
    with pytest.raises(NotFoundError):
        sites.get_site(404)


def test_site_name_must_be_text(sites, site_id):
    with pytest.raises(ValidationError):
        sites.create_site(123)
    with pytest.raises(ValidationError):
        sites.update_site(site_id, site_name=['County'])
    assert sites.get_site(site_id)['site_name'] == 'County General ED'
