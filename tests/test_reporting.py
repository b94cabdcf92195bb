import io

import pandas as pd

from assignments import AssignmentEngine
from export import ROSTER_COLUMNS, build_roster_workbook, roster_frame
from scheduler_cli import parse_args, run_auto_assign, run_roster
from preferences import PreferenceService
from slots import SlotService


SLOT = {
    'site_name': 'County General ED',
    'slot_date': '2025-01-10',
    'start_time': '08:00',
    'end_time': '12:00',
    'max_students': 2,
    'preceptor_name': 'Medic Rivera',
}

ROWS = [
    {'student_name': 'Sam Lee', 'assigned_by_name': 'Ada 1', 'created_at': '2025-01-02T10:00:00', 'notes': None},
    {'student_name': 'Kim Park', 'assigned_by_name': 'Ada 1', 'created_at': '2025-01-02T11:00:00', 'notes': 'late'},
]


def test_roster_frame_columns():
    df = roster_frame(ROWS)
    assert list(df.columns) == ROSTER_COLUMNS
    assert df['Student'].tolist() == ['Sam Lee', 'Kim Park']
    assert df['Notes'].tolist() == ['', 'late']


def test_workbook_round_trips_through_pandas():
    content = build_roster_workbook(SLOT, ROWS)

    df = pd.read_excel(io.BytesIO(content), sheet_name='Roster', header=2)

    assert list(df.columns) == ROSTER_COLUMNS
    assert df['Student'].tolist() == ['Sam Lee', 'Kim Park']


def test_empty_roster_still_renders():
    assert build_roster_workbook(SLOT, [])[:2] == b'PK'


def test_cli_parses_auto_assign():
    args = parse_args(['auto-assign', '3', '1', '2', '--by', '9'])
    assert args.command == 'auto-assign'
    assert args.slot_ids == [3, 1, 2]
    assert args.assigned_by == 9


def test_cli_auto_assign_and_roster(session, make_user, make_slot, admin_id, capsys):
    slot = make_slot(max_students=1)
    student = make_user('student', 'Sam')
    PreferenceService(session).set_preference(student, slot, 1)

    result = run_auto_assign(session, [slot], admin_id)
    assert result['assignments_created'] == 1

    df = run_roster(session, slot)
    assert df['Student'].tolist()[0].startswith('Sam ')

    out = capsys.readouterr().out
    assert 'Assignments created: 1' in out
    assert 'County General ED 2025-01-10 08:00-12:00 (1/1)' in out


def test_roster_matches_service_rows(session, make_user, make_slot, admin_id):
    slot = make_slot()
    AssignmentEngine(session).assign(make_user(), slot, admin_id, notes='first shift')

    df = roster_frame(SlotService(session).slot_assignments(slot))

    assert df['Notes'].tolist() == ['first shift']
