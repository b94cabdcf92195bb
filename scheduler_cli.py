"""
Operator command line for the clinical scheduler.

    python scheduler_cli.py init-db
    python scheduler_cli.py auto-assign 12 13 14 --by 1
    python scheduler_cli.py roster 12

Uses the same database settings as the web app (DATABASE_URL etc.).
"""

import argparse
import logging
import sys

import pandas as pd

from app import create_app
from assignments import AutoAssigner
from database import db
from errors import SchedulingError
from export import roster_frame
from slots import SlotService

logger = logging.getLogger('scheduler_cli')


def parse_args(argv):
    parser = argparse.ArgumentParser(description='EMS clinical scheduling tools')
    commands = parser.add_subparsers(dest='command', required=True)

    commands.add_parser('init-db', help='Create any missing tables')

    auto = commands.add_parser('auto-assign', help='Fill slots from ranked student preferences')
    auto.add_argument('slot_ids', nargs='+', type=int, help='Slot IDs, processed in order')
    auto.add_argument('--by', dest='assigned_by', type=int, required=True,
                      help='User ID recorded as the assigner')

    roster = commands.add_parser('roster', help='Print the roster of a slot as CSV')
    roster.add_argument('slot_id', type=int)

    return parser.parse_args(argv)


def run_auto_assign(session, slot_ids, assigned_by):
    result = AutoAssigner(session).auto_assign(slot_ids, assigned_by)

    print(f"Assignments created: {result['assignments_created']}")
    if result['assignments']:
        df = pd.DataFrame(result['assignments'])
        print(df[['slot_id', 'student_id', 'rank', 'assignment_id']].to_csv(index=False))

    if result['failures']:
        print("\n--- SKIPPED ---")
        for failure in result['failures']:
            print(f"  slot {failure['slot_id']} / student {failure['student_id']}: {failure['error']}")

    return result


def run_roster(session, slot_id):
    service = SlotService(session)
    slot = service.get_slot(slot_id)
    df = roster_frame(service.slot_assignments(slot_id))

    print(f"{slot['site_name']} {slot['slot_date']} {slot['start_time']}-{slot['end_time']} "
          f"({slot['assigned_students']}/{slot['max_students']})")
    print(df.to_csv(index=False))
    return df


def main(argv=None):
    args = parse_args(sys.argv[1:] if argv is None else argv)
    app = create_app()

    with app.app_context():
        try:
            if args.command == 'init-db':
                # create_app() already ran create_all()
                print("Database tables are up to date.")
            elif args.command == 'auto-assign':
                run_auto_assign(db.session, args.slot_ids, args.assigned_by)
            elif args.command == 'roster':
                run_roster(db.session, args.slot_id)
        except SchedulingError as exc:
            logger.error('%s: %s', exc.kind.value, exc.message)
            return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
