"""
Clinical assignment engine.

Every placement of a student into a slot goes through check_assignment():
the slot must be active and have room, the pair must be new, and the student
must not already be booked for an overlapping window on that date at any
site. The slot row is locked for the check-and-insert so concurrent
assignments cannot jointly overrun capacity.
"""

import logging
from dataclasses import dataclass, asdict
from typing import Optional

from sqlalchemy import exists, select
from sqlalchemy.exc import IntegrityError

from database import ClinicalAssignment, ClinicalSite, ClinicalSlot, StudentPreference, atomic, find_student
from errors import ConflictError, NotFoundError, ValidationError
from slots import assignment_count, intervals_overlap

logger = logging.getLogger(__name__)


def check_assignment(session, student_id, slot_id) -> ClinicalSlot:
    """
    Validate a candidate (student, slot) placement and return the locked slot.

    Checks run in order: slot/student eligibility, capacity, duplicate,
    time overlap. The first failure raises.
    """
    slot = session.execute(
        select(ClinicalSlot)
        .where(ClinicalSlot.id == slot_id, ClinicalSlot.is_active.is_(True))
        .with_for_update()
    ).scalar_one_or_none()
    if slot is None:
        raise ValidationError(
            f'Clinical slot with ID {slot_id} not found or is inactive',
            slot_id=slot_id
        )

    if find_student(session, student_id) is None:
        raise ValidationError(
            f'Student with ID {student_id} not found or is not a student',
            student_id=student_id
        )

    current = assignment_count(session, slot_id)
    if current >= slot.max_students:
        raise ConflictError(
            f'Clinical slot with ID {slot_id} is already at maximum capacity',
            reason='capacity',
            slot_id=slot_id,
            max_students=slot.max_students
        )

    duplicate = session.execute(
        select(ClinicalAssignment.id).where(
            ClinicalAssignment.student_id == student_id,
            ClinicalAssignment.slot_id == slot_id
        )
    ).first()
    if duplicate is not None:
        raise ConflictError(
            f'Student with ID {student_id} is already assigned to slot with ID {slot_id}',
            reason='duplicate',
            student_id=student_id,
            slot_id=slot_id
        )

    same_day = session.execute(
        select(ClinicalAssignment.id, ClinicalSlot.id, ClinicalSlot.start_time, ClinicalSlot.end_time)
        .join(ClinicalSlot, ClinicalSlot.id == ClinicalAssignment.slot_id)
        .where(
            ClinicalAssignment.student_id == student_id,
            ClinicalSlot.slot_date == slot.slot_date
        )
    ).all()
    for assignment_id, other_slot_id, start, end in same_day:
        if intervals_overlap(start, end, slot.start_time, slot.end_time):
            raise ConflictError(
                f'Student with ID {student_id} already has a clinical assignment during this time period',
                reason='time_overlap',
                student_id=student_id,
                slot_id=slot_id,
                conflicting_assignment_id=assignment_id,
                conflicting_slot_id=other_slot_id
            )

    return slot


class AssignmentEngine:
    """Creates and removes clinical assignments."""

    def __init__(self, session):
        self.session = session

    def assign(self, student_id, slot_id, assigned_by, notes: Optional[str] = None) -> int:
        """Place a student into a slot and return the new assignment id."""
        try:
            with atomic(self.session):
                check_assignment(self.session, student_id, slot_id)
                assignment = ClinicalAssignment(
                    student_id=student_id,
                    slot_id=slot_id,
                    assigned_by=assigned_by,
                    notes=notes
                )
                self.session.add(assignment)
                self.session.flush()
                assignment_id = assignment.id
        except IntegrityError as exc:
            # Only a concurrent insert of the same pair is a duplicate; other
            # constraint failures (e.g. an unknown assigned_by) propagate.
            existing = self.session.execute(
                select(ClinicalAssignment.id).where(
                    ClinicalAssignment.student_id == student_id,
                    ClinicalAssignment.slot_id == slot_id
                )
            ).first()
            if existing is None:
                raise
            raise ConflictError(
                f'Student with ID {student_id} is already assigned to slot with ID {slot_id}',
                reason='duplicate',
                student_id=student_id,
                slot_id=slot_id
            ) from exc

        logger.info('Assigned student %s to slot %s (assignment %s, by %s)',
                    student_id, slot_id, assignment_id, assigned_by)
        return assignment_id

    def remove(self, assignment_id) -> dict:
        with atomic(self.session):
            assignment = self.session.get(ClinicalAssignment, assignment_id)
            if assignment is None:
                raise NotFoundError(
                    f'Clinical assignment with ID {assignment_id} not found',
                    assignment_id=assignment_id
                )
            self.session.delete(assignment)

        logger.info('Removed clinical assignment %s', assignment_id)
        return {'success': True}

    def student_assignments(self, student_id) -> list[dict]:
        """A student's assignments in calendar order."""
        stmt = (
            select(ClinicalAssignment, ClinicalSlot, ClinicalSite.site_name)
            .join(ClinicalSlot, ClinicalSlot.id == ClinicalAssignment.slot_id)
            .join(ClinicalSite, ClinicalSite.id == ClinicalSlot.site_id)
            .where(ClinicalAssignment.student_id == student_id)
            .order_by(ClinicalSlot.slot_date, ClinicalSlot.start_time)
        )
        rows = []
        for assignment, slot, site_name in self.session.execute(stmt):
            row = assignment.to_dict()
            row.update({
                'slot_date': slot.slot_date.isoformat(),
                'start_time': slot.start_time.strftime('%H:%M'),
                'end_time': slot.end_time.strftime('%H:%M'),
                'site_id': slot.site_id,
                'site_name': site_name,
                'preceptor_name': slot.preceptor_name,
                'assigned_by_name': assignment.assigner.full_name if assignment.assigner else None
            })
            rows.append(row)
        return rows


@dataclass
class AssignmentOutcome:
    """Result of one auto-assign attempt."""
    student_id: int
    slot_id: int
    rank: int
    assignment_id: Optional[int] = None
    error_kind: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self):
        return self.assignment_id is not None

    def to_dict(self):
        data = asdict(self)
        if self.ok:
            del data['error_kind'], data['error']
        else:
            del data['assignment_id']
        return data


class AutoAssigner:
    """
    Greedy preference-driven filling of slots.

    Slots are processed independently in the order given; within a slot the
    candidates are taken in ascending rank until the free spots are used up.
    A candidate that fails its checks (e.g. it was just booked elsewhere in
    the same batch) is recorded and skipped without stopping the batch.
    """

    def __init__(self, session, engine: Optional[AssignmentEngine] = None):
        self.session = session
        self.engine = engine or AssignmentEngine(session)

    def _candidates(self, slot_id):
        already_assigned = exists().where(
            ClinicalAssignment.student_id == StudentPreference.student_id,
            ClinicalAssignment.slot_id == StudentPreference.slot_id
        )
        stmt = (
            select(StudentPreference.student_id, StudentPreference.rank)
            .where(StudentPreference.slot_id == slot_id, ~already_assigned)
            .order_by(StudentPreference.rank, StudentPreference.created_at, StudentPreference.id)
        )
        return self.session.execute(stmt).all()

    def auto_assign(self, slot_ids, assigned_by) -> dict:
        outcomes = []

        for slot_id in slot_ids:
            slot = self.session.get(ClinicalSlot, slot_id)
            if slot is None or not slot.is_active:
                logger.info('Auto-assign skipping missing or inactive slot %s', slot_id)
                continue

            available = slot.max_students - assignment_count(self.session, slot_id)
            if available <= 0:
                logger.info('Auto-assign skipping full slot %s', slot_id)
                continue

            filled = 0
            for student_id, rank in self._candidates(slot_id):
                if filled >= available:
                    break
                outcome = AssignmentOutcome(student_id=student_id, slot_id=slot_id, rank=rank)
                try:
                    outcome.assignment_id = self.engine.assign(
                        student_id,
                        slot_id,
                        assigned_by,
                        f'Auto-assigned based on student preference (rank {rank})'
                    )
                    filled += 1
                except (ConflictError, ValidationError) as exc:
                    logger.warning('Failed to auto-assign student %s to slot %s: %s',
                                   student_id, slot_id, exc.message)
                    outcome.error_kind = exc.kind.value
                    outcome.error = exc.message
                outcomes.append(outcome)

        created = [o.to_dict() for o in outcomes if o.ok]
        failures = [o.to_dict() for o in outcomes if not o.ok]
        logger.info('Auto-assign over %d slot(s) created %d assignment(s), %d failure(s)',
                    len(slot_ids), len(created), len(failures))
        return {
            'success': True,
            'assignments_created': len(created),
            'assignments': created,
            'failures': failures
        }
