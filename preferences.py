"""
Preference Ranking Service.

Keeps each student's ranked list of desired clinical slots. Ranks for a
student are always 1..n; every insert, move and delete renumbers the
neighbours in the same transaction as the change itself.
"""

import logging

from sqlalchemy import func, select, update

from database import ClinicalSite, ClinicalSlot, StudentPreference, User, atomic
from errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


def close_rank_gap(session, student_id, removed_rank):
    """Pull every rank after a removed one back by one."""
    session.execute(
        update(StudentPreference)
        .where(StudentPreference.student_id == student_id, StudentPreference.rank > removed_rank)
        .values(rank=StudentPreference.rank - 1)
    )


def _shift(session, student_id, lower, upper, delta):
    """Add delta to every rank in [lower, upper] for a student."""
    session.execute(
        update(StudentPreference)
        .where(
            StudentPreference.student_id == student_id,
            StudentPreference.rank >= lower,
            StudentPreference.rank <= upper
        )
        .values(rank=StudentPreference.rank + delta)
    )


def _validate_rank(rank):
    if isinstance(rank, bool) or not isinstance(rank, int):
        raise ValidationError('Rank must be a positive integer', rank=rank)
    if rank < 1:
        raise ValidationError('Rank must be a positive integer', rank=rank)


class PreferenceService:
    """Ranked slot preferences for students."""

    def __init__(self, session):
        self.session = session

    def _lock_student(self, student_id):
        # Serializes concurrent edits of one student's list.
        stmt = (
            select(User)
            .where(User.id == student_id, User.role == 'student')
            .with_for_update()
        )
        student = self.session.execute(stmt).scalar_one_or_none()
        if student is None:
            raise ValidationError(
                f'Student with ID {student_id} not found or is not a student',
                student_id=student_id
            )
        return student

    def _require_active_slot(self, slot_id):
        stmt = select(ClinicalSlot.id).where(ClinicalSlot.id == slot_id, ClinicalSlot.is_active.is_(True))
        if self.session.execute(stmt).first() is None:
            raise ValidationError(
                f'Clinical slot with ID {slot_id} not found or is inactive',
                slot_id=slot_id
            )

    def _count(self, student_id) -> int:
        stmt = select(func.count(StudentPreference.id)).where(StudentPreference.student_id == student_id)
        return self.session.execute(stmt).scalar_one()

    def set_preference(self, student_id, slot_id, rank) -> dict:
        """
        Place slot_id at the given rank in the student's list.

        Moving an existing preference earlier pushes the ranks in
        [rank, old_rank) down by one; moving it later pulls (old_rank, rank]
        up by one. A new preference makes room by pushing everything at or
        after rank. Ranks past the end of the list are clamped to the end.
        """
        _validate_rank(rank)

        with atomic(self.session):
            self._lock_student(student_id)
            self._require_active_slot(slot_id)

            existing = self.session.execute(
                select(StudentPreference).where(
                    StudentPreference.student_id == student_id,
                    StudentPreference.slot_id == slot_id
                )
            ).scalar_one_or_none()
            total = self._count(student_id)

            if existing is not None:
                new_rank = min(rank, total)
                old_rank = existing.rank
                if new_rank < old_rank:
                    _shift(self.session, student_id, new_rank, old_rank - 1, 1)
                elif new_rank > old_rank:
                    _shift(self.session, student_id, old_rank + 1, new_rank, -1)
                if new_rank != old_rank:
                    self.session.execute(
                        update(StudentPreference)
                        .where(StudentPreference.id == existing.id)
                        .values(rank=new_rank)
                    )
                result = {'preference_id': existing.id, 'rank': new_rank, 'updated': True}
            else:
                new_rank = min(rank, total + 1)
                if new_rank <= total:
                    _shift(self.session, student_id, new_rank, total, 1)
                preference = StudentPreference(student_id=student_id, slot_id=slot_id, rank=new_rank)
                self.session.add(preference)
                self.session.flush()
                result = {'preference_id': preference.id, 'rank': new_rank, 'created': True}

        logger.info('Student %s ranked slot %s at %s', student_id, slot_id, result['rank'])
        return result

    def delete_preference(self, student_id, slot_id) -> dict:
        """Remove a preference and close the gap it leaves."""
        with atomic(self.session):
            preference = self.session.execute(
                select(StudentPreference).where(
                    StudentPreference.student_id == student_id,
                    StudentPreference.slot_id == slot_id
                ).with_for_update()
            ).scalar_one_or_none()
            if preference is None:
                raise NotFoundError(
                    f'Preference for student {student_id} and slot {slot_id} not found',
                    student_id=student_id,
                    slot_id=slot_id
                )
            removed_rank = preference.rank
            self.session.delete(preference)
            self.session.flush()
            close_rank_gap(self.session, student_id, removed_rank)

        logger.info('Student %s dropped slot %s (rank %s)', student_id, slot_id, removed_rank)
        return {'success': True}

    def list_preferences(self, student_id) -> list[dict]:
        """A student's preferences, most preferred first."""
        stmt = (
            select(StudentPreference, ClinicalSlot, ClinicalSite.site_name)
            .join(ClinicalSlot, ClinicalSlot.id == StudentPreference.slot_id)
            .join(ClinicalSite, ClinicalSite.id == ClinicalSlot.site_id)
            .where(StudentPreference.student_id == student_id)
            .order_by(StudentPreference.rank)
        )
        return [
            {
                'preference_id': pref.id,
                'student_id': pref.student_id,
                'slot_id': pref.slot_id,
                'rank': pref.rank,
                'created_at': pref.created_at.isoformat() if pref.created_at else None,
                'slot_date': slot.slot_date.isoformat(),
                'start_time': slot.start_time.strftime('%H:%M'),
                'end_time': slot.end_time.strftime('%H:%M'),
                'site_id': slot.site_id,
                'site_name': site_name
            }
            for pref, slot, site_name in self.session.execute(stmt)
        ]
