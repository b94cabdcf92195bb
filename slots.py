"""
Clinical sites and slots.

Sites are a thin registry (create, update, activate/deactivate). Slots carry
the capacity and time window the assignment engine checks against.
"""

import logging
from datetime import date, time
from typing import Optional

from sqlalchemy import func, select

from database import ClinicalAssignment, ClinicalSite, ClinicalSlot, StudentPreference, atomic
from errors import ConflictError, NotFoundError, ValidationError
from preferences import close_rank_gap

logger = logging.getLogger(__name__)

SITE_FIELDS = (
    'site_name', 'address', 'city', 'state', 'zip',
    'contact_name', 'contact_phone', 'contact_email', 'notes', 'is_active'
)
SLOT_FIELDS = (
    'site_id', 'slot_date', 'start_time', 'end_time', 'max_students',
    'preceptor_name', 'notes', 'is_active'
)


def assignment_count(session, slot_id) -> int:
    """Current headcount of a slot, read fresh from the store."""
    stmt = select(func.count(ClinicalAssignment.id)).where(ClinicalAssignment.slot_id == slot_id)
    return session.execute(stmt).scalar_one()


def intervals_overlap(start_a: time, end_a: time, start_b: time, end_b: time) -> bool:
    """Half-open [start, end) windows overlap iff each starts before the other ends."""
    return start_a < end_b and start_b < end_a


def _headcount_column():
    return (
        select(func.count(ClinicalAssignment.id))
        .where(ClinicalAssignment.slot_id == ClinicalSlot.id)
        .correlate(ClinicalSlot)
        .scalar_subquery()
    )


def _validate_capacity(max_students):
    if isinstance(max_students, bool) or not isinstance(max_students, int) or max_students <= 0:
        raise ValidationError('Max students must be a positive integer', max_students=max_students)


def _validate_window(start_time: time, end_time: time):
    if start_time >= end_time:
        raise ValidationError(
            'Slot start time must be before its end time',
            start_time=start_time.strftime('%H:%M'),
            end_time=end_time.strftime('%H:%M')
        )


class SiteService:
    """Create, update and (de)activate clinical sites."""

    def __init__(self, session):
        self.session = session

    def _get(self, site_id) -> ClinicalSite:
        site = self.session.get(ClinicalSite, site_id)
        if site is None:
            raise NotFoundError(f'Clinical site with ID {site_id} not found', site_id=site_id)
        return site

    def _ensure_unique_name(self, site_name, exclude_id=None):
        stmt = select(ClinicalSite.id).where(ClinicalSite.site_name == site_name)
        if exclude_id is not None:
            stmt = stmt.where(ClinicalSite.id != exclude_id)
        if self.session.execute(stmt).first() is not None:
            raise ConflictError(
                f"A clinical site with the name '{site_name}' already exists",
                reason='duplicate_name',
                site_name=site_name
            )

    def list_sites(self, active_only=False) -> list[dict]:
        stmt = select(ClinicalSite).order_by(ClinicalSite.site_name)
        if active_only:
            stmt = stmt.where(ClinicalSite.is_active.is_(True))
        return [site.to_dict() for site in self.session.execute(stmt).scalars()]

    def get_site(self, site_id) -> dict:
        return self._get(site_id).to_dict()

    def create_site(self, site_name, **fields) -> dict:
        if site_name is not None and not isinstance(site_name, str):
            raise ValidationError('Site name must be a string')
        site_name = (site_name or '').strip()
        if not site_name:
            raise ValidationError('Site name is required')

        with atomic(self.session):
            self._ensure_unique_name(site_name)
            values = {k: v for k, v in fields.items() if k in SITE_FIELDS and v is not None}
            site = ClinicalSite(site_name=site_name, **values)
            self.session.add(site)
            self.session.flush()
            site_id = site.id

        logger.info('Created clinical site %s (%s)', site_id, site_name)
        return {'site_id': site_id}

    def update_site(self, site_id, **fields) -> dict:
        """Apply the non-null fields to a site."""
        with atomic(self.session):
            site = self._get(site_id)
            if fields.get('site_name') is not None:
                if not isinstance(fields['site_name'], str):
                    raise ValidationError('Site name must be a string', site_id=site_id)
                fields['site_name'] = fields['site_name'].strip()
                if not fields['site_name']:
                    raise ValidationError('Site name cannot be empty', site_id=site_id)
                self._ensure_unique_name(fields['site_name'], exclude_id=site_id)
            for key in SITE_FIELDS:
                if fields.get(key) is not None:
                    setattr(site, key, fields[key])

        logger.info('Updated clinical site %s', site_id)
        return {'site_id': site_id, 'success': True}

    def set_active(self, site_id, is_active: bool) -> dict:
        return self.update_site(site_id, is_active=bool(is_active))


class SlotService:
    """Slot lookups and lifecycle: create, merge-update, guarded delete."""

    def __init__(self, session):
        self.session = session

    def _require_active_site(self, site_id):
        stmt = select(ClinicalSite.id).where(
            ClinicalSite.id == site_id,
            ClinicalSite.is_active.is_(True)
        )
        if self.session.execute(stmt).first() is None:
            raise ValidationError(
                f'Clinical site with ID {site_id} not found or is inactive',
                site_id=site_id
            )

    def available_slots(self, start_date: date, end_date: date) -> list[dict]:
        """Active slots in [start_date, end_date] that still have room."""
        if start_date > end_date:
            raise ValidationError(
                'Start date must not be after end date',
                start_date=start_date.isoformat(),
                end_date=end_date.isoformat()
            )

        headcount = _headcount_column()
        stmt = (
            select(ClinicalSlot, ClinicalSite.site_name, headcount.label('assigned_students'))
            .join(ClinicalSite, ClinicalSite.id == ClinicalSlot.site_id)
            .where(
                ClinicalSlot.is_active.is_(True),
                ClinicalSlot.slot_date >= start_date,
                ClinicalSlot.slot_date <= end_date,
                headcount < ClinicalSlot.max_students
            )
            .order_by(ClinicalSlot.slot_date, ClinicalSlot.start_time)
        )
        return [
            slot.to_dict(site_name=site_name, assigned_students=count)
            for slot, site_name, count in self.session.execute(stmt)
        ]

    def get_slot(self, slot_id) -> dict:
        stmt = (
            select(ClinicalSlot, ClinicalSite.site_name, _headcount_column().label('assigned_students'))
            .join(ClinicalSite, ClinicalSite.id == ClinicalSlot.site_id)
            .where(ClinicalSlot.id == slot_id)
        )
        row = self.session.execute(stmt).first()
        if row is None:
            raise NotFoundError(f'Clinical slot with ID {slot_id} not found', slot_id=slot_id)
        slot, site_name, count = row
        return slot.to_dict(site_name=site_name, assigned_students=count)

    def create_slot(self, site_id, slot_date: date, start_time: time, end_time: time,
                    max_students: int, preceptor_name: Optional[str] = None,
                    notes: Optional[str] = None, is_active: bool = True) -> dict:
        _validate_capacity(max_students)
        _validate_window(start_time, end_time)

        with atomic(self.session):
            self._require_active_site(site_id)
            slot = ClinicalSlot(
                site_id=site_id,
                slot_date=slot_date,
                start_time=start_time,
                end_time=end_time,
                max_students=max_students,
                preceptor_name=preceptor_name,
                notes=notes,
                is_active=True if is_active is None else is_active
            )
            self.session.add(slot)
            self.session.flush()
            slot_id = slot.id

        logger.info('Created clinical slot %s at site %s on %s', slot_id, site_id, slot_date)
        return {'slot_id': slot_id}

    def _check_rescheduled_window(self, slot_id, slot_date, start_time, end_time):
        """Students already in the slot must stay free of overlaps at the new window."""
        own = (
            select(ClinicalAssignment.student_id)
            .where(ClinicalAssignment.slot_id == slot_id)
            .scalar_subquery()
        )
        others = self.session.execute(
            select(ClinicalAssignment.student_id, ClinicalAssignment.id, ClinicalSlot.id,
                   ClinicalSlot.start_time, ClinicalSlot.end_time)
            .join(ClinicalSlot, ClinicalSlot.id == ClinicalAssignment.slot_id)
            .where(
                ClinicalAssignment.student_id.in_(own),
                ClinicalAssignment.slot_id != slot_id,
                ClinicalSlot.slot_date == slot_date
            )
        ).all()
        for student_id, assignment_id, other_slot_id, start, end in others:
            if intervals_overlap(start, end, start_time, end_time):
                raise ConflictError(
                    f'Student with ID {student_id} already has a clinical assignment during this time period',
                    reason='time_overlap',
                    student_id=student_id,
                    slot_id=slot_id,
                    conflicting_assignment_id=assignment_id,
                    conflicting_slot_id=other_slot_id
                )

    def update_slot(self, slot_id, **fields) -> dict:
        """
        Merge the non-null fields into an existing slot.

        Capacity may not drop below the current headcount, a new site must be
        active, and the merged window must still start before it ends. Moving
        the window must not double-book any student already assigned to it.
        """
        changes = {k: v for k, v in fields.items() if k in SLOT_FIELDS and v is not None}

        with atomic(self.session):
            slot = self.session.execute(
                select(ClinicalSlot).where(ClinicalSlot.id == slot_id).with_for_update()
            ).scalar_one_or_none()
            if slot is None:
                raise NotFoundError(f'Clinical slot with ID {slot_id} not found', slot_id=slot_id)

            if 'max_students' in changes:
                _validate_capacity(changes['max_students'])
                current = assignment_count(self.session, slot_id)
                if current > changes['max_students']:
                    raise ConflictError(
                        f'Cannot reduce max students below current assignment count ({current})',
                        reason='capacity_below_headcount',
                        slot_id=slot_id,
                        assigned_students=current
                    )

            if 'site_id' in changes:
                self._require_active_site(changes['site_id'])

            new_date = changes.get('slot_date', slot.slot_date)
            new_start = changes.get('start_time', slot.start_time)
            new_end = changes.get('end_time', slot.end_time)
            _validate_window(new_start, new_end)

            if (new_date, new_start, new_end) != (slot.slot_date, slot.start_time, slot.end_time):
                self._check_rescheduled_window(slot_id, new_date, new_start, new_end)

            for key, value in changes.items():
                setattr(slot, key, value)

        logger.info('Updated clinical slot %s (%s)', slot_id, ', '.join(sorted(changes)) or 'no changes')
        return {'slot_id': slot_id, 'success': True}

    def delete_slot(self, slot_id) -> dict:
        """
        Delete a slot that has no assignments.

        Preferences pointing at the slot go with it, and each affected
        student's remaining ranks are closed up.
        """
        with atomic(self.session):
            slot = self.session.execute(
                select(ClinicalSlot).where(ClinicalSlot.id == slot_id).with_for_update()
            ).scalar_one_or_none()
            if slot is None:
                raise NotFoundError(f'Clinical slot with ID {slot_id} not found', slot_id=slot_id)

            current = assignment_count(self.session, slot_id)
            if current > 0:
                raise ConflictError(
                    f'Cannot delete slot with existing assignments ({current} found)',
                    reason='slot_has_assignments',
                    slot_id=slot_id,
                    assigned_students=current
                )

            prefs = self.session.execute(
                select(StudentPreference).where(StudentPreference.slot_id == slot_id)
            ).scalars().all()
            for pref in prefs:
                student_id, rank = pref.student_id, pref.rank
                self.session.delete(pref)
                self.session.flush()
                close_rank_gap(self.session, student_id, rank)

            self.session.delete(slot)

        logger.info('Deleted clinical slot %s', slot_id)
        return {'success': True}

    def slot_assignments(self, slot_id) -> list[dict]:
        """Everyone assigned to a slot, oldest assignment first."""
        if self.session.get(ClinicalSlot, slot_id) is None:
            raise NotFoundError(f'Clinical slot with ID {slot_id} not found', slot_id=slot_id)

        stmt = (
            select(ClinicalAssignment)
            .where(ClinicalAssignment.slot_id == slot_id)
            .order_by(ClinicalAssignment.created_at, ClinicalAssignment.id)
        )
        rows = []
        for assignment in self.session.execute(stmt).scalars():
            row = assignment.to_dict()
            row['student_name'] = assignment.student.full_name
            row['assigned_by_name'] = assignment.assigner.full_name if assignment.assigner else None
            rows.append(row)
        return rows
