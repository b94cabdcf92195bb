"""
Database models and configuration for the EMS clinical scheduler.
Uses Flask-SQLAlchemy with Neon/Vercel Postgres.
"""

import os
from contextlib import contextmanager
from datetime import datetime
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

ROLES = ('student', 'instructor', 'admin')


def resolve_database_url():
    """Pick the database URL from the environment (Neon/Vercel compatible)."""
    # Check various environment variable names (Neon/Vercel use different ones)
    database_url = (
        os.environ.get('POSTGRES_URL') or
        os.environ.get('DATABASE_URL') or
        os.environ.get('POSTGRES_URL_NON_POOLING') or
        os.environ.get('NEON_DATABASE_URL')
    )

    if not database_url:
        # Fallback to SQLite for local development without Postgres
        return 'sqlite:///clinical_scheduler.db'

    # Neon uses postgres:// but SQLAlchemy 2.0+ requires postgresql://
    if database_url.startswith('postgres://'):
        database_url = database_url.replace('postgres://', 'postgresql://', 1)

    # Ensure SSL mode is set for Postgres (required for secure Neon connections)
    if database_url.startswith('postgresql'):
        if '?' not in database_url:
            database_url += '?sslmode=require'
        elif 'sslmode' not in database_url:
            database_url += '&sslmode=require'

    return database_url


def init_db(app):
    """Initialize the database connection and create missing tables."""
    app.config.setdefault('SQLALCHEMY_DATABASE_URI', resolve_database_url())
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config.setdefault('SQLALCHEMY_ENGINE_OPTIONS', {
        'pool_pre_ping': True,  # Handle connection drops gracefully
    })

    db.init_app(app)

    with app.app_context():
        db.create_all()


@contextmanager
def atomic(session):
    """
    Run a multi-statement mutation as one transaction.

    Commits when the block finishes, rolls back and re-raises on any error so
    no partial writes survive.
    """
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise


class User(db.Model):
    """
    A person known to the system. Owned by the identity service; the scheduler
    only reads it to check roles and display names.
    """
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=False, unique=True)
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), nullable=False)
    role = db.Column(db.String(20), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    @property
    def full_name(self):
        return f'{self.first_name} {self.last_name}'

    def to_dict(self):
        return {
            'id': self.id,
            'email': self.email,
            'first_name': self.first_name,
            'last_name': self.last_name,
            'role': self.role
        }


class ClinicalSite(db.Model):
    """A physical training location. Deactivated rather than deleted."""
    __tablename__ = 'clinical_sites'

    id = db.Column(db.Integer, primary_key=True)
    site_name = db.Column(db.String(255), nullable=False, unique=True)
    address = db.Column(db.String(255))
    city = db.Column(db.String(100))
    state = db.Column(db.String(50))
    zip = db.Column(db.String(20))
    contact_name = db.Column(db.String(255))
    contact_phone = db.Column(db.String(20))
    contact_email = db.Column(db.String(255))
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    slots = db.relationship('ClinicalSlot', backref='site', lazy=True)

    def to_dict(self):
        return {
            'site_id': self.id,
            'site_name': self.site_name,
            'address': self.address,
            'city': self.city,
            'state': self.state,
            'zip': self.zip,
            'contact_name': self.contact_name,
            'contact_phone': self.contact_phone,
            'contact_email': self.contact_email,
            'is_active': self.is_active,
            'notes': self.notes,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None
        }


class ClinicalSlot(db.Model):
    """A bounded time window at a site where a limited number of students train."""
    __tablename__ = 'clinical_slots'
    __table_args__ = (
        db.CheckConstraint('max_students > 0', name='ck_clinical_slots_max_students'),
        db.Index('idx_clinical_slots_site_id', 'site_id'),
        db.Index('idx_clinical_slots_date', 'slot_date'),
    )

    id = db.Column(db.Integer, primary_key=True)
    site_id = db.Column(db.Integer, db.ForeignKey('clinical_sites.id'), nullable=False)
    slot_date = db.Column(db.Date, nullable=False)
    start_time = db.Column(db.Time, nullable=False)
    end_time = db.Column(db.Time, nullable=False)
    max_students = db.Column(db.Integer, nullable=False)
    preceptor_name = db.Column(db.String(255))
    notes = db.Column(db.Text)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self, site_name=None, assigned_students=None):
        return {
            'slot_id': self.id,
            'site_id': self.site_id,
            'site_name': site_name,
            'slot_date': self.slot_date.isoformat(),
            'start_time': self.start_time.strftime('%H:%M'),
            'end_time': self.end_time.strftime('%H:%M'),
            'max_students': self.max_students,
            'assigned_students': assigned_students,
            'preceptor_name': self.preceptor_name,
            'notes': self.notes,
            'is_active': self.is_active,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None
        }


class StudentPreference(db.Model):
    """
    A student's ranked interest in a slot (rank 1 = most preferred).
    For any student the ranks are always 1..n with no gaps or duplicates.
    """
    __tablename__ = 'student_preferences'
    __table_args__ = (
        db.UniqueConstraint('student_id', 'slot_id', name='uq_student_preferences_student_slot'),
        db.CheckConstraint('rank > 0', name='ck_student_preferences_rank'),
        db.Index('idx_student_preferences_student_id', 'student_id'),
        db.Index('idx_student_preferences_slot_id', 'slot_id'),
    )

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    slot_id = db.Column(db.Integer, db.ForeignKey('clinical_slots.id'), nullable=False)
    rank = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    slot = db.relationship('ClinicalSlot')


class ClinicalAssignment(db.Model):
    """A confirmed placement of a student into a slot. Never updated in place."""
    __tablename__ = 'clinical_assignments'
    __table_args__ = (
        db.UniqueConstraint('student_id', 'slot_id', name='uq_clinical_assignments_student_slot'),
        db.Index('idx_clinical_assignments_student_id', 'student_id'),
        db.Index('idx_clinical_assignments_slot_id', 'slot_id'),
    )

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    slot_id = db.Column(db.Integer, db.ForeignKey('clinical_slots.id'), nullable=False)
    assigned_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    slot = db.relationship('ClinicalSlot')
    student = db.relationship('User', foreign_keys=[student_id])
    assigner = db.relationship('User', foreign_keys=[assigned_by])

    def to_dict(self):
        return {
            'assignment_id': self.id,
            'student_id': self.student_id,
            'slot_id': self.slot_id,
            'assigned_by': self.assigned_by,
            'notes': self.notes,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }


def find_student(session, student_id):
    """Return the user if it exists and holds the student role, else None."""
    stmt = db.select(User).where(User.id == student_id, User.role == 'student')
    return session.execute(stmt).scalar_one_or_none()
