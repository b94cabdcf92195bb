"""
EMS Clinical Scheduler Flask Application
"""

import logging
import os
from dataclasses import dataclass
from datetime import date, time
from functools import wraps

from flask import Blueprint, Flask, Response, g, jsonify, request
from dotenv import load_dotenv

from assignments import AssignmentEngine, AutoAssigner
from database import ROLES, db, init_db
from errors import AuthorizationError, SchedulingError, ValidationError
from export import XLSX_MIMETYPE, build_roster_workbook
from preferences import PreferenceService
from slots import SiteService, SlotService

# Load environment variables from .env file (for local development)
load_dotenv()

logger = logging.getLogger(__name__)

api = Blueprint('api', __name__, url_prefix='/api')


@dataclass(frozen=True)
class Principal:
    """Authenticated caller as asserted by the upstream gateway."""
    user_id: int
    role: str


# =============================================================================
# Request helpers
# =============================================================================

def _int(value, field):
    if value is None or value == '':
        raise ValidationError(f'{field} is required', field=field)
    if isinstance(value, bool):
        raise ValidationError(f'{field} must be an integer', field=field)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{field} must be an integer', field=field)


def _bool(value, field):
    if not isinstance(value, bool):
        raise ValidationError(f'{field} must be true or false', field=field)
    return value


def _date(value, field):
    if not value:
        raise ValidationError(f'{field} is required', field=field)
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{field} must be a YYYY-MM-DD date', field=field)


def _time(value, field):
    if not value:
        raise ValidationError(f'{field} is required', field=field)
    try:
        return time.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{field} must be an HH:MM time', field=field)


def _optional(data, key, parser):
    value = data.get(key)
    return None if value is None else parser(value, key)


def _json():
    return request.get_json(silent=True) or {}


def current_principal():
    principal = g.get('principal')
    if principal is None:
        raise AuthorizationError('Authentication required', status_code=401)
    return principal


def require_roles(*roles):
    """Reject callers whose role is not one of roles."""
    def decorator(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            principal = current_principal()
            if principal.role not in roles:
                raise AuthorizationError(
                    'You do not have permission to perform this action',
                    role=principal.role
                )
            return view(*args, **kwargs)
        return wrapper
    return decorator


def scoped_student_id(requested):
    """Students may only act on themselves; staff must name the student."""
    principal = current_principal()
    if principal.role == 'student':
        return principal.user_id
    return _int(requested, 'studentId')


@api.before_request
def load_principal():
    g.principal = None
    user_id = request.headers.get('X-User-Id')
    role = request.headers.get('X-User-Role')
    if not user_id or role not in ROLES:
        return
    try:
        g.principal = Principal(user_id=int(user_id), role=role)
    except ValueError:
        logger.warning('Ignoring malformed X-User-Id header %r', user_id)


# =============================================================================
# Site API Endpoints
# =============================================================================

@api.route('/sites', methods=['GET'])
@require_roles(*ROLES)
def list_sites():
    """List clinical sites (active only with ?active=true)."""
    active_only = request.args.get('active', '').lower() == 'true'
    return jsonify({'sites': SiteService(db.session).list_sites(active_only=active_only)})


@api.route('/sites/<int:site_id>', methods=['GET'])
@require_roles(*ROLES)
def get_site(site_id):
    return jsonify(SiteService(db.session).get_site(site_id))


@api.route('/sites', methods=['POST'])
@require_roles('admin')
def create_site():
    data = _json()
    result = SiteService(db.session).create_site(
        data.get('siteName'),
        address=data.get('address'),
        city=data.get('city'),
        state=data.get('state'),
        zip=data.get('zip'),
        contact_name=data.get('contactName'),
        contact_phone=data.get('contactPhone'),
        contact_email=data.get('contactEmail'),
        notes=data.get('notes'),
        is_active=_optional(data, 'isActive', _bool)
    )
    return jsonify({'success': True, 'siteId': result['site_id']}), 201


@api.route('/sites/<int:site_id>', methods=['PUT'])
@require_roles('admin')
def update_site(site_id):
    """Update a site; send isActive=false to deactivate it."""
    data = _json()
    result = SiteService(db.session).update_site(
        site_id,
        site_name=data.get('siteName'),
        address=data.get('address'),
        city=data.get('city'),
        state=data.get('state'),
        zip=data.get('zip'),
        contact_name=data.get('contactName'),
        contact_phone=data.get('contactPhone'),
        contact_email=data.get('contactEmail'),
        notes=data.get('notes'),
        is_active=_optional(data, 'isActive', _bool)
    )
    return jsonify(result)


@api.route('/sites/<int:site_id>/toggle-status', methods=['PATCH'])
@require_roles('admin')
def toggle_site_status(site_id):
    """Activate or deactivate a site."""
    is_active = _bool(_json().get('isActive'), 'isActive')
    return jsonify(SiteService(db.session).set_active(site_id, is_active))


# =============================================================================
# Slot API Endpoints
# =============================================================================

@api.route('/slots', methods=['GET'])
@require_roles(*ROLES)
def available_slots():
    """Open slots between startDate and endDate (inclusive)."""
    start_date = _date(request.args.get('startDate'), 'startDate')
    end_date = _date(request.args.get('endDate'), 'endDate')
    return jsonify({'slots': SlotService(db.session).available_slots(start_date, end_date)})


@api.route('/slots/<int:slot_id>', methods=['GET'])
@require_roles(*ROLES)
def get_slot(slot_id):
    return jsonify(SlotService(db.session).get_slot(slot_id))


@api.route('/slots', methods=['POST'])
@require_roles('admin', 'instructor')
def create_slot():
    data = _json()
    result = SlotService(db.session).create_slot(
        site_id=_int(data.get('siteId'), 'siteId'),
        slot_date=_date(data.get('slotDate'), 'slotDate'),
        start_time=_time(data.get('startTime'), 'startTime'),
        end_time=_time(data.get('endTime'), 'endTime'),
        max_students=_int(data.get('maxStudents'), 'maxStudents'),
        preceptor_name=data.get('preceptorName'),
        notes=data.get('notes'),
        is_active=_optional(data, 'isActive', _bool)
    )
    return jsonify({'success': True, 'slotId': result['slot_id']}), 201


@api.route('/slots/<int:slot_id>', methods=['PUT'])
@require_roles('admin', 'instructor')
def update_slot(slot_id):
    """Update a slot. Omitted or null fields keep their current value."""
    data = _json()
    result = SlotService(db.session).update_slot(
        slot_id,
        site_id=_optional(data, 'siteId', _int),
        slot_date=_optional(data, 'slotDate', _date),
        start_time=_optional(data, 'startTime', _time),
        end_time=_optional(data, 'endTime', _time),
        max_students=_optional(data, 'maxStudents', _int),
        preceptor_name=data.get('preceptorName'),
        notes=data.get('notes'),
        is_active=_optional(data, 'isActive', _bool)
    )
    return jsonify(result)


@api.route('/slots/<int:slot_id>', methods=['DELETE'])
@require_roles('admin')
def delete_slot(slot_id):
    return jsonify(SlotService(db.session).delete_slot(slot_id))


@api.route('/slots/<int:slot_id>/assignments', methods=['GET'])
@require_roles('admin', 'instructor')
def slot_assignments(slot_id):
    """Everyone assigned to a slot."""
    return jsonify({'assignments': SlotService(db.session).slot_assignments(slot_id)})


@api.route('/slots/<int:slot_id>/assignments/export', methods=['GET'])
@require_roles('admin', 'instructor')
def export_slot_roster(slot_id):
    """Export a slot's roster as a styled Excel workbook."""
    service = SlotService(db.session)
    slot = service.get_slot(slot_id)
    content = build_roster_workbook(slot, service.slot_assignments(slot_id))

    return Response(
        content,
        mimetype=XLSX_MIMETYPE,
        headers={'Content-Disposition': f'attachment; filename=Clinical_Roster_{slot_id}.xlsx'}
    )


# =============================================================================
# Preference API Endpoints
# =============================================================================

@api.route('/preferences', methods=['GET'])
@require_roles(*ROLES)
def my_preferences():
    """The calling student's own preferences."""
    student_id = scoped_student_id(request.args.get('studentId'))
    return jsonify({'preferences': PreferenceService(db.session).list_preferences(student_id)})


@api.route('/preferences/student/<int:student_id>', methods=['GET'])
@require_roles('admin', 'instructor')
def student_preferences(student_id):
    return jsonify({'preferences': PreferenceService(db.session).list_preferences(student_id)})


@api.route('/preferences/set', methods=['POST'])
@require_roles(*ROLES)
def set_preference():
    data = _json()
    student_id = scoped_student_id(data.get('studentId'))
    slot_id = _int(data.get('slotId'), 'slotId')
    rank = _int(data.get('rank'), 'rank')
    return jsonify(PreferenceService(db.session).set_preference(student_id, slot_id, rank))


@api.route('/preferences/delete', methods=['POST'])
@require_roles(*ROLES)
def delete_preference():
    data = _json()
    student_id = scoped_student_id(data.get('studentId'))
    slot_id = _int(data.get('slotId'), 'slotId')
    return jsonify(PreferenceService(db.session).delete_preference(student_id, slot_id))


# =============================================================================
# Assignment API Endpoints
# =============================================================================

@api.route('/assignments', methods=['GET'])
@require_roles(*ROLES)
def my_assignments():
    student_id = scoped_student_id(request.args.get('studentId'))
    return jsonify({'assignments': AssignmentEngine(db.session).student_assignments(student_id)})


@api.route('/assignments/student/<int:student_id>', methods=['GET'])
@require_roles('admin', 'instructor')
def student_assignments(student_id):
    return jsonify({'assignments': AssignmentEngine(db.session).student_assignments(student_id)})


@api.route('/assign', methods=['POST'])
@require_roles('admin', 'instructor')
def assign_student():
    data = _json()
    assignment_id = AssignmentEngine(db.session).assign(
        _int(data.get('studentId'), 'studentId'),
        _int(data.get('slotId'), 'slotId'),
        current_principal().user_id,
        data.get('notes')
    )
    return jsonify({'success': True, 'assignmentId': assignment_id}), 201


@api.route('/unassign', methods=['POST'])
@require_roles('admin', 'instructor')
def unassign_student():
    data = _json()
    assignment_id = _int(data.get('assignmentId'), 'assignmentId')
    return jsonify(AssignmentEngine(db.session).remove(assignment_id))


@api.route('/auto-assign', methods=['POST'])
@require_roles('admin', 'instructor')
def auto_assign():
    """Fill the given slots from ranked student preferences."""
    slot_ids = _json().get('slotIds')
    if not isinstance(slot_ids, list) or not slot_ids:
        raise ValidationError('At least one slot ID is required', field='slotIds')
    slot_ids = [_int(s, 'slotIds') for s in slot_ids]

    result = AutoAssigner(db.session).auto_assign(slot_ids, current_principal().user_id)
    return jsonify(result)


# =============================================================================
# Application factory
# =============================================================================

def handle_scheduling_error(error):
    if error.status_code >= 500:
        logger.error('Unhandled scheduling failure: %s', error.message)
    return jsonify(error.to_dict()), error.status_code


def create_app(config=None):
    """Build the Flask app; config overrides are applied before the DB is set up."""
    logging.basicConfig(
        level=os.environ.get('CLINICAL_LOG_LEVEL', 'INFO').upper(),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )

    app = Flask(__name__)
    if config:
        app.config.update(config)

    init_db(app)

    app.register_blueprint(api)
    app.register_error_handler(SchedulingError, handle_scheduling_error)

    return app


if __name__ == '__main__':
    create_app().run(debug=True, port=5001, host='0.0.0.0')
