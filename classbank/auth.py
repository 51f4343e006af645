"""
Authentication and authorization utilities for classbank.

Login itself happens elsewhere; this module turns the session into an
authenticated principal and guards the JSON routes with it.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import wraps

from flask import current_app, jsonify, session

from classbank.extensions import db
from classbank.models import Admin, Student


# -------------------- SESSION CONFIGURATION --------------------

SESSION_TIMEOUT_MINUTES = 30


@dataclass(frozen=True)
class Principal:
    id: int
    tenant_id: int
    role: str


def _session_expired():
    last_activity = session.get('last_activity')
    if not last_activity:
        return False
    try:
        last = datetime.fromisoformat(last_activity)
    except (TypeError, ValueError):
        return True
    if last.tzinfo is None:
        last = last.replace(tzinfo=timezone.utc)
    return datetime.now(timezone.utc) - last > timedelta(minutes=SESSION_TIMEOUT_MINUTES)


def _unauthorized(message):
    return jsonify({"status": "error", "message": message}), 401


def get_authenticated_principal():
    """Return the Principal for the current session, or None."""
    if session.get('is_admin') and session.get('admin_id'):
        admin = db.session.get(Admin, session['admin_id'])
        if admin is None:
            return None
        return Principal(id=admin.id, tenant_id=admin.id, role='teacher')

    student_id = session.get('student_id')
    if student_id:
        student = db.session.get(Student, student_id)
        if student is None:
            return None
        return Principal(id=student.id, tenant_id=student.teacher_id, role='student')
    return None


# -------------------- AUTHENTICATION DECORATORS --------------------

def login_required(f):
    """Require a student session. Responds 401 JSON when missing or expired."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if 'student_id' not in session:
            return _unauthorized("Authentication required.")

        if _session_expired():
            session.pop('student_id', None)
            session.pop('last_activity', None)
            return _unauthorized("Session expired. Please log in again.")

        principal = get_authenticated_principal()
        if principal is None or principal.role != 'student':
            session.pop('student_id', None)
            return _unauthorized("Session is invalid. Please log in again.")

        session['last_activity'] = datetime.now(timezone.utc).isoformat()
        return f(principal, *args, **kwargs)
    return decorated_function


def admin_required(f):
    """Require a teacher session. Responds 401 JSON when missing or expired."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not session.get('is_admin'):
            return _unauthorized("You must be a teacher to do this.")

        if _session_expired():
            session.pop('is_admin', None)
            session.pop('admin_id', None)
            session.pop('last_activity', None)
            return _unauthorized("Session expired. Please log in again.")

        principal = get_authenticated_principal()
        if principal is None or principal.role != 'teacher':
            session.pop('is_admin', None)
            session.pop('admin_id', None)
            current_app.logger.warning("Admin session referenced a missing teacher; cleared.")
            return _unauthorized("Admin session is invalid. Please log in again.")

        session['last_activity'] = datetime.now(timezone.utc).isoformat()
        return f(principal, *args, **kwargs)
    return decorated_function
