import os
import sys
from datetime import datetime, timezone
from decimal import Decimal

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Override env vars for testing
os.environ["SECRET_KEY"] = "test-secret"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["FLASK_ENV"] = "testing"
os.environ["RATELIMIT_STORAGE_URI"] = "memory://"
os.environ["RATELIMIT_ENABLED"] = "false"
os.environ["CRON_SECRET"] = "test-cron-secret"

# Use a valid Fernet key (32 url-safe base64-encoded bytes)
os.environ.setdefault("ENCRYPTION_KEY", "jhe53bcYZI4_MZS4Kb8hu8-xnQHHvwqSX8LN4sDtzbw=")


sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import pytest
from classbank import app as flask_app, db
from classbank.models import Admin


@pytest.fixture
def app():
    """Provide the Flask app instance for tests."""
    flask_app.config.update(
        TESTING=True,
        WTF_CSRF_ENABLED=False,
        RATELIMIT_ENABLED=False,
        SQLALCHEMY_DATABASE_URI="sqlite:///:memory:",
        ENV="testing",
        SESSION_COOKIE_SECURE=False,
        CRON_SECRET="test-cron-secret",
    )
    yield flask_app


@pytest.fixture
def client(app):
    ctx = app.app_context()
    ctx.push()
    db.create_all()
    client = flask_app.test_client()
    yield client
    db.session.remove()
    db.drop_all()
    ctx.pop()


# SQLite pragma event listener for foreign key constraints
# Registered at module level and persists across all tests
from sqlalchemy import event
from sqlalchemy.engine import Engine

def _enable_sqlite_foreign_keys(dbapi_conn, connection_record):
    """Enable foreign key constraints for SQLite connections."""
    if 'sqlite' in str(type(dbapi_conn)):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

# Register event listener once at module load time
# Only applies to SQLite connections, so won't affect other databases
event.listen(Engine, "connect", _enable_sqlite_foreign_keys)


# -------------------- FACTORIES --------------------

def create_teacher(username="teacher1", with_entities=True):
    """Create a teacher and, by default, bootstrap the economic entities."""
    from classbank import roster

    teacher = Admin(username=username, display_name=username.title())
    db.session.add(teacher)
    db.session.commit()
    if with_entities:
        roster.initialize_entities(teacher.id)
    return teacher


def create_student(teacher, name="Student", balance=0, weekly_allowance=0, credit_score=700):
    """Create a student of ``teacher`` with ``balance`` in checking."""
    from classbank import roster
    from classbank.commands import CreateStudentCmd

    cmd = CreateStudentCmd(
        name=name,
        weekly_allowance=Decimal(str(weekly_allowance)),
        credit_score=credit_score,
        initial_balance=Decimal(str(balance)),
    )
    return roster.create_student(teacher.id, cmd)


def checking(student):
    """Current checking balance, read fresh from the database."""
    db.session.expire_all()
    return student.get_account('checking').balance


@pytest.fixture
def teacher(client):
    return create_teacher()


@pytest.fixture
def other_teacher(client):
    return create_teacher("teacher2")


@pytest.fixture
def make_student(teacher):
    def _make(name="Student", balance=0, **kwargs):
        return create_student(teacher, name=name, balance=balance, **kwargs)
    return _make


@pytest.fixture
def admin_client(client, teacher):
    """A client with a logged-in teacher."""
    with client.session_transaction() as sess:
        sess['is_admin'] = True
        sess['admin_id'] = teacher.id
        sess['last_activity'] = datetime.now(timezone.utc).isoformat()
    return client


@pytest.fixture
def login_student(client):
    """Log ``student`` in on the shared test client."""
    def _login(student):
        with client.session_transaction() as sess:
            sess.clear()
            sess['student_id'] = student.id
            sess['last_activity'] = datetime.now(timezone.utc).isoformat()
        return client
    return _login
