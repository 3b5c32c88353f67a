import os
import sys
from types import SimpleNamespace

import pytest
from flask import g, has_app_context
from werkzeug.security import generate_password_hash

# Ensure that the application's source code is importable.
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))
from src.memoire import create_app
from src.extensions import db
from src.memoire.models import AppRole, Department, SupervisorAssignment, User
from src.memoire.workflow.notifications import EXTENSION_KEY


@pytest.fixture
def app():
    """
    Create and configure an instance of the application for testing.
    The database is created before tests and dropped after.
    """
    app = create_app(testing=True)

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def file_app(tmp_path):
    """Application backed by a SQLite file, for tests that need several connections."""
    path = tmp_path / "workflow.db"
    app = create_app(testing=True, config_overrides={
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{path}",
        'SQLALCHEMY_ENGINE_OPTIONS': {'connect_args': {'check_same_thread': False, 'timeout': 30}},
    })
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


@pytest.fixture
def client(app):
    """
    Provides a test client for simulating HTTP requests.
    """
    return app.test_client()


def create_department(code='INFO', name='Informatique'):
    department = Department(code=code, name=name)
    db.session.add(department)
    db.session.commit()
    return department


def create_user(username, role, department_id=None):
    user = User(
        username=username,
        password=generate_password_hash('password'),
        first_name=username.capitalize(),
        last_name='Test',
        email=f"{username}@example.org",
        role=getattr(role, 'value', role),
        department_id=department_id,
    )
    db.session.add(user)
    db.session.commit()
    return user


def bind_supervisor(student, supervisor, assigned_by):
    assignment = SupervisorAssignment(
        student_id=student.id,
        supervisor_id=supervisor.id,
        assigned_by=assigned_by.id,
        is_active=True,
    )
    db.session.add(assignment)
    db.session.commit()
    return assignment


def build_people():
    info = create_department('INFO', 'Informatique')
    math = create_department('MATH', 'Mathématiques')
    admin = create_user('admin', AppRole.ADMIN)
    student = create_user('alice', AppRole.STUDENT, info.id)
    other_student = create_user('bob', AppRole.STUDENT, info.id)
    supervisor = create_user('sophie', AppRole.SUPERVISOR, info.id)
    other_supervisor = create_user('marc', AppRole.SUPERVISOR, info.id)
    head = create_user('helene', AppRole.DEPARTMENT_HEAD, info.id)
    foreign_head = create_user('hugo', AppRole.DEPARTMENT_HEAD, math.id)
    jury = create_user('jules', AppRole.JURY)
    bind_supervisor(student, supervisor, admin)
    return SimpleNamespace(
        info=info, math=math, admin=admin, student=student, other_student=other_student,
        supervisor=supervisor, other_supervisor=other_supervisor, head=head,
        foreign_head=foreign_head, jury=jury,
    )


@pytest.fixture
def people(app):
    """Users of one department, with ``student`` supervised by ``supervisor``."""
    return build_people()


def login_client(client, user_id):
    with client.session_transaction() as session:
        session['_user_id'] = str(user_id)
        session['_fresh'] = True
    # Requests reuse the fixture's app context, so drop the user Flask-Login cached there
    if has_app_context():
        g.pop('_login_user', None)


class RecordingDispatcher:
    """Stands in for the app's dispatcher and keeps every message it is given."""

    def __init__(self):
        self.messages = []

    def dispatch(self, messages):
        self.messages.extend(messages)
        return len(messages)

    def titles_for(self, user_id):
        return [m.title for m in self.messages if m.recipient_id == user_id]


@pytest.fixture
def sent(app):
    dispatcher = RecordingDispatcher()
    app.extensions[EXTENSION_KEY] = dispatcher
    return dispatcher
