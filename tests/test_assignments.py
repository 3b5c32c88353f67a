import pytest
from sqlalchemy import event, select, text
from sqlalchemy.exc import IntegrityError

from conftest import build_people, create_user
from src.extensions import db
from src.memoire.models import AppRole, SupervisorAssignment, Theme
from src.memoire.workflow import assignments, themes
from src.memoire.workflow.errors import ConflictingUpdate, NotFound, Unauthorized, ValidationError
from src.memoire.workflow.notifications import EXTENSION_KEY, NotificationDispatcher, NullTransport


def active_rows(student_id):
    return db.session.execute(
        select(SupervisorAssignment).where(
            SupervisorAssignment.student_id == student_id,
            SupervisorAssignment.is_active.is_(True),
        )
    ).scalars().all()


def test_swap_keeps_exactly_one_active_supervisor(people, sent):
    assignment = assignments.assign_supervisor(people.head.actor, people.student.id, people.other_supervisor.id,
                                               notes="sabbatical")
    assert assignment.is_active
    assert assignment.assigned_by == people.head.id
    rows = active_rows(people.student.id)
    assert [row.supervisor_id for row in rows] == [people.other_supervisor.id]
    assert assignments.active_supervisor_of(people.student.id) == people.other_supervisor.id
    history = db.session.execute(
        select(SupervisorAssignment).where(SupervisorAssignment.student_id == people.student.id)
    ).scalars().all()
    assert len(history) == 2
    assert "New student assigned" in sent.titles_for(people.other_supervisor.id)
    assert "Supervisor assigned" in sent.titles_for(people.student.id)


def test_first_assignment(people):
    assert assignments.active_supervisor_of(people.other_student.id) is None
    assignments.assign_supervisor(people.admin.actor, people.other_student.id, people.supervisor.id)
    assert assignments.get_active_assignment(people.other_student.id).supervisor_id == people.supervisor.id


def test_open_themes_follow_the_new_supervisor(people):
    theme = themes.submit_theme(people.student.actor, "Edge AI Scheduling", "Scheduling on edge devices")
    assignments.assign_supervisor(people.head.actor, people.student.id, people.other_supervisor.id)
    db.session.expire_all()
    assert db.session.get(Theme, theme.id).supervisor_id == people.other_supervisor.id

    # The former supervisor lost authority immediately
    with pytest.raises(Unauthorized):
        themes.review_theme(people.supervisor.actor, theme.id, 'approved')
    themes.review_theme(people.other_supervisor.actor, theme.id, 'approved')


def test_roles_are_validated(people):
    with pytest.raises(ValidationError):
        assignments.assign_supervisor(people.admin.actor, people.student.id, people.head.id)
    with pytest.raises(ValidationError):
        assignments.assign_supervisor(people.admin.actor, people.supervisor.id, people.other_supervisor.id)
    with pytest.raises(NotFound):
        assignments.assign_supervisor(people.admin.actor, 999, people.supervisor.id)


def test_only_heads_of_the_department_or_admins_assign(people):
    with pytest.raises(Unauthorized):
        assignments.assign_supervisor(people.foreign_head.actor, people.student.id, people.other_supervisor.id)
    with pytest.raises(Unauthorized):
        assignments.assign_supervisor(people.supervisor.actor, people.student.id, people.other_supervisor.id)
    with pytest.raises(Unauthorized):
        assignments.assign_supervisor(people.student.actor, people.student.id, people.other_supervisor.id)
    assert assignments.active_supervisor_of(people.student.id) == people.supervisor.id


def test_second_active_row_is_refused_by_the_database(people):
    db.session.add(SupervisorAssignment(student_id=people.student.id, supervisor_id=people.other_supervisor.id,
                                        assigned_by=people.admin.id, is_active=True))
    with pytest.raises(IntegrityError):
        db.session.commit()
    db.session.rollback()
    assert len(active_rows(people.student.id)) == 1


def test_readers_never_observe_zero_or_two_bindings(file_app):
    people = build_people()
    file_app.extensions[EXTENSION_KEY] = NotificationDispatcher(NullTransport())
    third = create_user('tom', AppRole.SUPERVISOR, people.info.id)
    student_id = people.student.id
    observed = []

    def observe(conn, cursor, statement, parameters, context, executemany):
        if 'supervisor_assignment' not in statement or statement.lstrip().upper().startswith('SELECT'):
            return
        # Another connection reads what is committed while the swap is under way
        with db.engine.connect() as reader:
            observed.append(reader.execute(
                text("SELECT COUNT(*) FROM supervisor_assignment WHERE student_id = :s AND is_active = 1"),
                {'s': student_id},
            ).scalar())

    event.listen(db.engine, 'after_cursor_execute', observe)
    try:
        assignments.assign_supervisor(people.head.actor, student_id, people.other_supervisor.id)
        assignments.assign_supervisor(people.admin.actor, student_id, third.id)
    finally:
        event.remove(db.engine, 'after_cursor_execute', observe)

    assert observed
    assert set(observed) == {1}
    assert assignments.active_supervisor_of(student_id) == third.id


def test_concurrent_swap_surfaces_as_conflict(people, sent, monkeypatch):
    theme = themes.submit_theme(people.student.actor, "Edge AI Scheduling", "Scheduling on edge devices")
    record = assignments.track_transition
    student_id, supervisor_id, admin_id = people.student.id, people.supervisor.id, people.admin.id

    def competing_swap_commits_first(*args, **kwargs):
        # Another head activated a supervisor for the same student in the meantime
        db.session.add(SupervisorAssignment(student_id=student_id, supervisor_id=supervisor_id,
                                            assigned_by=admin_id, is_active=True))
        db.session.flush()
        return record(*args, **kwargs)

    monkeypatch.setattr(assignments, 'track_transition', competing_swap_commits_first)
    with pytest.raises(ConflictingUpdate):
        assignments.assign_supervisor(people.head.actor, people.student.id, people.other_supervisor.id)

    db.session.expire_all()
    assert [row.supervisor_id for row in active_rows(people.student.id)] == [people.supervisor.id]
    assert db.session.get(Theme, theme.id).supervisor_id == people.supervisor.id
    assert sent.titles_for(people.other_supervisor.id) == []


def test_assignment_rows_carry_timestamps(people):
    previous = assignments.get_active_assignment(people.student.id)
    created = previous.created_at
    assert created is not None and previous.updated_at is not None

    assignments.assign_supervisor(people.admin.actor, people.student.id, people.other_supervisor.id)
    db.session.expire_all()
    previous = db.session.get(SupervisorAssignment, previous.id)
    assert previous.is_active is False
    assert previous.updated_at >= created
    current = assignments.get_active_assignment(people.student.id).to_dict()
    assert current['created_at'] and current['updated_at']
