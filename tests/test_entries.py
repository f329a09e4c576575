import pytest
from datetime import date, timedelta
from sqlmodel import select
from sheetflow.entries import add_entries, get_or_create_timesheet, remove_entry, week_bounds
from sheetflow.errors import InvalidStateTransition, NotFoundError, PermissionDenied, ValidationError
from sheetflow.models import AuditLog, Role, TimeEntry, Timesheet, TimesheetStatus
from conftest import WEEK


@pytest.fixture
def people(seed):
    manager = seed.user("Maya", role=Role.MANAGER)
    employee = seed.user("Eli", manager=manager)
    project = seed.project("Apollo", manager=manager)
    return manager, employee, project


def _entries(session, timesheet_id):
    return session.exec(select(TimeEntry).where(TimeEntry.timesheet_id == timesheet_id)).all()


def test_week_bounds():
    assert week_bounds(WEEK) == (WEEK, date(2024, 10, 6))
    with pytest.raises(ValidationError, match="Monday"):
        week_bounds(date(2024, 10, 1))


def test_get_or_create_timesheet_is_unique(session, people):
    _, employee, _ = people
    first = get_or_create_timesheet(session, employee.id, WEEK)
    second = get_or_create_timesheet(session, employee.id, WEEK)

    assert first.id == second.id
    assert first.status == TimesheetStatus.DRAFT
    assert first.week_end_date == date(2024, 10, 6)
    assert len(session.exec(select(Timesheet)).all()) == 1
    assert session.exec(select(AuditLog).where(AuditLog.action == "create")).first() is not None


def test_get_or_create_unknown_user(session):
    with pytest.raises(NotFoundError):
        get_or_create_timesheet(session, "missing", WEEK)


def test_add_entries_recomputes_total(session, seed, people):
    _, employee, project = people
    timesheet = get_or_create_timesheet(session, employee.id, WEEK)
    version = timesheet.version

    created = add_entries(session, seed.actor(employee), timesheet.id, [
        {"project_id": project.id, "date": WEEK, "hours": 6},
        {"project_id": None, "date": WEEK, "hours": 2.5, "description": "Training"},
    ])
    session.refresh(timesheet)

    assert len(created) == 2
    assert timesheet.total_hours == 8.5
    assert timesheet.version == version + 1


def test_entry_outside_week_is_rejected(session, seed, people):
    _, employee, project = people
    timesheet = get_or_create_timesheet(session, employee.id, WEEK)

    with pytest.raises(ValidationError, match="outside the timesheet week"):
        add_entries(session, seed.actor(employee), timesheet.id, [
            {"project_id": project.id, "date": date(2024, 10, 10), "hours": 4},
        ])
    assert _entries(session, timesheet.id) == []


def test_batch_is_all_or_nothing(session, seed, people):
    _, employee, project = people
    timesheet = get_or_create_timesheet(session, employee.id, WEEK)

    with pytest.raises(ValidationError, match="Entry 1"):
        add_entries(session, seed.actor(employee), timesheet.id, [
            {"project_id": project.id, "date": WEEK, "hours": 4},
            {"project_id": project.id, "date": WEEK + timedelta(days=1), "hours": 0},
        ])
    session.refresh(timesheet)
    assert _entries(session, timesheet.id) == []
    assert timesheet.total_hours == 0


@pytest.mark.parametrize("hours,message", [
    (0, "greater than zero"),
    (-1, "greater than zero"),
    (25, "cannot exceed"),
])
def test_hours_bounds(session, seed, people, hours, message):
    _, employee, project = people
    timesheet = get_or_create_timesheet(session, employee.id, WEEK)
    with pytest.raises(ValidationError, match=message):
        add_entries(session, seed.actor(employee), timesheet.id, [
            {"project_id": project.id, "date": WEEK, "hours": hours},
        ])


def test_duplicate_project_task_date(session, seed, people):
    _, employee, project = people
    timesheet = get_or_create_timesheet(session, employee.id, WEEK)
    actor = seed.actor(employee)
    add_entries(session, actor, timesheet.id, [
        {"project_id": project.id, "task_id": "t1", "date": WEEK, "hours": 3},
    ])

    with pytest.raises(ValidationError, match="already exists"):
        add_entries(session, actor, timesheet.id, [
            {"project_id": project.id, "task_id": "t1", "date": WEEK, "hours": 1},
        ])
    with pytest.raises(ValidationError, match="already exists"):
        add_entries(session, actor, timesheet.id, [
            {"project_id": project.id, "task_id": "t2", "date": WEEK, "hours": 1},
            {"project_id": project.id, "task_id": "t2", "date": WEEK, "hours": 1},
        ])
    # Another task on the same day is fine
    add_entries(session, actor, timesheet.id, [
        {"project_id": project.id, "task_id": "t2", "date": WEEK, "hours": 1},
    ])


def test_daily_maximum(session, seed, people):
    _, employee, project = people
    timesheet = get_or_create_timesheet(session, employee.id, WEEK)
    with pytest.raises(ValidationError, match="maximum of 10"):
        add_entries(session, seed.actor(employee), timesheet.id, [
            {"project_id": project.id, "task_id": "a", "date": WEEK, "hours": 6},
            {"project_id": project.id, "task_id": "b", "date": WEEK, "hours": 5},
        ])


def test_unknown_project(session, seed, people):
    _, employee, _ = people
    timesheet = get_or_create_timesheet(session, employee.id, WEEK)
    with pytest.raises(ValidationError, match="does not exist"):
        add_entries(session, seed.actor(employee), timesheet.id, [
            {"project_id": "nope", "date": WEEK, "hours": 2},
        ])


def test_future_date(session, seed, people):
    _, employee, project = people
    today = date.today()
    next_monday = today + timedelta(days=7 - today.weekday())
    timesheet = get_or_create_timesheet(session, employee.id, next_monday)
    with pytest.raises(ValidationError, match="future"):
        add_entries(session, seed.actor(employee), timesheet.id, [
            {"project_id": project.id, "date": next_monday, "hours": 2},
        ])


def test_missing_fields(session, seed, people):
    _, employee, _ = people
    timesheet = get_or_create_timesheet(session, employee.id, WEEK)
    with pytest.raises(ValidationError, match="hours"):
        add_entries(session, seed.actor(employee), timesheet.id, [{"date": WEEK}])


def test_only_owner_or_super_admin_edits(session, seed, people):
    manager, employee, project = people
    admin = seed.user("Root", role=Role.SUPER_ADMIN)
    timesheet = get_or_create_timesheet(session, employee.id, WEEK)
    entry = {"project_id": project.id, "date": WEEK, "hours": 2}

    with pytest.raises(PermissionDenied):
        add_entries(session, seed.actor(manager), timesheet.id, [entry])
    add_entries(session, seed.actor(admin), timesheet.id, [entry])


def test_remove_entry_soft_deletes(session, seed, people):
    _, employee, project = people
    timesheet = get_or_create_timesheet(session, employee.id, WEEK)
    actor = seed.actor(employee)
    keep, drop = add_entries(session, actor, timesheet.id, [
        {"project_id": project.id, "date": WEEK, "hours": 5},
        {"project_id": None, "date": WEEK, "hours": 3},
    ])

    remove_entry(session, actor, drop.id)
    session.refresh(timesheet)
    row = session.get(TimeEntry, drop.id)

    assert row is not None
    assert row.deleted_at is not None
    assert timesheet.total_hours == 5

    with pytest.raises(NotFoundError):
        remove_entry(session, actor, drop.id)
    # The freed (project, task, date) slot can be used again
    add_entries(session, actor, timesheet.id, [{"project_id": None, "date": WEEK, "hours": 1}])


def test_submitted_timesheet_is_locked(session, seed, people):
    _, employee, project = people
    timesheet = seed.submitted(employee, {project.id: 8})
    entry = session.exec(select(TimeEntry).where(TimeEntry.timesheet_id == timesheet.id)).first()

    with pytest.raises(InvalidStateTransition, match="only draft or rejected"):
        add_entries(session, seed.actor(employee), timesheet.id, [
            {"project_id": project.id, "task_id": "x", "date": WEEK, "hours": 1},
        ])
    with pytest.raises(InvalidStateTransition):
        remove_entry(session, seed.actor(employee), entry.id)
