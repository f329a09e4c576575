import json
import pytest
from sqlmodel import select
from sheetflow import audit
from sheetflow.errors import ValidationError
from sheetflow.logging import request_id_ctx, request_scope
from sheetflow.models import AuditLog, Role
from sheetflow.workflow import manager_approve_reject


@pytest.fixture
def captured():
    events = []
    audit.register_sink("test", events.append)
    yield events
    audit.unregister_sink("test")


@pytest.fixture(autouse=True)
def no_active_request():
    token = request_id_ctx.set(None)
    yield
    request_id_ctx.reset(token)


@pytest.fixture
def org(seed):
    manager = seed.user("Maya", role=Role.MANAGER)
    employee = seed.user("Eli", manager=manager)
    project = seed.project("Apollo", manager=manager)
    return manager, employee, project


def test_transition_emits_events_after_commit(session, seed, org, captured):
    manager, employee, project = org
    timesheet = seed.submitted(employee, {project.id: 8})

    actions = [(e.table, e.action) for e in captured]
    assert ("timesheet", "create") in actions
    assert ("time_entry", "create") in actions
    assert ("timesheet_project_approval", "create") in actions
    assert ("timesheet", "submit") in actions

    submit = next(e for e in captured if e.action == "submit")
    assert submit.record_id == timesheet.id
    assert submit.actor_id == employee.id
    assert submit.old_state["status"] == "draft"
    assert submit.new_state["status"] == "submitted"
    assert set(submit.to_dict()) == {"table", "record_id", "action", "actor_id", "old_state", "new_state", "request_id"}


def test_audit_rows_written_with_transition(session, seed, org):
    manager, employee, project = org
    timesheet = seed.submitted(employee, {project.id: 8})
    manager_approve_reject(session, seed.actor(manager), timesheet.id, project.id, "reject", "incorrect hours")

    row = session.exec(
        select(AuditLog).where(AuditLog.record_id == timesheet.id, AuditLog.action == "manager_reject")
    ).one()
    assert row.actor_id == manager.id
    assert json.loads(row.old_state)["status"] == "submitted"
    assert json.loads(row.new_state)["status"] == "rejected"


def test_failed_transition_emits_nothing(session, seed, org, captured):
    manager, employee, project = org
    timesheet = seed.submitted(employee, {project.id: 8})
    captured.clear()
    rows_before = len(session.exec(select(AuditLog)).all())

    with pytest.raises(ValidationError):
        manager_approve_reject(session, seed.actor(manager), timesheet.id, project.id, "reject")

    assert captured == []
    assert len(session.exec(select(AuditLog)).all()) == rows_before
    assert audit.pop_pending(session) == []


def test_failing_sink_does_not_block_others(session, seed, org, captured):
    def broken(event):
        raise RuntimeError("dispatcher down")

    audit.register_sink("broken", broken)
    try:
        manager, employee, project = org
        seed.submitted(employee, {project.id: 8})
    finally:
        audit.unregister_sink("broken")

    assert any(e.action == "submit" for e in captured)


def test_dispatch_counts_deliveries(captured):
    event = audit.AuditEvent(
        table="timesheet", record_id="t1", action="submit", actor_id="u1",
        old_state={"status": "draft"}, new_state={"status": "submitted"},
    )
    delivered = audit.dispatch([event])
    # the built-in log sink plus the test sink
    assert delivered == len(audit.SINK_REGISTRY)
    assert captured == [event]


def test_each_transition_gets_its_own_request_id(session, seed, org, captured):
    manager, employee, project = org
    timesheet = seed.submitted(employee, {project.id: 8})
    manager_approve_reject(session, seed.actor(manager), timesheet.id, project.id, "approve")

    submit_ids = {e.request_id for e in captured if e.action == "submit"}
    decision_ids = {e.request_id for e in captured if e.action == "manager_approve"}
    assert len(submit_ids) == len(decision_ids) == 1
    assert None not in submit_ids | decision_ids
    assert submit_ids != decision_ids

    rows = session.exec(select(AuditLog).where(AuditLog.action == "manager_approve")).all()
    assert {r.request_id for r in rows} == decision_ids
    assert request_id_ctx.get() is None


def test_request_scope_reuses_active_id(session, seed, org, captured):
    manager, employee, project = org
    timesheet = seed.submitted(employee, {project.id: 8})
    captured.clear()

    with request_scope() as rid:
        manager_approve_reject(session, seed.actor(manager), timesheet.id, project.id, "approve")

    assert captured
    assert {e.request_id for e in captured} == {rid}
