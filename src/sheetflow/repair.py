"""
Maintenance procedures that restore timesheet invariants.

Each procedure is registered with:
- name: unique identifier used by ``run_repair`` and the CLI
- description: one line for ``sheetflow repair list``
- handler: callable(session) -> RepairReport

Every procedure is idempotent. Candidates are scanned in keyset-ordered
chunks of ``REPAIR_CHUNK_SIZE``; each correction runs as its own transition
that re-loads the record and re-checks it with the predicates in
``sheetflow.gates`` before writing, so consistent records are never touched.
"""
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional
from sqlalchemy import delete
from sqlmodel import Session, select
from sheetflow import audit
from sheetflow.config import settings
from sheetflow.errors import ConcurrentUpdateError, ConsistencyError, NotFoundError, SheetflowError
from sheetflow.gates import (
    IN_REVIEW_STATUSES, derive_timesheet_status, find_violations,
    get_active_entries, get_approvals, is_rejected, plan_for, reviewers_satisfied,
)
from sheetflow.models.approval import ApprovalStatus, TimesheetProjectApproval
from sheetflow.models.base import utcnow
from sheetflow.models.billing import BillingAdjustment
from sheetflow.models.core import User
from sheetflow.models.timesheet import Timesheet, TimesheetStatus, TimeEntry
from sheetflow.txn import cas_update, load_timesheet, transition
from sheetflow.workflow import (
    apply_plan, approval_snapshot, freeze_approvals, group_entries_by_project,
    timesheet_snapshot, write_status,
)
from sheetflow.logging import logger

REPAIR_ACTOR = None


@dataclass
class RepairReport:
    name: str
    inspected: int = 0
    fixed: int = 0
    details: List[str] = field(default_factory=list)

    def record_fix(self, record_id: str, message: str):
        err = ConsistencyError(message, record_id=record_id)
        logger.warning(f"[{self.name}] {err.code} {record_id}: {err.message}")
        self.fixed += 1
        self.details.append(f"{record_id}: {message}")

    def record_skip(self, record_id: str, message: str):
        logger.warning(f"[{self.name}] skipped {record_id}: {message}")
        self.details.append(f"{record_id}: skipped, {message}")


_REGISTRY: Dict[str, Dict[str, object]] = {}


def register_repair(name: str, description: str):
    """Register a maintenance procedure in the global registry."""
    def decorator(handler: Callable[[Session], RepairReport]):
        _REGISTRY[name] = {"name": name, "description": description, "handler": handler}
        return handler
    return decorator


def iter_chunks(session: Session, *criteria, chunk_size: Optional[int] = None) -> Iterator[List[Timesheet]]:
    """Yield timesheets matching ``criteria`` in id order, ``chunk_size`` at a time."""
    size = chunk_size or settings.REPAIR_CHUNK_SIZE
    last_id = ""
    while True:
        rows = list(session.exec(
            select(Timesheet).where(Timesheet.id > last_id, *criteria).order_by(Timesheet.id).limit(size)
        ).all())
        if not rows:
            return
        last_id = rows[-1].id
        yield rows


def _run_fix(report: RepairReport, fix: Callable, session: Session, timesheet_id: str):
    """Apply one correction; a failure is reported against the record and the scan continues."""
    try:
        message = fix(session, timesheet_id)
    except SheetflowError as e:
        report.record_skip(timesheet_id, e.message)
        return
    if message:
        report.record_fix(timesheet_id, message)


# ---------------------------------------------------------------------------
# Orphan cleanup
# ---------------------------------------------------------------------------
@transition
def _delete_orphan_timesheet(session: Session, timesheet_id: str) -> Optional[str]:
    timesheet = load_timesheet(session, timesheet_id)
    if session.get(User, timesheet.user_id) is not None:
        return None
    before = dict(timesheet_snapshot(timesheet), user_id=timesheet.user_id)
    entries = session.exec(delete(TimeEntry).where(TimeEntry.timesheet_id == timesheet.id)).rowcount
    approvals = session.exec(
        delete(TimesheetProjectApproval).where(TimesheetProjectApproval.timesheet_id == timesheet.id)
    ).rowcount
    session.exec(delete(BillingAdjustment).where(BillingAdjustment.timesheet_id == timesheet.id))
    removed = session.exec(
        delete(Timesheet)
        .where(Timesheet.id == timesheet.id, Timesheet.version == before["version"])
        .execution_options(synchronize_session=False)
    ).rowcount
    if removed != 1:
        raise ConcurrentUpdateError(f"Timesheet {timesheet_id} changed during orphan cleanup")
    session.expunge(timesheet)
    audit.record(
        session, table="timesheet", record_id=timesheet_id, action="orphan_cleanup",
        actor_id=REPAIR_ACTOR, old_state=before,
    )
    return f"user {before['user_id']} does not exist; deleted timesheet with {entries} entries and {approvals} approval records"


@transition
def _delete_dangling(session: Session, model) -> int:
    """Delete rows of ``model`` whose timesheet no longer exists."""
    ids = list(session.exec(
        select(model.id)
        .outerjoin(Timesheet, Timesheet.id == model.timesheet_id)
        .where(Timesheet.id == None)  # noqa: E711
        .limit(settings.REPAIR_CHUNK_SIZE)
    ).all())
    if not ids:
        return 0
    session.exec(delete(model).where(model.id.in_(ids)))
    return len(ids)


@register_repair("cleanup_orphans", "Delete timesheets whose user no longer exists, with their entries and approvals")
def cleanup_orphans(session: Session) -> RepairReport:
    report = RepairReport("cleanup_orphans")
    for chunk in iter_chunks(session):
        user_ids = {t.user_id for t in chunk}
        existing = set(session.exec(select(User.id).where(User.id.in_(list(user_ids)))).all())
        orphans = [t.id for t in chunk if t.user_id not in existing]
        report.inspected += len(chunk)
        for timesheet_id in orphans:
            _run_fix(report, _delete_orphan_timesheet, session, timesheet_id)

    for model in (TimeEntry, TimesheetProjectApproval, BillingAdjustment):
        while True:
            removed = _delete_dangling(session, model)
            if not removed:
                break
            logger.warning(f"[cleanup_orphans] deleted {removed} {model.__tablename__} rows without a timesheet")
            report.details.append(f"{model.__tablename__}: deleted {removed} rows without a timesheet")
    return report


# ---------------------------------------------------------------------------
# Missing approval backfill
# ---------------------------------------------------------------------------
def _missing_projects(session: Session, timesheet: Timesheet) -> set:
    entry_projects = {e.project_id for e in get_active_entries(session, timesheet.id)}
    return entry_projects - {a.project_id for a in get_approvals(session, timesheet.id)}


@transition
def _backfill_timesheet(session: Session, timesheet_id: str) -> Optional[str]:
    timesheet = load_timesheet(session, timesheet_id)
    if timesheet.status not in IN_REVIEW_STATUSES:
        return None
    owner = session.get(User, timesheet.user_id)
    if owner is None:
        raise NotFoundError("User", timesheet.user_id)

    present = {a.project_id for a in get_approvals(session, timesheet.id)}
    groups = group_entries_by_project(get_active_entries(session, timesheet.id))
    created = []
    for project_id, group in groups.items():
        if project_id in present:
            continue
        approval = TimesheetProjectApproval(timesheet_id=timesheet.id, project_id=project_id)
        apply_plan(approval, plan_for(session, owner, project_id))
        approval.entries_count = len(group)
        approval.total_hours = round(sum(e.hours for e in group), 2)
        session.add(approval)
        session.flush()
        audit.record(
            session, table="timesheet_project_approval", record_id=approval.id, action="backfill",
            actor_id=REPAIR_ACTOR, new_state=approval_snapshot(approval),
        )
        created.append(project_id)
    if not created:
        return None

    previous = timesheet.status
    derived = derive_timesheet_status(get_approvals(session, timesheet.id))
    if derived != previous:
        write_status(session, timesheet, derived, actor_id=REPAIR_ACTOR, action="backfill", repair=True)
    else:
        cas_update(session, timesheet)
    return (
        f"created approval records for projects {sorted(created, key=lambda p: p or '')}; "
        f"status {previous.value} -> {timesheet.status.value}"
    )


@register_repair("backfill_missing_approvals", "Create approval records missing from timesheets under review")
def backfill_missing_approvals(session: Session) -> RepairReport:
    report = RepairReport("backfill_missing_approvals")
    for chunk in iter_chunks(session, Timesheet.status.in_(list(IN_REVIEW_STATUSES))):
        report.inspected += len(chunk)
        needing = [t.id for t in chunk if _missing_projects(session, t)]
        for timesheet_id in needing:
            _run_fix(report, _backfill_timesheet, session, timesheet_id)
    return report


# ---------------------------------------------------------------------------
# Manager self-approval correction
# ---------------------------------------------------------------------------
def _self_pending(timesheet: Timesheet, approvals: List[TimesheetProjectApproval]) -> List[TimesheetProjectApproval]:
    return [
        a for a in approvals
        if a.manager_id == timesheet.user_id and a.manager_status == ApprovalStatus.PENDING
    ]


@transition
def _fix_self_approval(session: Session, timesheet_id: str) -> Optional[str]:
    timesheet = load_timesheet(session, timesheet_id)
    if timesheet.status not in IN_REVIEW_STATUSES:
        return None
    approvals = get_approvals(session, timesheet.id)
    wrong = _self_pending(timesheet, approvals)
    if not wrong:
        return None

    for approval in wrong:
        before = approval_snapshot(approval)
        approval.manager_status = ApprovalStatus.NOT_REQUIRED
        approval.manager_decided_at = None
        if approval.management_status == ApprovalStatus.NOT_REQUIRED:
            approval.management_status = ApprovalStatus.PENDING
        session.add(approval)
        audit.record(
            session, table="timesheet_project_approval", record_id=approval.id, action="repair_self_approval",
            actor_id=REPAIR_ACTOR, old_state=before, new_state=approval_snapshot(approval),
        )
    session.flush()

    previous = timesheet.status
    derived = derive_timesheet_status(approvals)
    if derived != previous:
        write_status(session, timesheet, derived, actor_id=REPAIR_ACTOR, action="repair_self_approval", repair=True)
    else:
        cas_update(session, timesheet)
    return f"{len(wrong)} self-managed record(s) set to not_required; status {previous.value} -> {timesheet.status.value}"


@register_repair("fix_manager_self_approvals", "Skip the manager tier on records where the owner is the manager")
def fix_manager_self_approvals(session: Session) -> RepairReport:
    report = RepairReport("fix_manager_self_approvals")
    for chunk in iter_chunks(session, Timesheet.status.in_(list(IN_REVIEW_STATUSES))):
        report.inspected += len(chunk)
        needing = [t.id for t in chunk if _self_pending(t, get_approvals(session, t.id))]
        for timesheet_id in needing:
            _run_fix(report, _fix_self_approval, session, timesheet_id)
    return report


# ---------------------------------------------------------------------------
# Aggregate status resync
# ---------------------------------------------------------------------------
def _status_drift(session: Session, timesheet: Timesheet) -> Optional[TimesheetStatus]:
    approvals = get_approvals(session, timesheet.id)
    if not approvals:
        return None
    derived = derive_timesheet_status(approvals)
    return derived if derived != timesheet.status else None


@transition
def _resync_status(session: Session, timesheet_id: str) -> Optional[str]:
    timesheet = load_timesheet(session, timesheet_id)
    if timesheet.status not in IN_REVIEW_STATUSES:
        return None
    derived = _status_drift(session, timesheet)
    if derived is None:
        return None

    previous = timesheet.status
    now = utcnow()
    if derived == TimesheetStatus.APPROVED:
        freeze_approvals(session, get_approvals(session, timesheet.id), actor_id=REPAIR_ACTOR, now=now)
        write_status(
            session, timesheet, derived, actor_id=REPAIR_ACTOR, action="repair_resync", repair=True,
            is_frozen=True, frozen_at=now,
        )
    elif derived == TimesheetStatus.REJECTED:
        write_status(
            session, timesheet, derived, actor_id=REPAIR_ACTOR, action="repair_resync", repair=True,
            rejected_at=now,
        )
    else:
        write_status(session, timesheet, derived, actor_id=REPAIR_ACTOR, action="repair_resync", repair=True)
    return f"stored status {previous.value} but records derive {derived.value}"


@register_repair("resync_aggregate_status", "Rewrite in-review timesheets whose status disagrees with their records")
def resync_aggregate_status(session: Session) -> RepairReport:
    report = RepairReport("resync_aggregate_status")
    for chunk in iter_chunks(session, Timesheet.status.in_(list(IN_REVIEW_STATUSES))):
        report.inspected += len(chunk)
        needing = [t.id for t in chunk if _status_drift(session, t) is not None]
        for timesheet_id in needing:
            _run_fix(report, _resync_status, session, timesheet_id)
    return report


# ---------------------------------------------------------------------------
# Freeze consistency
# ---------------------------------------------------------------------------
def _freeze_inconsistent(timesheet: Timesheet, approvals: List[TimesheetProjectApproval]) -> bool:
    if timesheet.status != TimesheetStatus.APPROVED or not timesheet.is_frozen or timesheet.frozen_at is None:
        return True
    return any(
        a.management_status != ApprovalStatus.APPROVED or a.management_decided_at is None
        for a in approvals
    )


@transition
def _fix_freeze(session: Session, timesheet_id: str) -> Optional[str]:
    timesheet = load_timesheet(session, timesheet_id)
    if timesheet.status != TimesheetStatus.APPROVED and not timesheet.is_frozen:
        return None
    approvals = get_approvals(session, timesheet.id)
    if not _freeze_inconsistent(timesheet, approvals):
        return None

    now = utcnow()
    if timesheet.status != TimesheetStatus.APPROVED:
        # Frozen flag on an unapproved timesheet: it only wins when nothing is rejected or pending review
        if not approvals or any(is_rejected(a) or not reviewers_satisfied(a) for a in approvals):
            before = timesheet.status
            write_status(
                session, timesheet, timesheet.status, actor_id=REPAIR_ACTOR, action="repair_unfreeze",
                repair=True, is_frozen=False, frozen_at=None,
            )
            return f"frozen flag cleared on {before.value} timesheet"

    changed = freeze_approvals(session, approvals, actor_id=REPAIR_ACTOR, now=now)
    previous = timesheet.status
    write_status(
        session, timesheet, TimesheetStatus.APPROVED, actor_id=REPAIR_ACTOR, action="repair_freeze", repair=True,
        is_frozen=True, frozen_at=timesheet.frozen_at or now,
    )
    return f"{changed} record(s) forced to management approved; status {previous.value}, frozen"


@register_repair("enforce_freeze_consistency", "Force full management approval on approved or frozen timesheets")
def enforce_freeze_consistency(session: Session) -> RepairReport:
    report = RepairReport("enforce_freeze_consistency")
    criteria = (Timesheet.status == TimesheetStatus.APPROVED) | (Timesheet.is_frozen == True)  # noqa: E712
    for chunk in iter_chunks(session, criteria):
        report.inspected += len(chunk)
        needing = [t.id for t in chunk if _freeze_inconsistent(t, get_approvals(session, t.id))]
        for timesheet_id in needing:
            _run_fix(report, _fix_freeze, session, timesheet_id)
    return report


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------
def run_repair(session: Session, name: str) -> RepairReport:
    if name not in _REGISTRY:
        raise NotFoundError("Repair procedure", name)
    report = _REGISTRY[name]["handler"](session)
    logger.info(f"Repair {name}: inspected {report.inspected}, fixed {report.fixed}")
    return report


def run_all(session: Session) -> List[RepairReport]:
    """Run every procedure in registration order (orphans first, freeze last)."""
    return [run_repair(session, name) for name in _REGISTRY]


def check_consistency(session: Session) -> List[tuple]:
    """Every invariant violation currently stored, as (timesheet_id, problem). Writes nothing."""
    violations = []
    for chunk in iter_chunks(session):
        violations.extend(find_violations(session, chunk))
    for timesheet_id, problem in violations:
        logger.warning(f"{ConsistencyError.code} {timesheet_id}: {problem}")
    return violations


# Expose for convenience
REPAIRS = _REGISTRY
