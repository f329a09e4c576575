"""
Timesheet approval engine.

Aggregate lifecycle:

    draft -> submitted -> management_pending -> approved (frozen)
                 |                |
                 +---> rejected <-+          rejected -> submitted (re-submission)

Each (timesheet, project) pair has a TimesheetProjectApproval with independent
lead / manager / management tiers. After every tier decision the aggregate
status is re-derived from the records (``gates.derive_timesheet_status``) and
written through ``write_status``, the single status write path.
"""
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Union
from sqlmodel import Session, select
from sheetflow import audit
from sheetflow.config import settings
from sheetflow.entries import week_bounds
from sheetflow.errors import (
    InvalidStateTransition, NotFoundError, PermissionDenied, SheetflowError, ValidationError,
)
from sheetflow.gates import (
    ApprovalPlan, EDITABLE_STATUSES, can_transition, derive_timesheet_status,
    get_active_entries, get_approvals, plan_for,
)
from sheetflow.models.approval import ApprovalStatus, ApprovalTier, TimesheetProjectApproval
from sheetflow.models.base import utcnow
from sheetflow.models.core import Project, Role, User
from sheetflow.models.timesheet import Timesheet, TimesheetStatus, TimeEntry
from sheetflow.schemas import Actor, Decision
from sheetflow.txn import cas_update, load_timesheet, transition
from sheetflow.logging import logger, request_scope

_PAST_TENSE = {Decision.APPROVE: "approved", Decision.REJECT: "rejected"}

TIER_ROLES: Dict[ApprovalTier, frozenset] = {
    ApprovalTier.LEAD: frozenset({Role.LEAD, Role.MANAGER, Role.SUPER_ADMIN}),
    ApprovalTier.MANAGER: frozenset({Role.MANAGER, Role.MANAGEMENT, Role.SUPER_ADMIN}),
    ApprovalTier.MANAGEMENT: frozenset({Role.MANAGEMENT, Role.SUPER_ADMIN}),
}


@dataclass
class TransitionResult:
    timesheet_id: str
    project_id: Optional[str]
    previous_status: TimesheetStatus
    new_status: TimesheetStatus
    message: str

    @property
    def status_changed(self) -> bool:
        return self.previous_status != self.new_status


@dataclass
class BulkResult:
    processed: List[TransitionResult] = field(default_factory=list)
    failed: List[Dict[str, str]] = field(default_factory=list)

    @property
    def processed_count(self) -> int:
        return len(self.processed)

    @property
    def failed_count(self) -> int:
        return len(self.failed)


# ---------------------------------------------------------------------------
# Snapshots for the audit trail
# ---------------------------------------------------------------------------
def timesheet_snapshot(timesheet: Timesheet) -> dict:
    return {
        "status": timesheet.status.value,
        "is_frozen": timesheet.is_frozen,
        "total_hours": timesheet.total_hours,
        "version": timesheet.version,
    }


def approval_snapshot(approval: TimesheetProjectApproval) -> dict:
    return {
        "timesheet_id": approval.timesheet_id,
        "project_id": approval.project_id,
        "lead_status": approval.lead_status.value,
        "manager_status": approval.manager_status.value,
        "management_status": approval.management_status.value,
    }


# ---------------------------------------------------------------------------
# Status write path
# ---------------------------------------------------------------------------
def write_status(
    session: Session,
    timesheet: Timesheet,
    target: TimesheetStatus,
    *,
    actor_id: Optional[str],
    action: str,
    repair: bool = False,
    **fields,
):
    """
    Move the timesheet to ``target`` with a version-checked update and an audit record.

    Only edges in ``gates.ALLOWED_TRANSITIONS`` are accepted; maintenance
    procedures pass ``repair=True`` to re-align a record with its derived state.
    """
    current = timesheet.status
    if target != current and not repair and not can_transition(current, target):
        raise InvalidStateTransition(
            f"Timesheet {timesheet.id} cannot move from {current.value} to {target.value}",
            current_status=current.value,
        )
    before = timesheet_snapshot(timesheet)
    cas_update(session, timesheet, status=target, **fields)
    audit.record(
        session,
        table="timesheet",
        record_id=timesheet.id,
        action=action,
        actor_id=actor_id,
        old_state=before,
        new_state=timesheet_snapshot(timesheet),
    )
    if target != current:
        logger.info(f"Timesheet {timesheet.id} {current.value} -> {target.value} ({action})")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _parse_decision(decision: Union[Decision, str], reason: Optional[str]):
    try:
        parsed = Decision(decision)
    except ValueError:
        raise ValidationError(f"Decision must be 'approve' or 'reject', got {decision!r}")
    reason = reason.strip() if reason else None
    if parsed == Decision.REJECT and not reason:
        raise ValidationError("Rejection reason is required")
    return parsed, reason


def _require_role(actor: Actor, tier: ApprovalTier):
    if actor.role not in TIER_ROLES[tier]:
        raise PermissionDenied(f"Role {actor.role.value} cannot record {tier.value} decisions")


def _get_owner(session: Session, timesheet: Timesheet) -> User:
    owner = session.get(User, timesheet.user_id)
    if not owner or owner.is_deleted:
        raise NotFoundError("User", timesheet.user_id)
    return owner


def find_approval(session: Session, timesheet_id: str, project_id: Optional[str]) -> Optional[TimesheetProjectApproval]:
    stmt = select(TimesheetProjectApproval).where(TimesheetProjectApproval.timesheet_id == timesheet_id)
    if project_id is None:
        stmt = stmt.where(TimesheetProjectApproval.project_id == None)  # noqa: E711
    else:
        stmt = stmt.where(TimesheetProjectApproval.project_id == project_id)
    return session.exec(stmt).first()


def _require_approval(session: Session, timesheet: Timesheet, project_id: Optional[str]) -> TimesheetProjectApproval:
    approval = find_approval(session, timesheet.id, project_id)
    if approval is None:
        raise InvalidStateTransition(
            f"Project {project_id} has no hours on timesheet {timesheet.id}",
            current_status=timesheet.status.value,
        )
    return approval


def group_entries_by_project(entries: List[TimeEntry]) -> Dict[Optional[str], List[TimeEntry]]:
    groups: Dict[Optional[str], List[TimeEntry]] = defaultdict(list)
    for entry in entries:
        groups[entry.project_id].append(entry)
    return dict(groups)


def apply_plan(approval: TimesheetProjectApproval, plan: ApprovalPlan):
    """Reset every tier of the record to the planned starting state."""
    approval.lead_id = plan.lead_id
    approval.lead_status = plan.lead_status
    approval.manager_id = plan.manager_id
    approval.manager_status = plan.manager_status
    approval.management_status = plan.management_status
    for tier in ApprovalTier:
        setattr(approval, f"{tier.value}_decided_at", None)
        setattr(approval, f"{tier.value}_reason", None)


def _record_decision(approval: TimesheetProjectApproval, tier: ApprovalTier, decision: Decision, reason: Optional[str], now: datetime):
    status = ApprovalStatus.APPROVED if decision == Decision.APPROVE else ApprovalStatus.REJECTED
    setattr(approval, f"{tier.value}_status", status)
    setattr(approval, f"{tier.value}_decided_at", now)
    setattr(approval, f"{tier.value}_reason", reason if decision == Decision.REJECT else None)


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------
def check_submission_ready(timesheet: Timesheet, entries: List[TimeEntry]):
    """Raise naming the exact precondition a submission fails."""
    if timesheet.status not in EDITABLE_STATUSES:
        raise InvalidStateTransition(
            f"Timesheet cannot be submitted from current status: {timesheet.status.value}",
            current_status=timesheet.status.value,
        )
    if not entries:
        raise ValidationError("Cannot submit a timesheet without time entries")
    if sum(e.hours for e in entries) <= 0:
        raise ValidationError("Cannot submit timesheet with zero hours")

    if settings.REQUIRE_FULL_WEEKDAYS:
        per_day: Dict[date, float] = defaultdict(float)
        for e in entries:
            per_day[e.date] += e.hours
        short = []
        for offset in range(5):
            day = timesheet.week_start_date + timedelta(days=offset)
            if per_day[day] < settings.DAILY_MIN_HOURS:
                short.append(f"{day.isoformat()} ({per_day[day]:g}h)")
        if short:
            raise ValidationError(
                f"All weekday entries required before submission: at least "
                f"{settings.DAILY_MIN_HOURS:g}h needed on {', '.join(short)}"
            )


def sync_approval_records(
    session: Session,
    timesheet: Timesheet,
    owner: User,
    entries: List[TimeEntry],
    actor_id: Optional[str],
) -> List[TimesheetProjectApproval]:
    """Create or reset one approval record per project with hours; drop records for projects without hours."""
    groups = group_entries_by_project(entries)
    existing = {a.project_id: a for a in get_approvals(session, timesheet.id)}
    records: List[TimesheetProjectApproval] = []

    for project_id, group in groups.items():
        plan = plan_for(session, owner, project_id)
        approval = existing.pop(project_id, None)
        before = approval_snapshot(approval) if approval else None
        if approval is None:
            approval = TimesheetProjectApproval(timesheet_id=timesheet.id, project_id=project_id)
        apply_plan(approval, plan)
        approval.entries_count = len(group)
        approval.total_hours = round(sum(e.hours for e in group), 2)
        session.add(approval)
        session.flush()
        audit.record(
            session,
            table="timesheet_project_approval",
            record_id=approval.id,
            action="reset" if before else "create",
            actor_id=actor_id,
            old_state=before,
            new_state=approval_snapshot(approval),
        )
        records.append(approval)

    for stale in existing.values():
        audit.record(
            session,
            table="timesheet_project_approval",
            record_id=stale.id,
            action="delete",
            actor_id=actor_id,
            old_state=approval_snapshot(stale),
        )
        session.delete(stale)
    session.flush()
    return records


@transition
def submit_timesheet(session: Session, actor: Actor, timesheet_id: str) -> TransitionResult:
    """
    Submit (or re-submit) a draft or rejected timesheet for review.

    One approval record per project is created or reset in place. A timesheet
    whose records need no lead or manager sign-off goes straight on to
    management_pending.
    """
    timesheet = load_timesheet(session, timesheet_id)
    if actor.role != Role.SUPER_ADMIN and actor.id != timesheet.user_id:
        raise PermissionDenied(f"User {actor.id} cannot submit timesheet {timesheet.id}")
    owner = _get_owner(session, timesheet)
    entries = get_active_entries(session, timesheet.id)
    check_submission_ready(timesheet, entries)

    previous = timesheet.status
    records = sync_approval_records(session, timesheet, owner, entries, actor.id)
    write_status(
        session, timesheet, TimesheetStatus.SUBMITTED,
        actor_id=actor.id, action="submit", submitted_at=utcnow(), rejected_at=None,
    )

    derived = derive_timesheet_status(records)
    if derived == TimesheetStatus.MANAGEMENT_PENDING:
        write_status(session, timesheet, derived, actor_id=actor.id, action="escalate")

    return TransitionResult(
        timesheet_id=timesheet.id,
        project_id=None,
        previous_status=previous,
        new_status=timesheet.status,
        message=f"Timesheet submitted with {len(records)} approval record(s)",
    )


# ---------------------------------------------------------------------------
# Tier decisions
# ---------------------------------------------------------------------------
def _reviewer_decision(
    session: Session,
    actor: Actor,
    timesheet_id: str,
    project_id: Optional[str],
    decision: Union[Decision, str],
    reason: Optional[str],
    tier: ApprovalTier,
) -> TransitionResult:
    decision, reason = _parse_decision(decision, reason)
    _require_role(actor, tier)

    timesheet = load_timesheet(session, timesheet_id)
    if timesheet.status != TimesheetStatus.SUBMITTED:
        raise InvalidStateTransition(
            f"{tier.value.capitalize()} decisions require a submitted timesheet; "
            f"timesheet {timesheet.id} is {timesheet.status.value}",
            current_status=timesheet.status.value,
        )
    approval = _require_approval(session, timesheet, project_id)
    current = approval.tier_status(tier)
    if current != ApprovalStatus.PENDING:
        raise InvalidStateTransition(
            f"{tier.value.capitalize()} approval for project {project_id} is {current.value}, not pending",
            current_status=timesheet.status.value,
        )
    now = utcnow()
    before = approval_snapshot(approval)
    if tier == ApprovalTier.MANAGER and approval.lead_status == ApprovalStatus.PENDING:
        # Manager decided ahead of the lead; the lead tier no longer applies
        approval.lead_status = ApprovalStatus.NOT_REQUIRED
        logger.info(f"Manager {actor.id} bypassed lead review on timesheet {timesheet.id}, project {project_id}")
    _record_decision(approval, tier, decision, reason, now)
    session.add(approval)
    session.flush()
    audit.record(
        session,
        table="timesheet_project_approval",
        record_id=approval.id,
        action=f"{tier.value}_{decision.value}",
        actor_id=actor.id,
        old_state=before,
        new_state=approval_snapshot(approval),
    )

    previous = timesheet.status
    derived = derive_timesheet_status(get_approvals(session, timesheet.id))
    if derived != previous:
        extra = {"rejected_at": now} if derived == TimesheetStatus.REJECTED else {}
        write_status(session, timesheet, derived, actor_id=actor.id, action=f"{tier.value}_{decision.value}", **extra)
    else:
        # Bump the version anyway so concurrent decisions on sibling projects serialize
        cas_update(session, timesheet)

    return TransitionResult(
        timesheet_id=timesheet.id,
        project_id=project_id,
        previous_status=previous,
        new_status=timesheet.status,
        message=(
            f"Timesheet {_PAST_TENSE[decision]} and status updated" if derived != previous
            else f"Project {_PAST_TENSE[decision]}, waiting for other approvers"
        ),
    )


@transition
def lead_approve_reject(
    session: Session,
    actor: Actor,
    timesheet_id: str,
    project_id: Optional[str],
    decision: Union[Decision, str],
    reason: Optional[str] = None,
) -> TransitionResult:
    """Record the lead's decision on one project of a submitted timesheet."""
    return _reviewer_decision(session, actor, timesheet_id, project_id, decision, reason, ApprovalTier.LEAD)


@transition
def manager_approve_reject(
    session: Session,
    actor: Actor,
    timesheet_id: str,
    project_id: Optional[str],
    decision: Union[Decision, str],
    reason: Optional[str] = None,
) -> TransitionResult:
    """Record the manager's decision on one project of a submitted timesheet.

    A rejection sends the whole timesheet to rejected; when every project's
    lead and manager tiers are satisfied it moves on to management_pending.
    """
    return _reviewer_decision(session, actor, timesheet_id, project_id, decision, reason, ApprovalTier.MANAGER)


@transition
def management_approve_reject(
    session: Session,
    actor: Actor,
    timesheet_id: str,
    project_id: Optional[str],
    decision: Union[Decision, str],
    reason: Optional[str] = None,
) -> TransitionResult:
    """Record management's decision on one project of a management_pending timesheet.

    Approving the last outstanding project freezes the timesheet and forces
    every record's management tier to approved.
    """
    decision, reason = _parse_decision(decision, reason)
    _require_role(actor, ApprovalTier.MANAGEMENT)

    timesheet = load_timesheet(session, timesheet_id)
    if timesheet.status != TimesheetStatus.MANAGEMENT_PENDING:
        raise InvalidStateTransition(
            f"Management can only act once every lead and manager approval is complete; "
            f"timesheet {timesheet.id} is {timesheet.status.value}",
            current_status=timesheet.status.value,
        )
    approval = _require_approval(session, timesheet, project_id)
    if approval.management_status != ApprovalStatus.PENDING:
        raise InvalidStateTransition(
            f"Management approval for project {project_id} is {approval.management_status.value}, not pending",
            current_status=timesheet.status.value,
        )

    now = utcnow()
    before = approval_snapshot(approval)
    _record_decision(approval, ApprovalTier.MANAGEMENT, decision, reason, now)
    session.add(approval)
    session.flush()
    audit.record(
        session,
        table="timesheet_project_approval",
        record_id=approval.id,
        action=f"management_{decision.value}",
        actor_id=actor.id,
        old_state=before,
        new_state=approval_snapshot(approval),
    )

    previous = timesheet.status
    approvals = get_approvals(session, timesheet.id)
    derived = derive_timesheet_status(approvals)
    if derived == TimesheetStatus.APPROVED:
        freeze_approvals(session, approvals, actor_id=actor.id, now=now)
        write_status(
            session, timesheet, TimesheetStatus.APPROVED,
            actor_id=actor.id, action="freeze", is_frozen=True, frozen_at=now,
        )
    elif derived != previous:
        extra = {"rejected_at": now} if derived == TimesheetStatus.REJECTED else {}
        write_status(session, timesheet, derived, actor_id=actor.id, action=f"management_{decision.value}", **extra)
    else:
        cas_update(session, timesheet)

    return TransitionResult(
        timesheet_id=timesheet.id,
        project_id=project_id,
        previous_status=previous,
        new_status=timesheet.status,
        message=(
            "Timesheet frozen" if timesheet.status == TimesheetStatus.APPROVED
            else f"Project {_PAST_TENSE[decision]} by management"
        ),
    )


def freeze_approvals(
    session: Session,
    approvals: List[TimesheetProjectApproval],
    *,
    actor_id: Optional[str],
    now: datetime,
) -> int:
    """Force management_status=approved (with a timestamp) on every record. Returns records changed."""
    changed = 0
    for approval in approvals:
        if approval.management_status == ApprovalStatus.APPROVED and approval.management_decided_at is not None:
            continue
        before = approval_snapshot(approval)
        approval.management_status = ApprovalStatus.APPROVED
        approval.management_decided_at = approval.management_decided_at or now
        session.add(approval)
        audit.record(
            session,
            table="timesheet_project_approval",
            record_id=approval.id,
            action="freeze",
            actor_id=actor_id,
            old_state=before,
            new_state=approval_snapshot(approval),
        )
        changed += 1
    session.flush()
    return changed


# ---------------------------------------------------------------------------
# Bulk project-week decisions
# ---------------------------------------------------------------------------
def tier_for_role(role: Role) -> ApprovalTier:
    if role == Role.LEAD:
        return ApprovalTier.LEAD
    if role == Role.MANAGEMENT:
        return ApprovalTier.MANAGEMENT
    if role in (Role.MANAGER, Role.SUPER_ADMIN):
        return ApprovalTier.MANAGER
    raise PermissionDenied(f"Role {role.value} cannot approve timesheets")


_TIER_OPERATIONS = {
    ApprovalTier.LEAD: lead_approve_reject,
    ApprovalTier.MANAGER: manager_approve_reject,
    ApprovalTier.MANAGEMENT: management_approve_reject,
}


def approve_project_week(
    session: Session,
    actor: Actor,
    project_id: str,
    week_start: date,
    decision: Union[Decision, str] = Decision.APPROVE,
    reason: Optional[str] = None,
) -> BulkResult:
    """
    Apply one decision to every user's hours on a project for one week.

    The actor's role picks the tier. Each timesheet is its own transition, so a
    refusal on one timesheet is collected in ``failed`` and the rest proceed.
    """
    week_bounds(week_start)
    if session.get(Project, project_id) is None:
        raise NotFoundError("Project", project_id)
    operation = _TIER_OPERATIONS[tier_for_role(actor.role)]

    timesheet_ids = list(session.exec(
        select(Timesheet.id)
        .join(TimesheetProjectApproval, TimesheetProjectApproval.timesheet_id == Timesheet.id)
        .where(
            Timesheet.week_start_date == week_start,
            TimesheetProjectApproval.project_id == project_id,
        )
        .order_by(Timesheet.id)
    ).all())
    if not timesheet_ids:
        raise NotFoundError("Approval records for project-week", f"{project_id}@{week_start.isoformat()}")

    result = BulkResult()
    with request_scope():
        for timesheet_id in timesheet_ids:
            try:
                result.processed.append(operation(session, actor, timesheet_id, project_id, decision, reason))
            except SheetflowError as e:
                logger.warning(f"Bulk decision skipped timesheet {timesheet_id}: {e.message}")
                result.failed.append({"timesheet_id": timesheet_id, "code": e.code, "reason": e.message})

        logger.info(
            f"Project {project_id} week {week_start}: {result.processed_count} processed, {result.failed_count} failed"
        )
    return result
