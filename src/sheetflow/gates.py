"""
Gate logic for the approval state machine.

Holds the rules shared by the live workflow and the repair procedures:
- which approval tiers a (timesheet, project) pair requires
- how a timesheet's aggregate status derives from its approval records
- which aggregate transitions are legal
- which stored states violate an invariant
"""
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set, Tuple
from sqlmodel import Session, select
from sheetflow.models.core import User, Role, Project, ProjectMember, ProjectRole
from sheetflow.models.timesheet import Timesheet, TimesheetStatus, TimeEntry
from sheetflow.models.approval import TimesheetProjectApproval, ApprovalStatus
from sheetflow.errors import NotFoundError

SATISFIED = frozenset({ApprovalStatus.APPROVED, ApprovalStatus.NOT_REQUIRED})

ALLOWED_TRANSITIONS: Dict[TimesheetStatus, Set[TimesheetStatus]] = {
    TimesheetStatus.DRAFT: {TimesheetStatus.SUBMITTED},
    TimesheetStatus.SUBMITTED: {TimesheetStatus.MANAGEMENT_PENDING, TimesheetStatus.REJECTED},
    TimesheetStatus.MANAGEMENT_PENDING: {TimesheetStatus.APPROVED, TimesheetStatus.REJECTED},
    TimesheetStatus.REJECTED: {TimesheetStatus.SUBMITTED},
    TimesheetStatus.APPROVED: set(),
}

EDITABLE_STATUSES = frozenset({TimesheetStatus.DRAFT, TimesheetStatus.REJECTED})
IN_REVIEW_STATUSES = frozenset({TimesheetStatus.SUBMITTED, TimesheetStatus.MANAGEMENT_PENDING})


def can_transition(current: TimesheetStatus, target: TimesheetStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


# ---------------------------------------------------------------------------
# Approval requirements
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class ApprovalPlan:
    lead_id: Optional[str]
    lead_status: ApprovalStatus
    manager_id: Optional[str]
    manager_status: ApprovalStatus
    management_status: ApprovalStatus = ApprovalStatus.PENDING


def requires_manager_approval(owner_id: str, manager_id: Optional[str]) -> bool:
    """A manager tier exists only when someone other than the owner manages the hours."""
    return manager_id is not None and manager_id != owner_id


def requires_lead_approval(owner: User, lead_id: Optional[str]) -> bool:
    """Leads review employee timesheets only, and never their own."""
    return lead_id is not None and owner.role == Role.EMPLOYEE and lead_id != owner.id


def plan_project_approval(owner: User, manager_id: Optional[str], lead_id: Optional[str]) -> ApprovalPlan:
    """
    Decide the initial sub-statuses of a (timesheet, project) approval record.

    - lead: pending when an eligible lead exists, otherwise not_required
    - manager: pending unless there is no manager or the owner is the manager;
      in the self-managed case the hours defer straight to management
    - management: always pending
    """
    return ApprovalPlan(
        lead_id=lead_id,
        lead_status=ApprovalStatus.PENDING if requires_lead_approval(owner, lead_id) else ApprovalStatus.NOT_REQUIRED,
        manager_id=manager_id,
        manager_status=(
            ApprovalStatus.PENDING if requires_manager_approval(owner.id, manager_id)
            else ApprovalStatus.NOT_REQUIRED
        ),
    )


def get_project_lead_id(session: Session, project_id: str) -> Optional[str]:
    """Earliest-assigned active lead of the project, if any."""
    member = session.exec(
        select(ProjectMember).where(
            ProjectMember.project_id == project_id,
            ProjectMember.project_role == ProjectRole.LEAD,
            ProjectMember.removed_at == None,  # noqa: E711
        ).order_by(ProjectMember.created_at, ProjectMember.id)
    ).first()
    return member.user_id if member else None


def resolve_approvers(session: Session, owner: User, project_id: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Return (manager_id, lead_id) for hours the owner logged on project_id.

    Non-project hours go to the owner's reporting manager with no lead tier.
    """
    if project_id is None:
        return owner.manager_id, None
    project = session.get(Project, project_id)
    if not project:
        raise NotFoundError("Project", project_id)
    return project.primary_manager_id, get_project_lead_id(session, project_id)


def plan_for(session: Session, owner: User, project_id: Optional[str]) -> ApprovalPlan:
    manager_id, lead_id = resolve_approvers(session, owner, project_id)
    return plan_project_approval(owner, manager_id, lead_id)


# ---------------------------------------------------------------------------
# Aggregate status
# ---------------------------------------------------------------------------
def reviewers_satisfied(approval: TimesheetProjectApproval) -> bool:
    return approval.lead_status in SATISFIED and approval.manager_status in SATISFIED


def is_rejected(approval: TimesheetProjectApproval) -> bool:
    return ApprovalStatus.REJECTED in (
        approval.lead_status, approval.manager_status, approval.management_status,
    )


def derive_timesheet_status(approvals: Iterable[TimesheetProjectApproval]) -> TimesheetStatus:
    """
    Derive the aggregate status of a submitted timesheet from its approval records.

    Rules:
    - any rejection on any tier -> rejected
    - a lead or manager tier still pending -> submitted
    - every tier satisfied -> approved
    - lead and manager tiers satisfied, management outstanding -> management_pending
    """
    approvals = list(approvals)
    if not approvals:
        return TimesheetStatus.SUBMITTED
    if any(is_rejected(a) for a in approvals):
        return TimesheetStatus.REJECTED
    if not all(reviewers_satisfied(a) for a in approvals):
        return TimesheetStatus.SUBMITTED
    if all(a.management_status in SATISFIED for a in approvals):
        return TimesheetStatus.APPROVED
    return TimesheetStatus.MANAGEMENT_PENDING


def get_approvals(session: Session, timesheet_id: str) -> List[TimesheetProjectApproval]:
    return list(session.exec(
        select(TimesheetProjectApproval).where(TimesheetProjectApproval.timesheet_id == timesheet_id)
    ).all())


def get_active_entries(session: Session, timesheet_id: str) -> List[TimeEntry]:
    return list(session.exec(
        select(TimeEntry).where(
            TimeEntry.timesheet_id == timesheet_id,
            TimeEntry.deleted_at == None,  # noqa: E711
        ).order_by(TimeEntry.date, TimeEntry.id)
    ).all())


# ---------------------------------------------------------------------------
# Invariant predicates
# ---------------------------------------------------------------------------
def timesheet_violations(
    timesheet: Timesheet,
    owner: Optional[User],
    approvals: List[TimesheetProjectApproval],
    entry_project_ids: Set[Optional[str]],
) -> List[str]:
    """Return a description for every invariant the stored timesheet breaks (empty when consistent)."""
    problems: List[str] = []

    if owner is None:
        problems.append(f"orphan: user {timesheet.user_id} does not exist")

    if timesheet.status == TimesheetStatus.DRAFT:
        return problems

    if timesheet.status in (TimesheetStatus.MANAGEMENT_PENDING, TimesheetStatus.APPROVED):
        for a in approvals:
            if not reviewers_satisfied(a):
                problems.append(
                    f"approval {a.id}: lead={a.lead_status.value} manager={a.manager_status.value} "
                    f"while timesheet is {timesheet.status.value}"
                )

    if timesheet.status == TimesheetStatus.APPROVED:
        if not timesheet.is_frozen:
            problems.append("approved timesheet is not frozen")
        for a in approvals:
            if a.management_status != ApprovalStatus.APPROVED or a.management_decided_at is None:
                problems.append(f"approval {a.id}: frozen timesheet with management={a.management_status.value}")
        return problems

    if timesheet.is_frozen:
        problems.append(f"frozen timesheet has status {timesheet.status.value}")

    if timesheet.status in IN_REVIEW_STATUSES:
        present = {a.project_id for a in approvals}
        for project_id in sorted(entry_project_ids - present, key=lambda p: p or ""):
            problems.append(f"missing approval record for project {project_id}")

        if owner is not None:
            for a in approvals:
                if a.manager_id == owner.id and a.manager_status == ApprovalStatus.PENDING:
                    problems.append(f"approval {a.id}: owner is pending their own manager approval")

        derived = derive_timesheet_status(approvals)
        if approvals and derived != timesheet.status:
            problems.append(f"stored status {timesheet.status.value} but records derive {derived.value}")

    return problems


def find_violations(session: Session, timesheets: Iterable[Timesheet]) -> List[Tuple[str, str]]:
    """Load what ``timesheet_violations`` needs for each timesheet. Returns (timesheet_id, problem) pairs."""
    found: List[Tuple[str, str]] = []
    for timesheet in timesheets:
        owner = session.get(User, timesheet.user_id)
        entry_project_ids = {e.project_id for e in get_active_entries(session, timesheet.id)}
        approvals = get_approvals(session, timesheet.id)
        for problem in timesheet_violations(timesheet, owner, approvals, entry_project_ids):
            found.append((timesheet.id, problem))
    return found
