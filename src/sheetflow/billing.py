"""
Billing aggregation over frozen timesheets.

Read-side only: entries of approved, frozen timesheets are grouped by
(project_id, user_id) and priced at the rate effective on each entry's date.
Hours and amounts are summed as Decimal so the totals are exact.

Rate resolution, most specific first:
1. BillingRate for (user, project) covering the date
2. BillingRate for the user on any project (project_id None) covering the date
3. User.hourly_rate
"""
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional, Tuple
import pandas as pd
from sqlalchemy import or_
from sqlmodel import Session, select
from sheetflow import audit
from sheetflow.errors import (
    AggregationError, InvalidStateTransition, PermissionDenied, ValidationError,
)
from sheetflow.gates import get_active_entries
from sheetflow.models.base import utcnow
from sheetflow.models.billing import BillingAdjustment, BillingRate
from sheetflow.models.core import Project, Role, User
from sheetflow.models.timesheet import Timesheet, TimesheetStatus, TimeEntry
from sheetflow.schemas import Actor, BillingFilter, BillingLine
from sheetflow.txn import load_timesheet, transition
from sheetflow.logging import logger

ADJUSTMENT_ROLES = frozenset({Role.MANAGEMENT, Role.SUPER_ADMIN})

REPORT_COLUMNS = ["project_id", "user_id", "total_hours", "billable_hours", "amount"]


def to_decimal(value: float) -> Decimal:
    # str() first so 7.3 stays 7.3 instead of its binary expansion
    return Decimal(str(value))


def resolve_rate(session: Session, user: User, project_id: Optional[str], on: date) -> Optional[Decimal]:
    """Hourly rate for the user's work on ``project_id`` at date ``on``, or None if nothing applies."""
    effective = select(BillingRate).where(
        BillingRate.user_id == user.id,
        BillingRate.effective_from <= on,
        or_(BillingRate.effective_to == None, BillingRate.effective_to >= on),  # noqa: E711
    ).order_by(BillingRate.effective_from.desc())

    if project_id is not None:
        rate = session.exec(effective.where(BillingRate.project_id == project_id)).first()
        if rate:
            return to_decimal(rate.hourly_rate)
    rate = session.exec(effective.where(BillingRate.project_id == None)).first()  # noqa: E711
    if rate:
        return to_decimal(rate.hourly_rate)
    if user.hourly_rate is not None:
        return to_decimal(user.hourly_rate)
    return None


@dataclass
class _Accumulator:
    total_hours: Decimal = Decimal("0")
    billable_hours: Decimal = Decimal("0")
    amount: Decimal = Decimal("0")


class _Lookups:
    """Per-call caches for users, projects and rates."""

    def __init__(self, session: Session):
        self.session = session
        self._users: Dict[str, Optional[User]] = {}
        self._projects: Dict[str, Optional[Project]] = {}
        self._rates: Dict[Tuple[str, Optional[str], date], Optional[Decimal]] = {}

    def billable_user(self, user_id: str) -> Optional[User]:
        if user_id not in self._users:
            user = self.session.get(User, user_id)
            self._users[user_id] = user if user and not user.is_deleted else None
        return self._users[user_id]

    def require_project(self, project_id: Optional[str], source: str):
        if project_id is None:
            return
        if project_id not in self._projects:
            self._projects[project_id] = self.session.get(Project, project_id)
        if self._projects[project_id] is None:
            raise AggregationError(f"{source} references project {project_id}, which cannot be resolved")

    def rate(self, user: User, project_id: Optional[str], on: date) -> Decimal:
        key = (user.id, project_id, on)
        if key not in self._rates:
            self._rates[key] = resolve_rate(self.session, user, project_id, on)
        rate = self._rates[key]
        if rate is None:
            raise AggregationError(
                f"No billing rate for user {user.id} on project {project_id} at {on.isoformat()}"
            )
        return rate


def aggregate(session: Session, filters: BillingFilter) -> List[BillingLine]:
    """
    Per (project, user) totals for frozen timesheets within the filter's date range.

    Soft-deleted entries and timesheets of missing or soft-deleted users are
    skipped. Active billing adjustments on timesheets whose week starts in the
    range are added to billable hours and priced at the week-start rate.
    """
    if filters.start > filters.end:
        raise ValidationError(f"Billing range start {filters.start} is after end {filters.end}")

    stmt = (
        select(TimeEntry, Timesheet)
        .join(Timesheet, TimeEntry.timesheet_id == Timesheet.id)
        .where(
            Timesheet.status == TimesheetStatus.APPROVED,
            Timesheet.is_frozen == True,  # noqa: E712
            TimeEntry.deleted_at == None,  # noqa: E711
            TimeEntry.date >= filters.start,
            TimeEntry.date <= filters.end,
        )
        .order_by(TimeEntry.date, TimeEntry.id)
    )
    if filters.project_id:
        stmt = stmt.where(TimeEntry.project_id == filters.project_id)
    if filters.user_id:
        stmt = stmt.where(Timesheet.user_id == filters.user_id)

    lookups = _Lookups(session)
    groups: Dict[Tuple[Optional[str], str], _Accumulator] = {}
    skipped = 0

    for entry, timesheet in session.exec(stmt).all():
        user = lookups.billable_user(timesheet.user_id)
        if user is None:
            skipped += 1
            continue
        lookups.require_project(entry.project_id, f"Entry {entry.id}")

        acc = groups.setdefault((entry.project_id, user.id), _Accumulator())
        hours = to_decimal(entry.hours)
        acc.total_hours += hours
        if entry.is_billable:
            acc.billable_hours += hours
            acc.amount += hours * lookups.rate(user, entry.project_id, entry.date)

    for adjustment, timesheet in _adjustments_in_range(session, filters):
        user = lookups.billable_user(timesheet.user_id)
        if user is None:
            skipped += 1
            continue
        lookups.require_project(adjustment.project_id, f"Adjustment {adjustment.id}")

        acc = groups.setdefault((adjustment.project_id, user.id), _Accumulator())
        hours = to_decimal(adjustment.adjustment_hours)
        acc.billable_hours += hours
        acc.amount += hours * lookups.rate(user, adjustment.project_id, timesheet.week_start_date)

    if skipped:
        logger.info(f"Billing skipped {skipped} rows belonging to missing or deleted users")

    return [
        BillingLine(
            project_id=project_id,
            user_id=user_id,
            total_hours=float(acc.total_hours),
            billable_hours=float(acc.billable_hours),
            amount=acc.amount,
        )
        for (project_id, user_id), acc in sorted(groups.items(), key=lambda kv: (kv[0][0] or "", kv[0][1]))
    ]


def _adjustments_in_range(session: Session, filters: BillingFilter):
    stmt = (
        select(BillingAdjustment, Timesheet)
        .join(Timesheet, BillingAdjustment.timesheet_id == Timesheet.id)
        .where(
            Timesheet.status == TimesheetStatus.APPROVED,
            Timesheet.is_frozen == True,  # noqa: E712
            BillingAdjustment.deleted_at == None,  # noqa: E711
            Timesheet.week_start_date >= filters.start,
            Timesheet.week_start_date <= filters.end,
        )
        .order_by(BillingAdjustment.id)
    )
    if filters.project_id:
        stmt = stmt.where(BillingAdjustment.project_id == filters.project_id)
    if filters.user_id:
        stmt = stmt.where(Timesheet.user_id == filters.user_id)
    return session.exec(stmt).all()


def to_dataframe(lines: List[BillingLine]) -> pd.DataFrame:
    """Tabular form of the aggregation for the report/export layer."""
    rows = [line.model_dump() for line in lines]
    df = pd.DataFrame(rows, columns=REPORT_COLUMNS)
    df["amount"] = df["amount"].map(float)
    return df


# ---------------------------------------------------------------------------
# Adjustments
# ---------------------------------------------------------------------------
def _find_adjustment(session: Session, timesheet_id: str, project_id: Optional[str]) -> Optional[BillingAdjustment]:
    stmt = select(BillingAdjustment).where(
        BillingAdjustment.timesheet_id == timesheet_id,
        BillingAdjustment.deleted_at == None,  # noqa: E711
    )
    if project_id is None:
        stmt = stmt.where(BillingAdjustment.project_id == None)  # noqa: E711
    else:
        stmt = stmt.where(BillingAdjustment.project_id == project_id)
    return session.exec(stmt).first()


@transition
def adjust_billable_hours(
    session: Session,
    actor: Actor,
    timesheet_id: str,
    project_id: Optional[str],
    adjustment_hours: float,
    reason: Optional[str] = None,
) -> BillingAdjustment:
    """
    Record a signed correction to the billable hours of one project on a frozen timesheet.

    One active adjustment exists per (timesheet, project); a new call replaces
    its delta. Worked billable hours plus the delta may not go below zero.
    """
    if actor.role not in ADJUSTMENT_ROLES:
        raise PermissionDenied(f"Role {actor.role.value} cannot adjust billable hours")

    timesheet = load_timesheet(session, timesheet_id)
    if not timesheet.is_frozen:
        raise InvalidStateTransition(
            f"Billable hours can only be adjusted on frozen timesheets; timesheet {timesheet.id} is {timesheet.status.value}",
            current_status=timesheet.status.value,
        )

    entries = [e for e in get_active_entries(session, timesheet.id) if e.project_id == project_id]
    if not entries:
        raise InvalidStateTransition(
            f"Project {project_id} has no hours on timesheet {timesheet.id}",
            current_status=timesheet.status.value,
        )
    worked = sum((to_decimal(e.hours) for e in entries if e.is_billable), Decimal("0"))
    if worked + to_decimal(adjustment_hours) < 0:
        raise ValidationError(
            f"Adjustment of {adjustment_hours:g}h would make billable hours negative ({worked}h worked)"
        )

    adjustment = _find_adjustment(session, timesheet.id, project_id)
    before = None
    if adjustment is None:
        adjustment = BillingAdjustment(
            timesheet_id=timesheet.id,
            user_id=timesheet.user_id,
            project_id=project_id,
            adjustment_hours=adjustment_hours,
            reason=reason,
            adjusted_by=actor.id,
        )
    else:
        before = {"adjustment_hours": adjustment.adjustment_hours, "reason": adjustment.reason}
        adjustment.adjustment_hours = adjustment_hours
        adjustment.reason = reason
        adjustment.adjusted_by = actor.id
        adjustment.updated_at = utcnow()
    session.add(adjustment)
    session.flush()

    audit.record(
        session,
        table="billing_adjustment",
        record_id=adjustment.id,
        action="update" if before else "create",
        actor_id=actor.id,
        old_state=before,
        new_state={"adjustment_hours": adjustment.adjustment_hours, "reason": adjustment.reason},
    )
    logger.info(
        f"Billable hours for timesheet {timesheet.id} project {project_id} adjusted by {adjustment_hours:g}h"
    )
    return adjustment
