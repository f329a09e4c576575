"""
Time entry store: weekly timesheets and their validated daily entries.
"""
from collections import defaultdict
from datetime import date, timedelta
from typing import Dict, Iterable, List, Optional, Tuple, Union
import pydantic
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select
from sheetflow import audit
from sheetflow.config import settings
from sheetflow.errors import InvalidStateTransition, NotFoundError, PermissionDenied, ValidationError
from sheetflow.gates import EDITABLE_STATUSES, get_active_entries
from sheetflow.models.base import utcnow
from sheetflow.models.core import Project, Role, User
from sheetflow.models.timesheet import Timesheet, TimeEntry
from sheetflow.schemas import Actor, EntryInput
from sheetflow.txn import cas_update, load_timesheet, transition
from sheetflow.logging import logger


def week_bounds(week_start: date) -> Tuple[date, date]:
    """Return (monday, sunday) for a week starting on ``week_start``."""
    if week_start.weekday() != 0:
        raise ValidationError(f"Week must start on a Monday; {week_start.isoformat()} is a {week_start.strftime('%A')}")
    return week_start, week_start + timedelta(days=6)


def entry_snapshot(entry: TimeEntry) -> dict:
    return {
        "timesheet_id": entry.timesheet_id,
        "project_id": entry.project_id,
        "task_id": entry.task_id,
        "date": entry.date.isoformat(),
        "hours": entry.hours,
        "is_billable": entry.is_billable,
        "deleted_at": entry.deleted_at,
    }


def ensure_can_edit(actor: Actor, timesheet: Timesheet):
    if actor.role != Role.SUPER_ADMIN and actor.id != timesheet.user_id:
        raise PermissionDenied(f"User {actor.id} cannot edit timesheet {timesheet.id} owned by {timesheet.user_id}")
    if timesheet.status not in EDITABLE_STATUSES:
        raise InvalidStateTransition(
            f"Cannot change entries of a {timesheet.status.value} timesheet; only draft or rejected timesheets are editable",
            current_status=timesheet.status.value,
        )


# ---------------------------------------------------------------------------
# Timesheets
# ---------------------------------------------------------------------------
@transition
def _create_timesheet(session: Session, user_id: str, week_start: date) -> Timesheet:
    start, end = week_bounds(week_start)
    timesheet = Timesheet(user_id=user_id, week_start_date=start, week_end_date=end)
    session.add(timesheet)
    session.flush()
    audit.record(
        session,
        table="timesheet",
        record_id=timesheet.id,
        action="create",
        actor_id=user_id,
        new_state={"status": timesheet.status.value, "week_start_date": start.isoformat()},
    )
    logger.info(f"Created timesheet {timesheet.id} for user {user_id}, week of {start}")
    return timesheet


def find_timesheet(session: Session, user_id: str, week_start: date) -> Optional[Timesheet]:
    return session.exec(
        select(Timesheet).where(Timesheet.user_id == user_id, Timesheet.week_start_date == week_start)
    ).first()


def get_or_create_timesheet(session: Session, user_id: str, week_start: date) -> Timesheet:
    """Return the user's timesheet for the week, creating a draft one on first use."""
    week_bounds(week_start)
    user = session.get(User, user_id)
    if not user or user.is_deleted:
        raise NotFoundError("User", user_id)

    existing = find_timesheet(session, user_id, week_start)
    if existing:
        return existing
    try:
        return _create_timesheet(session, user_id, week_start)
    except IntegrityError:
        # Lost the (user, week) uniqueness race, the other writer's row wins
        existing = find_timesheet(session, user_id, week_start)
        if existing is None:
            raise
        return existing


# ---------------------------------------------------------------------------
# Entries
# ---------------------------------------------------------------------------
def _coerce(entry: Union[EntryInput, dict], index: int) -> EntryInput:
    if isinstance(entry, EntryInput):
        return entry
    try:
        return EntryInput.model_validate(entry)
    except pydantic.ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise ValidationError(f"Entry {index}: invalid or missing fields ({fields})") from e


def _entry_key(project_id: Optional[str], task_id: Optional[str], day: date) -> Tuple[Optional[str], Optional[str], date]:
    return project_id, task_id, day


def validate_entries(
    session: Session,
    timesheet: Timesheet,
    entries: List[EntryInput],
    existing: Iterable[TimeEntry],
    today: Optional[date] = None,
):
    """Raise ValidationError naming the first entry that breaks a rule; nothing is written."""
    today = today or date.today()
    seen = {_entry_key(e.project_id, e.task_id, e.date) for e in existing}
    day_totals: Dict[date, float] = defaultdict(float)
    for e in existing:
        day_totals[e.date] += e.hours
    known_projects: Dict[str, bool] = {}

    for i, entry in enumerate(entries):
        label = f"Entry {i} ({entry.date.isoformat()})"
        if not (timesheet.week_start_date <= entry.date <= timesheet.week_end_date):
            raise ValidationError(
                f"{label}: date is outside the timesheet week "
                f"{timesheet.week_start_date.isoformat()} to {timesheet.week_end_date.isoformat()}"
            )
        if entry.date > today:
            raise ValidationError(f"{label}: time cannot be logged for a future date")
        if entry.hours <= 0:
            raise ValidationError(f"{label}: hours must be greater than zero")
        if entry.hours > settings.ENTRY_MAX_HOURS:
            raise ValidationError(f"{label}: hours cannot exceed {settings.ENTRY_MAX_HOURS:g} per entry")

        if entry.project_id is not None:
            if entry.project_id not in known_projects:
                project = session.get(Project, entry.project_id)
                known_projects[entry.project_id] = project is not None and not project.is_deleted
            if not known_projects[entry.project_id]:
                raise ValidationError(f"{label}: project {entry.project_id} does not exist")

        key = _entry_key(entry.project_id, entry.task_id, entry.date)
        if key in seen:
            raise ValidationError(
                f"{label}: an entry for project {entry.project_id} task {entry.task_id} already exists "
                f"on this date; update the existing entry instead"
            )
        seen.add(key)

        day_totals[entry.date] += entry.hours
        if day_totals[entry.date] > settings.DAILY_MAX_HOURS:
            raise ValidationError(
                f"{label}: total hours for the day would be {day_totals[entry.date]:g}, "
                f"above the maximum of {settings.DAILY_MAX_HOURS:g}"
            )


def recompute_total_hours(session: Session, timesheet: Timesheet) -> float:
    """Re-sum the timesheet's active entries and store the total when it changed."""
    session.flush()
    total = round(sum(e.hours for e in get_active_entries(session, timesheet.id)), 2)
    if total != timesheet.total_hours:
        cas_update(session, timesheet, total_hours=total)
    return total


@transition
def add_entries(
    session: Session,
    actor: Actor,
    timesheet_id: str,
    entries: List[Union[EntryInput, dict]],
) -> List[TimeEntry]:
    """Validate and insert a batch of entries; either all are stored or none."""
    timesheet = load_timesheet(session, timesheet_id)
    ensure_can_edit(actor, timesheet)
    if not entries:
        raise ValidationError("At least one entry is required")

    parsed = [_coerce(e, i) for i, e in enumerate(entries)]
    validate_entries(session, timesheet, parsed, get_active_entries(session, timesheet.id))

    created: List[TimeEntry] = []
    for entry in parsed:
        row = TimeEntry(
            timesheet_id=timesheet.id,
            project_id=entry.project_id,
            task_id=entry.task_id,
            date=entry.date,
            hours=entry.hours,
            is_billable=entry.is_billable,
            description=entry.description,
        )
        session.add(row)
        created.append(row)
    session.flush()

    for row in created:
        audit.record(
            session, table="time_entry", record_id=row.id, action="create",
            actor_id=actor.id, new_state=entry_snapshot(row),
        )
    total = recompute_total_hours(session, timesheet)
    logger.info(f"Added {len(created)} entries to timesheet {timesheet.id} (total {total:g}h)")
    return created


@transition
def remove_entry(session: Session, actor: Actor, entry_id: str) -> TimeEntry:
    """Soft-delete an entry; the row stays for audit history."""
    entry = session.get(TimeEntry, entry_id)
    if not entry or entry.is_deleted:
        raise NotFoundError("TimeEntry", entry_id)
    timesheet = load_timesheet(session, entry.timesheet_id)
    ensure_can_edit(actor, timesheet)

    before = entry_snapshot(entry)
    entry.deleted_at = utcnow()
    session.add(entry)
    audit.record(
        session, table="time_entry", record_id=entry.id, action="soft_delete",
        actor_id=actor.id, old_state=before, new_state=entry_snapshot(entry),
    )
    recompute_total_hours(session, timesheet)
    logger.info(f"Removed entry {entry.id} from timesheet {timesheet.id}")
    return entry
