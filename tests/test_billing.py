import pytest
from datetime import date, timedelta
from decimal import Decimal
from sqlmodel import select
from sheetflow.billing import adjust_billable_hours, aggregate, resolve_rate, to_dataframe
from sheetflow.entries import add_entries, get_or_create_timesheet
from sheetflow.errors import AggregationError, InvalidStateTransition, PermissionDenied, ValidationError
from sheetflow.models import BillingAdjustment, BillingRate, Role, TimeEntry
from sheetflow.models.base import utcnow
from sheetflow.schemas import BillingFilter
from sheetflow.workflow import management_approve_reject, submit_timesheet
from conftest import WEEK, week_entries

WEEK_FILTER = BillingFilter(start=WEEK, end=WEEK + timedelta(days=6))


@pytest.fixture
def org(seed):
    management = seed.user("Grace", role=Role.MANAGEMENT)
    owner = seed.user("Maya", role=Role.MANAGER, manager=management, hourly_rate=50)
    apollo = seed.project("Apollo", manager=owner)
    zeus = seed.project("Zeus", manager=owner, is_billable=False)
    return {"management": management, "owner": owner, "apollo": apollo, "zeus": zeus}


def freeze_week(session, seed, owner, management, entries, week_start=WEEK):
    """Submit a self-managed week and let management approve every project."""
    timesheet = get_or_create_timesheet(session, owner.id, week_start)
    add_entries(session, seed.actor(owner), timesheet.id, entries)
    submit_timesheet(session, seed.actor(owner), timesheet.id)
    for project_id in {e["project_id"] for e in entries}:
        management_approve_reject(session, seed.actor(management), timesheet.id, project_id, "approve")
    session.refresh(timesheet)
    assert timesheet.is_frozen
    return timesheet


def mixed_week(org):
    return week_entries({org["apollo"].id: 5.5}) + week_entries({org["zeus"].id: 2.5}, is_billable=False)


def add_rate(session, user, project, hourly_rate, effective_from, effective_to=None):
    session.add(BillingRate(
        user_id=user.id,
        project_id=project.id if project else None,
        hourly_rate=hourly_rate,
        effective_from=effective_from,
        effective_to=effective_to,
    ))
    session.commit()


def test_amount_is_sum_of_billable_hours_times_rate(session, seed, org):
    owner = org["owner"]
    add_rate(session, owner, org["apollo"], 80.25, date(2024, 1, 1))
    freeze_week(session, seed, owner, org["management"], mixed_week(org))

    lines = aggregate(session, WEEK_FILTER)
    by_project = {line.project_id: line for line in lines}

    entries = session.exec(select(TimeEntry)).all()
    expected = sum(
        (Decimal(str(e.hours)) * Decimal("80.25") for e in entries if e.is_billable and e.project_id == org["apollo"].id),
        Decimal("0"),
    )
    apollo = by_project[org["apollo"].id]
    assert apollo.total_hours == 27.5
    assert apollo.billable_hours == 27.5
    assert apollo.amount == expected == Decimal("2206.875")

    zeus = by_project[org["zeus"].id]
    assert zeus.total_hours == 12.5
    assert zeus.billable_hours == 0
    assert zeus.amount == 0


def test_soft_deleted_entries_excluded(session, seed, org):
    owner = org["owner"]
    freeze_week(session, seed, owner, org["management"], week_entries({org["apollo"].id: 8}))
    entry = session.exec(select(TimeEntry)).first()
    entry.deleted_at = utcnow()
    session.add(entry)
    session.commit()

    [line] = aggregate(session, WEEK_FILTER)
    assert line.total_hours == 32
    assert line.amount == Decimal("1600")


def test_only_frozen_timesheets_count(session, seed, org):
    employee = seed.user("Eli", manager=org["owner"], hourly_rate=40)
    seed.submitted(employee, {org["apollo"].id: 8})
    freeze_week(session, seed, org["owner"], org["management"], week_entries({org["apollo"].id: 8}))

    lines = aggregate(session, WEEK_FILTER)
    assert [line.user_id for line in lines] == [org["owner"].id]


def test_rate_effective_at_entry_date(session, seed, org):
    owner = org["owner"]
    add_rate(session, owner, org["apollo"], 80, date(2024, 1, 1), date(2024, 10, 1))
    add_rate(session, owner, org["apollo"], 100, date(2024, 10, 2))
    freeze_week(session, seed, owner, org["management"], week_entries({org["apollo"].id: 8}))

    [line] = aggregate(session, WEEK_FILTER)
    # Mon/Tue at 80, Wed-Fri at 100
    assert line.amount == Decimal(2 * 8 * 80 + 3 * 8 * 100)


def test_rate_resolution_order(session, seed, org):
    owner = org["owner"]
    day = date(2024, 10, 2)
    assert resolve_rate(session, owner, org["apollo"].id, day) == Decimal("50")

    add_rate(session, owner, None, 60, date(2024, 1, 1))
    assert resolve_rate(session, owner, org["apollo"].id, day) == Decimal("60")

    add_rate(session, owner, org["apollo"], 75, date(2024, 1, 1))
    assert resolve_rate(session, owner, org["apollo"].id, day) == Decimal("75")
    assert resolve_rate(session, owner, org["zeus"].id, day) == Decimal("60")


def test_filters(session, seed, org):
    owner = org["owner"]
    freeze_week(session, seed, owner, org["management"], mixed_week(org))

    only_apollo = aggregate(session, BillingFilter(start=WEEK, end=WEEK + timedelta(days=6), project_id=org["apollo"].id))
    assert [line.project_id for line in only_apollo] == [org["apollo"].id]

    nobody = aggregate(session, BillingFilter(start=WEEK, end=WEEK + timedelta(days=6), user_id="someone-else"))
    assert nobody == []

    tail = aggregate(session, BillingFilter(start=date(2024, 10, 2), end=date(2024, 10, 6), project_id=org["apollo"].id))
    assert tail[0].total_hours == 16.5

    with pytest.raises(ValidationError):
        aggregate(session, BillingFilter(start=date(2024, 10, 6), end=WEEK))


def test_deleted_or_missing_users_excluded(session, seed, org):
    owner = org["owner"]
    freeze_week(session, seed, owner, org["management"], week_entries({org["apollo"].id: 8}))

    owner.deleted_at = utcnow()
    session.add(owner)
    session.commit()
    assert aggregate(session, WEEK_FILTER) == []

    session.delete(owner)
    session.commit()
    assert aggregate(session, WEEK_FILTER) == []


def test_unresolvable_project_fails(session, seed, org):
    freeze_week(session, seed, org["owner"], org["management"], week_entries({org["apollo"].id: 8}))
    session.delete(org["apollo"])
    session.commit()

    with pytest.raises(AggregationError, match="cannot be resolved"):
        aggregate(session, WEEK_FILTER)


def test_missing_rate_fails(session, seed, org):
    unpriced = seed.user("Noel", role=Role.MANAGER, manager=org["management"])
    project = seed.project("Hermes", manager=unpriced)
    freeze_week(session, seed, unpriced, org["management"], week_entries({project.id: 8}))

    with pytest.raises(AggregationError, match="No billing rate"):
        aggregate(session, WEEK_FILTER)


def test_to_dataframe(session, seed, org):
    freeze_week(session, seed, org["owner"], org["management"], mixed_week(org))
    df = to_dataframe(aggregate(session, WEEK_FILTER))

    assert list(df.columns) == ["project_id", "user_id", "total_hours", "billable_hours", "amount"]
    assert len(df) == 2
    assert df["amount"].sum() == pytest.approx(27.5 * 50)


# ---------------------------------------------------------------------------
# Adjustments
# ---------------------------------------------------------------------------
def test_adjustment_included_in_aggregate(session, seed, org):
    owner = org["owner"]
    add_rate(session, owner, org["apollo"], 80.25, date(2024, 1, 1))
    timesheet = freeze_week(session, seed, owner, org["management"], mixed_week(org))
    management = seed.actor(org["management"])

    adjust_billable_hours(session, management, timesheet.id, org["apollo"].id, 2, "extra review call")
    [apollo] = [line for line in aggregate(session, WEEK_FILTER) if line.project_id == org["apollo"].id]

    assert apollo.total_hours == 27.5
    assert apollo.billable_hours == 29.5
    assert apollo.amount == Decimal("29.5") * Decimal("80.25")

    # A second adjustment replaces the first
    adjust_billable_hours(session, management, timesheet.id, org["apollo"].id, -1.5, "rounding")
    active = session.exec(select(BillingAdjustment).where(BillingAdjustment.deleted_at == None)).all()  # noqa: E711
    assert len(active) == 1
    assert active[0].adjustment_hours == -1.5


def test_adjustment_cannot_make_billable_negative(session, seed, org):
    timesheet = freeze_week(session, seed, org["owner"], org["management"], mixed_week(org))
    with pytest.raises(ValidationError, match="negative"):
        adjust_billable_hours(session, seed.actor(org["management"]), timesheet.id, org["apollo"].id, -30)


def test_adjustment_rules(session, seed, org):
    timesheet = freeze_week(session, seed, org["owner"], org["management"], mixed_week(org))
    with pytest.raises(PermissionDenied):
        adjust_billable_hours(session, seed.actor(org["owner"]), timesheet.id, org["apollo"].id, 1)

    employee = seed.user("Eli", manager=org["owner"])
    open_timesheet = seed.submitted(employee, {org["apollo"].id: 8}, week_start=WEEK - timedelta(days=7))
    with pytest.raises(InvalidStateTransition, match="frozen"):
        adjust_billable_hours(session, seed.actor(org["management"]), open_timesheet.id, org["apollo"].id, 1)
