import sys
from datetime import datetime
from typing import Optional
import typer
from pathlib import Path
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session
from sheetflow.config import settings
from sheetflow.errors import SheetflowError
from sheetflow.logging import logger, get_request_id

app = typer.Typer(no_args_is_help=True)

@app.callback()
def main():
    """
    Sheetflow timesheet administration CLI.
    """
    pass

@app.command(name="doctor")
def doctor():
    """
    Check configuration, database reachability and stored invariants.
    """
    logger.info("Running doctor check...")

    print("\n🩺 Sheetflow Doctor\n")

    # Check 1: Environment / Interpreter
    print(f"Python: {sys.version.split()[0]}")
    print(f"Prefix: {sys.prefix}")
    print(f"Request ID: {get_request_id()}")

    # Check 2: Configuration
    print("\n[Configuration]")
    print(f"DATABASE_URL:             {settings.DATABASE_URL}")
    print(f"DAILY_MIN_HOURS:          {settings.DAILY_MIN_HOURS}")
    print(f"DAILY_MAX_HOURS:          {settings.DAILY_MAX_HOURS}")
    print(f"ENTRY_MAX_HOURS:          {settings.ENTRY_MAX_HOURS}")
    print(f"REQUIRE_FULL_WEEKDAYS:    {settings.REQUIRE_FULL_WEEKDAYS}")
    print(f"TRANSITION_MAX_ATTEMPTS:  {settings.TRANSITION_MAX_ATTEMPTS}")

    # Check 3: Data Directory
    data_dir = Path("data")
    if data_dir.exists() and data_dir.is_dir():
        print(f"\n[Data Directory]          ✅ Found: {data_dir.absolute()}")
    else:
        print(f"\n[Data Directory]          ❌ Missing: {data_dir.absolute()} (run `sheetflow db init`)")

    # Check 4: Database and invariants
    from sheetflow.db import engine
    from sheetflow.repair import check_consistency
    try:
        with Session(engine) as session:
            violations = check_consistency(session)
    except SQLAlchemyError as e:
        logger.error(f"Database check failed: {e}")
        print(f"[Database]                ❌ Unreachable or not initialized: {e.__class__.__name__}")
    else:
        print("[Database]                ✅ Reachable")
        if violations:
            print(f"[Invariants]              ❌ {len(violations)} violation(s), run `sheetflow repair check`")
        else:
            print("[Invariants]              ✅ Consistent")

    print("\nDoctor check complete.")


db_app = typer.Typer(help="Database management commands.")
app.add_typer(db_app, name="db")

@db_app.command("init")
def init():
    """Initialize the database tables."""
    from sheetflow.db import init_db
    try:
        init_db()
        logger.info("Database initialized successfully.")
        print("✅ Database initialized.")
    except SQLAlchemyError as e:
        logger.error(f"Failed to initialize database: {e}")
        print(f"❌ Failed: {e}")
        raise typer.Exit(code=1)


repair_app = typer.Typer(help="Maintenance procedures that restore timesheet invariants.")
app.add_typer(repair_app, name="repair")

@repair_app.command("list")
def repair_list():
    """List the available maintenance procedures."""
    from sheetflow.repair import REPAIRS
    for name, entry in REPAIRS.items():
        print(f"{name:<30} {entry['description']}")

@repair_app.command("run")
def repair_run(name: Optional[str] = typer.Argument(None, help="Procedure to run; all when omitted")):
    """Run one maintenance procedure, or all of them in order."""
    from sheetflow.db import engine
    from sheetflow.repair import run_all, run_repair
    try:
        with Session(engine) as session:
            reports = [run_repair(session, name)] if name else run_all(session)
    except SheetflowError as e:
        logger.error(f"Repair failed: {e.message}")
        print(f"❌ {e.message}")
        raise typer.Exit(code=1)

    for report in reports:
        print(f"{report.name}: inspected {report.inspected}, fixed {report.fixed}")
        for detail in report.details:
            print(f"  - {detail}")

@repair_app.command("check")
def repair_check():
    """List invariant violations without changing anything."""
    from sheetflow.db import engine
    from sheetflow.repair import check_consistency
    with Session(engine) as session:
        violations = check_consistency(session)
    if not violations:
        print("✅ No invariant violations found.")
        return
    print(f"Found {len(violations)} violation(s):")
    for i, (timesheet_id, problem) in enumerate(violations, 1):
        print(f"{i}. [Timesheet {timesheet_id}] {problem}")
    raise typer.Exit(code=1)


billing_app = typer.Typer(help="Billing aggregation over frozen timesheets.")
app.add_typer(billing_app, name="billing")

@billing_app.command("report")
def billing_report(
    start: datetime = typer.Option(..., formats=["%Y-%m-%d"], help="First day of the range"),
    end: datetime = typer.Option(..., formats=["%Y-%m-%d"], help="Last day of the range"),
    project: Optional[str] = typer.Option(None, help="Only this project id"),
    user: Optional[str] = typer.Option(None, help="Only this user id"),
):
    """Print per project and user hours and amounts."""
    from sheetflow.db import engine
    from sheetflow.billing import aggregate, to_dataframe
    from sheetflow.schemas import BillingFilter
    filters = BillingFilter(start=start.date(), end=end.date(), project_id=project, user_id=user)
    try:
        with Session(engine) as session:
            lines = aggregate(session, filters)
    except SheetflowError as e:
        logger.error(f"Billing report failed: {e.message}")
        print(f"❌ {e.message}")
        raise typer.Exit(code=1)

    if not lines:
        print("No billable hours found.")
        return
    df = to_dataframe(lines)
    print(df.to_string(index=False))
    print(f"\nTotal amount: {sum(line.amount for line in lines)}")

if __name__ == "__main__":
    app()
