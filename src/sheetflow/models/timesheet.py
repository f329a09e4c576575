from datetime import date, datetime
from enum import Enum
from typing import Optional
from sqlmodel import Field, UniqueConstraint
from sheetflow.models.base import TimestampMixin, SoftDeleteMixin, new_id


class TimesheetStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    MANAGEMENT_PENDING = "management_pending"
    APPROVED = "approved"  # frozen
    REJECTED = "rejected"


class Timesheet(TimestampMixin, table=True):
    """A user's weekly container of time entries.

    ``status`` is written only through ``sheetflow.workflow.write_status``,
    which bumps ``version`` with a compare-and-swap update.
    """
    __table_args__ = (
        UniqueConstraint("user_id", "week_start_date", name="uq_timesheet_user_week"),
    )

    id: str = Field(default_factory=new_id, primary_key=True, max_length=32)
    user_id: str = Field(index=True)

    week_start_date: date = Field(index=True)
    week_end_date: date

    status: TimesheetStatus = Field(default=TimesheetStatus.DRAFT, index=True)
    is_frozen: bool = Field(default=False)
    frozen_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None

    total_hours: float = Field(default=0.0)
    version: int = Field(default=1, nullable=False)


class TimeEntry(TimestampMixin, SoftDeleteMixin, table=True):
    id: str = Field(default_factory=new_id, primary_key=True, max_length=32)
    timesheet_id: str = Field(foreign_key="timesheet.id", index=True)

    # None for non-project time (training, internal, leave)
    project_id: Optional[str] = Field(default=None, index=True)
    task_id: Optional[str] = Field(default=None)

    date: date
    hours: float
    is_billable: bool = Field(default=True)
    description: Optional[str] = None
