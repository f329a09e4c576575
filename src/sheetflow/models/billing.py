from datetime import date
from typing import Optional
from sqlmodel import Field, UniqueConstraint
from sheetflow.models.base import TimestampMixin, SoftDeleteMixin, new_id


class BillingRate(TimestampMixin, table=True):
    """Hourly rate for a user, optionally scoped to one project, over a date range.

    A row with ``project_id`` None applies to every project the user works on.
    """
    __table_args__ = (
        UniqueConstraint("user_id", "project_id", "effective_from", name="uq_billing_rate_period"),
    )

    id: str = Field(default_factory=new_id, primary_key=True, max_length=32)
    user_id: str = Field(index=True)
    project_id: Optional[str] = Field(default=None, index=True)

    hourly_rate: float
    effective_from: date
    effective_to: Optional[date] = Field(default=None, description="Inclusive end, open-ended when None")


class BillingAdjustment(TimestampMixin, SoftDeleteMixin, table=True):
    """Management correction to the billable hours of a frozen timesheet's project.

    billable = worked billable hours + adjustment_hours; the delta may be negative.
    """
    id: str = Field(default_factory=new_id, primary_key=True, max_length=32)
    timesheet_id: str = Field(foreign_key="timesheet.id", index=True)
    user_id: str = Field(index=True)
    project_id: Optional[str] = Field(default=None, index=True)

    adjustment_hours: float
    reason: Optional[str] = None
    adjusted_by: str
