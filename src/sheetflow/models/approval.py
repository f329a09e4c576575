from datetime import datetime
from enum import Enum
from typing import Optional
from sqlmodel import Field, UniqueConstraint
from sheetflow.models.base import TimestampMixin, new_id


class ApprovalStatus(str, Enum):
    NOT_REQUIRED = "not_required"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ApprovalTier(str, Enum):
    LEAD = "lead"
    MANAGER = "manager"
    MANAGEMENT = "management"


class TimesheetProjectApproval(TimestampMixin, table=True):
    """Lead/manager/management sign-off for the hours one timesheet logs on one project.

    ``project_id`` is None for the bucket holding non-project entries.
    Unique constraint on (timesheet_id, project_id) keeps one record per pair.
    """
    __table_args__ = (
        UniqueConstraint("timesheet_id", "project_id", name="uq_approval_timesheet_project"),
    )

    id: str = Field(default_factory=new_id, primary_key=True, max_length=32)
    timesheet_id: str = Field(foreign_key="timesheet.id", index=True)
    project_id: Optional[str] = Field(default=None, index=True)

    lead_id: Optional[str] = None
    lead_status: ApprovalStatus = Field(default=ApprovalStatus.NOT_REQUIRED)
    lead_decided_at: Optional[datetime] = None
    lead_reason: Optional[str] = None

    manager_id: Optional[str] = None
    manager_status: ApprovalStatus = Field(default=ApprovalStatus.PENDING)
    manager_decided_at: Optional[datetime] = None
    manager_reason: Optional[str] = None

    management_status: ApprovalStatus = Field(default=ApprovalStatus.PENDING)
    management_decided_at: Optional[datetime] = None
    management_reason: Optional[str] = None

    entries_count: int = Field(default=0)
    total_hours: float = Field(default=0.0)

    def tier_status(self, tier: ApprovalTier) -> ApprovalStatus:
        return getattr(self, f"{tier.value}_status")
