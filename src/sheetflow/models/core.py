from enum import Enum
from typing import Optional
from datetime import datetime
from sqlmodel import Field, UniqueConstraint
from sheetflow.models.base import TimestampMixin, SoftDeleteMixin, new_id


class Role(str, Enum):
    EMPLOYEE = "employee"
    LEAD = "lead"
    MANAGER = "manager"
    MANAGEMENT = "management"
    SUPER_ADMIN = "super_admin"


class User(TimestampMixin, SoftDeleteMixin, table=True):
    id: str = Field(default_factory=new_id, primary_key=True, max_length=32)

    name: str
    email: Optional[str] = Field(default=None, index=True)
    role: Role = Field(default=Role.EMPLOYEE)

    is_active: bool = Field(default=True)
    is_approved: bool = Field(default=True)

    # Reporting manager, approves hours logged outside any project
    manager_id: Optional[str] = Field(default=None, index=True)

    # Fallback when no BillingRate row covers an entry
    hourly_rate: Optional[float] = Field(default=None)


class Project(TimestampMixin, SoftDeleteMixin, table=True):
    id: str = Field(default_factory=new_id, primary_key=True, max_length=32)

    name: str
    client_name: Optional[str] = None
    primary_manager_id: Optional[str] = Field(default=None, index=True)
    is_billable: bool = Field(default=True)


class ProjectRole(str, Enum):
    LEAD = "lead"
    MEMBER = "member"


class ProjectMember(TimestampMixin, table=True):
    """Assignment of a user to a project. Active leads take the lead approval tier."""
    __table_args__ = (
        UniqueConstraint("project_id", "user_id", name="uq_project_member"),
    )

    id: str = Field(default_factory=new_id, primary_key=True, max_length=32)
    project_id: str = Field(foreign_key="project.id", index=True)
    user_id: str = Field(index=True)

    project_role: ProjectRole = Field(default=ProjectRole.MEMBER)
    removed_at: Optional[datetime] = None
