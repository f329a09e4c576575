from sheetflow.models.core import User, Role, Project, ProjectMember, ProjectRole
from sheetflow.models.timesheet import Timesheet, TimesheetStatus, TimeEntry
from sheetflow.models.approval import TimesheetProjectApproval, ApprovalStatus, ApprovalTier
from sheetflow.models.billing import BillingRate, BillingAdjustment
from sheetflow.models.audit import AuditLog

__all__ = [
    "User", "Role", "Project", "ProjectMember", "ProjectRole",
    "Timesheet", "TimesheetStatus", "TimeEntry",
    "TimesheetProjectApproval", "ApprovalStatus", "ApprovalTier",
    "BillingRate", "BillingAdjustment",
    "AuditLog",
]
