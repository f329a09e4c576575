from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field
from sheetflow.models.core import Role


class Actor(BaseModel):
    """Authenticated caller supplied by the auth layer. Only ``role`` is used for authorization."""
    id: str
    role: Role


class Decision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class EntryInput(BaseModel):
    project_id: Optional[str] = None
    task_id: Optional[str] = None
    date: date
    hours: float
    is_billable: bool = True
    description: Optional[str] = None


class BillingFilter(BaseModel):
    start: date
    end: date
    project_id: Optional[str] = None
    user_id: Optional[str] = None


class BillingLine(BaseModel):
    project_id: Optional[str]
    user_id: str
    total_hours: float = 0.0
    billable_hours: float = 0.0
    amount: Decimal = Field(default=Decimal("0"))
