from typing import Optional
from sqlmodel import Field
from sheetflow.models.base import TimestampMixin, new_id


class AuditLog(TimestampMixin, table=True):
    id: str = Field(default_factory=new_id, primary_key=True, max_length=32)

    table_name: str = Field(index=True)
    record_id: str = Field(index=True)
    action: str
    actor_id: Optional[str] = Field(default=None, description="None for maintenance procedures")

    old_state: Optional[str] = None  # JSON snapshot
    new_state: Optional[str] = None  # JSON snapshot

    request_id: Optional[str] = Field(default=None, index=True, description="Correlation id of the transition that wrote the row")
