"""
Audit and notification emission.

Every transition is recorded twice:
- an AuditLog row written in the same transaction as the change (durable history)
- an AuditEvent dispatched to registered sinks once that transaction commits

Pending events ride on ``session.info`` until the transaction outcome is known;
a rollback discards them. Sinks are callables taking an AuditEvent
(notification dispatcher, message bus, external audit store). Delivery is best
effort: a failing sink is logged and the remaining sinks still run.
"""
import json
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, List, Optional
from sqlmodel import Session
from sheetflow.models.audit import AuditLog
from sheetflow.logging import logger, request_id_ctx

_PENDING_KEY = "sheetflow.pending_events"
_SINKS: Dict[str, Callable[["AuditEvent"], None]] = {}


@dataclass(frozen=True)
class AuditEvent:
    table: str
    record_id: str
    action: str
    actor_id: Optional[str]
    old_state: Optional[Dict[str, Any]]
    new_state: Optional[Dict[str, Any]]
    request_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def register_sink(name: str, sink: Callable[[AuditEvent], None]):
    """Register an event sink under a unique name (re-registering replaces it)."""
    _SINKS[name] = sink


def unregister_sink(name: str):
    _SINKS.pop(name, None)


def _dumps(state: Optional[Dict[str, Any]]) -> Optional[str]:
    if state is None:
        return None
    return json.dumps(state, default=str, sort_keys=True)


def record(
    session: Session,
    *,
    table: str,
    record_id: str,
    action: str,
    actor_id: Optional[str],
    old_state: Optional[Dict[str, Any]] = None,
    new_state: Optional[Dict[str, Any]] = None,
) -> AuditEvent:
    """Stage an AuditLog row in the caller's transaction and queue its event for dispatch."""
    request_id = request_id_ctx.get()
    session.add(AuditLog(
        table_name=table,
        record_id=record_id,
        action=action,
        actor_id=actor_id,
        old_state=_dumps(old_state),
        new_state=_dumps(new_state),
        request_id=request_id,
    ))
    event = AuditEvent(
        table=table,
        record_id=record_id,
        action=action,
        actor_id=actor_id,
        old_state=old_state,
        new_state=new_state,
        request_id=request_id,
    )
    session.info.setdefault(_PENDING_KEY, []).append(event)
    return event


def pop_pending(session: Session) -> List[AuditEvent]:
    return session.info.pop(_PENDING_KEY, [])


def dispatch(events: List[AuditEvent]) -> int:
    """Hand committed events to every sink. Returns the number of successful deliveries."""
    delivered = 0
    for event in events:
        for name, sink in list(_SINKS.items()):
            try:
                sink(event)
                delivered += 1
            except Exception:
                logger.exception(f"Audit sink '{name}' failed for {event.table}:{event.record_id} {event.action}")
    return delivered


def _log_sink(event: AuditEvent):
    logger.debug(f"audit {event.table}:{event.record_id} {event.action} by {event.actor_id}")


register_sink("log", _log_sink)

# Expose for convenience
SINK_REGISTRY = _SINKS
