"""
Transaction helpers for timesheet transitions.

- ``transition`` runs an operation as one atomic unit: commit on success,
  rollback on any error, bounded retry when the optimistic version check is
  lost or the store reports a transient error. Validation and state errors are
  never retried.
- ``cas_update`` is the only write path for the Timesheet row: an UPDATE keyed
  by (id, version) that bumps the version or fails with ConcurrentUpdateError.
"""
import functools
from typing import Any, Dict
from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.attributes import set_committed_value
from sqlmodel import Session, select
from sheetflow.audit import dispatch, pop_pending
from sheetflow.config import settings
from sheetflow.errors import ConcurrentUpdateError, NotFoundError, SheetflowError
from sheetflow.models.base import utcnow
from sheetflow.models.timesheet import Timesheet
from sheetflow.logging import logger, request_scope


def transition(fn):
    """Wrap ``fn(session, ...)`` so it commits atomically and dispatches its audit events."""
    @functools.wraps(fn)
    def wrapper(session: Session, *args, **kwargs):
        with request_scope():
            return _run(fn, session, args, kwargs)
    return wrapper


def _run(fn, session: Session, args, kwargs):
    attempts = max(1, settings.TRANSITION_MAX_ATTEMPTS)
    for attempt in range(1, attempts + 1):
        try:
            result = fn(session, *args, **kwargs)
            session.commit()
        except (ConcurrentUpdateError, OperationalError) as e:
            session.rollback()
            pop_pending(session)
            if attempt >= attempts:
                logger.error(f"{fn.__name__} failed after {attempt} attempts: {e}")
                raise
            logger.warning(f"{fn.__name__} attempt {attempt} failed ({e.__class__.__name__}); retrying")
            continue
        except SheetflowError as e:
            session.rollback()
            pop_pending(session)
            logger.warning(f"{fn.__name__} refused: [{e.code}] {e.message}")
            raise
        except Exception:
            session.rollback()
            pop_pending(session)
            raise
        dispatch(pop_pending(session))
        return result


def load_timesheet(session: Session, timesheet_id: str, *, for_update: bool = True) -> Timesheet:
    """Load a timesheet fresh from the store, row-locked where the backend supports it."""
    stmt = select(Timesheet).where(Timesheet.id == timesheet_id).execution_options(populate_existing=True)
    if for_update:
        stmt = stmt.with_for_update()
    timesheet = session.exec(stmt).first()
    if not timesheet:
        raise NotFoundError("Timesheet", timesheet_id)
    return timesheet


def cas_update(session: Session, timesheet: Timesheet, **values: Any) -> Dict[str, Any]:
    """Write ``values`` to the timesheet row if nobody else wrote it since it was loaded."""
    expected = timesheet.version
    values = dict(values, version=expected + 1, updated_at=utcnow())
    result = session.exec(
        update(Timesheet)
        .where(Timesheet.id == timesheet.id, Timesheet.version == expected)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConcurrentUpdateError(
            f"Timesheet {timesheet.id} changed concurrently (expected version {expected})"
        )
    # Keep the loaded instance in step with the row without flagging it dirty
    for key, value in values.items():
        set_committed_value(timesheet, key, value)
    return values
