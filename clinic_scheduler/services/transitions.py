"""Status-guarded writes shared by the lifecycle, payment and reclaimer code."""

from contextlib import contextmanager
from typing import Any, Iterable

from sqlalchemy.orm import Session

from clinic_scheduler.core.errors import InvalidStateTransitionError


def advance(
    db: Session,
    record: Any,
    sources: Iterable[str],
    target: str,
    entity: str | None = None,
    **values: Any,
) -> str:
    """Move ``record`` to ``target`` only if its stored status is still in ``sources``.

    Returns the status the record held before the write.
    """
    model = type(record)
    sources = tuple(sources)
    previous = record.status

    updated = (
        db.query(model)
        .filter(model.id == record.id, model.status.in_(sources))
        .update({'status': target, **values})
    )
    if updated == 0:
        current = db.query(model.status).filter(model.id == record.id).scalar()
        raise InvalidStateTransitionError(entity or model.__name__, current, target)

    return previous


@contextmanager
def unit_of_work(db: Session):
    """Commit on success, roll everything back on any error."""
    try:
        yield
        db.commit()
    except Exception:
        db.rollback()
        raise
