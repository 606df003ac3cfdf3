# Overview: Service-layer operations for named counters; encapsulates business logic and database work.

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import ConcurrencyConflictError, ValidationError
from ..models import Counter


SALE_OT_COUNTER = "ventaOt"
PICKUP_COUNTER = "recojoOptica"
MOVEMENT_COUNTER = "movimiento"

OT_PAD = 6


def next_value(counter_name: str) -> int:
    """
    Atomically advance a named counter and return its new value.

    The increment is a single UPDATE evaluated by the database, so two
    writers can never read the same value. Runs inside the caller's
    transaction: if the caller rolls back, the increment rolls back with it.
    The first call for an unseen name creates the row and returns 1.
    """
    if not counter_name:
        raise ValidationError("counter_name is required")

    stmt = (
        update(Counter)
        .where(Counter.name == counter_name)
        .values(value=Counter.value + 1)
        .execution_options(synchronize_session=False)
    )

    result = db.session.execute(stmt)
    if result.rowcount:
        return (
            db.session.query(Counter.value)
            .filter_by(name=counter_name)
            .scalar()
        )

    counter = Counter(name=counter_name, value=1)
    db.session.add(counter)
    try:
        db.session.flush()
    except IntegrityError as exc:
        # Another writer created the row first; the retry wrapper reruns the unit.
        raise ConcurrencyConflictError(
            f"Counter {counter_name!r} was created concurrently",
            details={"counter": counter_name},
        ) from exc
    return 1


def current_value(counter_name: str) -> int:
    """Last value handed out for counter_name (0 when never used)."""
    value = db.session.query(Counter.value).filter_by(name=counter_name).scalar()
    return int(value or 0)


def format_ot(value: int) -> str:
    """Zero-padded OT number, e.g. 42 -> "000042"."""
    return str(value).zfill(OT_PAD)


def next_ot_number() -> str:
    return format_ot(next_value(SALE_OT_COUNTER))
