from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketplace.errors import InvalidState


@contextmanager
def smart_transaction(session: Session, conflict_message: str = "Conflicting update") -> Iterator:
    """
    Context manager that begins a transaction on the given Session.
    If a transaction is already active, start a nested SAVEPOINT (begin_nested).
    Otherwise start a normal transaction (begin).

    Any exception rolls the whole block back. Unique/partial-index violations
    (one active match per package, one payment per match) are re-raised as
    InvalidState with `conflict_message`.

    Usage:
        with smart_transaction(db):
            ... DB work ...
    """
    if session.in_transaction():
        cm = session.begin_nested()
    else:
        cm = session.begin()
    try:
        with cm:
            yield
    except IntegrityError as exc:
        raise InvalidState(conflict_message) from exc
