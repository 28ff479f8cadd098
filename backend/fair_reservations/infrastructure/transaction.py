"""Serializable transaction boundary with bounded retry.

Every admission decision (capacity re-read, duplicate check, insert) runs
inside ``run_serializable``. When the database aborts the transaction because
of a serialization failure or deadlock, the whole unit of work is replayed from
its first read, so a retry never acts on stale totals.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..domain.errors import TransientStorageConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# PostgreSQL serialization_failure / deadlock_detected.
SERIALIZATION_SQLSTATES = frozenset({"40001", "40P01"})
# MySQL ER_LOCK_DEADLOCK / ER_LOCK_WAIT_TIMEOUT.
MYSQL_RETRYABLE_ERRNOS = frozenset({1213, 1205})
# Lazily created rows whose first-insert race resolves by replaying the unit.
RETRYABLE_UNIQUE_CONSTRAINTS = frozenset({"uq_institutions_code"})


def is_serialization_failure(exc: DBAPIError) -> bool:
    orig = exc.orig
    if orig is None:
        return False
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in SERIALIZATION_SQLSTATES:
        return True
    args = getattr(orig, "args", ())
    return bool(args) and args[0] in MYSQL_RETRYABLE_ERRNOS


def is_retryable_unique_violation(exc: DBAPIError) -> bool:
    """A concurrent first insert of a lazily created row.

    Under a snapshot the winner's row is invisible until the next attempt.
    """
    if not isinstance(exc, IntegrityError) or exc.orig is None:
        return False
    detail = str(exc.orig)
    return any(name in detail for name in RETRYABLE_UNIQUE_CONSTRAINTS)


async def run_serializable(
    session: AsyncSession,
    work: Callable[[], Awaitable[T]],
    *,
    attempts: int,
) -> T:
    """Run ``work`` in a SERIALIZABLE transaction, retrying on serialization failures.

    Domain errors raised by ``work`` roll the transaction back and propagate
    unchanged. Raises TransientStorageConflictError once ``attempts`` is spent.
    """
    for attempt in range(1, attempts + 1):
        try:
            async with session.begin():
                await session.connection(execution_options={"isolation_level": "SERIALIZABLE"})
                return await work()
        except DBAPIError as exc:
            if not (is_serialization_failure(exc) or is_retryable_unique_violation(exc)):
                raise
            logger.warning("transaction conflict on attempt %d/%d, retrying", attempt, attempts)
    raise TransientStorageConflictError("concurrent update, please resubmit")
