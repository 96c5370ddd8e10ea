"""
Staged writer for point updates on a flaky write path.

Some updates (an order item's status being the known case) have failed
intermittently on the primary path. FallbackWriter tries, in order:

1. a targeted update of just the changed columns by id;
2. a named store procedure with the same effect;
3. reading the whole row, merging the new values and writing every column.

Each stage runs inside a savepoint so a failed stage never poisons the
caller's transaction. Transient errors (dropped connections, timeouts) are
retried within a stage with exponential backoff. A targeted update that
matches no row means the record does not exist; that is reported at once
instead of falling through. When every stage fails, the raised error keeps
all attempts and surfaces the most diagnostic one.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Type

from sqlalchemy import select, update
from sqlalchemy.exc import (
    DisconnectionError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession

from delivery_service.core.config import Settings, get_settings
from delivery_service.core.logging import get_logger
from delivery_service.core.result import ErrorKind, ReconcilerError
from delivery_service.database.base import Base
from delivery_service.services.delivery.procedures import (
    ProcedureNotFoundError,
    call_procedure,
)

logger = get_logger(__name__)

STAGE_TARGETED = "targeted_update"
STAGE_PROCEDURE = "procedure"
STAGE_FULL_RECORD = "full_record"

_TRANSIENT_ERRORS = (OperationalError, InterfaceError, DisconnectionError, PoolTimeoutError)


def is_transient_error(error: BaseException) -> bool:
    """Whether retrying the same statement later could succeed."""
    if getattr(error, "connection_invalidated", False):
        return True
    return isinstance(error, _TRANSIENT_ERRORS)


@dataclass(frozen=True)
class ProcedureCall:
    """Named procedure and arguments equivalent to a targeted update."""

    name: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class WriteAttempt:
    """One failed try of one stage."""

    stage: str
    attempt: int
    error: BaseException

    @property
    def transient(self) -> bool:
        return is_transient_error(self.error)

    def describe(self) -> str:
        return f"{self.stage}#{self.attempt}: {type(self.error).__name__}: {self.error}"


@dataclass(frozen=True)
class WriteOutcome:
    """Successful write: the stage that landed it and the failures before it."""

    stage: str
    attempts: tuple[WriteAttempt, ...] = ()

    @property
    def used_fallback(self) -> bool:
        return self.stage != STAGE_TARGETED


class FallbackWriteError(ReconcilerError):
    """
    Raised when every write stage failed.

    Attributes:
        attempts: Every failed attempt, in order
        primary: Error of the first attempt
        richest: First non-transient error if any, else the primary one
    """

    def __init__(self, table: str, record_id: uuid.UUID, attempts: list[WriteAttempt]):
        self.attempts = tuple(attempts)
        self.primary = attempts[0].error
        self.richest = next(
            (a.error for a in attempts if not a.transient), self.primary
        )
        kind = ErrorKind.TRANSIENT if is_transient_error(self.richest) else ErrorKind.VALIDATION
        summary = "; ".join(a.describe() for a in attempts)
        super().__init__(
            kind,
            f"Failed to update {table} {record_id}: {self.richest}",
            table=table,
            record_id=str(record_id),
            attempts=summary,
        )


class _RecordMissing(Exception):
    pass


class FallbackWriter:
    """
    Applies a point update through progressively cruder write paths.

    Example:
        writer = FallbackWriter(session)
        outcome = await writer.write(
            OrderItem,
            item_id,
            {"item_status": "ready_for_pickup"},
            procedure=ProcedureCall(
                "update_order_item_status",
                {"order_item_id": item_id, "status": "ready_for_pickup"},
            ),
        )
    """

    def __init__(self, session: AsyncSession, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.session = session
        self.max_retries = settings.fallback_max_retries
        self.retry_delay = settings.fallback_retry_delay

    async def write(
        self,
        model: Type[Base],
        record_id: uuid.UUID,
        values: dict[str, Any],
        procedure: Optional[ProcedureCall] = None,
    ) -> WriteOutcome:
        """
        Update one row by id.

        Args:
            model: Mapped class owning the row
            record_id: Primary key of the row
            values: Columns to set
            procedure: Equivalent store procedure for the second stage

        Returns:
            WriteOutcome naming the stage that succeeded

        Raises:
            ReconcilerError: NOT_FOUND if the row does not exist
            FallbackWriteError: If every stage failed
        """
        table = model.__tablename__
        failures: list[WriteAttempt] = []

        stages: list[tuple[str, Callable[[], Awaitable[None]]]] = [
            (STAGE_TARGETED, lambda: self._targeted_update(model, record_id, values)),
        ]
        if procedure is not None:
            stages.append((STAGE_PROCEDURE, lambda: self._procedure_write(procedure)))
        stages.append(
            (STAGE_FULL_RECORD, lambda: self._full_record_write(model, record_id, values))
        )

        for stage, operation in stages:
            try:
                if await self._run_stage(stage, operation, failures):
                    if failures:
                        logger.warning(
                            "Write landed on fallback path",
                            table=table,
                            record_id=str(record_id),
                            stage=stage,
                            failed_attempts=len(failures),
                        )
                    return WriteOutcome(stage=stage, attempts=tuple(failures))
            except _RecordMissing:
                logger.warning(
                    "Write target does not exist",
                    table=table,
                    record_id=str(record_id),
                    stage=stage,
                )
                raise ReconcilerError(
                    ErrorKind.NOT_FOUND,
                    f"{table} record not found",
                    table=table,
                    record_id=str(record_id),
                )

        error = FallbackWriteError(table, record_id, failures)
        logger.error(
            "All write paths failed",
            table=table,
            record_id=str(record_id),
            attempts=error.context["attempts"],
            richest_error_type=type(error.richest).__name__,
        )
        raise error

    async def _run_stage(
        self,
        stage: str,
        operation: Callable[[], Awaitable[None]],
        failures: list[WriteAttempt],
    ) -> bool:
        for attempt in range(1, self.max_retries + 2):
            try:
                async with self.session.begin_nested():
                    await operation()
                return True
            except (SQLAlchemyError, ProcedureNotFoundError) as e:
                failure = WriteAttempt(stage=stage, attempt=attempt, error=e)
                failures.append(failure)
                logger.warning(
                    "Write stage attempt failed",
                    stage=stage,
                    attempt=attempt,
                    transient=failure.transient,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                if not failure.transient or attempt > self.max_retries:
                    return False
                await asyncio.sleep(self.retry_delay * (2 ** (attempt - 1)))
        return False

    async def _targeted_update(
        self, model: Type[Base], record_id: uuid.UUID, values: dict[str, Any]
    ) -> None:
        result = await self.session.execute(
            update(model)
            .where(model.id == record_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise _RecordMissing()

    async def _procedure_write(self, procedure: ProcedureCall) -> None:
        matched = await call_procedure(self.session, procedure.name, **procedure.params)
        if not matched:
            raise _RecordMissing()

    async def _full_record_write(
        self, model: Type[Base], record_id: uuid.UUID, values: dict[str, Any]
    ) -> None:
        table = model.__table__
        result = await self.session.execute(
            select(table).where(table.c.id == record_id)
        )
        row = result.mappings().first()
        if row is None:
            raise _RecordMissing()

        merged = {key: value for key, value in row.items() if key != "id"}
        merged.update(values)
        await self.session.execute(
            update(table).where(table.c.id == record_id).values(**merged)
        )
