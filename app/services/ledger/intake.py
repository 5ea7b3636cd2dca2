"""
Event intake.

Validates incoming purchase events, rejects duplicates and records
accepted events in the events log. Also provides the bounded intake
queue that lets producers hand events off without waiting.
"""

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from loguru import logger
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.enums import ErrorKind
from app.repositories.dead_letter_repository import LedgerDeadLetterRepository
from app.repositories.participant_repository import ParticipantRepository
from app.repositories.purchase_event_repository import PurchaseEventRepository
from app.repositories.rate_schedule_repository import RateScheduleRepository
from app.services.ledger.config import LedgerConfig
from app.services.ledger.types import IntakeDecision, SubmitResult
from app.services.referral.types import PurchaseEvent
from app.utils.datetime_utils import utc_now
from app.utils.distributed_lock import DistributedLock
from app.utils.exceptions import IntakeQueueFullError, TransientStoreError
from app.utils.retry import store_deadline


def _describe_validation_error(exc: PydanticValidationError) -> str:
    """Compact single-line reason from a pydantic error."""
    parts = []
    for error in exc.errors():
        location = ".".join(str(loc) for loc in error.get("loc", ())) or "event"
        parts.append(f"{location}: {error.get('msg')}")
    return "; ".join(parts)


class EventIntake:
    """Accepts, rejects or de-duplicates purchase events."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        config: LedgerConfig,
        lock: DistributedLock,
    ) -> None:
        """
        Initialize event intake.

        Args:
            session_maker: Session factory
            config: Ledger configuration
            lock: Shared lock (serializes accepts of the same event_id)
        """
        self.session_maker = session_maker
        self.config = config
        self.lock = lock
        self.retry_policy = config.retry_policy()

    async def accept(self, raw: PurchaseEvent | Mapping[str, Any]) -> IntakeDecision:
        """
        Accept an event into the events log.

        Args:
            raw: PurchaseEvent or a mapping with its fields

        Returns:
            IntakeDecision: accepted, rejected(reason) or duplicate
        """
        if isinstance(raw, PurchaseEvent):
            event = raw
        else:
            try:
                event = PurchaseEvent.model_validate(dict(raw))
            except PydanticValidationError as e:
                event_id = raw.get("event_id") if isinstance(raw, Mapping) else None
                return await self._reject(
                    event_id, _describe_validation_error(e), dict(raw)
                )

        decision = await self.retry_policy.run(
            "intake.accept",
            lambda: self._accept_once(event),
            {"event_id": event.event_id},
        )
        if decision.status == "rejected":
            return await self._reject(
                event.event_id, decision.reason, event.model_dump(mode="json"), event
            )
        if decision.status == "duplicate":
            logger.info("Duplicate purchase event ignored", extra={"event_id": event.event_id})
        else:
            logger.info(
                "Purchase event accepted",
                extra={
                    "event_id": event.event_id,
                    "purchaser_id": event.purchaser_id,
                    "amount": str(event.amount),
                    "currency": str(event.currency),
                },
            )
        return decision

    async def _accept_once(self, event: PurchaseEvent) -> IntakeDecision:
        ids = {"event_id": event.event_id}
        try:
            async with self.lock.lock(
                f"intake:{event.event_id}",
                timeout=self.config.lock_timeout,
                blocking=True,
                blocking_timeout=self.config.lock_blocking_timeout,
            ):
                async with store_deadline(self.config.store_call_deadline, "intake.accept", ids):
                    async with self.session_maker() as session:
                        async with session.begin():
                            return await self._check_and_insert(session, event)
        except TimeoutError as e:
            raise TransientStoreError(f"Intake lock contention: {e}", "intake.accept", ids) from e
        except IntegrityError:
            # Another process inserted the same event_id first
            return IntakeDecision("duplicate", event.event_id, event)

    async def _check_and_insert(
        self, session: AsyncSession, event: PurchaseEvent
    ) -> IntakeDecision:
        event_repo = PurchaseEventRepository(session)

        if await event_repo.get_by_id(event.event_id) is not None:
            return IntakeDecision("duplicate", event.event_id, event)

        purchaser = await ParticipantRepository(session).get_by_id(event.purchaser_id)
        if purchaser is None:
            return IntakeDecision(
                "rejected", event.event_id, event,
                reason=f"Unknown purchaser: {event.purchaser_id}",
            )

        schedule = await RateScheduleRepository(session).get_effective_at(event.occurred_at)
        if schedule is None:
            return IntakeDecision(
                "rejected", event.event_id, event,
                reason="No rate schedule effective at occurred_at",
            )

        await event_repo.create(
            event_id=event.event_id,
            purchaser_id=event.purchaser_id,
            amount=event.amount,
            currency=str(event.currency),
            product_kind=str(event.product_kind),
            occurred_at=event.occurred_at,
            source_ref=event.source_ref,
            accepted_at=utc_now(),
        )
        return IntakeDecision("accepted", event.event_id, event)

    async def _reject(
        self,
        event_id: str | None,
        reason: str,
        payload: dict[str, Any],
        event: PurchaseEvent | None = None,
    ) -> IntakeDecision:
        logger.warning(
            f"Purchase event rejected: {reason}",
            extra={"event_id": event_id},
        )
        async with self.session_maker() as session:
            async with session.begin():
                await LedgerDeadLetterRepository(session).record(
                    kind=ErrorKind.VALIDATION,
                    operation="intake.accept",
                    reason=reason,
                    event_id=str(event_id) if event_id else None,
                    payload={"event": _jsonable(payload)},
                    retry_safe=False,
                )
        return IntakeDecision("rejected", event_id, event, reason=reason)


def _jsonable(payload: dict[str, Any]) -> dict[str, Any]:
    """Stringify values JSON cannot carry (Decimal, datetime, ...)."""
    return {
        str(k): v if isinstance(v, (str, int, bool, type(None))) else str(v)
        for k, v in payload.items()
    }


SubmitHandler = Callable[[Any], Awaitable[SubmitResult]]


class IntakeQueue:
    """
    Bounded hand-off queue in front of the submit pipeline.

    ``submit_nowait`` never blocks: when the queue is full it raises
    IntakeQueueFullError so the producer can pause and retry.
    """

    def __init__(self, handler: SubmitHandler, capacity: int, workers: int) -> None:
        """
        Initialize intake queue.

        Args:
            handler: Coroutine processing one event (the submit pipeline)
            capacity: Maximum queued events
            workers: Number of worker tasks
        """
        self.handler = handler
        self.capacity = capacity
        self.workers = workers
        self._queue: asyncio.Queue[tuple[Any, asyncio.Future]] = asyncio.Queue(maxsize=capacity)
        self._tasks: list[asyncio.Task] = []

    @property
    def pending(self) -> int:
        """Events waiting for a worker."""
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        """Whether workers are running."""
        return any(not task.done() for task in self._tasks)

    def submit_nowait(self, raw: Any) -> asyncio.Future:
        """
        Enqueue an event.

        Args:
            raw: PurchaseEvent or mapping

        Returns:
            Future resolving to the SubmitResult

        Raises:
            IntakeQueueFullError: Queue at capacity (retry later)
        """
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        try:
            self._queue.put_nowait((raw, future))
        except asyncio.QueueFull:
            event_id = getattr(raw, "event_id", None)
            if event_id is None and isinstance(raw, Mapping):
                event_id = raw.get("event_id")
            logger.warning(
                "Intake queue full, event refused",
                extra={"event_id": event_id, "capacity": self.capacity},
            )
            raise IntakeQueueFullError(
                f"Intake queue is full ({self.capacity} events)",
                "intake.submit",
                {"event_id": event_id},
            ) from None
        return future

    async def submit(self, raw: Any) -> SubmitResult:
        """Enqueue an event and wait for its result."""
        return await self.submit_nowait(raw)

    def start(self) -> None:
        """Start worker tasks."""
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(self._worker(index), name=f"intake-worker-{index}")
            for index in range(self.workers)
        ]
        logger.info(f"Intake queue started with {self.workers} workers")

    async def stop(self, drain: bool = True) -> None:
        """
        Stop workers.

        Args:
            drain: Process queued events before stopping (only while workers run)
        """
        if drain and self.running:
            await self._queue.join()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        # Fail anything left so producers are not stuck waiting
        while not self._queue.empty():
            _, future = self._queue.get_nowait()
            if not future.done():
                future.set_exception(
                    IntakeQueueFullError("Intake queue stopped", "intake.submit", retry_safe=True)
                )
            self._queue.task_done()
        logger.info("Intake queue stopped")

    async def _worker(self, index: int) -> None:
        while True:
            raw, future = await self._queue.get()
            try:
                result = await self.handler(raw)
                if not future.done():
                    future.set_result(result)
            except asyncio.CancelledError:
                if not future.done():
                    future.cancel()
                raise
            except Exception as e:
                logger.error(
                    f"Intake worker {index} failed to process event: {e}",
                    extra={"worker": index},
                )
                if not future.done():
                    future.set_exception(e)
            finally:
                self._queue.task_done()
