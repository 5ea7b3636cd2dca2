"""
Reconciler.

The single sanctioned repair path for the ledger. One run:

1. quarantines duplicate active entries (earliest created wins),
2. inserts entries missing for events in the events log, re-derived from
   the stored chain snapshot and the rates in force at the event time,
3. rebuilds drifted aggregates from active entries,
4. flags participants whose referrer handle no longer resolves.

Everything found and done is journaled as a ReconcilerRun. Existing
active entries are never deleted or rewritten.
"""

import asyncio
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Literal

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.enums import EntryStatus, ErrorKind, ReconcilerRunStatus
from app.models.reconciler_run import ReconcilerRun
from app.repositories.aggregate_repository import BeneficiaryAggregateRepository
from app.repositories.chain_snapshot_repository import ChainSnapshotRepository
from app.repositories.commission_entry_repository import CommissionEntryRepository
from app.repositories.dead_letter_repository import LedgerDeadLetterRepository
from app.repositories.participant_repository import ParticipantRepository
from app.repositories.purchase_event_repository import PurchaseEventRepository
from app.repositories.reconciler_run_repository import ReconcilerRunRepository
from app.services.ledger.aggregates import AggregateMutator, aggregate_lock_key
from app.services.ledger.config import LedgerConfig
from app.services.ledger.notifications import LedgerNotifier
from app.services.ledger.pipeline import resolve_and_derive
from app.services.ledger.writer import LedgerWriter
from app.services.referral.commission_deriver import CommissionDeriver
from app.services.referral.config import STOP_INVALID_HANDLE, STOP_UNRESOLVABLE
from app.services.referral.types import PurchaseEvent, ResolvedChain
from app.utils.datetime_utils import utc_now
from app.utils.distributed_lock import DistributedLock
from app.utils.exceptions import ConflictError, LedgerError, TransientStoreError
from app.utils.money import amounts_agree
from app.utils.retry import store_deadline
from app.validators.referral_handle import validate_referrer_handle


ScopeKind = Literal["all", "beneficiary", "event"]


@dataclass(frozen=True)
class ReconcileScope:
    """What a reconciler run covers."""

    kind: ScopeKind = "all"
    target_id: str | None = None

    @classmethod
    def all(cls) -> "ReconcileScope":
        """Whole ledger."""
        return cls("all")

    @classmethod
    def beneficiary(cls, beneficiary_id: str) -> "ReconcileScope":
        """One beneficiary's entries and aggregates."""
        return cls("beneficiary", beneficiary_id)

    @classmethod
    def event(cls, event_id: str) -> "ReconcileScope":
        """One event's entries and the aggregates it touches."""
        return cls("event", event_id)

    @classmethod
    def parse(cls, value: "str | ReconcileScope") -> "ReconcileScope":
        """
        Parse ``all``, ``beneficiary:<id>`` or ``event:<id>``.

        Raises:
            ValueError: Unknown scope format
        """
        if isinstance(value, ReconcileScope):
            return value
        if value == "all":
            return cls.all()
        kind, sep, target = value.partition(":")
        if sep and target and kind in ("beneficiary", "event"):
            return cls(kind, target)  # type: ignore[arg-type]
        raise ValueError(f"Invalid reconciliation scope: {value!r}")

    def __str__(self) -> str:
        return self.kind if self.kind == "all" else f"{self.kind}:{self.target_id}"


@dataclass
class _RunState:
    run_id: str
    scope: ReconcileScope
    findings: list[dict[str, Any]] = field(default_factory=list)
    actions: list[dict[str, Any]] = field(default_factory=list)


class _Cancelled(Exception):
    """Cooperative cancellation between units of work."""


class Reconciler:
    """Restores ledger invariants and journals what it did."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        config: LedgerConfig,
        lock: DistributedLock,
        deriver: CommissionDeriver,
        writer: LedgerWriter,
        notifier: LedgerNotifier | None = None,
    ) -> None:
        """
        Initialize reconciler.

        Args:
            session_maker: Session factory
            config: Ledger configuration
            lock: Shared aggregate lock (same instance as the writer's)
            deriver: Commission deriver for re-derivation
            writer: Ledger writer used to insert missing entries
            notifier: Post-commit notification fan-out
        """
        self.session_maker = session_maker
        self.config = config
        self.lock = lock
        self.deriver = deriver
        self.writer = writer
        self.notifier = notifier or LedgerNotifier()
        self.retry_policy = config.retry_policy()

    async def run(
        self,
        scope: "str | ReconcileScope" = "all",
        cancel_event: asyncio.Event | None = None,
    ) -> ReconcilerRun:
        """
        Run one reconciliation pass.

        Args:
            scope: all, beneficiary:<id> or event:<id>
            cancel_event: Checked between beneficiaries and events; when
                set the run stops cleanly and is journaled as cancelled

        Returns:
            Persisted ReconcilerRun
        """
        state = _RunState(str(uuid.uuid4()), ReconcileScope.parse(scope))
        await self._start_run(state)
        logger.info(
            f"Reconciliation started: {state.scope}",
            extra={"run_id": state.run_id, "scope": str(state.scope)},
        )

        status = ReconcilerRunStatus.COMPLETED
        try:
            await self._duplicate_sweep(state, cancel_event)
            await self._missing_sweep(state, cancel_event)
            await self._aggregate_rebuild(state, cancel_event)
            await self._chain_repair(state, cancel_event)
        except _Cancelled:
            status = ReconcilerRunStatus.CANCELLED
            logger.warning(
                "Reconciliation cancelled",
                extra={"run_id": state.run_id, "scope": str(state.scope)},
            )
        except Exception as e:
            state.findings.append({"type": "run_error", "error": f"{type(e).__name__}: {e}"})
            await self._finish_run(state, ReconcilerRunStatus.FAILED)
            logger.exception(
                f"Reconciliation failed: {e}",
                extra={"run_id": state.run_id, "scope": str(state.scope)},
            )
            raise

        run = await self._finish_run(state, status)
        logger.info(
            f"Reconciliation {status}: {len(state.findings)} findings, "
            f"{len(state.actions)} actions",
            extra={"run_id": state.run_id, "scope": str(state.scope)},
        )
        await self.notifier.reconciliation_completed(run)
        return run

    @staticmethod
    def _check_cancel(cancel_event: asyncio.Event | None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise _Cancelled()

    # Journal

    async def _start_run(self, state: _RunState) -> None:
        async with self.session_maker() as session:
            async with session.begin():
                await ReconcilerRunRepository(session).create(
                    run_id=state.run_id,
                    scope=str(state.scope),
                    status=ReconcilerRunStatus.RUNNING,
                    started_at=utc_now(),
                    findings=[],
                    actions=[],
                )

    async def _finish_run(self, state: _RunState, status: str) -> ReconcilerRun:
        async with self.session_maker() as session:
            async with session.begin():
                run = await ReconcilerRunRepository(session).update(
                    state.run_id,
                    status=status,
                    finished_at=utc_now(),
                    findings=list(state.findings),
                    actions=list(state.actions),
                )
        return run

    # Locked unit of work

    async def _locked(self, lock_keys: list[str], operation: str, ids: dict[str, Any], work):
        """Run ``work(session)`` in one transaction under the given locks, with retries."""

        async def attempt():
            try:
                async with self.lock.lock_many(
                    lock_keys,
                    timeout=self.config.lock_timeout,
                    blocking_timeout=self.config.lock_blocking_timeout,
                ):
                    async with store_deadline(self.config.store_call_deadline, operation, ids):
                        async with self.session_maker() as session:
                            async with session.begin():
                                return await work(session)
            except TimeoutError as e:
                raise TransientStoreError(
                    f"Aggregate lock contention: {e}", operation, ids
                ) from e

        return await self.retry_policy.run(operation, attempt, ids)

    # 1. Duplicate sweep

    async def _duplicate_sweep(self, state: _RunState, cancel_event: asyncio.Event | None) -> None:
        scope = state.scope
        async with self.session_maker() as session:
            keys = await CommissionEntryRepository(session).find_duplicate_keys(
                beneficiary_id=scope.target_id if scope.kind == "beneficiary" else None,
                event_id=scope.target_id if scope.kind == "event" else None,
            )
            by_beneficiary: dict[str, list] = defaultdict(list)
            currencies: dict[str, set[str]] = defaultdict(set)
            entry_repo = CommissionEntryRepository(session)
            for key in keys:
                by_beneficiary[key[2]].append(key)
                for row in await entry_repo.find_active_by_key(key):
                    currencies[key[2]].add(row.currency)

        for beneficiary_id in sorted(by_beneficiary):
            self._check_cancel(cancel_event)
            quarantined, findings, actions = await self._locked(
                [aggregate_lock_key(beneficiary_id, c) for c in sorted(currencies[beneficiary_id])],
                "reconciler.duplicates",
                {"beneficiary_id": beneficiary_id, "run_id": state.run_id},
                lambda session, b=beneficiary_id: self._quarantine(
                    session, state, b, by_beneficiary[b], currencies[b]
                ),
            )
            state.findings.extend(findings)
            state.actions.extend(actions)
            if quarantined:
                await self.notifier.entries_quarantined(quarantined, state.run_id)

    async def _quarantine(
        self,
        session: AsyncSession,
        state: _RunState,
        beneficiary_id: str,
        keys: list,
        currencies: set[str],
    ) -> tuple[list, list[dict[str, Any]], list[dict[str, Any]]]:
        entry_repo = CommissionEntryRepository(session)
        now = utc_now()
        findings: list[dict[str, Any]] = []
        actions: list[dict[str, Any]] = []
        quarantined = []

        for key in keys:
            rows = await entry_repo.find_active_by_key(key)
            if len(rows) < 2:
                continue
            kept, duplicates = rows[0], rows[1:]
            await entry_repo.mark_status(
                [row.id for row in duplicates],
                EntryStatus.DUPLICATE,
                f"duplicate of entry {kept.id}",
                now,
            )
            quarantined.extend(duplicates)
            findings.append(
                {
                    "type": "duplicate_entries",
                    "event_id": key[0],
                    "generation": key[1],
                    "beneficiary_id": key[2],
                    "kept_entry_id": kept.id,
                    "duplicate_entry_ids": [row.id for row in duplicates],
                }
            )
            actions.append(
                {
                    "type": "quarantine",
                    "entry_ids": [row.id for row in duplicates],
                    "kept_entry_id": kept.id,
                }
            )
            logger.warning(
                f"Quarantined {len(duplicates)} duplicate entries",
                extra={
                    "run_id": state.run_id,
                    "event_id": key[0],
                    "generation": key[1],
                    "beneficiary_id": key[2],
                },
            )

        await session.flush()
        for currency in sorted(currencies):
            findings_drift, actions_drift = await self._rebuild_one(
                session, beneficiary_id, currency
            )
            findings.extend(findings_drift)
            actions.extend(actions_drift)

        return quarantined, findings, actions

    # 2. Missing sweep

    async def _iter_scope_events(self, state: _RunState):
        scope = state.scope
        batch_size = self.config.reconciler_batch_size
        if scope.kind == "all":
            after = None
            while True:
                async with self.session_maker() as session:
                    batch = await PurchaseEventRepository(session).find_batch(after, batch_size)
                if not batch:
                    return
                for record in batch:
                    yield record
                after = batch[-1].event_id
            return

        async with self.session_maker() as session:
            event_repo = PurchaseEventRepository(session)
            if scope.kind == "beneficiary":
                event_ids = await event_repo.find_event_ids_for_beneficiary(scope.target_id)
            else:
                event_ids = [scope.target_id]
            records = []
            for event_id in event_ids:
                record = await event_repo.get_by_id(event_id)
                if record is None:
                    state.findings.append({"type": "event_not_found", "event_id": event_id})
                    continue
                records.append(record)
        for record in records:
            yield record

    async def _missing_sweep(self, state: _RunState, cancel_event: asyncio.Event | None) -> None:
        async for record in self._iter_scope_events(state):
            self._check_cancel(cancel_event)
            if record.rolled_back_at is not None:
                continue
            await self._sweep_event(state, record)

    async def _sweep_event(self, state: _RunState, record: Any) -> None:
        event = PurchaseEvent.from_record(record)
        ids = {"event_id": event.event_id, "run_id": state.run_id}

        async with store_deadline(self.config.store_call_deadline, "reconciler.missing", ids):
            async with self.session_maker() as session:
                stored_chain: ResolvedChain | None = None
                if record.chain_captured_at is not None:
                    links = await ChainSnapshotRepository(session).get_for_event(event.event_id)
                    stored_chain = ResolvedChain.from_snapshot(event.purchaser_id, links)
                try:
                    chain, derived = await resolve_and_derive(
                        session, event, self.deriver, self.config.max_generation, stored_chain
                    )
                except LedgerError as e:
                    state.findings.append(
                        {"type": "underivable_event", "event_id": event.event_id, "error": e.message}
                    )
                    return
                entries = await CommissionEntryRepository(session).find_for_event(event.event_id)

        active: dict[tuple, list] = defaultdict(list)
        rolled_back: set[tuple] = set()
        for entry in entries:
            if entry.status == EntryStatus.ACTIVE:
                active[entry.key].append(entry)
            elif entry.status == EntryStatus.ROLLED_BACK:
                rolled_back.add(entry.key)

        derived_keys = {d.key for d in derived}
        missing = [d for d in derived if d.key not in active and d.key not in rolled_back]

        for d in derived:
            if d.key in active and not amounts_agree(active[d.key][0].amount, d.amount, d.currency):
                await self._report_mismatch(state, event, active[d.key][0], d)

        for key, rows in sorted(active.items()):
            if key not in derived_keys:
                state.findings.append(
                    {
                        "type": "unexpected_entry",
                        "event_id": key[0],
                        "generation": key[1],
                        "beneficiary_id": key[2],
                        "entry_ids": [row.id for row in rows],
                    }
                )

        if not missing and record.chain_captured_at is not None:
            return

        result = await self.writer.apply(event, chain, missing)
        if record.chain_captured_at is None:
            state.findings.append({"type": "missing_chain_snapshot", "event_id": event.event_id})
            state.actions.append(
                {
                    "type": "capture_chain",
                    "event_id": event.event_id,
                    "beneficiaries": chain.beneficiary_ids,
                }
            )
        if result.status == "applied":
            inserted = [
                {"generation": d.generation, "beneficiary_id": d.beneficiary_id, "amount": str(d.amount)}
                for d in result.inserted
            ]
            state.findings.append(
                {"type": "missing_entries", "event_id": event.event_id, "entries": inserted}
            )
            state.actions.append(
                {"type": "insert_missing", "event_id": event.event_id, "entries": inserted}
            )
        elif result.status == "conflict":
            state.findings.append(
                {"type": "write_conflict", "event_id": event.event_id, "conflicts": result.conflicts}
            )

    async def _report_mismatch(self, state: _RunState, event: PurchaseEvent, stored: Any, derived: Any) -> None:
        finding = {
            "type": "amount_mismatch",
            "event_id": event.event_id,
            "generation": derived.generation,
            "beneficiary_id": derived.beneficiary_id,
            "entry_id": stored.id,
            "stored_amount": str(stored.amount),
            "derived_amount": str(derived.amount),
        }
        state.findings.append(finding)
        logger.warning(
            "Active entry amount disagrees with re-derivation",
            extra={k: v for k, v in finding.items() if k != "type"},
        )

        error = ConflictError(
            "Active entry amount disagrees with re-derivation",
            "reconciler.amount_mismatch",
            finding,
        )
        async with self.session_maker() as session:
            already_open = await LedgerDeadLetterRepository(session).has_unresolved(
                event.event_id, ErrorKind.CONFLICT, error.operation
            )
        if not already_open:
            await self.writer.record_failure(error, event)

    # 3. Aggregate rebuild

    async def _scope_aggregate_keys(self, state: _RunState) -> dict[str, set[str]]:
        scope = state.scope
        keys: set[tuple[str, str]] = set()
        async with self.session_maker() as session:
            aggregate_repo = BeneficiaryAggregateRepository(session)
            entry_repo = CommissionEntryRepository(session)
            if scope.kind == "all":
                keys.update(await aggregate_repo.find_keys())
                keys.update(await entry_repo.find_beneficiary_keys())
            elif scope.kind == "beneficiary":
                keys.update(
                    (a.beneficiary_id, a.currency)
                    for a in await aggregate_repo.find_for_beneficiary(scope.target_id)
                )
                keys.update(
                    (e.beneficiary_id, e.currency)
                    for e in await entry_repo.find_by(beneficiary_id=scope.target_id)
                )
            else:
                keys.update(
                    (e.beneficiary_id, e.currency)
                    for e in await entry_repo.find_for_event(scope.target_id)
                )

        grouped: dict[str, set[str]] = defaultdict(set)
        for beneficiary_id, currency in keys:
            grouped[beneficiary_id].add(currency)
        return dict(sorted(grouped.items()))

    async def _aggregate_rebuild(self, state: _RunState, cancel_event: asyncio.Event | None) -> None:
        for beneficiary_id, currencies in (await self._scope_aggregate_keys(state)).items():
            self._check_cancel(cancel_event)
            findings, actions = await self._locked(
                [aggregate_lock_key(beneficiary_id, c) for c in sorted(currencies)],
                "reconciler.rebuild",
                {"beneficiary_id": beneficiary_id, "run_id": state.run_id},
                lambda session, b=beneficiary_id, cs=currencies: self._rebuild_beneficiary(
                    session, b, cs
                ),
            )
            state.findings.extend(findings)
            state.actions.extend(actions)

    async def _rebuild_beneficiary(
        self, session: AsyncSession, beneficiary_id: str, currencies: set[str]
    ) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
        findings: list[dict[str, Any]] = []
        actions: list[dict[str, Any]] = []
        for currency in sorted(currencies):
            f, a = await self._rebuild_one(session, beneficiary_id, currency)
            findings.extend(f)
            actions.extend(a)
        return findings, actions

    async def _rebuild_one(
        self, session: AsyncSession, beneficiary_id: str, currency: str
    ) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
        active = await CommissionEntryRepository(session).find_active_for_beneficiary(
            beneficiary_id, currency
        )
        drift = await AggregateMutator(session).rebuild(beneficiary_id, currency, active, utc_now())
        if drift is None:
            return [], []
        return (
            [
                {
                    "type": "aggregate_drift",
                    "beneficiary_id": beneficiary_id,
                    "currency": currency,
                    "before": drift["before"],
                    "expected": drift["after"],
                    "index_repaired": drift["index_repaired"],
                }
            ],
            [
                {
                    "type": "rebuild_aggregate",
                    "beneficiary_id": beneficiary_id,
                    "currency": currency,
                    "version": drift["version"],
                }
            ],
        )

    # 4. Chain repair (flag only)

    async def _chain_repair(self, state: _RunState, cancel_event: asyncio.Event | None) -> None:
        scope = state.scope
        batch_size = self.config.reconciler_batch_size

        if scope.kind == "all":
            after = None
            while True:
                self._check_cancel(cancel_event)
                async with self.session_maker() as session:
                    repo = ParticipantRepository(session)
                    batch = await repo.find_with_referrer_batch(after, batch_size)
                    for participant in batch:
                        await self._flag_referrer(state, repo, participant)
                if len(batch) < batch_size:
                    return
                after = batch[-1].id

        async with self.session_maker() as session:
            repo = ParticipantRepository(session)
            participant_id = scope.target_id
            if scope.kind == "event":
                record = await PurchaseEventRepository(session).get_by_id(scope.target_id)
                participant_id = record.purchaser_id if record is not None else None
            participant = await repo.get_by_id(participant_id) if participant_id else None
            if participant is not None and participant.referrer_handle is not None:
                await self._flag_referrer(state, repo, participant)

    async def _flag_referrer(self, state: _RunState, repo: ParticipantRepository, participant: Any) -> None:
        is_valid, handle, error = validate_referrer_handle(participant.referrer_handle)
        if is_valid:
            if await repo.get_by_handle(handle) is not None:
                return
            reason = STOP_UNRESOLVABLE
        else:
            reason = f"{STOP_INVALID_HANDLE}:{error}"

        state.findings.append(
            {
                "type": "unresolvable_referrer",
                "participant_id": participant.id,
                "referrer_handle": participant.referrer_handle,
                "reason": reason,
            }
        )
        logger.warning(
            "Participant referrer handle does not resolve",
            extra={"run_id": state.run_id, "participant_id": participant.id, "reason": reason},
        )
