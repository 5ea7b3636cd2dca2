"""
Database models.

Exports all SQLAlchemy models for easy imports.
"""

from app.models.admin_audit_log import AdminAuditLog
from app.models.base import Base
from app.models.beneficiary_aggregate import AggregateReferred, BeneficiaryAggregate
from app.models.chain_snapshot import ChainSnapshotLink
from app.models.commission_entry import CommissionEntry
from app.models.dead_letter import LedgerDeadLetter
from app.models.enums import (
    Currency,
    EntryStatus,
    ErrorKind,
    ParticipantStatus,
    ProductKind,
    ReconcilerRunStatus,
)
from app.models.participant import Participant
from app.models.purchase_event import PurchaseEventRecord
from app.models.rate_schedule import RateSchedule
from app.models.reconciler_run import ReconcilerRun


__all__ = [
    "AdminAuditLog",
    "AggregateReferred",
    "Base",
    "BeneficiaryAggregate",
    "ChainSnapshotLink",
    "CommissionEntry",
    "Currency",
    "EntryStatus",
    "ErrorKind",
    "LedgerDeadLetter",
    "Participant",
    "ParticipantStatus",
    "ProductKind",
    "PurchaseEventRecord",
    "RateSchedule",
    "ReconcilerRun",
    "ReconcilerRunStatus",
]
