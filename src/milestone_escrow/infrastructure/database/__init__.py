"""Persistence: async engine, ORM tables and repositories (which flush, never commit)."""

from milestone_escrow.infrastructure.database.engine import (
    close_db,
    get_async_session,
    get_engine,
    init_db,
)
from milestone_escrow.infrastructure.database.orm_models import (
    AuditEvent,
    Base,
    EscrowAgreement,
    EscrowTransaction,
    Milestone,
    PayoutAccountRecord,
    Receipt,
)
from milestone_escrow.infrastructure.database.repositories import (
    AgreementRepository,
    AuditRepository,
    MilestoneRepository,
    PayoutAccountRepository,
    ProjectReadRepository,
    ReceiptRepository,
    TransactionRepository,
)

__all__ = [
    "Base",
    "EscrowAgreement",
    "EscrowTransaction",
    "Receipt",
    "AuditEvent",
    "Milestone",
    "PayoutAccountRecord",
    "AgreementRepository",
    "TransactionRepository",
    "ReceiptRepository",
    "MilestoneRepository",
    "ProjectReadRepository",
    "PayoutAccountRepository",
    "AuditRepository",
    "get_engine",
    "get_async_session",
    "init_db",
    "close_db",
]
