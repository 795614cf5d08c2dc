"""Pydantic API schemas."""

from milestone_escrow.schemas.escrow import (
    AgreementResponse,
    AttachReceiptRequest,
    BalanceResponse,
    CreateAgreementRequest,
    FundAgreementRequest,
    ReceiptResponse,
    TransactionResponse,
)
from milestone_escrow.schemas.workflow import (
    AuditEventResponse,
    HealthResponse,
    PreconditionResponse,
)

__all__ = [
    "AgreementResponse",
    "AttachReceiptRequest",
    "AuditEventResponse",
    "BalanceResponse",
    "CreateAgreementRequest",
    "FundAgreementRequest",
    "HealthResponse",
    "PreconditionResponse",
    "ReceiptResponse",
    "TransactionResponse",
]
