"""Application services: use case orchestration."""

from milestone_escrow.services.audit_trail import AuditTrail
from milestone_escrow.services.escrow_ledger import EscrowBalance, EscrowLedger
from milestone_escrow.services.payment_service import (
    SimulatedPaymentProvider,
    StripePaymentProvider,
)
from milestone_escrow.services.precondition_service import PreconditionEvaluator
from milestone_escrow.services.receipt_gate import ReceiptData, ReceiptVerificationGate
from milestone_escrow.services.release_orchestrator import ReleaseOrchestrator
from milestone_escrow.services.workflow_gates import WorkflowGateService

__all__ = [
    "AuditTrail",
    "EscrowBalance",
    "EscrowLedger",
    "PreconditionEvaluator",
    "ReceiptData",
    "ReceiptVerificationGate",
    "ReleaseOrchestrator",
    "SimulatedPaymentProvider",
    "StripePaymentProvider",
    "WorkflowGateService",
]
