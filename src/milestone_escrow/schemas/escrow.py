"""Pydantic schemas for the Escrow API.

These schemas define the request/response shapes for the REST API. They
are separate from the ORM models to maintain clean boundaries between the
API and database layers. Field types are imported at runtime because
pydantic resolves the annotations when the models are built.
"""

from __future__ import annotations

import uuid  # noqa: TC003 - needed at runtime by pydantic
from datetime import date, datetime  # noqa: TC003 - needed at runtime by pydantic
from decimal import Decimal  # noqa: TC003 - needed at runtime by pydantic

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class CreateAgreementRequest(BaseModel):
    """Request body for creating a new escrow agreement."""

    project_id: uuid.UUID
    payer_id: str = Field(..., min_length=1, max_length=64, description="Homeowner paying in")
    payee_id: str = Field(..., min_length=1, max_length=64, description="Contractor paid out")
    total_amount: Decimal = Field(..., gt=0, decimal_places=2, examples=["10000.00"])
    currency: str | None = Field(default=None, min_length=3, max_length=3, examples=["USD"])
    contract_id: uuid.UUID | None = None


class FundAgreementRequest(BaseModel):
    """Request body for funding: send exactly one of the two payment fields."""

    provider_payment_id: str | None = Field(
        default=None,
        min_length=1,
        max_length=128,
        description="A payment already made client-side (e.g. a Stripe PaymentIntent id)",
        examples=["pi_3NkLx2..."],
    )
    payment_method_id: str | None = Field(
        default=None,
        min_length=1,
        max_length=128,
        description="Charge this payment method for the full amount (e.g. pm_card_visa)",
    )
    amount: Decimal | None = Field(
        default=None,
        gt=0,
        decimal_places=2,
        description="Optional; must equal the agreement total (no partial funding)",
    )


class ReasonRequest(BaseModel):
    """Request body for cancel and dispute."""

    reason: str | None = Field(default=None, max_length=2000)


class RefundRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    reason: str = Field(..., max_length=2000)


class RequestReleaseRequest(BaseModel):
    notes: str | None = Field(default=None, max_length=2000)


class AttachReceiptRequest(BaseModel):
    """Receipt metadata; the file itself is already in the document store."""

    file_url: str = Field(..., min_length=1, max_length=2048)
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    file_name: str | None = Field(default=None, max_length=255)
    file_type: str | None = Field(default=None, max_length=100)
    file_size: int | None = Field(default=None, ge=0)
    vendor: str | None = Field(default=None, max_length=200)
    receipt_date: date | None = None
    description: str | None = Field(default=None, max_length=2000)
    category: str | None = Field(default=None, max_length=50)
    ocr_extraction: dict | None = Field(
        default=None, description="Advisory OCR output; never decides verification"
    )


class VerifyReceiptRequest(BaseModel):
    verified: bool
    notes: str | None = Field(default=None, max_length=2000)


class ApproveReleaseRequest(BaseModel):
    notes: str | None = Field(default=None, max_length=2000)


class RejectReleaseRequest(BaseModel):
    # Emptiness is checked by the orchestrator so it maps to VALIDATION_ERROR.
    reason: str = Field(..., max_length=2000)


class CreatePayoutAccountRequest(BaseModel):
    email: str | None = Field(default=None, max_length=254)


class OnboardingLinkRequest(BaseModel):
    """Overrides for where the provider sends the payee afterwards."""

    refresh_url: str | None = Field(default=None, max_length=2048)
    return_url: str | None = Field(default=None, max_length=2048)


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class AgreementResponse(BaseModel):
    """Response schema for an escrow agreement."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    project_id: uuid.UUID
    contract_id: uuid.UUID | None
    payer_id: str
    payee_id: str
    total_amount: Decimal
    currency: str
    funded: bool
    funded_amount: Decimal
    funded_at: datetime | None
    status: str
    created_by: str
    created_at: datetime
    updated_at: datetime


class TransactionResponse(BaseModel):
    """Response schema for an escrow transaction."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    agreement_id: uuid.UUID
    milestone_id: uuid.UUID | None
    type: str
    amount: Decimal
    currency: str
    status: str
    verification_complete: bool
    version: int
    requested_by: str | None
    requested_at: datetime | None
    approved_by: str | None
    approved_at: datetime | None
    approval_notes: str | None
    rejected_by: str | None
    rejected_at: datetime | None
    rejection_reason: str | None
    provider_transfer_id: str | None
    provider_payment_id: str | None
    last_transfer_outcome: str | None = None
    notes: str | None
    created_at: datetime
    updated_at: datetime


class ReceiptResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    transaction_id: uuid.UUID
    file_url: str
    file_name: str | None
    file_type: str | None
    file_size: int | None
    amount: Decimal
    vendor: str | None
    receipt_date: date | None
    description: str | None
    category: str | None
    ocr_extraction: dict | None
    uploaded_by: str
    uploaded_at: datetime
    verified: bool | None
    verified_by: str | None
    verified_at: datetime | None
    verification_notes: str | None


class BalanceResponse(BaseModel):
    agreement_id: uuid.UUID
    currency: str
    total_amount: Decimal
    funded_amount: Decimal
    deposited: Decimal
    adjustments: Decimal
    released: Decimal
    pending_releases: Decimal
    refunded: Decimal
    fees: Decimal
    available: Decimal


class VerificationStatusResponse(BaseModel):
    transaction_id: uuid.UUID
    status: str
    verification_complete: bool
    total: int
    verified: int
    rejected: int
    pending: int


class AgreementStatusResponse(BaseModel):
    """Lightweight status check response."""

    agreement_id: uuid.UUID
    status: str
    allowed_events: list[str] = Field(
        description="State machine events that can fire from the current status"
    )


class PayoutAccountResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    provider_account_id: str
    payouts_enabled: bool
    updated_at: datetime


class OnboardingLinkResponse(BaseModel):
    url: str


class WebhookAck(BaseModel):
    received: bool = True
    outcome: str
