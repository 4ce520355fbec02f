from __future__ import annotations

from datetime import date
from typing import Literal, Optional

from pydantic import BaseModel, Field

from schemas.product import ProductSnapshot, RateTierSchema


class CollateralSchema(BaseModel):
    type: str
    ownership_type: Optional[str] = Field(None, alias="ownershipType")
    estimated_value: Optional[float] = Field(None, ge=0, alias="estimatedValue")
    description: Optional[str] = None
    evidence_refs: list[str] = Field(default_factory=list, alias="evidenceRefs")

    model_config = {"populate_by_name": True}


class LoanApplyRequest(BaseModel):
    loan_type: str = Field(..., alias="loanType")
    principal: float
    term_months: int = Field(..., alias="termMonths")
    # Optional: picks a rate tier when a product offers several
    interest_rate: Optional[float] = Field(None, alias="interestRate")
    purpose: Optional[str] = None
    id_document_refs: list[str] = Field(default_factory=list, alias="idDocumentRefs")
    collaterals: list[CollateralSchema] = Field(default_factory=list)

    model_config = {"populate_by_name": True}


class DepositRequest(BaseModel):
    loan_id: str = Field(..., alias="loanId")
    account_id: Optional[str] = Field(None, alias="accountId")
    amount: float
    method: Literal["balance", "crypto"] = Field(..., alias="depositMethod")
    # crypto path only
    crypto_type: Optional[str] = Field(None, alias="cryptoType")
    network_type: Optional[str] = Field(None, alias="networkType")
    reference: Optional[str] = Field(None, alias="txHash")

    model_config = {"populate_by_name": True}


class LoanActionRequest(BaseModel):
    loan_id: str = Field(..., alias="loanId")
    # approve only: also disburse in the same action
    activate: bool = False
    reason: Optional[str] = None

    model_config = {"populate_by_name": True}


class DepositDecisionRequest(BaseModel):
    loan_id: str = Field(..., alias="loanId")
    transaction_id: str = Field(..., alias="transactionId")
    # reject only
    reason: Optional[str] = None

    model_config = {"populate_by_name": True}


class PaymentRequest(BaseModel):
    loan_id: str = Field(..., alias="loanId")
    amount: float
    account_id: Optional[str] = Field(None, alias="accountId")

    model_config = {"populate_by_name": True}


class EarlyPayoffRequest(BaseModel):
    account_id: Optional[str] = Field(None, alias="accountId")

    model_config = {"populate_by_name": True}


class AutoPaymentRequest(BaseModel):
    loan_id: str = Field(..., alias="loanId")
    enabled: bool
    account_id: Optional[str] = Field(None, alias="accountId")
    payment_day: Optional[int] = Field(None, alias="paymentDay")

    model_config = {"populate_by_name": True}


class LatePaymentCheckRequest(BaseModel):
    # Defaults to the current UTC date
    as_of: Optional[date] = Field(None, alias="asOf")

    model_config = {"populate_by_name": True}


class EligibilityResultSchema(BaseModel):
    product: ProductSnapshot
    tier: RateTierSchema
    account_id: str
