from schemas.loan import (
    AutoPaymentRequest,
    CollateralSchema,
    DepositDecisionRequest,
    DepositRequest,
    EarlyPayoffRequest,
    EligibilityResultSchema,
    LatePaymentCheckRequest,
    LoanActionRequest,
    LoanApplyRequest,
    PaymentRequest,
)
from schemas.product import ProductCreate, ProductSnapshot, ProductUpdate, RateTierSchema

__all__ = [
    "AutoPaymentRequest",
    "CollateralSchema",
    "DepositDecisionRequest",
    "DepositRequest",
    "EarlyPayoffRequest",
    "EligibilityResultSchema",
    "LatePaymentCheckRequest",
    "LoanActionRequest",
    "LoanApplyRequest",
    "PaymentRequest",
    "ProductCreate",
    "ProductSnapshot",
    "ProductUpdate",
    "RateTierSchema",
]
