"""
Domain errors raised by the loan services.
Each error carries a stable code, a category that drives client treatment, the HTTP status the
API returns for it, and a human-readable message naming the caller's next action.
"""
from __future__ import annotations

from typing import Any, Optional

VALIDATION = "validation"
POLICY = "policy"
CONFLICT = "conflict"
RESOURCE = "resource"
NOT_FOUND = "not_found"


class LoanError(Exception):
    code = "LoanError"
    category = VALIDATION
    status_code = 400
    default_message = "The request could not be processed."

    def __init__(self, message: Optional[str] = None, *, field: Optional[str] = None, **details: Any):
        self.message = message or self.default_message
        self.field = field
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "code": self.code,
            "category": self.category,
            "message": self.message,
        }
        if self.field:
            out["field"] = self.field
        if self.details:
            out["details"] = self.details
        return out


# Validation errors: correctable in the form


class InvalidTerm(LoanError):
    code = "InvalidTerm"
    default_message = "Loan term must be a whole number of months, at least 1."


class InvalidLoanParameters(LoanError):
    code = "InvalidLoanParameters"
    default_message = "Loan amount must be positive and the interest rate cannot be negative."


class UnknownLoanType(LoanError):
    code = "UnknownLoanType"
    default_message = "That loan product is not offered. Choose one of the listed loan types."


class UnknownRateTier(LoanError):
    code = "UnknownRateTier"
    default_message = "The selected interest rate is not offered for this loan type. Pick one of the listed rates."


class PrincipalOutOfRange(LoanError):
    code = "PrincipalOutOfRange"
    default_message = "Loan amount is outside the allowed range for this product. Adjust the amount."


class TermOutOfRange(LoanError):
    code = "TermOutOfRange"
    default_message = "Loan term is outside the allowed range for the selected rate. Adjust the term."


class InvalidDepositAmount(LoanError):
    code = "InvalidDepositAmount"
    default_message = "Deposit amount must equal the required 10% security deposit."


class InvalidDepositMethod(LoanError):
    code = "InvalidDepositMethod"
    default_message = "Invalid deposit method. Pay from your account balance or with crypto."


class InvalidPaymentAmount(LoanError):
    code = "InvalidPaymentAmount"
    default_message = "Payment amount must be positive and no more than the remaining balance."


class InvalidAutoPaymentSettings(LoanError):
    code = "InvalidAutoPaymentSettings"
    default_message = "Auto-payment needs an active account and a payment day between 1 and 28."


# Policy errors: need an out-of-band action before retrying


class MaxActiveLoansExceeded(LoanError):
    code = "MaxActiveLoansExceeded"
    category = POLICY
    status_code = 403
    default_message = (
        "You already have the maximum number of open loans. "
        "Complete or close an existing loan before applying for a new one."
    )


class NoActiveAccount(LoanError):
    code = "NoActiveAccount"
    category = POLICY
    status_code = 403
    default_message = "You need an active account to apply for a loan. Open or reactivate an account first."


# Concurrency / stale state: re-fetch and re-render, never retry blindly


class DepositAlreadySettled(LoanError):
    code = "DepositAlreadySettled"
    category = CONFLICT
    status_code = 409
    default_message = (
        "The deposit for this loan has already been received. "
        "Your application is under review; refresh to see its current status."
    )


class DepositPendingConfirmation(LoanError):
    code = "DepositPendingConfirmation"
    category = CONFLICT
    status_code = 409
    default_message = (
        "A crypto deposit for this loan is already awaiting confirmation. "
        "Wait for it to be verified before submitting another."
    )


class InvalidStateTransition(LoanError):
    code = "InvalidStateTransition"
    category = CONFLICT
    status_code = 409
    default_message = "This action is not allowed for the loan's current status. Refresh and try again."


# Resource errors


class InsufficientFunds(LoanError):
    code = "InsufficientFunds"
    category = RESOURCE
    status_code = 402
    default_message = "Insufficient balance. Add funds to your account or pay with crypto."


class LoanNotFound(LoanError):
    code = "LoanNotFound"
    category = NOT_FOUND
    status_code = 404
    default_message = "Loan not found."


class AccountNotFound(LoanError):
    code = "AccountNotFound"
    category = NOT_FOUND
    status_code = 404
    default_message = "Account not found or not active. Choose another account."


class DepositTransactionNotFound(LoanError):
    code = "DepositTransactionNotFound"
    category = NOT_FOUND
    status_code = 404
    default_message = "No pending deposit transaction matches this loan."


class ProductNotFound(LoanError):
    code = "ProductNotFound"
    category = NOT_FOUND
    status_code = 404
    default_message = "Loan product not found."
