"""
Derives which deposit banner a dashboard shows for a loan.
Exactly one of four banners applies; a recorded deposit transaction always wins over
"required", so a loan never shows "required" and "submitted" at once.
"""
from __future__ import annotations

from typing import Any, Iterable, Optional

from config import settings

BANNER_REQUIRED = "required"
BANNER_SUBMITTED = "submitted"
BANNER_VERIFIED = "verified"
BANNER_NONE = "none"

BANNER_MESSAGES = {
    BANNER_REQUIRED: "Security deposit required. Pay now to send your application for review.",
    BANNER_SUBMITTED: "Deposit submitted. Awaiting confirmation from the Loan Department.",
    BANNER_VERIFIED: "Deposit verified.",
    BANNER_NONE: None,
}

# deposit_status values
DEPOSIT_NONE = "none"
DEPOSIT_PENDING = "pending"
DEPOSIT_COMPLETED = "completed"

# deposit transaction statuses that still count as "a deposit exists"
_LIVE_TRANSACTION_STATUSES = ("pending", "completed")


def required_deposit(principal: float) -> float:
    return round(principal * settings.deposit_percentage, 2)


def deposit_banner(loan: Any, deposit_transactions: Optional[Iterable[Any]] = None) -> str:
    transactions = [
        tx for tx in (deposit_transactions or ())
        if _status_of(tx) in _LIVE_TRANSACTION_STATUSES
    ]
    if loan.deposit_paid and loan.deposit_status == DEPOSIT_COMPLETED:
        return BANNER_VERIFIED
    if transactions:
        if loan.deposit_status == DEPOSIT_PENDING and not loan.deposit_paid and loan.status == "pending":
            return BANNER_SUBMITTED
        return BANNER_NONE
    if loan.status == "pending":
        return BANNER_REQUIRED
    return BANNER_NONE


def banner_message(banner: str) -> Optional[str]:
    return BANNER_MESSAGES.get(banner)


def _status_of(tx: Any) -> Optional[str]:
    if isinstance(tx, dict):
        return tx.get("status")
    return getattr(tx, "status", None)
