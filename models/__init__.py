from models.account import Account, AccountTransaction
from models.loan import DepositTransaction, Loan, LoanPayment
from models.notification import Notification
from models.product import LoanProduct, LoanRate

__all__ = [
    "Account",
    "AccountTransaction",
    "DepositTransaction",
    "Loan",
    "LoanPayment",
    "LoanProduct",
    "LoanRate",
    "Notification",
]
