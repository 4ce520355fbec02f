from sqlalchemy import JSON, Boolean, Column, Date, DateTime, Float, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import relationship

from database import Base


class Loan(Base):
    __tablename__ = "loans"

    id = Column(String(64), primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    # Disbursement / default repayment account, chosen at application time
    account_id = Column(String(64), ForeignKey("accounts.id"), nullable=True)
    loan_type = Column(String(64), nullable=False)
    principal = Column(Float, nullable=False)
    term_months = Column(Integer, nullable=False)
    # Snapshot of the catalog tier at application time; never re-read
    interest_rate = Column(Float, nullable=False)
    min_term_months = Column(Integer, nullable=False)
    max_term_months = Column(Integer, nullable=False)
    purpose = Column(Text, nullable=True)
    status = Column(String(32), nullable=False, default="pending", index=True)

    deposit_required = Column(Float, nullable=False)
    deposit_paid = Column(Boolean, nullable=False, default=False)
    deposit_status = Column(String(32), nullable=False, default="none")
    deposit_method = Column(String(32), nullable=True)
    deposit_date = Column(DateTime(timezone=True), nullable=True)

    monthly_payment_amount = Column(Float, nullable=False)
    total_amount = Column(Float, nullable=False)
    remaining_balance = Column(Float, nullable=True)
    outstanding_principal = Column(Float, nullable=True)
    payments_made = Column(Integer, nullable=False, default=0)
    next_payment_date = Column(Date, nullable=True)
    last_payment_date = Column(DateTime(timezone=True), nullable=True)
    is_late = Column(Boolean, nullable=False, default=False)
    late_fee_amount = Column(Float, nullable=False, default=0.0)

    auto_payment_enabled = Column(Boolean, nullable=False, default=False)
    auto_payment_account_id = Column(String(64), nullable=True)
    # Day of month, 1-28
    auto_payment_day = Column(Integer, nullable=True)

    # Informational attachments for the back-office reviewer
    collaterals = Column(JSON, nullable=False, default=list)
    id_document_refs = Column(JSON, nullable=False, default=list)
    rejection_reason = Column(Text, nullable=True)

    # Bumped on every committed change; subscribers drop anything not newer
    version = Column(Integer, nullable=False, default=1)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    start_date = Column(DateTime(timezone=True), nullable=True)
    closed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    deposit_transactions = relationship(
        "DepositTransaction",
        back_populates="loan",
        cascade="all, delete-orphan",
        order_by="DepositTransaction.created_at.desc()",
    )
    payments = relationship(
        "LoanPayment",
        back_populates="loan",
        cascade="all, delete-orphan",
        order_by="LoanPayment.payment_date.desc()",
    )


class DepositTransaction(Base):
    __tablename__ = "loan_deposit_transactions"

    id = Column(String(64), primary_key=True, index=True)
    loan_id = Column(String(64), ForeignKey("loans.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    method = Column(String(32), nullable=False)
    amount = Column(Float, nullable=False)
    status = Column(String(32), nullable=False, default="pending", index=True)
    account_id = Column(String(64), nullable=True)
    crypto_type = Column(String(32), nullable=True)
    network_type = Column(String(64), nullable=True)
    # Internal LOAN-DEP-xxxx for balance debits, tx hash for crypto
    reference = Column(String(256), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    loan = relationship("Loan", back_populates="deposit_transactions")


class LoanPayment(Base):
    __tablename__ = "loan_payments"

    id = Column(String(64), primary_key=True, index=True)
    loan_id = Column(String(64), ForeignKey("loans.id", ondelete="CASCADE"), nullable=False, index=True)
    account_id = Column(String(64), nullable=True)
    amount = Column(Float, nullable=False)
    principal_amount = Column(Float, nullable=False, default=0.0)
    interest_amount = Column(Float, nullable=False, default=0.0)
    balance_after = Column(Float, nullable=False)
    payment_type = Column(String(32), nullable=False, default="manual")
    status = Column(String(32), nullable=False, default="completed")
    payment_date = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    loan = relationship("Loan", back_populates="payments")
