from sqlalchemy import Column, DateTime, Float, ForeignKey, String, Text, func

from database import Base


class Account(Base):
    """Deposit account owned by the core banking side; loans only read, debit and credit it."""

    __tablename__ = "accounts"

    id = Column(String(64), primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    account_number = Column(String(32), nullable=False, unique=True)
    account_type = Column(String(32), nullable=False, default="checking")
    balance = Column(Float, nullable=False, default=0.0)
    status = Column(String(32), nullable=False, default="active", index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class AccountTransaction(Base):
    """Ledger row for every balance change the loan services make."""

    __tablename__ = "account_transactions"

    id = Column(String(64), primary_key=True, index=True)
    account_id = Column(String(64), ForeignKey("accounts.id"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    # debit | credit
    type = Column(String(16), nullable=False)
    amount = Column(Float, nullable=False)
    balance_before = Column(Float, nullable=False)
    balance_after = Column(Float, nullable=False)
    description = Column(Text, nullable=True)
    reference = Column(String(64), nullable=True, index=True)
    status = Column(String(32), nullable=False, default="completed")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
