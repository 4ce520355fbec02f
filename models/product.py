from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import relationship

from database import Base


class LoanProduct(Base):
    __tablename__ = "loan_products"

    id = Column(String(64), primary_key=True, index=True)
    # Catalog key used by applicants (personal, home_mortgage, ...)
    code = Column(String(64), unique=True, nullable=False, index=True)
    name = Column(String(256), nullable=False)
    description = Column(Text, nullable=True)
    min_amount = Column(Float, nullable=False)
    max_amount = Column(Float, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    rates = relationship(
        "LoanRate",
        back_populates="product",
        cascade="all, delete-orphan",
        order_by="LoanRate.position",
    )


class LoanRate(Base):
    __tablename__ = "loan_rates"

    id = Column(String(64), primary_key=True, index=True)
    product_id = Column(String(64), ForeignKey("loan_products.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    rate = Column(Float, nullable=False)
    min_term_months = Column(Integer, nullable=False)
    max_term_months = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    product = relationship("LoanProduct", back_populates="rates")
