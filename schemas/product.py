from typing import Optional

from pydantic import BaseModel, Field, model_validator


class RateTierSchema(BaseModel):
    """One APR offered by a product, valid for a window of terms."""
    rate: float = Field(..., ge=0, le=100, description="Annual percentage rate")
    min_term_months: int = Field(..., ge=1, alias="minTermMonths")
    max_term_months: int = Field(..., ge=1, alias="maxTermMonths")

    model_config = {"populate_by_name": True, "frozen": True}

    @model_validator(mode="after")
    def _check_window(self):
        if self.min_term_months > self.max_term_months:
            raise ValueError("minTermMonths must not exceed maxTermMonths")
        return self

    def covers(self, term_months: int) -> bool:
        return self.min_term_months <= term_months <= self.max_term_months


class ProductSnapshot(BaseModel):
    """Immutable view of a catalog product, taken once per application."""
    id: str
    code: str
    name: str
    min_amount: float
    max_amount: float
    rates: tuple[RateTierSchema, ...]

    model_config = {"frozen": True}


class ProductCreate(BaseModel):
    code: str = Field(..., pattern=r"^[a-z][a-z0-9_]*$")
    name: str
    description: Optional[str] = None
    min_amount: float = Field(..., gt=0, alias="minAmount")
    max_amount: float = Field(..., gt=0, alias="maxAmount")
    rates: list[RateTierSchema] = Field(..., min_length=1)

    model_config = {"populate_by_name": True}

    @model_validator(mode="after")
    def _check_bounds(self):
        if self.min_amount > self.max_amount:
            raise ValueError("minAmount must not exceed maxAmount")
        return self


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    min_amount: Optional[float] = Field(None, gt=0, alias="minAmount")
    max_amount: Optional[float] = Field(None, gt=0, alias="maxAmount")

    model_config = {"populate_by_name": True}
