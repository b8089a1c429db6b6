import os
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class LoanPolicy(BaseModel):
    """Lending rules, injected into the engine instead of read from globals."""

    model_config = ConfigDict(frozen=True)

    loan_period_days: int = Field(default=14, ge=1)
    renewal_days: int = Field(default=14, ge=1)
    max_loans_per_user: int = Field(default=5, ge=1)
    max_renewals: int = Field(default=3, ge=0)
    daily_fine_rate: Decimal = Field(default=Decimal("0.50"), ge=0)
    lost_fallback_fine: Decimal = Field(default=Decimal("20.00"), ge=0)
    damaged_fallback_fine: Decimal = Field(default=Decimal("10.00"), ge=0)
    damage_fine_ratio: Decimal = Field(default=Decimal("0.5"), ge=0, le=1)

    @classmethod
    def from_env(cls) -> "LoanPolicy":
        return cls(
            loan_period_days=int(os.getenv("LOAN_PERIOD_DAYS", "14")),
            renewal_days=int(os.getenv("RENEWAL_DAYS", "14")),
            max_loans_per_user=int(os.getenv("MAX_LOANS_PER_USER", "5")),
            max_renewals=int(os.getenv("MAX_RENEWALS_PER_LOAN", "3")),
            daily_fine_rate=Decimal(os.getenv("DAILY_FINE_RATE", "0.50")),
            lost_fallback_fine=Decimal(os.getenv("LOST_FALLBACK_FINE", "20.00")),
            damaged_fallback_fine=Decimal(os.getenv("DAMAGED_FALLBACK_FINE", "10.00")),
            damage_fine_ratio=Decimal(os.getenv("DAMAGE_FINE_RATIO", "0.5")),
        )
