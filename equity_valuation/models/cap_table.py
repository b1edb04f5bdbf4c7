from pydantic import BaseModel, Field, model_validator
from typing import Literal, Optional

ShareType = Literal["common", "preferred"]
PreferenceType = Literal["non-participating", "participating", "participating-with-cap"]
OptionType = Literal["Options", "Warrants", "RSUs"]


class ShareClass(BaseModel):
    id: str
    name: Optional[str] = None
    share_type: ShareType
    shares_outstanding: int = Field(..., ge=0)
    price_per_share: float = Field(0.0, ge=0)
    preference_type: PreferenceType = "non-participating"
    lp_multiple: float = Field(1.0, gt=0, description="Liquidation preference multiple")
    seniority: int = Field(0, ge=0, description="0 = most senior; equal ranks are pari passu")
    participation_cap: Optional[float] = Field(
        None, gt=0, description="Total-return cap as a multiple of the class's liquidation preference"
    )
    conversion_ratio: float = Field(1.0, gt=0)
    dividends_declared: bool = False
    dividends_rate: Optional[float] = Field(None, ge=0, le=100, description="Declared dividend, percent of amount invested")

    @model_validator(mode="after")
    def _check_dividends(self):
        if self.dividends_declared and self.dividends_rate is None:
            raise ValueError(f"Share class '{self.id}' declares dividends but has no dividends_rate")
        return self

    @property
    def label(self) -> str:
        return self.name or self.id

    @property
    def is_preferred(self) -> bool:
        return self.share_type == "preferred"

    @property
    def amount_invested(self) -> float:
        if not self.is_preferred:
            return 0.0
        return self.shares_outstanding * self.price_per_share

    @property
    def total_lp(self) -> float:
        return self.amount_invested * self.lp_multiple

    @property
    def declared_dividends(self) -> float:
        if not self.is_preferred or not self.dividends_declared:
            return 0.0
        return self.amount_invested * (self.dividends_rate or 0.0) / 100.0

    @property
    def liquidation_claim(self) -> float:
        """Amount paid ahead of junior securities: LP plus declared dividends."""
        return self.total_lp + self.declared_dividends

    @property
    def as_converted_shares(self) -> float:
        if not self.is_preferred:
            return float(self.shares_outstanding)
        return self.shares_outstanding * self.conversion_ratio

    @property
    def cap_amount(self) -> Optional[float]:
        if self.preference_type != "participating-with-cap" or self.participation_cap is None:
            return None
        return self.total_lp * self.participation_cap


class OptionTranche(BaseModel):
    id: str
    name: Optional[str] = None
    num_options: int = Field(..., ge=0)
    exercise_price: float = Field(..., ge=0)
    type: OptionType = "Options"

    @property
    def label(self) -> str:
        return self.name or f"{self.type} @ ${self.exercise_price:,.2f}"


class CapTable(BaseModel):
    share_classes: list[ShareClass] = Field(default_factory=list)
    options: list[OptionTranche] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_structure(self):
        commons = [sc for sc in self.share_classes if sc.share_type == "common"]
        if len(commons) > 1:
            raise ValueError(f"A cap table may hold at most one common class, got {len(commons)}")
        ids = [sc.id for sc in self.share_classes] + [o.id for o in self.options]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise ValueError(f"Duplicate security ids: {', '.join(duplicates)}")
        return self

    @property
    def preferred(self) -> list[ShareClass]:
        return [sc for sc in self.share_classes if sc.is_preferred]

    def get_share_class(self, share_class_id: str) -> Optional[ShareClass]:
        return next((sc for sc in self.share_classes if sc.id == share_class_id), None)

    @property
    def fully_diluted_shares(self) -> float:
        return sum(sc.as_converted_shares for sc in self.share_classes) + sum(
            o.num_options for o in self.options
        )
