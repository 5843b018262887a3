"""
Credit ledger schemas.

One credit pays for one item-group description. Free monthly units are
spent before purchased ones.
"""

from datetime import date
from typing import Literal, Optional

from pydantic import BaseModel, Field

from models.base import BaseSchema


class CreditAccount(BaseSchema):
    """Usage allowance of one user."""

    free_allowance_remaining: int = Field(default=0, ge=0)
    purchased_balance: int = Field(default=0, ge=0)
    usage_this_period: int = Field(default=0, ge=0)
    reset_date: Optional[date] = None

    @property
    def total_available(self) -> int:
        return self.free_allowance_remaining + self.purchased_balance


class DebitResult(BaseModel):
    """Outcome of one debit call against the ledger."""

    status: Literal["granted", "insufficient"]
    amount: int = Field(ge=0, description="Units actually debited")
    free_used: int = Field(default=0, ge=0)
    purchased_used: int = Field(default=0, ge=0)
    available: int = Field(default=0, ge=0, description="Units left after the call")
    replayed: bool = Field(default=False, description="Same idempotency key seen before")


class Reservation(BaseModel):
    """
    Admission decision for a batch of groups.

    granted + shortfall == requested. A shortfall is a scheduling branch,
    not an error.
    """

    status: Literal["granted", "insufficient"]
    requested: int = Field(ge=0)
    granted: int = Field(ge=0)
    shortfall: int = Field(default=0, ge=0)
    idempotency_key: str
    replayed: bool = False

    @property
    def is_full(self) -> bool:
        return self.status == "granted"
