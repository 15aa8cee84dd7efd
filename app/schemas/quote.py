from decimal import Decimal

from pydantic import BaseModel, ConfigDict


class PriceEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbol: str
    price: Decimal
    observed_at: float
