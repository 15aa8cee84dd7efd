from __future__ import annotations

import time
from decimal import Decimal

from app.schemas.quote import PriceEntry


class PriceCache:
    """Latest observed price per symbol. Entries never expire.

    Each write stores a fully built immutable PriceEntry with one dict
    assignment, so a reader on another thread sees either the old entry or
    the new one.
    """

    def __init__(self) -> None:
        self._rows: dict[str, PriceEntry] = {}

    def set(self, symbol: str, price: Decimal | float | int | str, observed_at: float | None = None) -> PriceEntry:
        entry = PriceEntry(
            symbol=symbol,
            price=price if isinstance(price, Decimal) else Decimal(str(price)),
            observed_at=time.time() if observed_at is None else observed_at,
        )
        self._rows[symbol] = entry
        return entry

    def get(self, symbol: str) -> PriceEntry | None:
        return self._rows.get(symbol)

    def get_many(self, symbols: list[str]) -> dict[str, PriceEntry]:
        out: dict[str, PriceEntry] = {}
        for s in symbols:
            row = self.get(s)
            if row is not None:
                out[s] = row
        return out

    def prices(self, symbols: list[str]) -> dict[str, Decimal]:
        return {s: row.price for s, row in self.get_many(symbols).items()}

    def __len__(self) -> int:
        return len(self._rows)

    def __contains__(self, symbol: object) -> bool:
        return symbol in self._rows
