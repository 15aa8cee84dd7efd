from __future__ import annotations

from decimal import Decimal

from app.services.quote_cache import PriceCache


def normalize_symbols(raw: str | list[str] | None) -> list[str]:
    """Split a comma separated ticker list; trims, drops blanks and duplicates, keeps order."""
    if raw is None:
        return []
    items = raw.split(",") if isinstance(raw, str) else raw

    unique_symbols: list[str] = []
    seen: set[str] = set()
    for symbol in items:
        value = str(symbol).strip()
        if not value or value in seen:
            continue
        seen.add(value)
        unique_symbols.append(value)
    return unique_symbols


class QuoteQueryService:
    """Read-only view over the price cache."""

    def __init__(self, *, price_cache: PriceCache) -> None:
        self.price_cache = price_cache

    def get_quotes(self, raw: str | list[str] | None) -> dict[str, Decimal]:
        return self.price_cache.prices(normalize_symbols(raw))
