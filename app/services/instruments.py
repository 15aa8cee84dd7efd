from __future__ import annotations

from typing import Any, Iterable, Mapping


def resolve_instruments(catalog: Iterable[Mapping[str, Any]], universe: Iterable[str]) -> dict[str, int]:
    """Map universe symbols to instrument tokens using a catalog snapshot.

    Symbols absent from the catalog are dropped. When a symbol occurs more
    than once the first row wins.
    """
    wanted = set(universe)
    out: dict[str, int] = {}
    for row in catalog:
        symbol = row.get("tradingsymbol")
        if symbol not in wanted or symbol in out:
            continue
        token = row.get("instrument_token")
        if token is None or token == "":
            continue
        out[symbol] = int(token)
    return out


class InstrumentIndex:
    """Symbol <-> instrument token lookup, replaced as a whole on each resolution."""

    def __init__(self, mapping: Mapping[str, int] | None = None) -> None:
        self._maps: tuple[dict[str, int], dict[int, str]] = ({}, {})
        if mapping:
            self.replace(mapping)

    def replace(self, mapping: Mapping[str, int]) -> None:
        by_symbol = dict(mapping)
        by_token = {token: symbol for symbol, token in by_symbol.items()}
        # one assignment swaps both directions
        self._maps = (by_symbol, by_token)

    def clear(self) -> None:
        self.replace({})

    def symbol_for(self, token: int) -> str | None:
        return self._maps[1].get(token)

    def token_for(self, symbol: str) -> int | None:
        return self._maps[0].get(symbol)

    def tokens(self) -> list[int]:
        return list(self._maps[0].values())

    def as_dict(self) -> dict[str, int]:
        return dict(self._maps[0])

    def __len__(self) -> int:
        return len(self._maps[0])
