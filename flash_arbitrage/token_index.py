"""
Inverted token symbol -> pools index.

The index is built once while a venue initializes and is read-only
afterwards. TokenIndexBuilder is the only writer; freeze() hands out an
immutable TokenIndex that needs no locking.
"""

from types import MappingProxyType
from typing import Dict, Iterator, List, Mapping, Tuple

from .types import Pool, Token


class TokenIndexBuilder:
    """Append-only builder for a TokenIndex."""

    def __init__(self):
        self._pools_by_symbol: Dict[str, List[Pool]] = {}
        self._frozen = False

    def add_pool(self, pool: Pool) -> None:
        """Register the pool under every one of its input tokens."""
        if self._frozen:
            raise RuntimeError("TokenIndex is frozen, pools can no longer be added")
        for token in pool.input_tokens:
            self._pools_by_symbol.setdefault(token.symbol, []).append(pool)

    def freeze(self) -> "TokenIndex":
        self._frozen = True
        return TokenIndex(
            {symbol: tuple(pools) for symbol, pools in self._pools_by_symbol.items()}
        )


class TokenIndex:
    """Frozen mapping from token symbol to the pools containing that token."""

    def __init__(self, pools_by_symbol: Mapping[str, Tuple[Pool, ...]]):
        self._pools_by_symbol = MappingProxyType(dict(pools_by_symbol))

    def __len__(self) -> int:
        return len(self._pools_by_symbol)

    def __contains__(self, symbol: object) -> bool:
        return symbol in self._pools_by_symbol

    def __iter__(self) -> Iterator[str]:
        return iter(self._pools_by_symbol)

    def pools_for(self, symbol: str) -> Tuple[Pool, ...]:
        return self._pools_by_symbol.get(symbol, ())

    def neighbours(self, symbol: str) -> Dict[str, Token]:
        """Tokens sharing at least one pool with `symbol`, in index order."""
        found: Dict[str, Token] = {}
        for pool in self.pools_for(symbol):
            for token in pool.counterparts(symbol):
                found.setdefault(token.symbol, token)
        return found

    def pools_between(self, symbol_a: str, symbol_b: str) -> List[Pool]:
        """Pools holding both tokens, in index order."""
        return [pool for pool in self.pools_for(symbol_a) if pool.has_token(symbol_b)]

    def intermediary_tokens(self, symbol_a: str, symbol_c: str) -> List[Token]:
        """
        Candidate pivot tokens for an A -> B -> C -> A cycle.

        Returns every token that shares a pool with A and a pool with C,
        excluding A and C, ordered by first appearance among A's pools.
        """
        neighbours_c = self.neighbours(symbol_c)
        return [
            token
            for symbol, token in self.neighbours(symbol_a).items()
            if symbol in neighbours_c and symbol not in (symbol_a, symbol_c)
        ]
