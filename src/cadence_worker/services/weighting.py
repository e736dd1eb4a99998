"""Frequency-weighted pool selection over seeded randomness."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Dict, Generic, Hashable, Iterable, List, Optional, Tuple, TypeVar

from .rng import RngStream

T = TypeVar("T", bound=Hashable)

TOP_HALF_PROBABILITY = 0.75


@dataclass
class WeightedPool(Generic[T]):
    """Union of several source pools, tracking how many sources offered each item."""

    items: List[T] = field(default_factory=list)
    frequency: Dict[T, int] = field(default_factory=dict)

    @classmethod
    def from_sources(cls, sources: Iterable[Iterable[T]]) -> "WeightedPool[T]":
        pool: WeightedPool[T] = cls()
        for source in sources:
            seen: set[T] = set()
            for item in source:
                if item in seen:
                    continue
                seen.add(item)
                pool.add(item)
        return pool

    @classmethod
    def uniform(cls, items: Iterable[T]) -> "WeightedPool[T]":
        return cls.from_sources([items])

    def add(self, item: T) -> None:
        if item not in self.frequency:
            self.items.append(item)
            self.frequency[item] = 0
        self.frequency[item] += 1

    def ranked(self) -> List[T]:
        # sorted() is stable, so equal frequencies keep insertion order.
        return sorted(self.items, key=lambda item: -self.frequency[item])

    def without(self, item: T) -> "WeightedPool[T]":
        remaining = [candidate for candidate in self.items if candidate != item]
        return WeightedPool(
            items=remaining,
            frequency={candidate: self.frequency[candidate] for candidate in remaining},
        )

    def __len__(self) -> int:
        return len(self.items)


@dataclass(frozen=True)
class Selection(Generic[T]):
    value: T
    index: int
    candidates: Tuple[T, ...]
    rolls: Tuple[float, ...]
    from_top_half: bool


def top_half(ranked: List[T]) -> List[T]:
    return ranked[: math.ceil(len(ranked) / 2)]


def select_weighted(pool: WeightedPool[T], rng: RngStream) -> Optional[Selection[T]]:
    """Pick one item, favouring those contributed by the most sources.

    With probability ``TOP_HALF_PROBABILITY`` the draw is restricted to the
    top half of the frequency ranking; otherwise it is uniform over the whole
    pool. Exactly two values are consumed from ``rng`` per call.
    """
    if not pool.items:
        return None
    ranked = pool.ranked()
    gate = rng.next()
    from_top = gate < TOP_HALF_PROBABILITY
    candidates = top_half(ranked) if from_top else ranked
    roll = rng.next()
    index = min(int(roll * len(candidates)), len(candidates) - 1)
    return Selection(
        value=candidates[index],
        index=index,
        candidates=tuple(candidates),
        rolls=(gate, roll),
        from_top_half=from_top,
    )


def select_many_weighted(
    pool: WeightedPool[T], rng: RngStream, count: int
) -> List[Selection[T]]:
    """Draw up to ``count`` distinct items, re-ranking after each pick."""
    picks: List[Selection[T]] = []
    remaining = pool
    while len(picks) < count and remaining.items:
        selection = select_weighted(remaining, rng)
        if selection is None:
            break
        picks.append(selection)
        remaining = remaining.without(selection.value)
    return picks
