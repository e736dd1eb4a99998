from __future__ import annotations

from cadence_worker.services.rng import SeededRng
from cadence_worker.services.weighting import (
    WeightedPool,
    select_many_weighted,
    select_weighted,
    top_half,
)


class FixedRng:
    def __init__(self, *values: float) -> None:
        self.seed = 0
        self._values = list(values)

    def next(self) -> float:
        return self._values.pop(0)


def test_from_sources_counts_contributing_sources() -> None:
    pool = WeightedPool.from_sources([["4/4", "3/4", "4/4"], ["4/4", "7/8"]])
    assert pool.items == ["4/4", "3/4", "7/8"]
    assert pool.frequency == {"4/4": 2, "3/4": 1, "7/8": 1}


def test_ranked_is_stable_for_ties() -> None:
    pool = WeightedPool.from_sources([["a", "b", "c"], ["c"]])
    assert pool.ranked() == ["c", "a", "b"]


def test_top_half_rounds_up() -> None:
    assert top_half([1, 2, 3]) == [1, 2]
    assert top_half([1, 2, 3, 4]) == [1, 2]
    assert top_half([1]) == [1]


def test_select_uses_top_half_below_gate() -> None:
    pool = WeightedPool.from_sources([["a", "b", "c", "d"], ["d"]])
    # ranked: d, a, b, c -> top half d, a
    selection = select_weighted(pool, FixedRng(0.1, 0.99))
    assert selection is not None
    assert selection.from_top_half
    assert selection.value == "a"
    assert selection.candidates == ("d", "a")


def test_select_uses_full_pool_above_gate() -> None:
    pool = WeightedPool.from_sources([["a", "b", "c", "d"], ["d"]])
    selection = select_weighted(pool, FixedRng(0.8, 0.99))
    assert selection is not None
    assert not selection.from_top_half
    assert selection.value == "c"
    assert selection.rolls == (0.8, 0.99)


def test_select_empty_pool_returns_none() -> None:
    assert select_weighted(WeightedPool(), SeededRng(1)) is None


def test_select_many_returns_distinct_items() -> None:
    pool = WeightedPool.uniform(["a", "b", "c", "d", "e"])
    picks = select_many_weighted(pool, SeededRng(3), 4)
    values = [selection.value for selection in picks]
    assert len(values) == 4
    assert len(set(values)) == 4


def test_select_many_stops_when_pool_exhausted() -> None:
    pool = WeightedPool.uniform(["a", "b"])
    assert len(select_many_weighted(pool, SeededRng(3), 5)) == 2


def test_top_half_bias_over_many_trials() -> None:
    # ranked: 4/4 (2 sources), 3/4, 6/8, 7/8; expected share of 4/4 is 0.4375
    pool = WeightedPool.from_sources([["4/4", "3/4"], ["4/4", "6/8", "7/8"]])
    rng = SeededRng(2024)
    trials = 4000
    hits = sum(1 for _ in range(trials) if select_weighted(pool, rng).value == "4/4")
    assert hits / trials > 0.40
    assert hits / trials < 0.48
