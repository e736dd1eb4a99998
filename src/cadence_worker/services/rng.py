"""Seeded random streams shared by the deterministic generation paths."""

from __future__ import annotations

import hashlib
import itertools
import random
import secrets
import threading
from typing import Protocol, Sequence, TypeVar

from .exceptions import InvariantError

T = TypeVar("T")

RNG_ALGORITHM = "python-mt19937"

_SEED_MASK = 0xFFFFFFFF
_SEED_STRIDE = 0x9E3779B1


class RngStream(Protocol):
    seed: int

    def next(self) -> float:
        """Return the next float in [0, 1)."""
        ...


class SeededRng:
    """Reproducible stream: the same seed always yields the same sequence."""

    algorithm = RNG_ALGORITHM

    def __init__(self, seed: int) -> None:
        self.seed = seed & _SEED_MASK
        self._random = random.Random(self.seed)

    def next(self) -> float:
        return self._random.random()

    def __repr__(self) -> str:
        return f"SeededRng(seed={self.seed})"


_seed_lock = threading.Lock()
_seed_counter = itertools.count(secrets.randbits(32))


def _next_default_seed() -> int:
    with _seed_lock:
        value = next(_seed_counter)
    return (value * _SEED_STRIDE) & _SEED_MASK or 1


def default_rng() -> SeededRng:
    """Fresh stream for a new generation; its seed is recorded in traces."""
    return SeededRng(_next_default_seed())


def seed_from_text(text: str) -> int:
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return int.from_bytes(digest[:4], "big") or 1


def rng_for_feedback(feedback: str) -> SeededRng:
    return SeededRng(seed_from_text(feedback))


def pick(rng: RngStream, items: Sequence[T]) -> T:
    if not items:
        raise InvariantError("pick called with an empty sequence")
    index = min(int(rng.next() * len(items)), len(items) - 1)
    return items[index]


def shuffled(rng: RngStream, items: Sequence[T]) -> list[T]:
    result = list(items)
    for index in range(len(result) - 1, 0, -1):
        swap = min(int(rng.next() * (index + 1)), index)
        result[index], result[swap] = result[swap], result[index]
    return result
