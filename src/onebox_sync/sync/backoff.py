"""Reconnect delay policy."""

from __future__ import annotations

import random
from dataclasses import dataclass

# 2**64 seconds is far past any sane cap; larger exponents only overflow.
_MAX_EXPONENT = 64


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff: ``min(base * 2**(attempt - 1), cap)``.

    Jitter multiplies each delay by a random factor in ``[1 - jitter, 1]``.
    Keeping ``jitter <= 0.5`` preserves a non-decreasing sequence below the
    cap, since the next raw delay is always at least twice the previous one.
    """

    base: float = 1.0
    cap: float = 300.0
    jitter: float = 0.0

    def __post_init__(self) -> None:
        if self.base <= 0:
            raise ValueError("base must be positive")
        if self.cap < self.base:
            raise ValueError("cap must be >= base")
        if not 0.0 <= self.jitter <= 0.5:
            raise ValueError("jitter must be within [0, 0.5]")

    def delay(self, attempt: int, rng: random.Random | None = None) -> float:
        """Return the delay in seconds before reconnect attempt ``attempt``.

        Args:
            attempt: 1-based count of consecutive failed attempts.
            rng: Random source for jitter. If None, uses the module RNG.

        Raises:
            ValueError: If ``attempt`` is lower than 1.
        """
        if attempt < 1:
            raise ValueError("attempt must be >= 1")

        exponent = attempt - 1
        if exponent >= _MAX_EXPONENT:
            raw = self.cap
        else:
            raw = min(self.base * (2**exponent), self.cap)

        if not self.jitter:
            return raw
        factor = 1.0 - self.jitter * (rng or random).random()
        return raw * factor
