"""Seed-reproducible Gaussian measurement noise.

The uniform source is mulberry32: a 32-bit state advanced by the
constant 0x6D2B79F5 and scrambled with multiply / xor-shift rounds.
With every intermediate masked to 32 bits the sequence is bit-identical
to other implementations of the same rule.
"""
import math
from typing import Callable, Optional

import numpy as np

MASK32 = 0xFFFFFFFF
EPSILON = np.finfo(float).eps


def _imul(a, b):
    """32-bit integer multiplication (low word only)"""
    return (a * b) & MASK32


def mulberry32(seed: int) -> Callable[[], float]:
    """Return a generator function yielding uniform floats in [0, 1)"""
    state = (int(seed) & MASK32) or 1

    def next_uniform():
        nonlocal state
        state = (state + 0x6D2B79F5) & MASK32
        t = _imul(state ^ (state >> 15), 1 | state)
        t = ((t + _imul(t ^ (t >> 7), 61 | t)) & MASK32) ^ t
        return ((t ^ (t >> 14)) & MASK32) / 4294967296.0

    return next_uniform


def random_seed() -> int:
    """Draw a fresh non-zero 32-bit seed"""
    return int(np.random.default_rng().integers(1, MASK32, endpoint=True))


class NoiseSource:
    def __init__(self, enabled=False, sigma=0.0, seed: Optional[int] = None):
        """Initialize noise source; a random seed is drawn when none is given"""
        self.enabled = enabled
        self.sigma = sigma
        self.seed = 1
        self._uniform = None
        self.reseed(random_seed() if seed is None else seed)

    def reseed(self, seed: int):
        """Replace the generator with a fresh one started from seed"""
        self.seed = (int(math.floor(seed)) & MASK32) or 1
        self._uniform = mulberry32(self.seed)

    def configure(self, enabled: bool, sigma: float, seed: Optional[int] = None):
        """Apply SET_NOISE settings; the generator is only replaced when a seed is given"""
        if seed is not None:
            self.reseed(seed)
        self.enabled = bool(enabled)
        self.sigma = float(sigma)

    def uniform(self) -> float:
        return self._uniform()

    def sample(self, sigma: Optional[float] = None) -> float:
        """Return one N(0, sigma^2) draw via Box-Muller, or 0 when disabled"""
        if sigma is None:
            sigma = self.sigma
        if not self.enabled or sigma <= 0:
            return 0.0

        # Box-Muller needs u1 > 0 for the log
        u1 = self.uniform()
        while u1 <= EPSILON:
            u1 = self.uniform()
        u2 = self.uniform()

        z0 = math.sqrt(-2.0 * math.log(u1)) * math.cos(2.0 * math.pi * u2)
        return sigma * z0

    def get_settings(self) -> dict:
        return {"enabled": self.enabled, "sigma": self.sigma, "seed": self.seed}
