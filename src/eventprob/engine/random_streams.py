"""Reproducible random streams.

One master seed fans out into independent generators addressed by an integer
key, so each worker batch owns its own stream and no generator is shared
between threads.
"""

import logging

import numpy as np
from scipy import stats

logger = logging.getLogger(__name__)

UNIFORM_EPS = 1e-12


class RandomStreams:
    """Indexed family of PCG64 generators derived from a master seed."""

    def __init__(self, seed: int | None = None):
        root = np.random.SeedSequence(seed)
        self.seed: int = int(root.entropy)
        if seed is None:
            logger.debug("No seed given, drew entropy %d", self.seed)

    def generator(self, *key: int) -> np.random.Generator:
        """Independent generator for the given key, e.g. (channel, batch_index)."""
        return np.random.default_rng(np.random.SeedSequence(self.seed, spawn_key=key))


def open_uniform(rng: np.random.Generator, size) -> np.ndarray:
    """Uniform draws strictly inside (0, 1)."""
    return np.clip(rng.random(size), UNIFORM_EPS, 1.0 - UNIFORM_EPS)


def to_normal(u: np.ndarray) -> np.ndarray:
    """Map uniform marginals to standard normal shocks."""
    return stats.norm.ppf(np.clip(u, UNIFORM_EPS, 1.0 - UNIFORM_EPS))
