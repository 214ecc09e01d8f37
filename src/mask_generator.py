#!/usr/bin/env python3
"""
mask_generator.py

Bounded random integers and vectors for the obfuscation protocol.

Each MaskGenerator owns its own numpy RandomState. A Session creates one per
round sequence and seeds it once, so a seeded run is reproducible and two
sessions never share a stream.
"""

import numpy as np


class MaskGenerator:
    """Uniform integer draws from an explicitly owned random stream."""

    def __init__(self, seed=None):
        self.seed = seed
        self.rng = np.random.RandomState(seed)

    def draw(self, low, high, inclusive=False):
        """
        Draw one integer uniformly from [low, high) or, if inclusive, [low, high].
        """
        upper = high + 1 if inclusive else high
        if upper <= low:
            raise ValueError(f"Empty range: low={low}, high={high}, inclusive={inclusive}")
        return int(self.rng.randint(low, upper))

    def draw_vector(self, n, low, high, inclusive=False):
        """
        Draw n independent integers. Position i is the mask for member index i.
        """
        if n < 0:
            raise ValueError("Vector length cannot be negative")
        upper = high + 1 if inclusive else high
        if upper <= low:
            raise ValueError(f"Empty range: low={low}, high={high}, inclusive={inclusive}")
        if n == 0:
            return []
        return self.rng.randint(low, upper, size=n).tolist()

    def draw_in(self, value_range):
        return self.draw(value_range.low, value_range.high, value_range.inclusive)

    def draw_vector_in(self, n, value_range):
        return self.draw_vector(n, value_range.low, value_range.high, value_range.inclusive)

    def uniform(self, low, high):
        """One float from [low, high); used for start-time jitter."""
        return float(self.rng.uniform(low, high))

    def spawn(self):
        """Derive an independent child generator seeded from this stream."""
        return MaskGenerator(int(self.rng.randint(0, 2 ** 31 - 1)))

    def __repr__(self):
        return f"MaskGenerator(seed={self.seed})"
