"""
Id generation.

An explicit, seedable generator object is passed to whichever component
needs fresh ids, so test runs produce reproducible id sequences.
"""

from typing import Optional
import itertools
import random
import threading


class IdGenerator:
    """
    Produces ids of the form ``{prefix}-{counter}-{suffix}``.

    The counter is per generator and the 4-hex-digit suffix comes from a
    private ``random.Random``; with a seed the whole sequence is
    reproducible. Safe to call from several threads.

    Usage:
        ids = IdGenerator(prefix="evt", seed=42)
        ids.next()          # "evt-1-a3f1"
        ids.next("run")     # "run-2-09bc"
    """

    def __init__(self, prefix: str = "id", seed: Optional[int] = None):
        self.prefix = prefix
        self.seed = seed
        self._counter = itertools.count(1)
        self._random = random.Random(seed)
        self._lock = threading.Lock()

    def next(self, prefix: Optional[str] = None) -> str:
        """Return the next id, optionally overriding the prefix."""
        with self._lock:
            number = next(self._counter)
            suffix = self._random.getrandbits(16)
        return f"{prefix or self.prefix}-{number}-{suffix:04x}"

    def __call__(self, prefix: Optional[str] = None) -> str:
        return self.next(prefix)
