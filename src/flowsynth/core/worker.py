from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

import numpy as np


@dataclass
class Worker:
    """
    One synthetic commuter.

    The destination is fixed once initialize() has run. candidates may be
    a list shared with every other worker at the same destination, so it is
    never modified here.
    """
    destination: int = -1
    candidates: Sequence[int] = field(default_factory=list, repr=False)
    cursor: int = 0
    origin: int = -1

    def initialize(self, destination: int, candidates: Sequence[int], rng: np.random.Generator) -> int:
        k = len(candidates)
        if k == 0:
            raise ValueError(f"destination {destination} has no candidate origins")

        self.destination = int(destination)
        self.candidates = candidates
        self.cursor = int(rng.integers(k))
        self.origin = int(candidates[self.cursor])
        return self.origin

    def next_candidate(self) -> int:
        # cyclic: wraps on the candidate count
        self.cursor = (self.cursor + 1) % len(self.candidates)
        return int(self.candidates[self.cursor])

    def commit(self, new_origin: int) -> None:
        self.origin = int(new_origin)
