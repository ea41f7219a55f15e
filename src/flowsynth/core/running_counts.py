from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence

import numpy as np


# Returned by mismatch() for a zero target with a non-zero (tweaked) count.
# No finite proportional ratio can equal it.
MISMATCH_SENTINEL = math.inf


def is_mismatch_anomaly(value: float) -> bool:
    return value == MISMATCH_SENTINEL


class MismatchAnomalyError(ValueError):
    """An area with a zero target count has a non-zero working count."""

    def __init__(self, area: int, count: int, tweak: int = 0):
        self.area = int(area)
        self.count = int(count)
        self.tweak = int(tweak)
        super().__init__(
            f"area {self.area} has target 0 but working count {self.count} "
            f"(tweak {self.tweak:+d}); origin targets and candidate lists disagree"
        )


@dataclass(frozen=True)
class CountStatistics:
    min_mismatch: float
    max_mismatch: float
    mean_difference: float

    @property
    def worst_mismatch(self) -> float:
        return max(abs(self.min_mismatch), abs(self.max_mismatch))


# ----------------------------
# Running counts
# ----------------------------
class RunningCounts:
    """
    Working count of assigned workers per origin area, compared against the
    area targets.

    Counts are built up worker-by-worker while the population is created,
    then moved one worker at a time by the convergence loop. Aggregate
    statistics are only refreshed by recompute_statistics().
    """

    def __init__(self, targets: Sequence[int], counts: Sequence[int] | None = None):
        t = np.array(targets, dtype=np.int64)
        if t.ndim != 1:
            raise ValueError(f"targets must be 1-D, got shape {t.shape}")
        if t.size and int(t.min()) < 0:
            raise ValueError("targets must be non-negative")

        if counts is None:
            c = np.zeros(t.shape[0], dtype=np.int64)
        else:
            c = np.array(counts, dtype=np.int64)
            if c.shape != t.shape:
                raise ValueError(f"counts length ({c.shape[0]}) != targets length ({t.shape[0]})")
            if c.size and int(c.min()) < 0:
                raise ValueError("counts must be non-negative")

        self._targets = t
        self._targets.setflags(write=False)
        self._counts = c

        self.min_mismatch = 0.0
        self.max_mismatch = 0.0
        self.mean_difference = 0.0

    def __len__(self) -> int:
        return int(self._counts.shape[0])

    @property
    def targets(self) -> np.ndarray:
        return self._targets

    @property
    def counts(self) -> np.ndarray:
        """Read-only view of the working counts."""
        view = self._counts.view()
        view.setflags(write=False)
        return view

    def count(self, area: int) -> int:
        return int(self._counts[area])

    def target(self, area: int) -> int:
        return int(self._targets[area])

    def total(self) -> int:
        return int(self._counts.sum())

    def increment(self, area: int) -> None:
        self._counts[area] += 1

    def decrement(self, area: int) -> None:
        if self._counts[area] <= 0:
            raise ValueError(f"cannot decrement area {area}: working count is already 0")
        self._counts[area] -= 1

    def difference(self, area: int) -> int:
        return int(self._counts[area]) - int(self._targets[area])

    def differences(self) -> np.ndarray:
        return self._counts - self._targets

    def mismatch(self, area: int, tweak: int = 0) -> float:
        """
        Proportional mismatch of the working count from target:
            (count - target + tweak) / target

        tweak previews the effect of moving one worker in (+1) or out (-1).
        A zero target gives 0.0 if the tweaked count is also zero, else
        MISMATCH_SENTINEL.
        """
        target = int(self._targets[area])
        diff = int(self._counts[area]) - target + tweak
        if target != 0:
            return diff / target
        if diff == 0:
            return 0.0
        return MISMATCH_SENTINEL

    def recompute_statistics(self) -> float:
        """
        Full scan of all areas. Updates min_mismatch, max_mismatch and
        mean_difference, and returns the magnitude of the worst mismatch.
        """
        n = len(self)
        if n == 0:
            self.min_mismatch = self.max_mismatch = self.mean_difference = 0.0
            return 0.0

        diff = self.differences()
        zero_target = self._targets == 0
        anomalies = np.where(zero_target & (diff != 0))[0]
        if anomalies.size > 0:
            a = int(anomalies[0])
            raise MismatchAnomalyError(a, int(self._counts[a]))

        safe = np.where(zero_target, 1, self._targets)
        mismatches = np.where(zero_target, 0.0, diff / safe)

        self.min_mismatch = float(mismatches.min())
        self.max_mismatch = float(mismatches.max())
        self.mean_difference = float(np.abs(diff).sum()) / n

        return max(abs(self.min_mismatch), abs(self.max_mismatch))

    def statistics(self) -> CountStatistics:
        """Snapshot of the values stored by the last recompute_statistics()."""
        return CountStatistics(
            min_mismatch=self.min_mismatch,
            max_mismatch=self.max_mismatch,
            mean_difference=self.mean_difference,
        )

    def mismatches(self) -> np.ndarray:
        """Per-area mismatch (no tweak). Sentinel entries are left in place."""
        return np.array([self.mismatch(a, 0) for a in range(len(self))], dtype=float)
