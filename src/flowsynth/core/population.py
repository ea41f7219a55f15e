from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

import numpy as np

from flowsynth.core.candidates import CandidateOrigins, DistanceLookup
from flowsynth.core.running_counts import (
    CountStatistics,
    MismatchAnomalyError,
    RunningCounts,
    is_mismatch_anomaly,
)
from flowsynth.core.worker import Worker

SwitchPolicy = str  # "proportional" or "absolute"
POLICIES = ("proportional", "absolute")


# ----------------------------
# Config
# ----------------------------
@dataclass
class ConvergenceConfig:
    policy: SwitchPolicy = "proportional"

    # stop after this many consecutive passes with no switch
    # (None -> number of origin areas)
    max_stable_passes: Optional[int] = None

    # hard cap on passes (None -> unlimited)
    max_passes: Optional[int] = None

    def __post_init__(self) -> None:
        if self.policy not in POLICIES:
            raise ValueError(f"policy must be one of {POLICIES}, got {self.policy!r}")
        if self.max_stable_passes is not None and self.max_stable_passes < 1:
            raise ValueError("max_stable_passes must be >= 1")
        if self.max_passes is not None and self.max_passes < 0:
            raise ValueError("max_passes must be >= 0")


@dataclass(frozen=True)
class ConstructionSummary:
    population: int
    destinations: int
    skipped: tuple[int, ...] = ()  # destination indices with no candidate origins

    @property
    def skipped_destinations(self) -> int:
        return len(self.skipped)

    @property
    def skipped_fraction(self) -> float:
        if self.destinations == 0:
            return 0.0
        return self.skipped_destinations / self.destinations


@dataclass(frozen=True)
class PassReport:
    phase: str  # "initial", "pass", "stable" or "final"
    iteration: int
    switches: int
    stable_passes: int
    mean_distance: float
    worst_mismatch: float
    statistics: CountStatistics
    max_stable_passes: int = 0
    stop_reason: str = ""  # set on the final report only

    @property
    def stable_percent(self) -> int:
        """Progress towards the stable-pass threshold, to the nearest 10%."""
        if self.max_stable_passes <= 0:
            return 0
        return 10 * math.floor(10.0 * self.stable_passes / self.max_stable_passes + 0.5)


@dataclass(frozen=True)
class ConvergenceResult:
    passes: int
    total_switches: int
    stop_reason: str  # "stable", "max_passes" or "interrupted"
    worst_mismatch: float
    statistics: CountStatistics


PassCallback = Callable[[PassReport, RunningCounts], Any]


# ----------------------------
# Switch rules
# ----------------------------
def mismatch_tolerance(iteration: int) -> float:
    """1 + 1/iteration^2, unbounded on the first pass."""
    if iteration <= 0:
        return math.inf
    return 1.0 + 1.0 / (iteration * iteration)


def proportional_switch(
    counts: RunningCounts,
    current: int,
    candidate: int,
    current_dist_sq: int,
    candidate_dist_sq: int,
    iteration: int,
) -> bool:
    if candidate == current:
        return False

    cur = counts.mismatch(current, 0)
    cur_removed = counts.mismatch(current, -1)
    cand = counts.mismatch(candidate, 0)
    cand_added = counts.mismatch(candidate, +1)

    for area, tweak, value in (
        (current, 0, cur),
        (current, -1, cur_removed),
        (candidate, 0, cand),
        (candidate, +1, cand_added),
    ):
        if is_mismatch_anomaly(value):
            raise MismatchAnomalyError(area, counts.count(area), tweak)

    worst_before = max(abs(cur), abs(cand))
    worst_after = max(abs(cur_removed), abs(cand_added))

    if worst_after < worst_before:
        return True

    if candidate_dist_sq >= current_dist_sq:
        return False

    tolerance = mismatch_tolerance(iteration)
    if math.isinf(tolerance):
        # no bound on the first pass, but an area already on target stays put
        return worst_before > 0
    return worst_after < worst_before * tolerance


def absolute_switch(
    counts: RunningCounts,
    current: int,
    candidate: int,
    current_dist_sq: int,
    candidate_dist_sq: int,
    iteration: int,
) -> bool:
    if candidate == current:
        return False
    if candidate_dist_sq >= current_dist_sq:
        return False

    d_cur = counts.difference(current)
    d_cand = counts.difference(candidate)
    before = abs(d_cur) + abs(d_cand)
    after = abs(d_cur - 1) + abs(d_cand + 1)
    return after < before


_SWITCH_RULES = {
    "proportional": proportional_switch,
    "absolute": absolute_switch,
}


# ----------------------------
# Population
# ----------------------------
class Population:
    """
    Synthetic working population: every worker has a fixed destination and
    a current origin; origin working counts are tracked in one RunningCounts.
    """

    def __init__(
        self,
        dest_targets: Sequence[int],
        origin_targets: Sequence[int],
        candidates: CandidateOrigins,
        rng: np.random.Generator,
        *,
        reshuffle_per_worker: bool = True,
    ):
        dest_t = np.asarray(dest_targets, dtype=np.int64)
        if dest_t.ndim != 1:
            raise ValueError(f"dest_targets must be 1-D, got shape {dest_t.shape}")
        if dest_t.size and int(dest_t.min()) < 0:
            raise ValueError("dest_targets must be non-negative")
        if len(candidates) != dest_t.shape[0]:
            raise ValueError(
                f"candidate lists ({len(candidates)}) != destination count ({dest_t.shape[0]})"
            )

        self.counts = RunningCounts(origin_targets)
        if candidates.n_origins != len(self.counts):
            raise ValueError(
                f"candidate origin space ({candidates.n_origins}) != origin count ({len(self.counts)})"
            )

        self.n_origins = len(self.counts)
        self.n_destinations = int(dest_t.shape[0])
        self.reshuffle_per_worker = bool(reshuffle_per_worker)

        workers: list[Worker] = []
        skipped: list[int] = []

        for d in range(self.n_destinations):
            if candidates.count(d) == 0:
                skipped.append(d)
                continue

            shared = None
            if not self.reshuffle_per_worker:
                shared = candidates.shuffled(d, rng)

            for _ in range(int(dest_t[d])):
                seq = candidates.shuffled(d, rng) if shared is None else shared
                w = Worker()
                origin = w.initialize(d, seq, rng)
                self.counts.increment(origin)
                workers.append(w)

        # so later passes do not walk the workers grouped by destination
        order = rng.permutation(len(workers))
        self.workers: list[Worker] = [workers[i] for i in order]

        self.summary = ConstructionSummary(
            population=len(self.workers),
            destinations=self.n_destinations,
            skipped=tuple(skipped),
        )

    def __len__(self) -> int:
        return len(self.workers)

    # ----------------------------
    # Convergence
    # ----------------------------
    def converge(
        self,
        distance: DistanceLookup,
        cfg: ConvergenceConfig | None = None,
        *,
        on_pass: Optional[PassCallback] = None,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> ConvergenceResult:
        """
        Repeatedly sweep all workers, proposing each worker's next candidate
        origin and switching when the configured rule accepts it.

        Stops once max_stable_passes consecutive passes switch nobody, when
        max_passes is reached, or when should_stop() returns True. Both
        checks happen between passes only, so counts and workers are always
        consistent on return.

        on_pass receives an "initial" report, one "pass" report per pass that
        switched anyone, a "stable" report every max_stable_passes // 10
        quiet passes, and a "final" report carrying the stop reason.
        """
        cfg = cfg or ConvergenceConfig()
        if distance.n_origins != self.n_origins or distance.n_destinations != self.n_destinations:
            raise ValueError(
                f"distance lookup is {distance.n_origins}x{distance.n_destinations}, "
                f"population is {self.n_origins}x{self.n_destinations}"
            )

        switch_rule = _SWITCH_RULES[cfg.policy]
        max_stable = cfg.max_stable_passes if cfg.max_stable_passes is not None else self.n_origins
        # "stable" progress report every tenth of the threshold
        report_every = max(1, max_stable // 10)
        counts = self.counts
        workers = self.workers
        n = len(workers)

        iteration = 0
        stable_passes = 0
        total_switches = 0
        mean_distance = self._mean_distance(distance)

        worst = counts.recompute_statistics()
        if on_pass is not None:
            on_pass(self._report("initial", 0, 0, stable_passes, max_stable, mean_distance, worst), counts)

        stop_reason = "stable"
        while stable_passes < max_stable:
            if should_stop is not None and should_stop():
                stop_reason = "interrupted"
                break
            if cfg.max_passes is not None and iteration >= cfg.max_passes:
                stop_reason = "max_passes"
                break

            switches = 0
            sum_dist_sq = 0

            for w in workers:
                current = w.origin
                dest = w.destination
                candidate = w.next_candidate()

                current_d2 = distance.distance_sq(current, dest)
                sum_dist_sq += current_d2
                candidate_d2 = distance.distance_sq(candidate, dest)

                if switch_rule(counts, current, candidate, current_d2, candidate_d2, iteration):
                    counts.decrement(current)
                    w.commit(candidate)
                    counts.increment(candidate)
                    switches += 1

            if switches > 0:
                stable_passes = 0
                total_switches += switches
                worst = counts.recompute_statistics()
                mean_distance = math.sqrt(sum_dist_sq / n)
                if on_pass is not None:
                    on_pass(
                        self._report("pass", iteration, switches, stable_passes, max_stable, mean_distance, worst),
                        counts,
                    )
            else:
                stable_passes += 1
                if on_pass is not None and stable_passes % report_every == 0:
                    on_pass(
                        self._report("stable", iteration, 0, stable_passes, max_stable, mean_distance, worst),
                        counts,
                    )

            iteration += 1

        worst = counts.recompute_statistics()
        mean_distance = self._mean_distance(distance)
        if on_pass is not None:
            on_pass(
                self._report(
                    "final", iteration, 0, stable_passes, max_stable, mean_distance, worst,
                    stop_reason=stop_reason,
                ),
                counts,
            )

        return ConvergenceResult(
            passes=iteration,
            total_switches=total_switches,
            stop_reason=stop_reason,
            worst_mismatch=worst,
            statistics=counts.statistics(),
        )

    def _report(
        self,
        phase: str,
        iteration: int,
        switches: int,
        stable_passes: int,
        max_stable: int,
        mean_distance: float,
        worst: float,
        stop_reason: str = "",
    ) -> PassReport:
        return PassReport(
            phase=phase,
            iteration=iteration,
            switches=switches,
            stable_passes=stable_passes,
            mean_distance=mean_distance,
            worst_mismatch=worst,
            statistics=self.counts.statistics(),
            max_stable_passes=max_stable,
            stop_reason=stop_reason,
        )

    def _mean_distance(self, distance: DistanceLookup) -> float:
        if not self.workers:
            return 0.0
        total = sum(distance.distance_sq(w.origin, w.destination) for w in self.workers)
        return math.sqrt(total / len(self.workers))

    # ----------------------------
    # Outputs
    # ----------------------------
    def assignments(self) -> np.ndarray:
        """(population, 2) array of (origin, destination) per worker."""
        out = np.empty((len(self.workers), 2), dtype=np.int64)
        for i, w in enumerate(self.workers):
            out[i, 0] = w.origin
            out[i, 1] = w.destination
        return out

    def to_flow_matrix(self, n_origins: int | None = None, n_destinations: int | None = None) -> np.ndarray:
        n_o = self.n_origins if n_origins is None else int(n_origins)
        n_d = self.n_destinations if n_destinations is None else int(n_destinations)
        matrix = np.zeros((n_o, n_d), dtype=np.int64)
        for w in self.workers:
            matrix[w.origin, w.destination] += 1
        return matrix
