from __future__ import annotations

import math

import numpy as np
import pytest

from flowsynth.core.candidates import CandidateOrigins, DistanceLookup
from flowsynth.core.population import (
    ConvergenceConfig,
    Population,
    absolute_switch,
    mismatch_tolerance,
    proportional_switch,
)
from flowsynth.core.running_counts import MismatchAnomalyError, RunningCounts


def _total_abs_difference(pop: Population) -> int:
    return int(np.abs(pop.counts.differences()).sum())


def _counts_from_workers(pop: Population) -> list[int]:
    return np.bincount([w.origin for w in pop.workers], minlength=pop.n_origins).tolist()


class TestConstruction:
    def test_population_size_and_counts(self, two_origins_one_destination, rng) -> None:
        origin_t, dest_t, cands, _ = two_origins_one_destination
        pop = Population(dest_t, origin_t, cands, rng)
        assert len(pop) == 5
        assert pop.counts.total() == 5
        assert pop.summary.population == 5
        assert pop.summary.skipped_destinations == 0
        assert _counts_from_workers(pop) == pop.counts.counts.tolist()

    def test_destination_without_candidates_is_skipped(self, rng) -> None:
        cands = CandidateOrigins([[0, 1], []], n_origins=2)
        pop = Population([4, 3], [2, 2], cands, rng)
        assert len(pop) == 4
        assert pop.summary.skipped_destinations == 1
        assert pop.summary.skipped == (1,)
        assert pop.summary.destinations == 2
        assert pop.summary.skipped_fraction == pytest.approx(0.5)
        assert all(w.destination == 0 for w in pop.workers)

    def test_destinations_and_origins_respected(self, small_region, rng) -> None:
        origin_t, dest_t, cands, _ = small_region
        pop = Population(dest_t, origin_t, cands, rng)
        per_dest = np.bincount([w.destination for w in pop.workers], minlength=len(dest_t))
        for d in range(len(dest_t)):
            expected = int(dest_t[d]) if cands.count(d) > 0 else 0
            assert per_dest[d] == expected
        for w in pop.workers:
            assert w.origin in cands.indices(w.destination)

    def test_workers_not_grouped_by_destination(self) -> None:
        cands = CandidateOrigins([[0], [1]], n_origins=2)
        pop = Population([50, 50], [50, 50], cands, np.random.default_rng(3))
        dests = [w.destination for w in pop.workers]
        assert dests != sorted(dests)

    def test_shared_sequence_per_destination(self, rng) -> None:
        cands = CandidateOrigins([[0, 1, 2], [1, 2]], n_origins=3)
        pop = Population([6, 4], [4, 3, 3], cands, rng, reshuffle_per_worker=False)
        by_dest: dict[int, list] = {}
        for w in pop.workers:
            by_dest.setdefault(w.destination, []).append(w.candidates)
        for seqs in by_dest.values():
            assert all(s is seqs[0] for s in seqs)

    def test_private_sequence_per_worker(self, rng) -> None:
        cands = CandidateOrigins([[0, 1, 2]], n_origins=3)
        pop = Population([6], [2, 2, 2], cands, rng, reshuffle_per_worker=True)
        seqs = [w.candidates for w in pop.workers]
        assert len({id(s) for s in seqs}) == len(seqs)
        assert all(sorted(s) == [0, 1, 2] for s in seqs)

    def test_candidate_count_must_match_destinations(self, rng) -> None:
        cands = CandidateOrigins([[0]], n_origins=1)
        with pytest.raises(ValueError, match="destination count"):
            Population([1, 1], [2], cands, rng)

    def test_origin_space_must_match_targets(self, rng) -> None:
        cands = CandidateOrigins([[0]], n_origins=1)
        with pytest.raises(ValueError, match="origin count"):
            Population([1], [1, 1], cands, rng)

    def test_negative_destination_target(self, rng) -> None:
        cands = CandidateOrigins([[0]], n_origins=1)
        with pytest.raises(ValueError, match="non-negative"):
            Population([-1], [1], cands, rng)


class TestSwitchRules:
    def test_tolerance_schedule(self) -> None:
        assert math.isinf(mismatch_tolerance(0))
        assert mismatch_tolerance(1) == pytest.approx(2.0)
        assert mismatch_tolerance(2) == pytest.approx(1.25)
        assert mismatch_tolerance(100) == pytest.approx(1.0001)

    def test_proportional_accepts_improvement(self) -> None:
        rc = RunningCounts([3, 2], counts=[5, 0])
        assert proportional_switch(rc, 0, 1, 100, 100, iteration=5)

    def test_proportional_rejects_worsening_at_equal_distance(self) -> None:
        rc = RunningCounts([3, 2], counts=[3, 2])
        assert not proportional_switch(rc, 0, 1, 100, 100, iteration=5)

    def test_first_pass_keeps_on_target_areas(self) -> None:
        rc = RunningCounts([3, 2], counts=[3, 2])
        assert not proportional_switch(rc, 0, 1, 100, 50, iteration=0)
        assert not proportional_switch(rc, 0, 1, 100, 50, iteration=1)

    def test_first_pass_follows_distance_when_off_target(self) -> None:
        # before 0.25, after 0.5: only the unbounded first-pass tolerance allows it
        rc = RunningCounts([4, 2], counts=[5, 2])
        assert proportional_switch(rc, 0, 1, 100, 50, iteration=0)
        assert not proportional_switch(rc, 0, 1, 100, 100, iteration=0)
        assert not proportional_switch(rc, 0, 1, 100, 50, iteration=1)

    def test_proportional_tolerance_with_shorter_distance(self) -> None:
        # worst mismatch drops from 0.5 to 0.3, so distance does not matter
        rc = RunningCounts([10, 2], counts=[14, 1])
        assert proportional_switch(rc, 0, 1, 100, 200, iteration=50)
        # before 0.25, after 1/3: inside the tolerance at pass 1 but not at pass 2
        rc = RunningCounts([4, 3], counts=[5, 3])
        assert proportional_switch(rc, 0, 1, 100, 50, iteration=1)
        assert not proportional_switch(rc, 0, 1, 100, 50, iteration=2)
        assert not proportional_switch(rc, 0, 1, 100, 100, iteration=1)

    def test_same_origin_never_switches(self) -> None:
        rc = RunningCounts([3], counts=[9])
        assert not proportional_switch(rc, 0, 0, 100, 10, iteration=0)
        assert not absolute_switch(rc, 0, 0, 100, 10, iteration=0)

    def test_proportional_anomaly_raises(self) -> None:
        rc = RunningCounts([3, 0], counts=[3, 0])
        with pytest.raises(MismatchAnomalyError) as excinfo:
            proportional_switch(rc, 0, 1, 100, 50, iteration=3)
        assert excinfo.value.area == 1
        assert excinfo.value.tweak == 1

    def test_absolute_needs_shorter_distance(self) -> None:
        rc = RunningCounts([3, 2], counts=[5, 0])
        assert absolute_switch(rc, 0, 1, 100, 50, iteration=0)
        assert not absolute_switch(rc, 0, 1, 100, 100, iteration=0)

    def test_absolute_needs_smaller_total_difference(self) -> None:
        rc = RunningCounts([3, 2], counts=[3, 2])
        assert not absolute_switch(rc, 0, 1, 100, 50, iteration=0)


class TestConvergence:
    def test_two_origin_scenario(self, two_origins_one_destination, rng) -> None:
        origin_t, dest_t, cands, dist = two_origins_one_destination
        pop = Population(dest_t, origin_t, cands, rng)
        assert pop.counts.total() == 5
        before = _total_abs_difference(pop)

        result = pop.converge(dist)

        assert result.stop_reason == "stable"
        assert pop.counts.total() == 5
        assert _total_abs_difference(pop) <= before
        assert pop.counts.counts.tolist() == [3, 2]
        assert result.worst_mismatch == 0.0

    @pytest.mark.parametrize("seed", [0, 1, 2, 3, 4])
    def test_two_origin_scenario_any_seed(self, two_origins_one_destination, seed) -> None:
        origin_t, dest_t, cands, dist = two_origins_one_destination
        pop = Population(dest_t, origin_t, cands, np.random.default_rng(seed))
        pop.converge(dist)
        assert pop.counts.differences().tolist() == [0, 0]

    def test_conservation_every_pass(self, small_region, rng) -> None:
        origin_t, dest_t, cands, dist = small_region
        pop = Population(dest_t, origin_t, cands, rng)
        n = len(pop)
        seen = []

        def on_pass(report, counts):
            assert counts.total() == n
            assert _counts_from_workers(pop) == counts.counts.tolist()
            seen.append(report.phase)

        result = pop.converge(dist, ConvergenceConfig(max_passes=5000), on_pass=on_pass)

        assert result.stop_reason == "stable"
        assert seen[0] == "initial"
        assert seen[-1] == "final"
        assert pop.counts.total() == n

    def test_terminates_with_consistent_statistics(self, small_region, rng) -> None:
        origin_t, dest_t, cands, dist = small_region
        pop = Population(dest_t, origin_t, cands, rng)

        result = pop.converge(dist, ConvergenceConfig(max_passes=5000))

        assert result.stop_reason == "stable"
        assert result.statistics.worst_mismatch == pytest.approx(result.worst_mismatch)
        assert result.statistics.min_mismatch <= result.statistics.max_mismatch

    def test_deterministic_for_seed(self, small_region) -> None:
        origin_t, dest_t, cands, dist = small_region
        runs = []
        for _ in range(2):
            pop = Population(dest_t, origin_t, cands, np.random.default_rng(99))
            result = pop.converge(dist)
            runs.append((pop.assignments(), result.passes, result.total_switches))
        assert np.array_equal(runs[0][0], runs[1][0])
        assert runs[0][1:] == runs[1][1:]

    def test_stable_pass_threshold_defaults_to_origin_count(self, rng) -> None:
        cands = CandidateOrigins([[0]], n_origins=4)
        pop = Population([3], [3, 1, 1, 1], cands, rng)
        dist = DistanceLookup(np.zeros((4, 2)), np.zeros((1, 2)))
        result = pop.converge(dist)
        assert result.passes == 4
        assert result.total_switches == 0

    def test_custom_stable_threshold(self, two_origins_one_destination, rng) -> None:
        origin_t, dest_t, cands, dist = two_origins_one_destination
        pop = Population(dest_t, origin_t, cands, rng)
        pop.converge(dist)
        # already converged: every further pass is stable
        result = pop.converge(dist, ConvergenceConfig(max_stable_passes=7))
        assert result.passes == 7
        assert result.total_switches == 0

    def test_first_pass_leaves_exact_fit_alone(self) -> None:
        # both origins serve both destinations; origin 1 is nearer to each
        cands = CandidateOrigins([[0, 1], [0, 1]], n_origins=2)
        dist = DistanceLookup(np.array([[5000, 0], [1000, 0]]), np.array([[0, 0], [0, 100]]))
        checked = 0
        for seed in range(20):
            pop = Population([1, 1], [1, 1], cands, np.random.default_rng(seed))
            if pop.counts.counts.tolist() != [1, 1]:
                continue
            checked += 1
            result = pop.converge(dist, ConvergenceConfig(max_passes=1))
            assert result.total_switches == 0
            assert pop.counts.counts.tolist() == [1, 1]
        assert checked > 0

    def test_stable_progress_reports(self, two_origins_one_destination, rng) -> None:
        origin_t, dest_t, cands, dist = two_origins_one_destination
        pop = Population(dest_t, origin_t, cands, rng)
        pop.converge(dist)

        reports = []
        pop.converge(dist, ConvergenceConfig(max_stable_passes=20), on_pass=lambda r, c: reports.append(r))

        stable = [r for r in reports if r.phase == "stable"]
        assert [r.stable_passes for r in stable] == list(range(2, 21, 2))
        assert [r.stable_percent for r in stable] == list(range(10, 101, 10))
        assert [r.phase for r in reports] == ["initial"] + ["stable"] * 10 + ["final"]

    def test_stable_reports_every_pass_for_small_threshold(self, two_origins_one_destination, rng) -> None:
        origin_t, dest_t, cands, dist = two_origins_one_destination
        pop = Population(dest_t, origin_t, cands, rng)
        pop.converge(dist)

        reports = []
        pop.converge(dist, on_pass=lambda r, c: reports.append(r))
        assert [r.stable_percent for r in reports if r.phase == "stable"] == [50, 100]

    def test_final_report_carries_stop_reason(self, small_region, rng) -> None:
        origin_t, dest_t, cands, dist = small_region
        pop = Population(dest_t, origin_t, cands, rng)
        reports = []
        pop.converge(dist, ConvergenceConfig(max_passes=0), on_pass=lambda r, c: reports.append(r))
        assert reports[-1].phase == "final"
        assert reports[-1].stop_reason == "max_passes"
        assert reports[0].stop_reason == ""

    def test_max_passes(self, small_region, rng) -> None:
        origin_t, dest_t, cands, dist = small_region
        pop = Population(dest_t, origin_t, cands, rng)
        result = pop.converge(dist, ConvergenceConfig(max_passes=0))
        assert result.stop_reason == "max_passes"
        assert result.passes == 0

    def test_interrupt_between_passes(self, small_region, rng) -> None:
        origin_t, dest_t, cands, dist = small_region
        pop = Population(dest_t, origin_t, cands, rng)
        calls = {"n": 0}

        def should_stop() -> bool:
            calls["n"] += 1
            return calls["n"] > 2

        result = pop.converge(dist, should_stop=should_stop)
        assert result.stop_reason == "interrupted"
        assert result.passes == 2
        assert _counts_from_workers(pop) == pop.counts.counts.tolist()

    def test_zero_target_origin_aborts(self, rng) -> None:
        cands = CandidateOrigins([[0, 1]], n_origins=2)
        pop = Population([5], [0, 5], cands, rng)
        dist = DistanceLookup(np.array([[10, 0], [20, 0]]), np.array([[0, 0]]))
        with pytest.raises(MismatchAnomalyError):
            pop.converge(dist)

    def test_distance_shape_checked(self, two_origins_one_destination, rng) -> None:
        origin_t, dest_t, cands, _ = two_origins_one_destination
        pop = Population(dest_t, origin_t, cands, rng)
        with pytest.raises(ValueError, match="distance lookup"):
            pop.converge(DistanceLookup(np.zeros((3, 2)), np.zeros((1, 2))))

    def test_absolute_policy(self, rng) -> None:
        cands = CandidateOrigins([[0, 1]], n_origins=2)
        dist = DistanceLookup(np.array([[1000, 0], [2000, 0]]), np.array([[0, 0]]))
        pop = Population([5], [3, 2], cands, rng)
        before = _total_abs_difference(pop)
        near_before = pop.counts.count(0)

        result = pop.converge(dist, ConvergenceConfig(policy="absolute"))

        assert result.stop_reason == "stable"
        assert pop.counts.total() == 5
        assert _total_abs_difference(pop) <= before
        # workers only ever move towards the nearer origin
        assert pop.counts.count(0) >= near_before

    def test_unknown_policy(self) -> None:
        with pytest.raises(ValueError, match="policy"):
            ConvergenceConfig(policy="greedy")


class TestFlowMatrix:
    def test_margins(self, small_region, rng) -> None:
        origin_t, dest_t, cands, dist = small_region
        pop = Population(dest_t, origin_t, cands, rng)
        pop.converge(dist)
        m = pop.to_flow_matrix(len(origin_t), len(dest_t))
        assert m.shape == (len(origin_t), len(dest_t))
        assert m.min() >= 0
        assert m.sum(axis=1).tolist() == pop.counts.counts.tolist()
        expected_cols = [int(dest_t[d]) if cands.count(d) else 0 for d in range(len(dest_t))]
        assert m.sum(axis=0).tolist() == expected_cols

    def test_assignments_match_matrix(self, two_origins_one_destination, rng) -> None:
        origin_t, dest_t, cands, dist = two_origins_one_destination
        pop = Population(dest_t, origin_t, cands, rng)
        pairs = pop.assignments()
        assert pairs.shape == (5, 2)
        m = pop.to_flow_matrix()
        for o, d in pairs:
            assert m[o, d] > 0
        assert m.sum() == 5
