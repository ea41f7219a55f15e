from __future__ import annotations

import numpy as np
import pytest

from flowsynth.core.candidates import CandidateOrigins, DistanceLookup


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(1234)


@pytest.fixture
def two_origins_one_destination():
    """Origins with targets [3, 2], both 1 km from a single destination of 5 workers."""
    origin_targets = [3, 2]
    dest_targets = [5]
    candidates = CandidateOrigins([[0, 1]], n_origins=2)
    distance = DistanceLookup(
        np.array([[1000.0, 0.0], [-1000.0, 0.0]]),
        np.array([[0.0, 0.0]]),
    )
    return origin_targets, dest_targets, candidates, distance


@pytest.fixture
def small_region():
    """Six origins and four destinations on a grid, candidates within 0-6 km."""
    gen = np.random.default_rng(7)
    origin_xy = np.array(
        [[0, 0], [2000, 0], [4000, 0], [0, 2000], [2000, 2000], [4000, 2000]],
        dtype=float,
    )
    dest_xy = np.array([[1000, 1000], [3000, 1000], [1000, 500], [3500, 1800]], dtype=float)
    origin_targets = gen.integers(3, 12, size=len(origin_xy))
    dest_targets = gen.integers(4, 15, size=len(dest_xy))
    candidates = CandidateOrigins.from_coordinates(
        origin_xy, dest_xy, 0, 6000, origin_targets=origin_targets
    )
    distance = DistanceLookup(origin_xy, dest_xy)
    return origin_targets, dest_targets, candidates, distance


ZONE_HEADER = ["code", "x", "y", "total"] + [f"b{i}" for i in range(8)]


@pytest.fixture
def write_zone_csv():
    """Write a zone totals CSV; each row is (code, x, y, {band: count})."""

    def _write(path, rows, header=ZONE_HEADER):
        lines = [",".join(header)]
        for code, x, y, bands in rows:
            counts = [str(bands.get(b, 0)) for b in range(8)]
            total = sum(int(c) for c in counts)
            lines.append(",".join([str(code), str(x), str(y), str(total)] + counts))
        path.write_text("\n".join(lines) + "\n")
        return path

    return _write


@pytest.fixture
def commute_tables(tmp_path, write_zone_csv):
    """
    Four origins and two destinations with counts in the 2-5 km band.
    D1 can draw on O1 (3 km) and O2 (4 km); D2 only on O3 (3 km); O4 is out of range.
    """
    origins = write_zone_csv(
        tmp_path / "origins.csv",
        [
            ("O1", 3000, 0, {1: 3}),
            ("O2", 0, 4000, {1: 2}),
            ("O3", 13000, 0, {1: 4, 3: 5}),
            ("O4", 50000, 0, {1: 1}),
        ],
    )
    destinations = write_zone_csv(
        tmp_path / "destinations.csv",
        [
            ("D1", 0, 0, {1: 5, 3: 2}),
            ("D2", 10000, 0, {1: 4}),
        ],
    )
    return origins, destinations
