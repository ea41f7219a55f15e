from __future__ import annotations

from typing import Iterable, Sequence

import numpy as np


# ----------------------------
# Distance
# ----------------------------
def _as_int_coords(xy: np.ndarray, name: str) -> np.ndarray:
    arr = np.asarray(xy)
    if arr.ndim != 2 or arr.shape[1] != 2:
        raise ValueError(f"{name} must have shape (N, 2), got {arr.shape}")
    # halves round up
    return np.floor(arr.astype(float) + 0.5).astype(np.int64)


class DistanceLookup:
    """Squared straight-line distance between origin and destination centroids."""

    def __init__(self, origin_xy: np.ndarray, dest_xy: np.ndarray):
        o = _as_int_coords(origin_xy, "origin_xy")
        d = _as_int_coords(dest_xy, "dest_xy")
        # plain python ints keep the per-worker loop cheap
        self._ox = o[:, 0].tolist()
        self._oy = o[:, 1].tolist()
        self._dx = d[:, 0].tolist()
        self._dy = d[:, 1].tolist()

    @property
    def n_origins(self) -> int:
        return len(self._ox)

    @property
    def n_destinations(self) -> int:
        return len(self._dx)

    def distance_sq(self, origin: int, destination: int) -> int:
        dx = self._ox[origin] - self._dx[destination]
        dy = self._oy[origin] - self._dy[destination]
        return dx * dx + dy * dy

    def matrix(self) -> np.ndarray:
        """(n_origins, n_destinations) squared distances."""
        ox = np.asarray(self._ox, dtype=np.int64)[:, None]
        oy = np.asarray(self._oy, dtype=np.int64)[:, None]
        dx = np.asarray(self._dx, dtype=np.int64)[None, :]
        dy = np.asarray(self._dy, dtype=np.int64)[None, :]
        return (ox - dx) ** 2 + (oy - dy) ** 2


# ----------------------------
# Candidate origins per destination
# ----------------------------
class CandidateOrigins:
    """
    Admissible origin indices for each destination.

    indices() returns the stable (ascending) ordering; shuffled() returns a
    freshly permuted copy on every call.
    """

    def __init__(self, per_destination: Iterable[Iterable[int]], n_origins: int):
        self.n_origins = int(n_origins)
        lists: list[list[int]] = []
        for d, cands in enumerate(per_destination):
            row = [int(o) for o in cands]
            for o in row:
                if o < 0 or o >= self.n_origins:
                    raise ValueError(
                        f"destination {d}: candidate origin {o} outside [0, {self.n_origins})"
                    )
            lists.append(row)
        self._lists = lists

    @classmethod
    def from_coordinates(
        cls,
        origin_xy: np.ndarray,
        dest_xy: np.ndarray,
        min_distance: float,
        max_distance: float,
        origin_targets: Sequence[int] | None = None,
    ) -> "CandidateOrigins":
        """
        An origin is admissible for a destination when its centroid lies in
        [min_distance, max_distance] of the destination centroid and its
        target count is non-zero.
        """
        if min_distance < 0 or max_distance < min_distance:
            raise ValueError(f"bad distance range: [{min_distance}, {max_distance}]")

        dist = DistanceLookup(origin_xy, dest_xy)
        d2 = dist.matrix()
        ok = (d2 >= min_distance * min_distance) & (d2 <= max_distance * max_distance)

        if origin_targets is not None:
            t = np.asarray(origin_targets)
            if t.shape[0] != dist.n_origins:
                raise ValueError(
                    f"origin_targets length ({t.shape[0]}) != origin count ({dist.n_origins})"
                )
            ok &= (t > 0)[:, None]

        per_dest = [np.where(ok[:, d])[0].tolist() for d in range(dist.n_destinations)]
        return cls(per_dest, dist.n_origins)

    def __len__(self) -> int:
        return len(self._lists)

    def count(self, destination: int) -> int:
        return len(self._lists[destination])

    def indices(self, destination: int) -> list[int]:
        return list(self._lists[destination])

    def shuffled(self, destination: int, rng: np.random.Generator) -> list[int]:
        row = list(self._lists[destination])
        rng.shuffle(row)
        return row

    def total_pairs(self) -> int:
        return sum(len(row) for row in self._lists)

    def pairs(self) -> list[tuple[int, int]]:
        """All admissible (origin, destination) pairs, destination-major."""
        return [(o, d) for d, row in enumerate(self._lists) for o in row]
