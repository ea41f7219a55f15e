from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np

from flowsynth.core.candidates import CandidateOrigins, DistanceLookup
from flowsynth.core.population import ConvergenceConfig, ConvergenceResult, PassCallback, Population
from flowsynth.data.zone_table import ZoneTable, band_limits
from flowsynth.run_config import RunSettings


@dataclass
class BandInputs:
    origin_targets: np.ndarray
    dest_targets: np.ndarray
    candidates: CandidateOrigins
    distance: DistanceLookup
    min_distance: float
    max_distance: float


def prepare_band(origins: ZoneTable, destinations: ZoneTable, settings: RunSettings) -> BandInputs:
    """Targets, candidate origins and distance lookup for the selected distance band."""
    lo, hi = band_limits(settings.band)
    lo = settings.min_distance if settings.min_distance is not None else lo
    hi = settings.max_distance if settings.max_distance is not None else hi

    origin_targets = origins.targets(settings.band)
    dest_targets = destinations.targets(settings.band)

    candidates = CandidateOrigins.from_coordinates(
        origins.coords(),
        destinations.coords(),
        min_distance=lo,
        max_distance=hi,
        origin_targets=origin_targets,
    )
    distance = DistanceLookup(origins.coords(), destinations.coords())

    return BandInputs(
        origin_targets=origin_targets,
        dest_targets=dest_targets,
        candidates=candidates,
        distance=distance,
        min_distance=float(lo),
        max_distance=float(hi),
    )


def synthesize(
    inputs: BandInputs,
    rng: np.random.Generator,
    *,
    cfg: ConvergenceConfig | None = None,
    reshuffle_per_worker: bool = True,
    on_pass: Optional[PassCallback] = None,
    should_stop: Optional[Callable[[], bool]] = None,
) -> tuple[Population, ConvergenceResult]:
    pop = Population(
        inputs.dest_targets,
        inputs.origin_targets,
        inputs.candidates,
        rng,
        reshuffle_per_worker=reshuffle_per_worker,
    )
    result = pop.converge(inputs.distance, cfg, on_pass=on_pass, should_stop=should_stop)
    return pop, result
