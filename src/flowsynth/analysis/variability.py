from __future__ import annotations

from typing import Sequence

import numpy as np
import pandas as pd

from flowsynth.core.candidates import CandidateOrigins


def flow_variability(
    matrices: Sequence[np.ndarray],
    candidates: CandidateOrigins,
) -> tuple[pd.DataFrame, float]:
    """
    Spread of synthesized counts across repeated runs, for every admissible
    (origin, destination) pair.

    Pairs that stayed empty in every run are dropped. Returns the per-pair
    table and the mean of std/mean over the remaining pairs.

    std is the spread of the absolute deviations from the mean,
    sqrt(mean(|x - m|^2) - mean(|x - m|)^2), not the usual standard
    deviation.
    """
    if len(matrices) == 0:
        raise ValueError("need at least one run")

    pairs = candidates.pairs()
    o_idx = np.array([p[0] for p in pairs], dtype=np.int64)
    d_idx = np.array([p[1] for p in pairs], dtype=np.int64)

    # (runs, pairs)
    flows = np.stack([np.asarray(m)[o_idx, d_idx] for m in matrices]).astype(float)

    df = pd.DataFrame({"origin": o_idx, "destination": d_idx})
    for r in range(flows.shape[0]):
        df[f"run_{r}"] = flows[r].astype(np.int64)
    mean = flows.mean(axis=0)
    dev = np.abs(flows - mean)
    spread = (dev ** 2).mean(axis=0) - dev.mean(axis=0) ** 2
    df["mean"] = mean
    df["std"] = np.sqrt(np.maximum(spread, 0.0))

    df = df[flows.sum(axis=0) > 0].reset_index(drop=True)
    if len(df) == 0:
        return df, 0.0

    scaled = float((df["std"] / df["mean"]).mean())
    return df, scaled
