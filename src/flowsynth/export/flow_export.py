from __future__ import annotations

from pathlib import Path

import numpy as np
import pandas as pd

from flowsynth.core.candidates import CandidateOrigins
from flowsynth.core.running_counts import RunningCounts
from flowsynth.data.zone_table import ZoneTable


def write_flow_pairs(
    matrix: np.ndarray,
    origins: ZoneTable,
    destinations: ZoneTable,
    stub: str | Path,
) -> tuple[Path, Path]:
    """
    Write non-zero OD cells twice:
      <stub>_ArcGIS.csv  one row per flow (ArcGIS "XY to Line")
      <stub>_QGIS.csv    two rows per flow, origin then destination point
    """
    matrix = np.asarray(matrix)
    if matrix.shape != (len(origins), len(destinations)):
        raise ValueError(f"matrix shape {matrix.shape} != ({len(origins)}, {len(destinations)})")

    stub = Path(stub)
    stub.parent.mkdir(parents=True, exist_ok=True)
    arcgis_path = stub.with_name(stub.name + "_ArcGIS.csv")
    qgis_path = stub.with_name(stub.name + "_QGIS.csv")

    o_idx, d_idx = np.nonzero(matrix)
    o_codes = np.asarray(origins.codes, dtype=object)[o_idx]
    d_codes = np.asarray(destinations.codes, dtype=object)[d_idx]
    flow_ids = [f"{o}{d}" for o, d in zip(o_codes, d_codes)]
    count = matrix[o_idx, d_idx]

    arcgis = pd.DataFrame({
        "FLOW_OA_WZ": flow_ids,
        "OA_Code": o_codes,
        "OA_PWC_X": origins.x[o_idx],
        "OA_PWC_Y": origins.y[o_idx],
        "WZ_Code": d_codes,
        "WZ_PWC_X": destinations.x[d_idx],
        "WZ_PWC_Y": destinations.y[d_idx],
        "Count": count,
    })
    arcgis.to_csv(arcgis_path, index=False)

    oa_rows = pd.DataFrame({
        "FLOW_OA_WZ": flow_ids,
        "OA_Code": o_codes,
        "WZ_Code": d_codes,
        "Count": count,
        "Zone_Type": "OA",
        "Zone_PWC_X": origins.x[o_idx],
        "Zone_PWC_Y": origins.y[o_idx],
    })
    wz_rows = oa_rows.assign(
        Zone_Type="WZ",
        Zone_PWC_X=destinations.x[d_idx],
        Zone_PWC_Y=destinations.y[d_idx],
    )
    # interleave so each flow's two points are adjacent
    qgis = pd.concat([oa_rows, wz_rows]).sort_index(kind="stable").reset_index(drop=True)
    qgis.to_csv(qgis_path, index=False)

    return arcgis_path, qgis_path


def write_zone_flow_errors(path: str | Path, counts: RunningCounts, origins: ZoneTable) -> Path:
    """Per-origin target vs synthesized count, for mapping the quality of a run."""
    if len(counts) != len(origins):
        raise ValueError(f"counts length ({len(counts)}) != origin zones ({len(origins)})")

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    df = pd.DataFrame({
        "OA_Index": np.arange(len(counts)),
        "OA_Code": origins.codes,
        "n_Target": counts.targets,
        "n_Actual": np.asarray(counts.counts),
        "Difference": counts.differences(),
        "Mismatch": counts.mismatches(),
    })
    df.to_csv(path, index=False, float_format="%.6f")
    return path


def write_flows_in_range(
    path: str | Path,
    candidates: CandidateOrigins,
    origins: ZoneTable,
    destinations: ZoneTable,
) -> Path:
    """Every admissible OD pair, whether or not a worker ends up using it."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    pairs = candidates.pairs()
    o_idx = np.array([p[0] for p in pairs], dtype=np.int64)
    d_idx = np.array([p[1] for p in pairs], dtype=np.int64)
    o_codes = np.asarray(origins.codes, dtype=object)[o_idx]
    d_codes = np.asarray(destinations.codes, dtype=object)[d_idx]

    df = pd.DataFrame({
        "FLOW_OA_WZ": [f"{o}{d}" for o, d in zip(o_codes, d_codes)],
        "OA11CD": o_codes,
        "OA_X": origins.x[o_idx],
        "OA_Y": origins.y[o_idx],
        "WZ11CD": d_codes,
        "WZ_X": destinations.x[d_idx],
        "WZ_Y": destinations.y[d_idx],
    })
    df.to_csv(path, index=False)
    return path
