from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import numpy as np
import pandas as pd

# Census commuting distance bands: (label, min metres, max metres)
DISTANCE_BANDS: list[tuple[str, int, int]] = [
    ("0_2km", 0, 2000),
    ("2_5km", 2000, 5000),
    ("5_10km", 5000, 10000),
    ("10_20km", 10000, 20000),
    ("20_30km", 20000, 30000),
    ("30_40km", 30000, 40000),
    ("40_60km", 40000, 60000),
    ("over_60km", 60000, 999500),
]
N_BANDS = len(DISTANCE_BANDS)


def band_index(band: int | str) -> int:
    if isinstance(band, str):
        labels = [b[0] for b in DISTANCE_BANDS]
        if band not in labels:
            raise KeyError(f"Unknown distance band '{band}'. Known: {labels}")
        return labels.index(band)
    b = int(band)
    if b < 0 or b >= N_BANDS:
        raise ValueError(f"distance band must be in [0, {N_BANDS}), got {b}")
    return b


def band_limits(band: int | str) -> tuple[int, int]:
    _, lo, hi = DISTANCE_BANDS[band_index(band)]
    return lo, hi


def band_label(band: int | str) -> str:
    return DISTANCE_BANDS[band_index(band)][0]


@dataclass
class ZoneTable:
    path: Path
    codes: list[str]
    x: np.ndarray  # (N,) int, population-weighted centroid easting
    y: np.ndarray  # (N,) int, northing
    band_counts: np.ndarray  # (N, N_BANDS) int

    def __len__(self) -> int:
        return len(self.codes)

    def coords(self) -> np.ndarray:
        return np.column_stack([self.x, self.y])

    def targets(self, band: int | str) -> np.ndarray:
        return self.band_counts[:, band_index(band)].copy()

    def total(self, band: int | str) -> int:
        return int(self.band_counts[:, band_index(band)].sum())


def load_zone_table(path: str | Path, code_field: int = 0) -> ZoneTable:
    """
    Read a zone totals CSV (one header row). Relative to code_field the
    columns are:
        +0 zone code, +1 easting, +2 northing, +3 (ignored), +4.. +11 band counts
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Missing zone table at {path}")

    df = pd.read_csv(path, dtype=str)
    need = code_field + 4 + N_BANDS
    if df.shape[1] < need:
        raise ValueError(f"{path} has {df.shape[1]} columns; need at least {need} for code_field={code_field}")

    cols = list(df.columns)
    codes = df[cols[code_field]].astype(str).tolist()

    try:
        x = np.floor(df[cols[code_field + 1]].astype(float).to_numpy() + 0.5).astype(np.int64)
        y = np.floor(df[cols[code_field + 2]].astype(float).to_numpy() + 0.5).astype(np.int64)
        band_cols = cols[code_field + 4: code_field + 4 + N_BANDS]
        counts = df[band_cols].astype(int).to_numpy(dtype=np.int64)
    except ValueError as e:
        raise ValueError(f"Unexpected field format in {path}: {e}") from e

    if counts.size and int(counts.min()) < 0:
        raise ValueError(f"{path} contains negative band counts")

    return ZoneTable(path=path, codes=codes, x=x, y=y, band_counts=counts)
