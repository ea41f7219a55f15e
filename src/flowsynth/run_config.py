from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from flowsynth.core.population import ConvergenceConfig
from flowsynth.data.zone_table import band_index


@dataclass
class RunSettings:
    origin_table: Path
    destination_table: Path
    origin_code_field: int = 0
    destination_code_field: int = 0

    band: int = 3
    seed: int = 1
    reshuffle_per_worker: bool = True

    # optional overrides of the band's distance limits (metres)
    min_distance: Optional[float] = None
    max_distance: Optional[float] = None

    outputs_dir: Path = Path("outputs")
    write_flows_in_range: bool = False
    write_zone_errors: bool = True
    write_diagnostics: bool = True

    repeat_runs: int = 20

    convergence: ConvergenceConfig = field(default_factory=ConvergenceConfig)


def load_config(path: str | Path) -> dict:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Missing config at {path}")
    with path.open("r") as f:
        return yaml.safe_load(f) or {}


def _opt_int(v) -> Optional[int]:
    return None if v is None else int(v)


def _opt_float(v) -> Optional[float]:
    return None if v is None else float(v)


def run_settings(cfg: dict) -> RunSettings:
    """Build typed settings from the nested config dict (see config.yaml)."""
    data = cfg.get("data", {}) or {}
    synth = cfg.get("synth", {}) or {}
    conv = synth.get("convergence", {}) or {}
    paths = cfg.get("paths", {}) or {}
    output = cfg.get("output", {}) or {}

    origin_table = data.get("origin_table")
    destination_table = data.get("destination_table")
    if not origin_table or not destination_table:
        raise KeyError("Config needs data.origin_table and data.destination_table.")

    return RunSettings(
        origin_table=Path(origin_table).expanduser(),
        destination_table=Path(destination_table).expanduser(),
        origin_code_field=int(data.get("origin_code_field", 0)),
        destination_code_field=int(data.get("destination_code_field", 0)),
        band=band_index(synth.get("band", 3)),
        seed=int(synth.get("seed", 1)),
        reshuffle_per_worker=bool(synth.get("reshuffle_per_worker", True)),
        min_distance=_opt_float(synth.get("min_distance")),
        max_distance=_opt_float(synth.get("max_distance")),
        outputs_dir=Path(paths.get("outputs_dir", "outputs")).expanduser(),
        write_flows_in_range=bool(output.get("flows_in_range", False)),
        write_zone_errors=bool(output.get("zone_errors", True)),
        write_diagnostics=bool(output.get("diagnostics", True)),
        repeat_runs=int(synth.get("repeat_runs", 20)),
        convergence=ConvergenceConfig(
            policy=str(conv.get("policy", "proportional")),
            max_stable_passes=_opt_int(conv.get("max_stable_passes")),
            max_passes=_opt_int(conv.get("max_passes")),
        ),
    )
