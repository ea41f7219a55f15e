import argparse
import json
import signal
from datetime import datetime
from pathlib import Path

import numpy as np

from flowsynth.data.zone_table import band_index, band_label, load_zone_table
from flowsynth.export.flow_export import (
    write_flow_pairs,
    write_flows_in_range,
    write_zone_flow_errors,
)
from flowsynth.pipeline import prepare_band, synthesize
from flowsynth.run_config import load_config, run_settings
from flowsynth.viz.iteration_recorder import IterationRecorder, console_reporter

"""
Synthesize commuter OD flows for one distance band.

example usage from repo root:
python3 scripts/run_synth_flow.py --config config.yaml --band 10_20km --seed 1
"""


def _update_latest_manifest(outputs_root: Path, key: str, folder_name: str):
    manifest_path = outputs_root / "latest.json"
    if manifest_path.exists():
        latest = json.loads(manifest_path.read_text())
    else:
        latest = {}
    latest[key] = folder_name
    manifest_path.write_text(json.dumps(latest, indent=2))
    print(f"Updated {manifest_path}")


def run_synth_flow(cfg: dict, band=None, seed=None):
    settings = run_settings(cfg)
    if band is not None:
        settings.band = band_index(int(band) if str(band).isdigit() else band)
    if seed is not None:
        settings.seed = int(seed)

    label = band_label(settings.band)

    print("[synthflow] reading zone tables...", flush=True)
    destinations = load_zone_table(settings.destination_table, settings.destination_code_field)
    origins = load_zone_table(settings.origin_table, settings.origin_code_field)

    inputs = prepare_band(origins, destinations, settings)
    print(f"[synthflow] band {label}: searched range {inputs.min_distance / 1000:.1f} to {inputs.max_distance / 1000:.1f} km")
    print(f"[synthflow] candidate OD pairs in range: {inputs.candidates.total_pairs()}")

    run_id = datetime.now().strftime("%Y%m%d_%H%M%S")
    folder_name = f"synthflow_{label}_{run_id}"
    run_dir = settings.outputs_dir / folder_name
    run_dir.mkdir(parents=True, exist_ok=True)

    if settings.write_flows_in_range:
        path = write_flows_in_range(run_dir / f"flows_in_range_{label}.csv", inputs.candidates, origins, destinations)
        print(f"[synthflow] wrote {path}")

    recorder = None
    reporter = console_reporter()
    if settings.write_diagnostics:
        recorder = IterationRecorder(run_dir=run_dir, title=f"Synthetic flows [{label}]")

    def on_pass(report, counts):
        reporter(report, counts)
        if recorder is not None:
            recorder(report, counts)

    # Ctrl-C stops at the next pass boundary
    stop_requested = False

    def _request_stop(signum, frame):
        nonlocal stop_requested
        if stop_requested:
            raise KeyboardInterrupt
        stop_requested = True
        print("[synthflow] stop requested; finishing current pass...", flush=True)

    previous = signal.signal(signal.SIGINT, _request_stop)

    print(f"[synthflow] generating initial population (seed = {settings.seed})...", flush=True)
    rng = np.random.default_rng(settings.seed)
    try:
        pop, result = synthesize(
            inputs,
            rng,
            cfg=settings.convergence,
            reshuffle_per_worker=settings.reshuffle_per_worker,
            on_pass=on_pass,
            should_stop=lambda: stop_requested,
        )
    finally:
        signal.signal(signal.SIGINT, previous)

    s = pop.summary
    for d in s.skipped:
        print(f"[synthflow] warning: skipping destination {d} ({destinations.codes[d]}): no origins within range")
    print(
        f"[synthflow] destinations skipped (no origins in range): "
        f"{s.skipped_destinations}/{s.destinations} ({100.0 * s.skipped_fraction:.1f}%)"
    )
    print(f"[synthflow] synthesized working population: {s.population}")
    print(
        f"[synthflow] census totals: destinations={int(inputs.dest_targets.sum())} "
        f"origins={int(inputs.origin_targets.sum())}"
    )
    print(f"[synthflow] stopped ({result.stop_reason}) after {result.passes} passes, {result.total_switches} switches")

    matrix = pop.to_flow_matrix(len(origins), len(destinations))
    arcgis, qgis = write_flow_pairs(matrix, origins, destinations, run_dir / f"flow_matrix_{label}")
    print(f"[synthflow] wrote {arcgis}")
    print(f"[synthflow] wrote {qgis}")

    if settings.write_zone_errors:
        path = write_zone_flow_errors(run_dir / f"zone_flow_errors_{label}.csv", pop.counts, origins)
        print(f"[synthflow] wrote {path}")

    if recorder is not None:
        recorder.write_table()
        recorder.write_plot()
        recorder.write_manifest(
            band=label,
            seed=settings.seed,
            population=s.population,
            skipped_destinations=s.skipped_destinations,
            skipped_destination_codes=[destinations.codes[d] for d in s.skipped],
            stop_reason=result.stop_reason,
        )

    _update_latest_manifest(settings.outputs_dir, f"synthflow_{label}", folder_name)
    print("Saved:", run_dir)
    return run_dir


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--config", default="config.yaml")
    ap.add_argument("--band", default=None, help="Distance band index (0-7) or label, e.g. 10_20km.")
    ap.add_argument("--seed", type=int, default=None)
    args = ap.parse_args()

    cfg = load_config(args.config)
    run_synth_flow(cfg, band=args.band, seed=args.seed)


if __name__ == "__main__":
    main()
