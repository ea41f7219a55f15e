from __future__ import annotations
import argparse
from pathlib import Path

from flowsynth.run_config import load_config

def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--config", type=str, default="config.yaml")
    args = ap.parse_args()

    cfg = load_config(Path(args.config))

    algo = (cfg.get("run", {}) or {}).get("algo", "synth_flow")
    if algo == "synth_flow":
        from run_synth_flow import run_synth_flow
        run_synth_flow(cfg)
    elif algo == "repeat_runs":
        from run_repeat_runs import run_repeat_runs
        run_repeat_runs(cfg)
    else:
        raise ValueError(f"Unknown algo: {algo}")

if __name__ == "__main__":
    main()
