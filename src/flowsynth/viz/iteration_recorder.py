from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict

import numpy as np
import pandas as pd
import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt

from flowsynth.core.population import PassReport
from flowsynth.core.running_counts import RunningCounts


def console_reporter(tag: str = "synthflow"):
    """on_pass callback that prints one progress line per report."""

    def _report(report: PassReport, counts: RunningCounts) -> None:
        s = report.statistics
        if report.phase == "initial":
            print(
                f"[{tag}] initial mean distance={report.mean_distance:.0f} "
                f"worst mismatch={report.worst_mismatch:.4f} (mean diff={s.mean_difference:.4f})",
                flush=True,
            )
        elif report.phase == "pass":
            print(
                f"[{tag}] step={report.iteration} switches={report.switches} "
                f"mean distance={report.mean_distance:.0f} "
                f"worst mismatch={report.worst_mismatch:.4f} (mean diff={s.mean_difference:.4f})",
                flush=True,
            )
        elif report.phase == "stable":
            print(f"[{tag}] population stable? ({report.stable_percent}%)", flush=True)
        else:
            if report.stop_reason in ("", "stable"):
                head = f"stable after {report.iteration} steps"
            else:
                head = f"stopped ({report.stop_reason}) after {report.iteration} steps"
            print(
                f"[{tag}] {head}; "
                f"area mismatches range from {s.min_mismatch:f} to {s.max_mismatch:f}",
                flush=True,
            )

    return _report


class IterationRecorder:
    """
    Collects convergence diagnostics and writes them to:
      <run_dir>/diagnostics/
        diag_iterations_table.csv
        convergence.png
        manifest.json

    The table has two header rows (area index, area target), one row per
    recorded pass (worst mismatch, mean difference, per-area differences)
    and a closing row of per-area scaled mismatches.

    Pass an instance as the on_pass callback of Population.converge().
    """

    def __init__(
        self,
        *,
        run_dir: Path,
        title: str = "",
        record_differences: bool = True,
        dpi: int = 120,
        figsize: tuple[float, float] = (8.0, 5.0),
    ):
        self.run_dir = Path(run_dir)
        self.title = title or "Synthetic flow convergence"
        self.record_differences = bool(record_differences)
        self.dpi = dpi
        self.figsize = figsize

        self.diag_dir = self.run_dir / "diagnostics"
        self.diag_dir.mkdir(parents=True, exist_ok=True)

        self.rows: list[Dict[str, Any]] = []
        self._differences: list[np.ndarray] = []
        self._targets: np.ndarray | None = None
        self._final_mismatches: np.ndarray | None = None

    def __call__(self, report: PassReport, counts: RunningCounts) -> None:
        self.record(report, counts)

    def record(self, report: PassReport, counts: RunningCounts) -> None:
        # progress pings carry nothing new for the table
        if report.phase == "stable":
            return
        if self._targets is None:
            self._targets = np.asarray(counts.targets).copy()

        s = report.statistics
        self.rows.append(
            {
                "phase": report.phase,
                "iteration": int(report.iteration),
                "switches": int(report.switches),
                "mean_distance": float(report.mean_distance),
                "worst_mismatch": float(report.worst_mismatch),
                "min_mismatch": float(s.min_mismatch),
                "max_mismatch": float(s.max_mismatch),
                "mean_difference": float(s.mean_difference),
            }
        )
        if self.record_differences:
            self._differences.append(counts.differences().copy())
        if report.phase == "final":
            self._final_mismatches = counts.mismatches()

    def history(self) -> pd.DataFrame:
        return pd.DataFrame(self.rows)

    def write_table(self) -> Path:
        out_path = self.diag_dir / "diag_iterations_table.csv"
        if self._targets is None:
            raise ValueError("nothing recorded yet")

        n = self._targets.shape[0]
        lines: list[list[str]] = [
            ["Area Index:", ""] + [str(i) for i in range(n)],
            ["Area Target Count:", ""] + [str(int(t)) for t in self._targets],
        ]
        for i, row in enumerate(self.rows):
            diffs = self._differences[i] if self.record_differences else []
            lines.append(
                [repr(row["worst_mismatch"]), repr(row["mean_difference"])]
                + [str(int(d)) for d in diffs]
            )
        if self._final_mismatches is not None:
            lines.append(["Scaled mismatches:", ""] + [f"{m:.3f}" for m in self._final_mismatches])
            last = self.rows[-1]
            lines.append([
                f"Individual area mismatches range from {last['min_mismatch']:f} to {last['max_mismatch']:f}"
            ])

        out_path.write_text("\n".join(",".join(line) for line in lines) + "\n")
        return out_path

    def write_plot(self) -> Path:
        out_path = self.diag_dir / "convergence.png"
        df = self.history()
        df = df[df["phase"] != "final"] if len(df) > 1 else df

        fig, ax = plt.subplots(figsize=self.figsize)
        ax.plot(df["iteration"], df["worst_mismatch"], label="worst mismatch", color="tab:red")
        ax.plot(df["iteration"], df["mean_difference"], label="mean |difference|", color="tab:blue")
        ax.set_xlabel("pass")
        ax.set_yscale("symlog", linthresh=1e-2)
        ax.set_title(self.title)

        ax2 = ax.twinx()
        ax2.plot(df["iteration"], df["mean_distance"], label="mean distance", color="tab:gray", linestyle="--")
        ax2.set_ylabel("mean distance")

        handles = ax.get_legend_handles_labels()[0] + ax2.get_legend_handles_labels()[0]
        ax.legend(handles=handles, loc="upper right", fontsize=8)

        fig.tight_layout()
        fig.savefig(out_path, dpi=self.dpi)
        plt.close(fig)
        return out_path

    def write_manifest(self, **extra: Any) -> Path:
        manifest = {
            "title": self.title,
            "table": "diag_iterations_table.csv",
            "plot": "convergence.png",
            "passes": self.rows,
        }
        manifest.update(extra)
        out_path = self.diag_dir / "manifest.json"
        out_path.write_text(json.dumps(manifest, indent=2))
        return out_path
