from __future__ import annotations

import logging
from typing import List, Optional, Sequence

import numpy as np

from rt_stats import (
    Run,
    StatRow,
    TrendPoint,
)


SEGMENT_COLOR = "C0"
RUN_COLOR = "tab:green"
BELOW_COLOR = "tab:red"
THRESHOLD_STYLE = (0, (6, 4))

_MATPLOTLIB_STYLE_READY = False


def _ensure_matplotlib_style(plt) -> None:
    global _MATPLOTLIB_STYLE_READY
    if not _MATPLOTLIB_STYLE_READY:
        try:
            plt.style.use("ggplot")
        except OSError:
            pass
        _MATPLOTLIB_STYLE_READY = True


def _import_pyplot():
    try:
        import matplotlib
        matplotlib.use("Agg")
        import matplotlib.pyplot as plt
    except Exception as exc:  # pragma: no cover
        raise RuntimeError("matplotlib is required for plotting. Install with: pip install matplotlib") from exc
    _ensure_matplotlib_style(plt)
    return plt


def _plot_trend(
    series: Sequence[TrendPoint],
    out_png: str,
    title: str = "Full-run probability",
    threshold: Optional[float] = None,
    ylog: bool = False,
) -> bool:
    if not series:
        logging.warning("Trend series empty; skipping plot generation.")
        return False

    plt = _import_pyplot()

    xs = np.asarray([p.x for p in series], dtype=np.float64)
    ys = np.asarray([p.y * 100.0 for p in series], dtype=np.float64)

    fig, ax = plt.subplots(figsize=(12, 6))
    ax.plot(xs, ys, color=SEGMENT_COLOR, linewidth=1.8, marker="o", markersize=3, label="Composite")
    if threshold is not None:
        ax.axhline(threshold * 100.0, linestyle=THRESHOLD_STYLE, color="0.4", linewidth=1.0, label="Threshold")

    ax.set_xlabel("Batch")
    ax.set_ylabel("Probability (%)")
    if ylog:
        positive = ys[ys > 0]
        ymin = max(positive.min() * 0.8 if positive.size else 1e-3, 1e-3)
        ax.set_yscale("log")
        ax.set_ylim(bottom=ymin)
    else:
        top = float(np.max(ys)) if ys.size else 1.0
        ax.set_ylim(0, max(top * 1.1, 1.0))
    ax.set_title(title)
    ax.grid(True, which="both", axis="both", linestyle=":", alpha=0.6)
    ax.legend(loc="upper left")

    fig.tight_layout()
    fig.savefig(out_png, dpi=150)
    plt.close(fig)
    logging.info("Wrote plot: %s", out_png)
    return True


def _plot_segment_rates(
    rows: Sequence[StatRow],
    runs: Sequence[Run],
    run_rows: Sequence[StatRow],
    out_png: str,
    threshold: float,
    title: str = "Segment success rates",
) -> bool:
    if not rows:
        logging.warning("No segments; skipping rate plot.")
        return False

    plt = _import_pyplot()

    rates = np.asarray([r.rate for r in rows], dtype=np.float64)
    idx = np.arange(len(rows), dtype=np.float64)
    colors: List[str] = [SEGMENT_COLOR if r.attempts > 0 else "0.7" for r in rows]

    fig, ax = plt.subplots(figsize=(max(8, 0.6 * len(rows) + 4), 6))
    ax.bar(idx, rates, color=colors, width=0.7, label="Segment rate")

    # Runs drawn as brackets above the bars they span.
    top = max(float(np.max(rates)) if rates.size else 0.0, 100.0)
    for level, (run, row) in enumerate(zip(runs, run_rows)):
        y = top + 4.0 + 3.0 * (level % 4)
        color = RUN_COLOR if run.prob >= threshold else BELOW_COLOR
        ax.plot([run.start - 0.35, run.end + 0.35], [y, y], color=color, linewidth=2.0)
        ax.text(
            0.5 * (run.start + run.end),
            y + 0.5,
            f"{row.name} • {row.rate:.1f}%",
            fontsize=7,
            color=color,
            ha="center",
            va="bottom",
        )

    ax.set_xticks(idx)
    ax.set_xticklabels([r.name for r in rows], rotation=45, ha="right")
    ax.set_ylabel("Success rate (%)")
    ax.set_ylim(0, top + 18.0)
    ax.set_title(f"{title} — threshold {threshold * 100.0:.1f}%")
    ax.legend(loc="upper right")

    fig.tight_layout()
    fig.savefig(out_png, dpi=150)
    plt.close(fig)
    logging.info("Wrote plot: %s", out_png)
    return True
