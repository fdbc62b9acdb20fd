from __future__ import annotations

# CLI orchestration for the run tracker. The engines live in rt_stats (core)
# and rt_plotting (matplotlib).

from rt_stats import *  # type: ignore
from rt_stats import (
    _StageProfiler,
    _fmt_pct,
    _load_stats_config,
    _require_dependency,
    _setup_logging,
)
import csv
import json
import sys
from pathlib import Path

from rt_plotting import (
    _plot_segment_rates,
    _plot_trend,
)

try:
    import typer
except Exception:  # pragma: no cover
    typer = None  # type: ignore


VIEW_NAMES = ("overall", "latest", "trend", "daily")


def _report_rows(report: StatsReport) -> List[List[Any]]:
    rows: List[List[Any]] = []
    for view_name in VIEW_NAMES:
        view: StatsView = getattr(report, view_name)
        for kind, items in (("segment", view.segments), ("run", view.runs)):
            for row in items:
                rows.append([
                    view_name,
                    kind,
                    row.name,
                    row.attempts,
                    row.passes,
                    row.rate,
                    row.diff_text or "",
                ])
    for cp in report.chokepoints:
        rows.append([
            "chokepoints",
            "point",
            f"{_fmt_pct(cp.point_pct)}%",
            cp.samples,
            cp.passes,
            cp.rate,
            "",
        ])
    return rows


def _view_to_json(view: StatsView) -> Dict[str, Any]:
    def _rows(items: Sequence[StatRow]) -> List[Dict[str, Any]]:
        out = []
        for row in items:
            entry: Dict[str, Any] = {
                "name": row.name,
                "attempts": row.attempts,
                "passes": row.passes,
                "rate": row.rate,
            }
            if row.diff_text is not None:
                entry["diffText"] = row.diff_text
            out.append(entry)
        return out

    return {"segments": _rows(view.segments), "runs": _rows(view.runs)}


def _report_to_json(report: StatsReport) -> Dict[str, Any]:
    data: Dict[str, Any] = {name: _view_to_json(getattr(report, name)) for name in VIEW_NAMES}
    data["runs"] = [{"start": r.start, "end": r.end, "prob": r.prob} for r in report.runs]
    data["trend_series"] = [{"x": p.x, "y": p.y} for p in report.trend_series]
    data["chokepoints"] = [
        {
            "point": cp.point_pct,
            "fails": cp.fails,
            "passes": cp.passes,
            "rate": cp.rate,
        }
        for cp in report.chokepoints
    ]
    return data


def _sibling_path(output: str, suffix: str) -> str:
    if output.lower().endswith(".csv"):
        return output[:-4] + suffix
    return output + suffix


def _run_stats(
    state_path: str,
    output: str,
    threshold_text: Optional[str],
    day: Optional[str],
    verbose: bool,
    cap: Optional[int] = None,
    trend_last_k: Optional[int] = None,
    excluded_starts: Sequence[float] = (),
    config_path: Optional[str] = None,
    log_file: Optional[str] = None,
    png: Optional[str] = None,
    no_plot: bool = False,
    ylog_trend: bool = False,
    json_sidecar: bool = False,
    profile: bool = False,
) -> int:
    _setup_logging(verbose, log_file=log_file)
    profiler = _StageProfiler(profile)

    cfg = StatsConfig()
    if config_path:
        try:
            cfg = _load_stats_config(config_path, cfg)
        except (OSError, ValueError) as exc:
            logging.error("Unable to read config '%s': %s", config_path, exc)
            return 2
    if cap is not None:
        if cap <= 0:
            logging.error("cap must be positive (got %s)", cap)
            return 2
        cfg.cap = cap
    if trend_last_k is not None:
        cfg.trend_last_k = trend_last_k
    if excluded_starts:
        cfg.excluded_starts = frozenset(cfg.excluded_starts | {float(s) for s in excluded_starts})

    try:
        threshold = parse_threshold(threshold_text, default=parse_threshold(cfg.threshold_pct))
    except ValueError as exc:
        logging.error(str(exc))
        return 2

    state = load_state(state_path)
    profiler.lap("load")
    if not state.segments:
        logging.error("No segments defined in %s; nothing to compute.", state_path)
        return 3

    selected_day = day or state.current_day
    report = compute_stats(
        state.segments,
        state.batch_log,
        threshold=threshold,
        day=selected_day,
        config=cfg,
    )
    profiler.lap("stats")

    with open(output, "w", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(["view", "kind", "name", "attempts", "passes", "rate", "diff"])
        writer.writerows(_report_rows(report))
    logging.info("Wrote: %s", output)
    profiler.lap("csv")

    for row in report.overall.runs:
        logging.info("Run %-16s %5.1f%%", row.name, row.rate)

    if json_sidecar:
        json_path = _sibling_path(output, ".json")
        try:
            meta = {
                "command": "stats",
                "state": state_path,
                "output_csv": output,
                "n_segments": len(state.segments),
                "n_batches": len(state.batch_log),
                "selected_day": report.selected_day,
                "previous_day": report.previous_day,
                "params": {
                    "threshold": report.threshold,
                    "cap": cfg.cap,
                    "trend_last_k": cfg.trend_last_k,
                    "excluded_starts": sorted(cfg.excluded_starts),
                    "start_threshold_offset": cfg.start_threshold_offset,
                    "kernel_front_fraction": cfg.kernel_front_fraction,
                    "kernel_front_mass": cfg.kernel_front_mass,
                },
            }
            with open(json_path, "w", encoding="utf-8") as jf:
                json.dump({"meta": meta, "stats": _report_to_json(report)}, jf, indent=2)
            logging.info("Wrote JSON: %s", json_path)
        except (OSError, TypeError, ValueError) as exc:
            logging.warning("Failed to write JSON sidecar: %s", exc)

    if not no_plot:
        trend_png = png or _sibling_path(output, "_trend.png")
        rates_png = _sibling_path(output, "_rates.png")
        try:
            _plot_trend(report.trend_series, trend_png, threshold=report.threshold, ylog=ylog_trend)
            _plot_segment_rates(
                report.overall.segments,
                report.runs,
                report.overall.runs,
                rates_png,
                report.threshold,
            )
        except RuntimeError as exc:
            logging.warning("Plotting skipped: %s", exc)
        profiler.lap("plot")

    return 0


def _run_add(
    state_path: str,
    tokens: Sequence[str],
    text_file: Optional[str],
    day: Optional[str],
    verbose: bool,
    log_file: Optional[str] = None,
) -> int:
    _setup_logging(verbose, log_file=log_file)
    chunks: List[str] = [str(t) for t in tokens]
    if text_file:
        try:
            if text_file == "-":
                chunks.append(sys.stdin.read())
            else:
                chunks.append(Path(text_file).expanduser().read_text(encoding="utf-8"))
        except OSError as exc:
            logging.error("Unable to read attempts from '%s': %s", text_file, exc)
            return 2

    records = parse_attempt_text("\n".join(chunks))
    if not records:
        logging.error("No valid attempt lines found; nothing added.")
        return 3

    state = load_state(state_path)
    state = add_batch(state, records, day=day)
    save_state(state_path, state)
    total = sum(r.count for r in records)
    logging.info(
        "Added batch #%d (%d records, %d attempts%s) to %s",
        len(state.batch_log) - 1,
        len(records),
        total,
        f", day {day}" if day else "",
        state_path,
    )
    return 0


def _run_segments(state_path: str, tokens: Sequence[str], verbose: bool) -> int:
    _setup_logging(verbose)
    try:
        segments = [parse_segment_token(tok) for tok in tokens]
    except ValueError as exc:
        logging.error(str(exc))
        return 2
    state = replace_segments(load_state(state_path), segments)
    save_state(state_path, state)
    logging.info("Saved %d segments to %s", len(segments), state_path)
    return 0


def _run_drop_batch(state_path: str, index: int, verbose: bool) -> int:
    _setup_logging(verbose)
    state = load_state(state_path)
    try:
        state = delete_batch(state, index)
    except IndexError as exc:
        logging.error(str(exc))
        return 2
    save_state(state_path, state)
    logging.info("Dropped batch %d; %d batches remain", index, len(state.batch_log))
    return 0


def _build_typer_app():  # pragma: no cover
    app = typer.Typer(add_completion=False, help="Segment success rates and threshold runs from attempt logs.")

    @app.command()
    def stats(
        state: str = typer.Argument(..., help="Path to the tracker state JSON"),
        output: str = typer.Option("stats.csv", "--output", "-o", help="Output CSV path"),
        threshold: Optional[str] = typer.Option(None, "--threshold", "-t", help="Run threshold in percent (default 10)"),
        day: Optional[str] = typer.Option(None, "--day", help="Day tag for the daily view (defaults to the current day)"),
        cap: Optional[int] = typer.Option(None, "--cap", help="Attempts per recency window (default 100)"),
        trend_last: Optional[int] = typer.Option(None, "--trend-last", help="Only emit the most recent N trend points"),
        exclude_start: List[float] = typer.Option([], "--exclude-start", help="Ignore records starting at this percent (repeatable)"),
        config: Optional[str] = typer.Option(None, "--config", help="Path to JSON overriding stats settings"),
        verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
        log_file: Optional[str] = typer.Option(None, "--log-file", help="Optional log file path for diagnostics"),
        png: Optional[str] = typer.Option(None, "--png", help="Optional trend PNG path (defaults next to CSV)"),
        no_plot: bool = typer.Option(False, "--no-plot", help="Disable PNG generation"),
        ylog_trend: bool = typer.Option(False, "--ylog-trend/--no-ylog-trend", help="Use log scale on the trend Y axis"),
        json_sidecar: bool = typer.Option(False, "--json/--no-json", help="Write JSON report next to the CSV"),
        profile: bool = typer.Option(False, "--profile/--no-profile", help="Log stage timings"),
    ) -> None:
        """Compute overall, latest, trend and daily views."""
        code = _run_stats(
            state,
            output,
            threshold,
            day,
            verbose,
            cap=cap,
            trend_last_k=trend_last,
            excluded_starts=exclude_start,
            config_path=config,
            log_file=log_file,
            png=png,
            no_plot=no_plot,
            ylog_trend=ylog_trend,
            json_sidecar=json_sidecar,
            profile=profile,
        )
        if code != 0:
            raise typer.Exit(code)

    @app.command()
    def add(
        state: str = typer.Argument(..., help="Path to the tracker state JSON"),
        attempts: List[str] = typer.Argument(None, help="Attempt tokens like 10%-40%x3 or 55%x2"),
        text_file: Optional[str] = typer.Option(None, "--from", help="Read attempt lines from a file ('-' for stdin)"),
        day: Optional[str] = typer.Option(None, "--day", help="Day tag for this batch"),
        verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
        log_file: Optional[str] = typer.Option(None, "--log-file", help="Optional log file path"),
    ) -> None:
        """Append one batch of attempts."""
        code = _run_add(state, attempts or [], text_file, day, verbose, log_file=log_file)
        if code != 0:
            raise typer.Exit(code)

    @app.command()
    def segments(
        state: str = typer.Argument(..., help="Path to the tracker state JSON"),
        tokens: List[str] = typer.Argument(..., help="Segments as name:from-to, in order"),
        verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
    ) -> None:
        """Replace the segment list."""
        code = _run_segments(state, tokens, verbose)
        if code != 0:
            raise typer.Exit(code)

    @app.command(name="drop-batch")
    def drop_batch(
        state: str = typer.Argument(..., help="Path to the tracker state JSON"),
        index: int = typer.Argument(..., help="Batch index (negative counts from the newest)"),
        verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
    ) -> None:
        """Delete one batch wholesale."""
        code = _run_drop_batch(state, index, verbose)
        if code != 0:
            raise typer.Exit(code)

    @app.command()
    def runs(
        probabilities: List[float] = typer.Argument(..., help="Per-segment success probabilities in [0, 1]"),
        threshold: str = typer.Option("10", "--threshold", "-t", help="Run threshold in percent"),
    ) -> None:
        """Partition a probability vector into threshold runs."""
        try:
            thr = parse_threshold(threshold)
        except ValueError as exc:
            raise typer.BadParameter(str(exc)) from exc
        for run in schedule_runs(probabilities, thr):
            typer.echo(f"[{run.start}, {run.end}] {run.prob * 100.0:.2f}%")

    return app


def main_cli() -> int:
    try:
        _require_dependency(typer, "typer", "pip install typer")
    except RuntimeError as exc:
        print(exc, file=sys.stderr)
        return 2
    app = _build_typer_app()
    app()
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main_cli())
