import os
import json
import logging
import math
import re
import time
from dataclasses import dataclass, field, replace
from typing import Iterable, List, Optional, Tuple, Dict, Any, FrozenSet, Sequence, MutableMapping

import numpy as np


# -----------------
# Data structures
# -----------------

@dataclass(frozen=True)
class Segment:
    name: str
    from_pct: float
    to_pct: float


@dataclass(frozen=True)
class AttemptRecord:
    from_pct: float
    to_pct: float
    count: int


@dataclass(frozen=True)
class AttemptBatch:
    timestamp: float
    records: Tuple[AttemptRecord, ...]
    day: Optional[str] = None


@dataclass(frozen=True)
class Run:
    start: int
    end: int
    prob: float


@dataclass(frozen=True)
class WindowResult:
    attempts: int
    passes: int
    rate: float
    batches_used: int
    # Batches walked from the newest end, including ones with no matching attempts.
    batches_walked: int = 0


@dataclass(frozen=True)
class StatRow:
    name: str
    attempts: int
    passes: int
    rate: float
    diff: Optional[float] = None

    @property
    def diff_text(self) -> Optional[str]:
        if self.diff is None:
            return None
        return f"{self.diff:+.1f}"


@dataclass(frozen=True)
class StatsView:
    segments: List[StatRow]
    runs: List[StatRow]


@dataclass(frozen=True)
class TrendPoint:
    x: int
    y: float


@dataclass(frozen=True)
class Chokepoint:
    point_pct: float
    fails: int
    passes: int

    @property
    def samples(self) -> int:
        return self.fails + self.passes

    @property
    def rate(self) -> float:
        return _rate_pct(self.passes, self.samples)


@dataclass(frozen=True)
class StatsReport:
    threshold: float
    runs: List[Run]
    overall: StatsView
    latest: StatsView
    trend: StatsView
    daily: StatsView
    selected_day: Optional[str]
    previous_day: Optional[str]
    trend_series: List[TrendPoint]
    chokepoints: List[Chokepoint]


@dataclass(frozen=True)
class TrackerState:
    segments: Tuple[Segment, ...] = ()
    flat_attempt_log: Tuple[AttemptRecord, ...] = ()
    batch_log: Tuple[AttemptBatch, ...] = ()
    # day -> batch indices; rebuilt on every mutation, the batch day tags are authoritative.
    day_map: Dict[str, Any] = field(default_factory=dict)
    current_day: Optional[str] = None


@dataclass
class StatsConfig:
    cap: int = 100
    threshold_pct: float = 10.0
    trend_last_k: Optional[int] = None
    excluded_starts: FrozenSet[float] = frozenset()
    # A record counts toward chokepoints only when it gets past its start threshold.
    start_threshold_offset: float = 2.0
    start_thresholds: Dict[float, float] = field(default_factory=dict)
    kernel_front_fraction: float = 0.2
    kernel_front_mass: float = 0.8
    epsilon: float = 1e-12


DEFAULT_CAP = 100
DEFAULT_START_OFFSET = 2.0
DEFAULT_THRESHOLD = 0.10
PROB_EPSILON = 1e-12
COMPLETE_PCT = 100.0

KERNEL_FRONT_FRACTION = 0.2
KERNEL_FRONT_MASS = 0.8
KERNEL_P_LO = 0.01
KERNEL_P_HI = 10.0
KERNEL_BISECT_ITERS = 60


class _StageProfiler:
    def __init__(self, enabled: bool) -> None:
        self.enabled = enabled
        self._last = time.perf_counter()

    def lap(self, label: str) -> None:
        if not self.enabled:
            return
        now = time.perf_counter()
        logging.info("Profile %-18s %.3fs", label, now - self._last)
        self._last = now


# -----------------
# Formatting / parsing helpers
# -----------------

def _round1(value: float) -> float:
    # Half away from zero, so 12.25 -> 12.3 rather than banker's rounding.
    if not math.isfinite(value):
        return 0.0
    scaled = abs(value) * 10.0
    return math.copysign(math.floor(scaled + 0.5) / 10.0, value)


def _rate_pct(passes: float, attempts: float) -> float:
    if attempts <= 0:
        return 0.0
    return _round1(100.0 * passes / attempts)


def _fmt_pct(value: float) -> str:
    v = float(value)
    if math.isfinite(v) and v.is_integer():
        return str(int(v))
    return f"{v:g}"


def run_label(segments: Sequence[Segment], run: Run) -> str:
    return f"{_fmt_pct(segments[run.start].from_pct)}% - {_fmt_pct(segments[run.end].to_pct)}%"


def parse_threshold(text: Optional[Any], default: float = DEFAULT_THRESHOLD) -> float:
    """Convert a percentage input into a fraction in (0, 1].

    Empty or non-numeric input falls back to ``default``. A number that lands
    outside (0, 1] after conversion raises ``ValueError``.
    """
    if text is None:
        return default
    if isinstance(text, (int, float)) and not isinstance(text, bool):
        pct = float(text)
    else:
        s = str(text).strip().rstrip("%").strip()
        if not s:
            return default
        try:
            pct = float(s)
        except ValueError:
            return default
    if not math.isfinite(pct):
        return default
    fraction = pct / 100.0
    _validate_threshold(fraction)
    return fraction


def _validate_threshold(threshold: float) -> None:
    if not (0.0 < threshold <= 1.0):
        raise ValueError(f"threshold must be in (0, 1], got {threshold!r}")


_NOTATION_RANGE = re.compile(r"^(\d+)%\s*-\s*(\d+)%\s*x\s*(\d+)$", re.IGNORECASE)
_NOTATION_FROM_ZERO = re.compile(r"^(\d+)%\s*x\s*(\d+)$", re.IGNORECASE)


def parse_attempt_line(line: str) -> Optional[AttemptRecord]:
    s = line.strip()
    if not s:
        return None
    m = _NOTATION_RANGE.match(s)
    if m:
        lo, hi, count = int(m.group(1)), int(m.group(2)), int(m.group(3))
    else:
        m = _NOTATION_FROM_ZERO.match(s)
        if not m:
            return None
        lo, hi, count = 0, int(m.group(1)), int(m.group(2))
    if count <= 0 or hi > COMPLETE_PCT or lo > hi:
        return None
    return AttemptRecord(float(lo), float(hi), count)


def parse_attempt_text(text: str) -> List[AttemptRecord]:
    records: List[AttemptRecord] = []
    for raw in text.replace(",", "\n").splitlines():
        stripped = raw.strip()
        if not stripped or stripped.startswith("#"):
            continue
        rec = parse_attempt_line(stripped)
        if rec is None:
            logging.debug("Dropping malformed attempt line: %r", stripped)
            continue
        records.append(rec)
    return records


def make_segment(name: str, from_pct: float, to_pct: float) -> Segment:
    lo = float(from_pct)
    hi = float(to_pct)
    if not (0.0 <= lo < hi <= COMPLETE_PCT):
        raise ValueError(f"segment {name!r} needs 0 <= from < to <= 100, got {lo}-{hi}")
    return Segment(str(name), lo, hi)


def parse_segment_token(token: str) -> Segment:
    """Parse ``name:from-to`` (percent signs optional) into a Segment."""
    name, sep, span = token.rpartition(":")
    if not sep:
        name, span = "", token
    lo_s, dash, hi_s = span.replace("%", "").partition("-")
    if not dash:
        raise ValueError(f"segment token {token!r} must look like name:from-to")
    try:
        lo = float(lo_s)
        hi = float(hi_s)
    except ValueError as exc:
        raise ValueError(f"segment token {token!r} has non-numeric bounds") from exc
    if not name.strip():
        name = f"{_fmt_pct(lo)}-{_fmt_pct(hi)}"
    return make_segment(name.strip(), lo, hi)


# -----------------
# Kernel calibration
# -----------------

KernelCache = MutableMapping[Tuple[int, float, float], np.ndarray]


class KernelCalibrator:
    """Recency weights w(i) ~ 1/i**p with a fixed share of mass up front.

    The exponent is solved by bisection so that the first ``ceil(front_fraction * N)``
    weights carry ``front_mass`` of the total. Index 0 is the most recent attempt.
    """

    def __init__(
        self,
        front_fraction: float = KERNEL_FRONT_FRACTION,
        front_mass: float = KERNEL_FRONT_MASS,
        cache: Optional[KernelCache] = None,
    ) -> None:
        if not (0.0 < front_fraction < 1.0):
            raise ValueError("front_fraction must be in (0, 1)")
        if not (0.0 < front_mass < 1.0):
            raise ValueError("front_mass must be in (0, 1)")
        self.front_fraction = float(front_fraction)
        self.front_mass = float(front_mass)
        self.cache: KernelCache = cache if cache is not None else {}

    def weights(self, n: int) -> np.ndarray:
        n = int(n)
        if n <= 0:
            return np.asarray([], dtype=np.float64)
        key = (n, self.front_fraction, self.front_mass)
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        w = _calibrate_kernel(n, self.front_fraction, self.front_mass)
        w.setflags(write=False)
        self.cache[key] = w
        return w


def _front_mass_ratio(idx: np.ndarray, k: int, p: float) -> float:
    w = np.power(idx, -p)
    return float(np.sum(w[:k]) / np.sum(w))


def _solve_kernel_exponent(n: int, k: int, front_mass: float) -> float:
    idx = np.arange(1, n + 1, dtype=np.float64)
    lo, hi = KERNEL_P_LO, KERNEL_P_HI
    # The front ratio grows with p, so a plain bisection converges.
    for _ in range(KERNEL_BISECT_ITERS):
        mid = 0.5 * (lo + hi)
        if _front_mass_ratio(idx, k, mid) < front_mass:
            lo = mid
        else:
            hi = mid
    return 0.5 * (lo + hi)


def _calibrate_kernel(n: int, front_fraction: float, front_mass: float) -> np.ndarray:
    if n == 1:
        return np.asarray([1.0], dtype=np.float64)
    k = max(1, int(math.ceil(front_fraction * n)))
    p = _solve_kernel_exponent(n, k, front_mass)
    w = np.power(np.arange(1, n + 1, dtype=np.float64), -p)
    w = w / np.sum(w)
    for i in range(1, n):
        if w[i] >= w[i - 1]:
            w[i] = np.nextafter(w[i - 1], -np.inf)
    logging.debug("Kernel n=%d front=%d exponent=%.6f", n, k, p)
    return w


# -----------------
# Run scheduling
# -----------------

def schedule_runs(
    probabilities: Sequence[float],
    threshold: float,
    epsilon: float = PROB_EPSILON,
) -> List[Run]:
    """Cover every index with maximal runs whose product clears ``threshold``.

    Runs strictly inside another run are dropped; partial overlaps are kept.
    A segment that misses the threshold on its own is reported as a singleton.
    """
    _validate_threshold(threshold)
    n = len(probabilities)
    if n == 0:
        return []

    logs = [math.log(min(1.0, max(epsilon, float(p)))) for p in probabilities]
    log_t = math.log(min(1.0, max(epsilon, threshold)))

    candidates: List[Run] = []
    hi = 0  # exclusive end of the current window [i, hi)
    acc = 0.0
    for i in range(n):
        if hi <= i:
            hi = i
            acc = 0.0
        while hi < n and acc + logs[hi] >= log_t:
            acc += logs[hi]
            hi += 1
        if hi == i:
            candidates.append(Run(i, i, math.exp(logs[i])))
            continue
        candidates.append(Run(i, hi - 1, math.exp(acc)))
        acc -= logs[i]

    return _prune_contained(candidates)


def _prune_contained(candidates: List[Run]) -> List[Run]:
    seen: set = set()
    for c in candidates:
        key = (c.start, c.end - c.start)
        assert key not in seen, f"duplicate run candidate start={c.start} length={c.end - c.start + 1}"
        seen.add(key)

    ordered = sorted(candidates, key=lambda r: (-(r.end - r.start), r.start))
    kept: List[Run] = []
    for cand in ordered:
        contained = any(
            k.start <= cand.start and k.end >= cand.end and (k.start, k.end) != (cand.start, cand.end)
            for k in kept
        )
        if not contained:
            kept.append(cand)
    kept.sort(key=lambda r: (r.start, r.end))
    return kept


# -----------------
# Window aggregation
# -----------------

def classify_record(record: AttemptRecord, from_pct: float, to_pct: float) -> Tuple[bool, bool]:
    attempt = record.from_pct <= from_pct and record.to_pct >= from_pct
    if not attempt:
        return False, False
    if to_pct >= COMPLETE_PCT:
        return True, record.to_pct >= COMPLETE_PCT
    return True, record.to_pct > to_pct


def batch_counts(
    batch: AttemptBatch,
    from_pct: float,
    to_pct: float,
    excluded_starts: FrozenSet[float] = frozenset(),
) -> Tuple[int, int]:
    attempts = 0
    passes = 0
    for rec in batch.records:
        if rec.from_pct in excluded_starts:
            continue
        is_attempt, is_pass = classify_record(rec, from_pct, to_pct)
        if not is_attempt:
            continue
        attempts += rec.count
        if is_pass:
            passes += rec.count
    return attempts, passes


def _select_window(
    batches: Sequence[AttemptBatch],
    from_pct: float,
    to_pct: float,
    cap: float,
    excluded_starts: FrozenSet[float],
) -> Tuple[List[Tuple[int, int]], int]:
    """Newest-first (attempts, passes) of the consumed batches, plus batches walked."""
    consumed: List[Tuple[int, int]] = []
    total = 0
    walked = 0
    for batch in reversed(batches):
        if total >= cap:
            break
        walked += 1
        attempts, passes = batch_counts(batch, from_pct, to_pct, excluded_starts)
        if attempts <= 0:
            continue
        consumed.append((attempts, passes))
        total += attempts
    return consumed, walked


def window_counts(
    batches: Sequence[AttemptBatch],
    from_pct: float,
    to_pct: float,
    cap: float = DEFAULT_CAP,
    excluded_starts: FrozenSet[float] = frozenset(),
) -> WindowResult:
    consumed, walked = _select_window(batches, from_pct, to_pct, cap, excluded_starts)
    attempts = sum(a for a, _ in consumed)
    passes = sum(p for _, p in consumed)
    return WindowResult(attempts, passes, _rate_pct(passes, attempts), len(consumed), walked)


def uncapped_counts(
    batches: Sequence[AttemptBatch],
    from_pct: float,
    to_pct: float,
    excluded_starts: FrozenSet[float] = frozenset(),
) -> WindowResult:
    return window_counts(batches, from_pct, to_pct, cap=math.inf, excluded_starts=excluded_starts)


def weighted_window_counts(
    batches: Sequence[AttemptBatch],
    from_pct: float,
    to_pct: float,
    calibrator: KernelCalibrator,
    cap: float = DEFAULT_CAP,
    excluded_starts: FrozenSet[float] = frozenset(),
) -> WindowResult:
    consumed, walked = _select_window(batches, from_pct, to_pct, cap, excluded_starts)
    total_attempts = sum(a for a, _ in consumed)
    total_passes = sum(p for _, p in consumed)
    if total_attempts <= 0:
        return WindowResult(0, 0, 0.0, 0, walked)

    kernel = calibrator.weights(total_attempts)
    num = 0.0
    den = 0.0
    cursor = 0
    for attempts, passes in consumed:
        # Each batch gets a single weight: the mean of its kernel slice.
        weight = float(np.mean(kernel[cursor:cursor + attempts]))
        num += weight * passes
        den += weight * attempts
        cursor += attempts
    rate = _round1(100.0 * num / den) if den > 0 else 0.0
    return WindowResult(total_attempts, total_passes, rate, len(consumed), walked)


# -----------------
# Stats engine
# -----------------

def _day_order(batches: Sequence[AttemptBatch]) -> List[str]:
    days: List[str] = []
    for b in batches:
        if b.day and b.day not in days:
            days.append(b.day)
    return days


def _previous_day(batches: Sequence[AttemptBatch], day: Optional[str]) -> Optional[str]:
    days = _day_order(batches)
    if day is None or day not in days:
        return None
    idx = days.index(day)
    return days[idx - 1] if idx > 0 else None


def _run_range(segments: Sequence[Segment], run: Run) -> Tuple[float, float]:
    return segments[run.start].from_pct, segments[run.end].to_pct


def _row(name: str, res: WindowResult, diff: Optional[float] = None) -> StatRow:
    return StatRow(name=name, attempts=res.attempts, passes=res.passes, rate=res.rate, diff=diff)


def _diff(current: WindowResult, previous: WindowResult) -> Optional[float]:
    if previous.attempts <= 0:
        return None
    return _round1(current.rate - previous.rate)


def overall_view(
    segments: Sequence[Segment],
    batches: Sequence[AttemptBatch],
    threshold: float,
    calibrator: KernelCalibrator,
    cap: float = DEFAULT_CAP,
    excluded_starts: FrozenSet[float] = frozenset(),
    epsilon: float = PROB_EPSILON,
) -> Tuple[StatsView, List[Run]]:
    seg_rows: List[StatRow] = []
    for seg in segments:
        res = weighted_window_counts(batches, seg.from_pct, seg.to_pct, calibrator, cap, excluded_starts)
        seg_rows.append(_row(seg.name, res))

    runs = schedule_runs([row.rate / 100.0 for row in seg_rows], threshold, epsilon=epsilon)
    run_rows: List[StatRow] = []
    for run in runs:
        lo, hi = _run_range(segments, run)
        res = weighted_window_counts(batches, lo, hi, calibrator, cap, excluded_starts)
        run_rows.append(
            StatRow(
                name=run_label(segments, run),
                attempts=res.attempts,
                passes=res.passes,
                rate=_round1(100.0 * run.prob),
            )
        )
    return StatsView(seg_rows, run_rows), runs


def latest_view(
    segments: Sequence[Segment],
    batches: Sequence[AttemptBatch],
    runs: Sequence[Run],
    excluded_starts: FrozenSet[float] = frozenset(),
) -> StatsView:
    latest = list(batches[-1:])
    seg_rows = [
        _row(seg.name, uncapped_counts(latest, seg.from_pct, seg.to_pct, excluded_starts))
        for seg in segments
    ]
    run_rows = []
    for run in runs:
        lo, hi = _run_range(segments, run)
        run_rows.append(_row(run_label(segments, run), uncapped_counts(latest, lo, hi, excluded_starts)))
    return StatsView(seg_rows, run_rows)


def _trend_row(
    name: str,
    batches: Sequence[AttemptBatch],
    from_pct: float,
    to_pct: float,
    cap: float,
    excluded_starts: FrozenSet[float],
) -> StatRow:
    current = window_counts(batches, from_pct, to_pct, cap, excluded_starts)
    older = batches[: len(batches) - current.batches_used]
    previous = window_counts(older, from_pct, to_pct, cap, excluded_starts)
    return _row(name, current, _diff(current, previous))


def trend_view(
    segments: Sequence[Segment],
    batches: Sequence[AttemptBatch],
    runs: Sequence[Run],
    cap: float = DEFAULT_CAP,
    excluded_starts: FrozenSet[float] = frozenset(),
) -> StatsView:
    seg_rows = [
        _trend_row(seg.name, batches, seg.from_pct, seg.to_pct, cap, excluded_starts)
        for seg in segments
    ]
    run_rows = []
    for run in runs:
        lo, hi = _run_range(segments, run)
        run_rows.append(_trend_row(run_label(segments, run), batches, lo, hi, cap, excluded_starts))
    return StatsView(seg_rows, run_rows)


def daily_view(
    segments: Sequence[Segment],
    batches: Sequence[AttemptBatch],
    runs: Sequence[Run],
    day: Optional[str],
    excluded_starts: FrozenSet[float] = frozenset(),
) -> Tuple[StatsView, Optional[str]]:
    prev_day = _previous_day(batches, day)
    today = [b for b in batches if day is not None and b.day == day]
    before = [b for b in batches if prev_day is not None and b.day == prev_day]

    def _daily_row(name: str, lo: float, hi: float) -> StatRow:
        current = uncapped_counts(today, lo, hi, excluded_starts)
        previous = uncapped_counts(before, lo, hi, excluded_starts)
        return _row(name, current, _diff(current, previous))

    seg_rows = [_daily_row(seg.name, seg.from_pct, seg.to_pct) for seg in segments]
    run_rows = [_daily_row(run_label(segments, run), *_run_range(segments, run)) for run in runs]
    return StatsView(seg_rows, run_rows), prev_day


def composite_trend_series(
    segments: Sequence[Segment],
    batches: Sequence[AttemptBatch],
    cap: float = DEFAULT_CAP,
    last_k: Optional[int] = None,
    excluded_starts: FrozenSet[float] = frozenset(),
) -> List[TrendPoint]:
    """Product of per-segment capped-window rates for each chronological prefix.

    A point is emitted only once every segment has attempts in its own window.
    """
    n = len(batches)
    if not segments or n == 0:
        return []
    first = 1
    if last_k is not None and last_k > 0:
        first = max(1, n - int(last_k) + 1)

    points: List[TrendPoint] = []
    skipped = 0
    for m in range(first, n + 1):
        prefix = batches[:m]
        prob = 1.0
        complete = True
        for seg in segments:
            res = window_counts(prefix, seg.from_pct, seg.to_pct, cap, excluded_starts)
            if res.attempts <= 0:
                complete = False
                break
            prob *= res.rate / 100.0
        if not complete:
            skipped += 1
            continue
        points.append(TrendPoint(x=m - 1, y=prob))
    if skipped:
        logging.debug("Trend series: %d prefixes lack attempts for some segment", skipped)
    return points


def start_threshold(
    from_pct: float,
    offset: float = DEFAULT_START_OFFSET,
    overrides: Optional[Dict[float, float]] = None,
) -> float:
    if overrides and from_pct in overrides:
        thr = float(overrides[from_pct])
    else:
        thr = from_pct + offset
    return min(COMPLETE_PCT, max(thr, from_pct))


def chokepoints(
    batches: Sequence[AttemptBatch],
    excluded_starts: FrozenSet[float] = frozenset(),
    start_offset: float = DEFAULT_START_OFFSET,
    start_thresholds: Optional[Dict[float, float]] = None,
) -> List[Chokepoint]:
    """Fail points with the passes through them.

    Records from an excluded start, or ending at or before their start threshold,
    are left out entirely.
    """
    records = [
        rec
        for b in batches
        for rec in b.records
        if rec.from_pct not in excluded_starts
        and rec.to_pct > start_threshold(rec.from_pct, start_offset, start_thresholds)
    ]
    fails: Dict[float, int] = {}
    for rec in records:
        if rec.to_pct < COMPLETE_PCT:
            fails[rec.to_pct] = fails.get(rec.to_pct, 0) + rec.count

    out: List[Chokepoint] = []
    for point, fail_count in fails.items():
        passes = sum(
            rec.count
            for rec in records
            if rec.from_pct < point and (rec.to_pct >= COMPLETE_PCT or rec.to_pct > point)
        )
        out.append(Chokepoint(point_pct=point, fails=fail_count, passes=passes))
    out.sort(key=lambda c: (-c.fails, c.point_pct))
    return out


def compute_stats(
    segments: Sequence[Segment],
    batches: Sequence[AttemptBatch],
    threshold: Optional[float] = None,
    day: Optional[str] = None,
    config: Optional[StatsConfig] = None,
    calibrator: Optional[KernelCalibrator] = None,
) -> StatsReport:
    """Run one full stats cycle. ``threshold`` is a fraction; None uses the config percentage."""
    cfg = config or StatsConfig()
    thr = parse_threshold(cfg.threshold_pct) if threshold is None else float(threshold)
    _validate_threshold(thr)
    if calibrator is None:
        calibrator = KernelCalibrator(cfg.kernel_front_fraction, cfg.kernel_front_mass)
    excluded = frozenset(float(s) for s in cfg.excluded_starts)

    if day is None:
        days = _day_order(batches)
        day = days[-1] if days else None

    overall, runs = overall_view(segments, batches, thr, calibrator, cfg.cap, excluded, cfg.epsilon)
    latest = latest_view(segments, batches, runs, excluded)
    trend = trend_view(segments, batches, runs, cfg.cap, excluded)
    daily, prev_day = daily_view(segments, batches, runs, day, excluded)
    series = composite_trend_series(segments, batches, cfg.cap, cfg.trend_last_k, excluded)
    chokes = chokepoints(batches, excluded, cfg.start_threshold_offset, cfg.start_thresholds)
    logging.info(
        "Stats: %d segments, %d batches, %d runs, %d trend points (threshold %.1f%%)",
        len(segments),
        len(batches),
        len(runs),
        len(series),
        thr * 100.0,
    )
    return StatsReport(
        threshold=thr,
        runs=runs,
        overall=overall,
        latest=latest,
        trend=trend,
        daily=daily,
        selected_day=day,
        previous_day=prev_day,
        trend_series=series,
        chokepoints=chokes,
    )


# -----------------
# State store
# -----------------

def add_batch(
    state: TrackerState,
    records: Iterable[AttemptRecord],
    timestamp: Optional[float] = None,
    day: Optional[str] = None,
) -> TrackerState:
    recs = tuple(records)
    ts = float(timestamp) if timestamp is not None else time.time()
    batch = AttemptBatch(timestamp=ts, records=recs, day=day)
    batches = state.batch_log + (batch,)
    return replace(
        state,
        flat_attempt_log=state.flat_attempt_log + recs,
        batch_log=batches,
        day_map=_build_day_map(batches),
        current_day=day if day else state.current_day,
    )


def delete_batch(state: TrackerState, index: int) -> TrackerState:
    n = len(state.batch_log)
    if not (-n <= index < n):
        raise IndexError(f"batch index {index} out of range for {n} batches")
    idx = index % n
    kept = state.batch_log[:idx] + state.batch_log[idx + 1:]
    flat = tuple(rec for b in kept for rec in b.records)
    current_day = state.current_day
    if current_day is not None and all(b.day != current_day for b in kept):
        days = _day_order(kept)
        current_day = days[-1] if days else None
    return replace(
        state,
        batch_log=kept,
        flat_attempt_log=flat,
        day_map=_build_day_map(kept),
        current_day=current_day,
    )


def _build_day_map(batches: Sequence[AttemptBatch]) -> Dict[str, Any]:
    day_map: Dict[str, Any] = {}
    for idx, b in enumerate(batches):
        if b.day:
            day_map.setdefault(b.day, []).append(idx)
    return day_map


def replace_segments(state: TrackerState, segments: Iterable[Segment]) -> TrackerState:
    return replace(state, segments=tuple(segments))


def _record_to_json(rec: AttemptRecord) -> Dict[str, Any]:
    return {"from": rec.from_pct, "to": rec.to_pct, "count": rec.count}


def _record_from_json(obj: Dict[str, Any]) -> AttemptRecord:
    count = int(obj["count"])
    if count < 0:
        raise ValueError(f"negative attempt count {count}")
    return AttemptRecord(float(obj.get("from", 0)), float(obj["to"]), count)


def state_to_json(state: TrackerState) -> Dict[str, Any]:
    return {
        "segments": [
            {"name": s.name, "from": s.from_pct, "to": s.to_pct} for s in state.segments
        ],
        "flatAttemptLog": [_record_to_json(r) for r in state.flat_attempt_log],
        "batchLog": [
            {
                "timestamp": b.timestamp,
                "day": b.day,
                "records": [_record_to_json(r) for r in b.records],
            }
            for b in state.batch_log
        ],
        "dayMap": state.day_map,
        "currentDay": state.current_day,
    }


def state_from_json(data: Dict[str, Any]) -> TrackerState:
    segments = tuple(
        make_segment(s["name"], s["from"], s["to"]) for s in data.get("segments") or []
    )
    batches = tuple(
        AttemptBatch(
            timestamp=float(b.get("timestamp") or 0.0),
            records=tuple(_record_from_json(r) for r in b.get("records") or []),
            day=b.get("day") or None,
        )
        for b in data.get("batchLog") or []
    )
    flat = tuple(_record_from_json(r) for r in data.get("flatAttemptLog") or [])
    # Stored dayMap is ignored; batch tags are authoritative.
    day_map = _build_day_map(batches)
    current_day = data.get("currentDay") or None
    return TrackerState(
        segments=segments,
        flat_attempt_log=flat,
        batch_log=batches,
        day_map=day_map,
        current_day=current_day,
    )


def load_state(path: str) -> TrackerState:
    if not os.path.exists(path):
        logging.info("No state at %s; starting empty", path)
        return TrackerState()
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
        if not isinstance(data, dict):
            raise ValueError("state root must be an object")
        return state_from_json(data)
    except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
        logging.warning("Ignoring unreadable state %s (%s); starting empty", path, exc)
        return TrackerState()


def save_state(path: str, state: TrackerState) -> None:
    tmp_path = path + ".tmp"
    try:
        with open(tmp_path, "w", encoding="utf-8") as fh:
            json.dump(state_to_json(state), fh, indent=2)
        os.replace(tmp_path, path)
    except Exception:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


def _load_stats_config(path: str, base: Optional[StatsConfig] = None) -> StatsConfig:
    with open(path, "r") as f:
        data = json.load(f)
    cfg = replace(base) if base is not None else StatsConfig()
    if not isinstance(data, dict):
        logging.warning("Config %s is not an object; using defaults", path)
        return cfg
    for key, value in data.items():
        try:
            if key == "cap":
                cfg.cap = int(value)
            elif key == "threshold_pct":
                cfg.threshold_pct = float(value)
            elif key == "trend_last_k":
                cfg.trend_last_k = int(value) if value is not None else None
            elif key == "excluded_starts":
                cfg.excluded_starts = frozenset(float(v) for v in value)
            elif key == "start_threshold_offset":
                cfg.start_threshold_offset = float(value)
            elif key == "start_thresholds":
                cfg.start_thresholds = {float(k): float(v) for k, v in value.items()}
            elif key == "kernel_front_fraction":
                cfg.kernel_front_fraction = float(value)
            elif key == "kernel_front_mass":
                cfg.kernel_front_mass = float(value)
            elif key == "epsilon":
                cfg.epsilon = float(value)
            else:
                logging.warning("Unknown config key '%s' ignored", key)
        except (TypeError, ValueError, AttributeError):
            logging.warning("Bad value for config key '%s' ignored", key)
    return cfg


# -----------------
# Logging / deps
# -----------------

def _setup_logging(verbose: bool, log_file: Optional[str] = None) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    fmt = "%(asctime)s [%(levelname)s] %(message)s"
    datefmt = "%H:%M:%S"
    logging.basicConfig(level=level, format=fmt, datefmt=datefmt)
    if log_file:
        fh = logging.FileHandler(log_file, mode="w")
        fh.setLevel(level)
        fh.setFormatter(logging.Formatter(fmt, datefmt))
        logging.getLogger().addHandler(fh)
    # Suppress very chatty third-party DEBUG logs (e.g., matplotlib findfont)
    logging.getLogger("matplotlib").setLevel(logging.WARNING)
    logging.getLogger("matplotlib.font_manager").setLevel(logging.WARNING)
    logging.getLogger("PIL").setLevel(logging.INFO)


def _require_dependency(dep, name: str, install_hint: Optional[str] = None) -> None:
    if dep is None:
        hint = f"\nInstall with: {install_hint}" if install_hint else ""
        raise RuntimeError(
            f"Missing dependency: {name}. {hint}".strip()
        )
