"""
Time-series pattern classification.

Classifies a numeric sequence as flat, spiky, trending, sawtooth or unknown
from simple descriptive statistics. Everything here is pure and
deterministic; the same input always yields the same PatternResult.
"""

import math
from statistics import fmean, pstdev
from typing import List, Sequence, Tuple

from atlas_metrics.schemas import PatternResult, PatternType

SPIKE_THRESHOLD = 0.15
TREND_THRESHOLD = 0.05
VOLATILITY_THRESHOLD = 0.1
MIN_SAWTOOTH_CYCLES = 3

SPIKE_RATIO_THRESHOLD = 0.2
NEAR_ZERO = 0.0001
MIN_AMPLITUDE_RATIO = 0.05
LOW_VARIATION_CV = 0.1
LOW_VARIATION_STDDEV_FACTOR = 0.5
MAX_PERIOD_CV = 0.4
MIN_EXTREMA = 4


def _volatility(mean: float, stddev: float) -> float:
    if mean == 0:
        return 0.0 if stddev == 0 else math.inf
    return stddev / abs(mean)


def trend_line(values: Sequence[float]) -> Tuple[float, float]:
    """Least-squares (slope, intercept) of value against index."""
    n = len(values)
    sum_x = sum_y = sum_xy = sum_xx = 0.0
    for x, y in enumerate(values):
        sum_x += x
        sum_y += y
        sum_xy += x * y
        sum_xx += x * x

    denominator = n * sum_xx - sum_x * sum_x
    if denominator == 0:
        return 0.0, (sum_y / n if n else 0.0)

    slope = (n * sum_xy - sum_x * sum_y) / denominator
    intercept = (sum_y - slope * sum_x) / n
    return slope, intercept


def count_spikes(values: Sequence[float], slope: float = 0.0, threshold: float = SPIKE_THRESHOLD) -> int:
    """
    Count adjacent pairs whose relative change exceeds `threshold`.

    The expected per-step change of the fitted trend is removed first, so a
    steady ramp produces no spikes. Pairs where either value is near zero are
    skipped.
    """
    spikes = 0
    for previous, current in zip(values, values[1:]):
        if abs(previous) < NEAR_ZERO or abs(current) < NEAR_ZERO:
            continue
        if abs((current - previous - slope) / previous) > threshold:
            spikes += 1
    return spikes


def _find_extrema(values: Sequence[float], min_amplitude: float) -> List[Tuple[int, bool]]:
    """Significant local extrema as (index, is_peak)."""
    extrema = []
    for i in range(1, len(values) - 1):
        prev, curr, nxt = values[i - 1], values[i], values[i + 1]
        if curr > prev and curr > nxt:
            if curr - prev >= min_amplitude and curr - nxt >= min_amplitude:
                extrema.append((i, True))
        elif curr < prev and curr < nxt:
            if prev - curr >= min_amplitude and nxt - curr >= min_amplitude:
                extrema.append((i, False))
    return extrema


def detect_sawtooth_cycles(values: Sequence[float]) -> int:
    """
    Number of regular up/down swings in the series, or 0 when not sawtooth.

    Extrema must stand out from both neighbours by a minimum amplitude and
    alternate between peaks and valleys at a consistent period.
    """
    if len(values) < MIN_EXTREMA:
        return 0

    mean = fmean(values)
    stddev = pstdev(values)
    min_amplitude = abs(mean) * MIN_AMPLITUDE_RATIO
    if _volatility(mean, stddev) < LOW_VARIATION_CV:
        min_amplitude = stddev * LOW_VARIATION_STDDEV_FACTOR

    chain: List[Tuple[int, bool]] = []
    for index, is_peak in _find_extrema(values, min_amplitude):
        # Repeated peaks (or valleys) keep the first occurrence
        if chain and chain[-1][1] == is_peak:
            continue
        chain.append((index, is_peak))

    if len(chain) < MIN_EXTREMA:
        return 0

    periods = [chain[i + 2][0] - chain[i][0] for i in range(len(chain) - 2)]
    if len(periods) >= 2:
        period_mean = fmean(periods)
        if pstdev(periods) / period_mean > MAX_PERIOD_CV:
            return 0

    return len(chain) - 1


def analyze_pattern(values: Sequence[float]) -> PatternResult:
    """
    Classify a numeric sequence.

    Rules are applied in order and the first match wins: sawtooth, frequent
    spikes, trend, flat, moderate spikes, unknown.
    """
    if values is None or len(values) < 3:
        return PatternResult(
            pattern_type=PatternType.UNKNOWN,
            details="Insufficient data points for analysis",
        )

    values = [float(v) for v in values]
    n = len(values)
    mean = fmean(values)
    stddev = pstdev(values)
    volatility = _volatility(mean, stddev)

    slope, _ = trend_line(values)
    if mean == 0:
        relative_slope = 0.0 if slope == 0 else math.copysign(math.inf, slope)
    else:
        relative_slope = slope * n / abs(mean)

    spike_count = count_spikes(values, slope)
    sawtooth_cycles = detect_sawtooth_cycles(values)
    spike_ratio = spike_count / n

    if sawtooth_cycles >= MIN_SAWTOOTH_CYCLES:
        pattern_type = PatternType.SAWTOOTH
        details = f"Regular up-and-down cycle detected with {sawtooth_cycles} cycles"
    elif spike_ratio > SPIKE_RATIO_THRESHOLD:
        pattern_type = PatternType.SPIKY
        details = (
            f"Frequent short-term variations detected, "
            f"{spike_ratio * 100:.1f}% of points are spikes"
        )
    elif abs(relative_slope) >= TREND_THRESHOLD:
        pattern_type = PatternType.TRENDING_UP if slope > 0 else PatternType.TRENDING_DOWN
        direction = "increase" if slope > 0 else "decrease"
        details = f"{abs(relative_slope) * 100:.1f}% {direction} over the period"
    elif volatility <= VOLATILITY_THRESHOLD:
        pattern_type = PatternType.FLAT
        details = "Stable metrics with low variation"
    elif 0 < spike_count <= n // 10:
        pattern_type = PatternType.SPIKY
        details = f"Moderate spikes detected ({spike_count} spikes)"
    else:
        pattern_type = PatternType.UNKNOWN
        details = "No clear pattern identified"

    return PatternResult(
        pattern_type=pattern_type,
        volatility=volatility,
        trend_slope=slope,
        spike_count=spike_count,
        sawtooth_cycles=sawtooth_cycles,
        details=details,
    )
