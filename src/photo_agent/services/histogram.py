"""Text rendering of tone histograms."""

from photo_agent.domain.images import Histogram

HISTOGRAM_BINS = 64

_LEVELS = " ▁▂▃▄▅▆▇█"


def sparkline(values: list[int]) -> str:
    """Draw bucket heights as one line of block characters."""
    peak = max(values, default=0)
    if peak <= 0:
        return _LEVELS[0] * len(values)
    top = len(_LEVELS) - 1
    return "".join(_LEVELS[min(top, value * len(_LEVELS) // peak)] for value in values)


def format_histogram(histogram: Histogram) -> str:
    """Describe a histogram and its clipping for the user."""
    lines = [
        "Histogram:",
        f"  Luma:  {sparkline(histogram.luma)}",
        f"  Red:   {sparkline(histogram.r)}",
        f"  Green: {sparkline(histogram.g)}",
        f"  Blue:  {sparkline(histogram.b)}",
        f"  Clipping: shadows {histogram.clip.low_pct:.1f}%, "
        f"highlights {histogram.clip.high_pct:.1f}%",
    ]
    warnings = []
    if histogram.clip.low_pct >= 1.0:
        warnings.append("shadows are crushed")
    if histogram.clip.high_pct >= 1.0:
        warnings.append("highlights are blown")
    if warnings:
        lines.append(f"  Note: {' and '.join(warnings)}")
    return "\n".join(lines)
