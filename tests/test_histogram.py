"""Tests for histogram text rendering."""

from photo_agent.domain.images import Histogram
from photo_agent.services.histogram import format_histogram, sparkline


def _histogram(low_pct: float, high_pct: float) -> Histogram:
    return Histogram.model_validate(
        {
            "luma": [0, 50, 100],
            "r": [100, 0, 0],
            "g": [0, 0, 0],
            "b": [10, 20, 30],
            "clip": {"lowPct": low_pct, "highPct": high_pct},
        }
    )


def test_sparkline_scales_to_peak() -> None:
    assert sparkline([0, 50, 100]) == " ▄█"
    assert sparkline([0, 0]) == "  "
    assert sparkline([]) == ""


def test_format_histogram_without_clipping() -> None:
    text = format_histogram(_histogram(0.2, 0.0))

    assert text.splitlines() == [
        "Histogram:",
        "  Luma:   ▄█",
        "  Red:   █  ",
        "  Green:    ",
        "  Blue:  ▃▆█",
        "  Clipping: shadows 0.2%, highlights 0.0%",
    ]


def test_format_histogram_flags_clipping() -> None:
    text = format_histogram(_histogram(3.0, 1.5))

    assert text.endswith("Note: shadows are crushed and highlights are blown")
