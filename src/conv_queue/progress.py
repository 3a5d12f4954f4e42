"""Completion percentage from engine progress reports.

Two formulas are available:

- ``ratio``: elapsed seconds over stream duration, clamped to 0-100.
- ``legacy``: the historical heuristic that reads the marker's minutes and
  seconds as a "minutes.seconds" decimal and scales it against a window
  derived from the duration. It is neither monotonic nor bounded and is kept
  for listeners that were calibrated against it.

Neither formula raises; anything unparsable reports 0.
"""

import math
import re
from typing import Optional, Tuple

TIMEMARK_RE = re.compile(r"^\s*(\d+):(\d{1,2}):(\d{1,2})(?:\.(\d+))?\s*$")


def _split_timemark(timemark: Optional[str]) -> Optional[Tuple[str, str, str, str]]:
    if not timemark:
        return None
    match = TIMEMARK_RE.match(timemark)
    if not match:
        return None
    h, m, s, frac = match.groups()
    return h, m, s, frac or ""


def parse_timemark(timemark: Optional[str]) -> Optional[float]:
    """Convert ``HH:MM:SS(.ff)`` to seconds, or None if it doesn't match."""
    parts = _split_timemark(timemark)
    if parts is None:
        return None
    h, m, s, frac = parts
    seconds = int(h) * 3600 + int(m) * 60 + int(s)
    if frac:
        seconds += int(frac) / (10 ** len(frac))
    return float(seconds)


def legacy_percentage(duration: float, timemark: Optional[str]) -> int:
    parts = _split_timemark(timemark)
    value = float(f"{int(parts[1])}.{parts[2]}") if parts else 0.0

    try:
        window = ((duration % 3600) / 62.5) % math.ceil(duration % 60)
    except (ZeroDivisionError, ValueError, OverflowError, TypeError):
        return 0
    if not window or not math.isfinite(window):
        return 0
    return round(value / window * 100)


def ratio_percentage(duration: float, timemark: Optional[str]) -> int:
    elapsed = parse_timemark(timemark)
    if elapsed is None or not duration or duration <= 0 or not math.isfinite(duration):
        return 0
    fraction = min(max(elapsed / duration, 0.0), 1.0)
    return round(fraction * 100)


def estimate_progress(
    duration: float,
    timemark: Optional[str],
    target_size: Optional[float],
    formula: str = "ratio",
) -> int:
    """Completion percentage for a progress report.

    Args:
        duration: Stream duration in seconds (from metadata)
        timemark: Engine elapsed marker, e.g. ``"00:01:23.45"``
        target_size: Output size reported by the engine; 0 means no output yet
        formula: ``"ratio"`` or ``"legacy"``

    Returns:
        Integer percentage (0 when nothing has been written yet)
    """
    if not target_size:
        return 0
    if formula == "legacy":
        return legacy_percentage(duration, timemark)
    return ratio_percentage(duration, timemark)
