from __future__ import annotations

from typing import Iterable, Optional


def detect_crossed(previous_value: int, new_value: int, thresholds: Optional[Iterable[int]]) -> list[int]:
    """Thresholds t with previous_value < t <= new_value, ascending.

    Only upward movement crosses a milestone; a decrement or reset returns [].
    """
    if not thresholds or new_value <= previous_value:
        return []
    return sorted({t for t in thresholds if previous_value < t <= new_value})


def previous_milestone(threshold: int, thresholds: Iterable[int]) -> int:
    below = [t for t in thresholds if t < threshold]
    return max(below) if below else 0


def next_milestone(value: int, thresholds: Iterable[int]) -> Optional[int]:
    above = [t for t in thresholds if t > value]
    return min(above) if above else None
