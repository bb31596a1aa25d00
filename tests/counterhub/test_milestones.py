from __future__ import annotations

from counterhub.services.milestones import detect_crossed, next_milestone, previous_milestone


def test_single_step_crossing() -> None:
    assert detect_crossed(9, 10, [10, 25, 50]) == [10]


def test_large_step_reports_every_threshold_in_order() -> None:
    assert detect_crossed(8, 27, [50, 25, 10]) == [10, 25]


def test_lower_bound_is_exclusive_and_upper_inclusive() -> None:
    assert detect_crossed(10, 25, [10, 25]) == [25]


def test_no_crossing_without_upward_movement() -> None:
    assert detect_crossed(12, 8, [10]) == []
    assert detect_crossed(10, 10, [10]) == []
    assert detect_crossed(27, 0, [10, 25]) == []


def test_empty_or_missing_thresholds() -> None:
    assert detect_crossed(0, 100, []) == []
    assert detect_crossed(0, 100, None) == []


def test_previous_and_next_milestone() -> None:
    thresholds = [10, 25, 50]
    assert previous_milestone(10, thresholds) == 0
    assert previous_milestone(50, thresholds) == 25
    assert next_milestone(0, thresholds) == 10
    assert next_milestone(25, thresholds) == 50
    assert next_milestone(50, thresholds) is None
