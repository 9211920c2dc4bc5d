"""Progress calculation: rounding, bounds and the zero-children policy."""
from __future__ import annotations

import pytest

from progress_cascade.core.exceptions import ValidationError
from progress_cascade.engine.progress import compute_progress, round_half_up


class TestRoundHalfUp:

    def test_exact(self) -> None:
        assert round_half_up(100, 4) == 25

    def test_rounds_down_below_half(self) -> None:
        assert round_half_up(100, 3) == 33

    def test_rounds_up_above_half(self) -> None:
        assert round_half_up(200, 3) == 67

    def test_half_rounds_up(self) -> None:
        # 12.5 and 62.5: banker's rounding would give 12 and 62
        assert round_half_up(100, 8) == 13
        assert round_half_up(500, 8) == 63


class TestComputeProgress:

    @pytest.mark.parametrize(
        ("total", "completed", "expected"),
        [
            (3, 1, 33),
            (3, 2, 67),
            (3, 3, 100),
            (4, 2, 50),
            (3, 0, 0),
            (1, 1, 100),
            (8, 1, 13),
            (6, 1, 17),
            (7, 3, 43),
        ],
    )
    def test_ratios(self, total: int, completed: int, expected: int) -> None:
        assert compute_progress(total, completed) == expected

    def test_deterministic(self) -> None:
        assert {compute_progress(3, 1) for _ in range(10)} == {33}

    def test_bounds_for_every_ratio(self) -> None:
        for total in range(1, 25):
            values = [compute_progress(total, done) for done in range(total + 1)]
            assert values[0] == 0
            assert values[-1] == 100
            assert values == sorted(values)

    def test_zero_children_retains_stored(self) -> None:
        assert compute_progress(0, 0, stored_progress=40) == 40

    def test_zero_children_default_stored_is_zero(self) -> None:
        assert compute_progress(0, 0) == 0

    def test_zero_children_reset_policy(self) -> None:
        assert compute_progress(0, 0, stored_progress=40, retain_when_empty=False) == 0

    def test_negative_total_rejected(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            compute_progress(-1, 0)
        assert exc_info.value.field == "total_children"

    def test_completed_above_total_rejected(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            compute_progress(2, 3)
        assert exc_info.value.field == "completed_children"

    def test_negative_completed_rejected(self) -> None:
        with pytest.raises(ValidationError):
            compute_progress(2, -1)
