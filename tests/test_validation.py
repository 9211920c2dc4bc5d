"""Validation helper tests."""
from __future__ import annotations

import pytest

from conftest import DUE
from progress_cascade.core.exceptions import ValidationError
from progress_cascade.core.types import Task, WorkStatus
from progress_cascade.utils.validation import (
    assert_valid_progress,
    assert_valid_sequence,
    build_entity,
    is_valid_sequence,
    parse_enum,
    reject_engine_owned,
    require_fields,
)


class TestSequence:

    @pytest.mark.parametrize("value", [1, 2, 999])
    def test_valid(self, value) -> None:
        assert is_valid_sequence(value)
        assert assert_valid_sequence(value) == value

    @pytest.mark.parametrize("value", [0, -3, 1.0, "1", None, True])
    def test_invalid(self, value) -> None:
        assert not is_valid_sequence(value)
        with pytest.raises(ValidationError) as exc_info:
            assert_valid_sequence(value)
        assert exc_info.value.field == "sequence"


class TestProgress:

    @pytest.mark.parametrize("value", [0, 50, 100])
    def test_valid(self, value) -> None:
        assert assert_valid_progress(value) == value

    @pytest.mark.parametrize("value", [-1, 101, 50.0, False])
    def test_invalid(self, value) -> None:
        with pytest.raises(ValidationError):
            assert_valid_progress(value)


class TestParseEnum:

    def test_member_passthrough(self) -> None:
        assert parse_enum(WorkStatus, WorkStatus.CANCELLED) is WorkStatus.CANCELLED

    def test_string(self) -> None:
        assert parse_enum(WorkStatus, "in-progress") is WorkStatus.IN_PROGRESS

    def test_unknown(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            parse_enum(WorkStatus, "IN_PROGRESS", field="state")
        assert exc_info.value.field == "state"
        assert "pending" in str(exc_info.value)


class TestFieldChecks:

    def test_require_fields_blank(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            require_fields({"title": "", "due_date": DUE}, ("title", "due_date"))
        assert exc_info.value.field == "title"

    def test_require_fields_ok(self) -> None:
        require_fields({"title": "A", "due_date": DUE}, ("title", "due_date"))

    @pytest.mark.parametrize("field", ["progress", "version", "completed_at", "completed_by", "id"])
    def test_engine_owned(self, field: str) -> None:
        with pytest.raises(ValidationError) as exc_info:
            reject_engine_owned({field: 1, "title": "x"})
        assert exc_info.value.field == field

    def test_plain_fields_allowed(self) -> None:
        reject_engine_owned({"title": "x", "status": "pending"})


class TestBuildEntity:

    def test_builds(self) -> None:
        task = build_entity(Task, {"customer_id": "c", "title": "A", "sequence": 1, "due_date": DUE})
        assert task.sequence == 1

    def test_pydantic_errors_translated(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            build_entity(Task, {"customer_id": "c", "title": "A", "sequence": -1, "due_date": DUE})
        assert exc_info.value.field == "sequence"
