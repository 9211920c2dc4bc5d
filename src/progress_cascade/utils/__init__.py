"""Utility functions and helpers."""

from progress_cascade.utils.db_compat import DbDialect, detect_dialect
from progress_cascade.utils.logging import configure_logging
from progress_cascade.utils.validation import (
    assert_valid_sequence,
    build_entity,
    parse_enum,
)

__all__ = [
    "DbDialect",
    "assert_valid_sequence",
    "build_entity",
    "configure_logging",
    "detect_dialect",
    "parse_enum",
]
