"""Counters reported alongside test selection telemetry."""

from __future__ import annotations

from typing import Iterable

from ti_client.models import RunnableTest, TestCase


def count_distinct_classes(test_cases: Iterable[TestCase]) -> int:
    return len({tc.class_name for tc in test_cases})


def count_distinct_selected_classes(tests: Iterable[RunnableTest]) -> int:
    """Number of distinct classes among the tests chosen by selection."""
    return len({t.class_ for t in tests})
