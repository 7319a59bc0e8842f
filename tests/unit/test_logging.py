"""Unit tests for correlation and purchase IDs on log records."""

import logging

import pytest

from src.logging_utils import (
    CorrelationIdContext,
    CorrelationIdFilter,
    PurchaseContext,
    generate_correlation_id,
    get_correlation_id,
    set_correlation_id,
)


def stamped_record():
    record = logging.LogRecord("quest", logging.INFO, __file__, 1, "msg", None, None)
    CorrelationIdFilter().filter(record)
    return record


@pytest.mark.unit
class TestLoggingContext:
    def test_defaults_outside_any_context(self):
        record = stamped_record()

        assert record.correlation_id == "no-correlation-id"
        assert record.purchase_id == "-"

    def test_contexts_stamp_records_and_reset(self):
        with CorrelationIdContext("corr-abc"), PurchaseContext("p-1"):
            record = stamped_record()
            assert get_correlation_id() == "corr-abc"

        assert record.correlation_id == "corr-abc"
        assert record.purchase_id == "p-1"
        assert get_correlation_id() is None

    def test_context_generates_id_when_missing(self):
        with CorrelationIdContext() as correlation_id:
            assert correlation_id.startswith("corr-")
            assert len(correlation_id) == len("corr-") + 12

    def test_set_correlation_id(self):
        with CorrelationIdContext("outer"):
            set_correlation_id("inner")
            assert get_correlation_id() == "inner"

    def test_generated_ids_are_unique(self):
        assert generate_correlation_id() != generate_correlation_id()
