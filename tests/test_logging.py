"""Tests for the structured log formatter."""

import logging

from app.core.logging import StructuredFormatter, log_with_context


def make_record(**extra):
    record = logging.LogRecord("app.test", logging.INFO, __file__, 10, "Job complete", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_context_fields_rendered():
    line = StructuredFormatter().format(make_record(job_id="j1", entity_type="deal"))

    assert "message=Job complete" in line
    assert "job_id=j1" in line
    assert "entity_type=deal" in line
    assert "run_id=" not in line


def test_extra_data_merged():
    line = StructuredFormatter().format(make_record(extra_data={"delay_ms": 30000}))

    assert "delay_ms=30000" in line


def test_log_with_context_splits_fields(caplog):
    logger = logging.getLogger("app.test.context")

    with caplog.at_level(logging.INFO, logger="app.test.context"):
        log_with_context(logger, logging.INFO, "Rate limited", job_id="j1", attempt=2, delay_ms=60000)

    record = caplog.records[-1]
    assert record.job_id == "j1"
    assert record.attempt == 2
    assert record.extra_data == {"delay_ms": 60000}
