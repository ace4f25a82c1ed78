from __future__ import annotations

import json
import logging

import pytest
from sqlalchemy import text

from core import metrics
from core.alembic_utils import ensure_up_to_date, migration_status
from core.logging_utils import JsonFormatter, scrub_government_ids, set_request_id

REVISIONS = ("0001_initial", "0002_leave_overtime", "0003_material_requests")


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("TIN 123-456-789 on file", "TIN ***-***-789 on file"),
        ("branch TIN 000-123-456-00000", "branch TIN ***-***-***-00000"),
        ("SSS 34-1234567-8", "SSS **-*******-8"),
        ("tin=123-456-789 sss=34-1234567-8", "tin=***-***-789 sss=**-*******-8"),
        ("run PR-2026-000001 for 2026-01-15", "run PR-2026-000001 for 2026-01-15"),
        ("", ""),
    ],
)
def test_scrub_government_ids(raw, expected):
    assert scrub_government_ids(raw) == expected


def test_scrub_handles_none():
    assert scrub_government_ids(None) == ""


def test_json_formatter_masks_ids_and_keeps_extras():
    record = logging.LogRecord(
        "hris_core.payroll", logging.INFO, __file__, 1, "payslip for TIN %s", ("123-456-789-000",), None
    )
    record.run_id = 42
    set_request_id("req-1")
    try:
        data = json.loads(JsonFormatter().format(record))
    finally:
        set_request_id(None)
    assert data["msg"] == "payslip for TIN ***-***-***-000"
    assert data["run_id"] == 42
    assert data["request_id"] == "req-1"
    assert data["level"] == "INFO"


def test_domain_counters_are_exported():
    before = metrics.counter_value("hris_material_request_retry_total", operation="posting")
    metrics.record_material_request_retry("posting")
    metrics.record_payroll_step("CALCULATE", "COMPLETED")
    assert metrics.counter_value("hris_material_request_retry_total", operation="posting") == before + 1

    body = metrics.export_prometheus()
    assert "# TYPE hris_material_request_retry_total counter" in body
    assert f'hris_material_request_retry_total{{operation="posting"}} {before + 1}' in body
    assert 'hris_payroll_step_total{status="COMPLETED",step="CALCULATE"}' in body
    assert "# TYPE hris_material_request_conflict_total counter" in body


def test_request_histogram_is_cumulative():
    metrics.observe_request("/histogram-check", "get", 200, 0.02)
    metrics.observe_request("/histogram-check", "get", 200, 7.0)
    body = metrics.export_prometheus()
    assert 'hris_request_duration_seconds_bucket{handler="/histogram-check",method="GET",le="0.01"} 0' in body
    assert 'hris_request_duration_seconds_bucket{handler="/histogram-check",method="GET",le="0.025"} 1' in body
    assert 'hris_request_duration_seconds_bucket{handler="/histogram-check",method="GET",le="5.0"} 1' in body
    assert 'hris_request_duration_seconds_bucket{handler="/histogram-check",method="GET",le="+Inf"} 2' in body
    assert 'hris_request_duration_seconds_count{handler="/histogram-check",method="GET"} 2' in body


def test_migration_status_without_revision(database):
    status = migration_status(database)
    assert status.current == frozenset()
    assert status.expected == frozenset({REVISIONS[-1]})
    assert status.pending == REVISIONS
    assert not status.is_current
    with pytest.raises(RuntimeError, match="no schema revision"):
        ensure_up_to_date(database)


def test_migration_status_tracks_pending_revisions(database):
    with database.begin() as conn:
        conn.execute(text("CREATE TABLE alembic_version (version_num VARCHAR(32) NOT NULL)"))
        conn.execute(text("INSERT INTO alembic_version (version_num) VALUES ('0002_leave_overtime')"))
    status = migration_status(database)
    assert status.pending == ("0003_material_requests",)
    with pytest.raises(RuntimeError, match="0003_material_requests"):
        ensure_up_to_date(database)

    with database.begin() as conn:
        conn.execute(text("UPDATE alembic_version SET version_num = '0003_material_requests'"))
    assert ensure_up_to_date(database).is_current
