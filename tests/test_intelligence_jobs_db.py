"""Tests for intelligence job database operations with mocked Supabase."""

from unittest.mock import MagicMock, patch

import pytest


def test_create_job_inserts_record():
    record = {"id": "job-1", "entity_type": "deal", "entity_id": "d1", "version": 1}
    mock_response = MagicMock()
    mock_response.data = [record]

    mock_supabase = MagicMock()
    mock_supabase.table.return_value.insert.return_value.execute.return_value = mock_response

    with patch("app.db.intelligence_jobs.get_supabase", return_value=mock_supabase):
        from app.db.intelligence_jobs import create_job

        row = create_job(record)

    assert row == record
    mock_supabase.table.assert_called_with("intelligence_jobs")
    assert mock_supabase.table.return_value.insert.call_args[0][0] == record


def test_create_job_without_data_raises():
    mock_supabase = MagicMock()
    mock_supabase.table.return_value.insert.return_value.execute.return_value = MagicMock(data=[])

    with patch("app.db.intelligence_jobs.get_supabase", return_value=mock_supabase):
        from app.db.intelligence_jobs import create_job

        with pytest.raises(ValueError):
            create_job({"id": "job-1"})


def test_create_jobs_single_insert():
    records = [{"id": "a"}, {"id": "b"}]
    mock_supabase = MagicMock()
    mock_supabase.table.return_value.insert.return_value.execute.return_value = MagicMock(data=records)

    with patch("app.db.intelligence_jobs.get_supabase", return_value=mock_supabase):
        from app.db.intelligence_jobs import create_jobs

        rows = create_jobs(records)

    assert rows == records
    mock_supabase.table.return_value.insert.assert_called_once_with(records)


def test_get_job_not_found():
    mock_supabase = MagicMock()
    (
        mock_supabase.table.return_value.select.return_value.eq.return_value.limit.return_value.execute.return_value
    ) = MagicMock(data=[])

    with patch("app.db.intelligence_jobs.get_supabase", return_value=mock_supabase):
        from app.db.intelligence_jobs import get_job

        assert get_job("missing") is None


def test_update_job_guarded_by_status():
    mock_supabase = MagicMock()
    update_chain = mock_supabase.table.return_value.update.return_value.eq.return_value
    update_chain.in_.return_value.execute.return_value = MagicMock(data=[{"id": "job-1", "status": "complete"}])

    with patch("app.db.intelligence_jobs.get_supabase", return_value=mock_supabase):
        from app.db.intelligence_jobs import update_job

        row = update_job("job-1", {"status": "complete"}, only_if_status=["running"])

    assert row["status"] == "complete"
    payload = mock_supabase.table.return_value.update.call_args[0][0]
    assert payload["status"] == "complete"
    assert "updated_at" in payload
    update_chain.in_.assert_called_once_with("status", ["running"])


def test_update_job_guard_miss_returns_none():
    mock_supabase = MagicMock()
    update_chain = mock_supabase.table.return_value.update.return_value.eq.return_value
    update_chain.in_.return_value.execute.return_value = MagicMock(data=[])

    with patch("app.db.intelligence_jobs.get_supabase", return_value=mock_supabase):
        from app.db.intelligence_jobs import update_job

        assert update_job("job-1", {"status": "cancelled"}, only_if_status=["pending", "running"]) is None


def test_latest_completed_jobs_reads_view_once():
    rows = [
        {"id": "new", "entity_type": "company", "entity_id": "1", "completed_at": "2024-03-01"},
        {"id": "other-type", "entity_type": "deal", "entity_id": "1", "completed_at": "2024-02-01"},
        {"id": "contact", "entity_type": "contact", "entity_id": "2", "completed_at": "2024-02-01"},
    ]
    mock_supabase = MagicMock()
    mock_supabase.table.return_value.select.return_value.in_.return_value.execute.return_value = MagicMock(
        data=rows
    )

    with patch("app.db.intelligence_jobs.get_supabase", return_value=mock_supabase):
        from app.db.intelligence_jobs import get_latest_completed_jobs

        latest = get_latest_completed_jobs([("company", "1"), ("contact", "2"), ("company", "3")])

    assert latest[("company", "1")]["id"] == "new"
    assert latest[("contact", "2")]["id"] == "contact"
    assert ("deal", "1") not in latest
    assert ("company", "3") not in latest
    mock_supabase.table.assert_called_once_with("intelligence_jobs_latest_complete")
    mock_supabase.table.return_value.select.return_value.in_.assert_called_once_with(
        "entity_id", ["1", "2", "3"]
    )
    mock_supabase.table.return_value.select.return_value.in_.return_value.order.assert_not_called()


def test_latest_completed_jobs_empty_input():
    from app.db.intelligence_jobs import get_latest_completed_jobs

    assert get_latest_completed_jobs([]) == {}


def test_database_error_propagates():
    mock_supabase = MagicMock()
    mock_supabase.table.side_effect = RuntimeError("connection reset")

    with patch("app.db.intelligence_jobs.get_supabase", return_value=mock_supabase):
        from app.db.intelligence_jobs import list_jobs

        with pytest.raises(RuntimeError):
            list_jobs(entity_type="deal")
