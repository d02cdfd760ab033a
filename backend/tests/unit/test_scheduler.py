"""Unit tests for the in-process job scheduler wrappers."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from apscheduler.schedulers.background import BackgroundScheduler

from outreach import scheduler
from outreach.auth.google_oauth import ConfigurationError
from outreach.services.inbound_poller import PollSummary


@pytest.mark.unit
def test_run_poll_replies_runs_poller():
    poll = AsyncMock(return_value=PollSummary(processed=1, accounts_checked=1))
    with patch("outreach.scheduler.poll_replies", new=poll):
        scheduler.run_poll_replies()

    poll.assert_awaited_once()


@pytest.mark.unit
def test_run_poll_replies_contains_failures():
    with patch("outreach.scheduler.poll_replies", new=AsyncMock(side_effect=ConfigurationError("missing"))):
        # must not raise into the scheduler thread
        scheduler.run_poll_replies()


@pytest.mark.unit
def test_run_cooldown_sweep_contains_failures(db_session):
    with patch("outreach.scheduler.sweep_expired_cooldowns", side_effect=RuntimeError("db down")) as sweep:
        scheduler.run_cooldown_sweep()

    sweep.assert_called_once()


@pytest.mark.unit
def test_start_registers_both_jobs():
    mock_scheduler = MagicMock()
    mock_scheduler.running = False

    with patch("outreach.scheduler.scheduler", mock_scheduler):
        scheduler.start_scheduler()

    job_ids = {c.kwargs["id"] for c in mock_scheduler.add_job.call_args_list}
    assert job_ids == {"poll_replies", "cleanup_cooldowns"}
    assert all(c.kwargs["max_instances"] == 1 for c in mock_scheduler.add_job.call_args_list)
    assert all(c.kwargs["replace_existing"] for c in mock_scheduler.add_job.call_args_list)
    mock_scheduler.start.assert_called_once()


@pytest.mark.unit
def test_start_is_noop_when_running():
    mock_scheduler = MagicMock()
    mock_scheduler.running = True

    with patch("outreach.scheduler.scheduler", mock_scheduler):
        scheduler.start_scheduler()
        scheduler.shutdown_scheduler()

    mock_scheduler.add_job.assert_not_called()
    mock_scheduler.shutdown.assert_called_once_with(wait=False)


@pytest.mark.unit
def test_restart_after_shutdown_keeps_one_job_per_id():
    real_scheduler = BackgroundScheduler(timezone="UTC")

    with patch("outreach.scheduler.scheduler", real_scheduler):
        scheduler.start_scheduler()
        scheduler.shutdown_scheduler()
        scheduler.start_scheduler()
        try:
            job_ids = sorted(job.id for job in real_scheduler.get_jobs())
        finally:
            scheduler.shutdown_scheduler()

    assert job_ids == ["cleanup_cooldowns", "poll_replies"]
