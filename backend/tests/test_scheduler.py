"""Tests for background job ownership and the job locks."""
from unittest.mock import MagicMock, patch

import pytest

from app.config import settings
from app.services import scheduler as scheduler_service
from main import app, lifespan


def process_named(name: str) -> MagicMock:
    process = MagicMock()
    process.name = name
    return process


@pytest.fixture
def stopped_scheduler():
    yield scheduler_service.scheduler
    if scheduler_service.scheduler.running:
        scheduler_service.scheduler.shutdown(wait=False)
    scheduler_service.scheduler.remove_all_jobs()


@pytest.mark.parametrize("process_name,enabled,expected", [
    ("MainProcess", True, True),
    ("SpawnProcess-1", True, True),
    ("SpawnProcess-2", True, False),
    ("MainProcess", False, False),
])
def test_should_run_scheduler(process_name, enabled, expected):
    with patch("app.services.scheduler.multiprocessing.current_process", return_value=process_named(process_name)), \
         patch.object(settings, "RUN_SCHEDULER", enabled):
        assert scheduler_service.should_run_scheduler() is expected


@pytest.mark.asyncio
async def test_single_process_server_runs_ledger_jobs(stopped_scheduler):
    with patch("app.services.scheduler.multiprocessing.current_process", return_value=process_named("MainProcess")):
        async with lifespan(app):
            assert stopped_scheduler.running
            job_ids = {job.id for job in stopped_scheduler.get_jobs()}

    assert job_ids == {"mature_held_earnings", "deliver_ledger_events", "reconcile_payout_links"}


@pytest.mark.asyncio
async def test_secondary_worker_does_not_run_jobs(stopped_scheduler):
    with patch("app.services.scheduler.multiprocessing.current_process", return_value=process_named("SpawnProcess-2")):
        async with lifespan(app):
            assert not stopped_scheduler.running
            assert stopped_scheduler.get_jobs() == []


@pytest.mark.asyncio
async def test_lock_is_exclusive_until_released(fake_redis):
    assert await scheduler_service.acquire_lock("mature_held_earnings")
    assert not await scheduler_service.acquire_lock("mature_held_earnings")

    await scheduler_service.release_lock("mature_held_earnings")

    assert await scheduler_service.acquire_lock("mature_held_earnings")
