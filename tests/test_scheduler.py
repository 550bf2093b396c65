"""Tests for scheduler job configuration."""

from transit_eta.config import settings
from transit_eta.core.scheduler import create_scheduler


class StubTracker:
    async def poll_vehicles(self):
        pass

    async def load_static_data(self):
        pass


def test_jobs_are_registered():
    scheduler = create_scheduler(StubTracker())
    jobs = {job.id: job for job in scheduler.get_jobs()}
    assert set(jobs) == {"poll_vehicles", "refresh_static_data"}
    assert jobs["poll_vehicles"].max_instances == 1
    assert jobs["poll_vehicles"].trigger.interval.total_seconds() == settings.poll_interval_seconds
    assert jobs["refresh_static_data"].trigger.interval.total_seconds() == settings.static_refresh_hours * 3600
