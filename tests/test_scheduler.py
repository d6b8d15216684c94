"""Tests for the APScheduler pump wrapper."""

import pytest

from allotrack.jobs import PumpScheduler


class TestPumpScheduler:
    def test_add_pump_registers_job(self):
        scheduler = PumpScheduler()

        async def pump():
            return None

        scheduler.add_pump("active_checks", pump, seconds=120, description="Active result checks")
        scheduler.add_pump("notifications", pump, seconds=60)

        jobs = scheduler.get_jobs_status()
        assert [job["id"] for job in jobs] == ["active_checks", "notifications"]
        assert jobs[0]["name"] == "Active result checks"
        assert jobs[0]["runs"] == 0

    @pytest.mark.asyncio
    async def test_execute_job_records_stats(self):
        scheduler = PumpScheduler()

        async def pump():
            return {"processed": 1}

        await scheduler._execute_job("notifications", pump)

        stats = scheduler._stats["notifications"]
        assert stats["runs"] == 1
        assert stats["errors"] == 0
        assert stats["last_run"] is not None

    @pytest.mark.asyncio
    async def test_failing_pump_is_contained(self):
        scheduler = PumpScheduler()

        async def pump():
            raise RuntimeError("boom")

        await scheduler._execute_job("maintenance", pump)
        await scheduler._execute_job("maintenance", pump)

        assert scheduler._stats["maintenance"] == {
            "runs": 2,
            "errors": 2,
            "last_run": scheduler._stats["maintenance"]["last_run"],
            "last_duration_ms": scheduler._stats["maintenance"]["last_duration_ms"],
        }

    @pytest.mark.asyncio
    async def test_start_and_shutdown(self):
        scheduler = PumpScheduler()
        scheduler.start()
        scheduler.start()
        assert scheduler.running

        scheduler.shutdown()
        scheduler.shutdown()
        assert not scheduler.running
