import asyncio
from unittest.mock import AsyncMock

import pytest

from apiwarden.models.domain import ScheduleConfig, Task, TestCase
from apiwarden.worker.runner import SchedulerWorker


@pytest.mark.unit
class TestSchedulerWorker:
    @pytest.mark.asyncio
    async def test_loads_runs_and_shuts_down(self, services) -> None:
        await services.tasks.create(
            Task(
                name="nightly",
                project_id="p1",
                schedule=ScheduleConfig(enabled=True, cron="0 3 * * *"),
                test_cases=[TestCase(interface_id="if-list")],
            )
        )
        services.locker.close = AsyncMock()
        worker = SchedulerWorker(services.scheduler, services.runner, services.locker)

        running = asyncio.create_task(worker.run())
        await asyncio.sleep(0.05)
        assert len(services.scheduler.entries) == 1

        worker._shutdown()
        await asyncio.wait_for(running, timeout=1)
        services.locker.close.assert_awaited_once()
