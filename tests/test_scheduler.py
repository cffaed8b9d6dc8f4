import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from costpulse.core.exceptions import SinkError
from costpulse.schemas.analysis import RunStatus
from costpulse.services.scheduler.orchestrator import SchedulerOrchestrator


def test_start_registers_daily_and_weekly_jobs(test_settings):
    settings = test_settings.model_copy(update={
        "SCHEDULER_COLLECTION_HOUR": 5,
        "SCHEDULER_ANALYSIS_DAY_OF_WEEK": "tue",
        "SCHEDULER_ANALYSIS_HOUR": 8,
    })
    orchestrator = SchedulerOrchestrator(settings)
    orchestrator.scheduler = MagicMock()

    orchestrator.start()

    calls = {c.kwargs["id"]: c for c in orchestrator.scheduler.add_job.call_args_list}
    assert set(calls) == {"daily_collection", "weekly_analysis"}
    daily = str(calls["daily_collection"].kwargs["trigger"])
    weekly = str(calls["weekly_analysis"].kwargs["trigger"])
    assert "hour='5'" in daily
    assert "day_of_week='tue'" in weekly
    assert "hour='8'" in weekly
    orchestrator.scheduler.start.assert_called_once()


def test_metrics_server_started_when_port_configured(test_settings):
    orchestrator = SchedulerOrchestrator(test_settings.model_copy(update={"METRICS_PORT": 9109}))
    orchestrator.scheduler = MagicMock()

    with patch("costpulse.services.scheduler.orchestrator.start_http_server") as mock_server:
        orchestrator.start()

    mock_server.assert_called_once_with(9109)


@pytest.mark.asyncio
async def test_collection_job_records_status(test_settings):
    orchestrator = SchedulerOrchestrator(test_settings)
    summary = MagicMock(status=RunStatus.COMPLETED_WITH_SKIPS)

    with patch("costpulse.services.scheduler.orchestrator.runtime.run_collection",
               new=AsyncMock(return_value=summary)):
        await orchestrator.collection_job()

    assert orchestrator.get_status()["last_status"]["daily_collection"] == "completed_with_skips"


@pytest.mark.asyncio
async def test_failing_job_does_not_escape_scheduler(test_settings):
    orchestrator = SchedulerOrchestrator(test_settings)

    with patch("costpulse.services.scheduler.orchestrator.runtime.run_weekly_analysis",
               new=AsyncMock(side_effect=SinkError("database unavailable"))):
        await orchestrator.weekly_analysis_job()

    assert orchestrator.get_status()["last_status"]["weekly_analysis"] == "failed"
