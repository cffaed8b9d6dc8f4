"""
Weekly analysis job: at most one successful report per ISO week, with the
AI narrative degrading to template sections.
"""

import json
import httpx
import pytest
from datetime import date, timedelta
from tenacity import wait_none

from costpulse.core.exceptions import SinkError
from costpulse.models.report_run import ReportStatus
from costpulse.schemas.analysis import AnalysisStatus, Dataset
from costpulse.services.jobs.weekly_analysis import WeeklyAnalysisJob, previous_week, week_key_for
from costpulse.services.llm.narrative import NarrativeBuilder
from costpulse.services.notifications.email_service import EmailService
from costpulse.services.notifications.report import ReportComposer

PERIOD_START = date(2025, 7, 21)
PERIOD_END = date(2025, 7, 27)


class RelayRecorder:
    def __init__(self, statuses=None):
        self.statuses = list(statuses or [])
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        status = self.statuses.pop(0) if self.statuses else 202
        return httpx.Response(status, headers={"X-Message-Id": f"msg-{len(self.requests)}"})


def _job(sink, config, relay):
    email = EmailService(
        api_key="SG.test-key",
        from_email=config.mail_from,
        max_attempts=config.mail_max_attempts,
        client=httpx.AsyncClient(transport=httpx.MockTransport(relay)),
        wait=wait_none(),
    )
    return WeeklyAnalysisJob(sink, config, NarrativeBuilder(None, config), email, ledger_wait=wait_none())


async def _seed(sink, cost_factory, collected_at):
    records = []
    for weeks_back, amount in enumerate([110, 90, 110, 90], start=1):
        records.append(cost_factory(cost=amount, collection_date=PERIOD_START - timedelta(days=7 * weeks_back)))
    records.append(cost_factory(cost=125, collection_date=PERIOD_START + timedelta(days=1)))
    records.append(cost_factory(resource_name="avd-vd-pool01", cost=500, is_excluded_resource=True,
                                collection_date=PERIOD_START + timedelta(days=1)))
    await sink.write_records(Dataset.COSTS, records, run_id="seed", collected_at=collected_at)


@pytest.mark.asyncio
async def test_second_run_for_same_week_sends_nothing(sink, config, cost_factory, collected_at):
    await _seed(sink, cost_factory, collected_at)
    relay = RelayRecorder()
    job = _job(sink, config, relay)

    first = await job.run_weekly_analysis(PERIOD_START, PERIOD_END)
    second = await job.run_weekly_analysis(PERIOD_START, PERIOD_END)

    assert first.status == AnalysisStatus.SENT
    assert first.email_sent is True
    assert second.status == AnalysisStatus.SKIPPED_DUPLICATE
    assert len(relay.requests) == 1

    run = await sink.get_report_run("2025-W30")
    assert run.status == ReportStatus.SENT.value
    assert run.anomaly_count == 1
    assert run.recipient_count == 2
    assert run.provider_message_id == "msg-1"


@pytest.mark.asyncio
async def test_report_excludes_virtual_desktop_cost_and_flags_anomaly(sink, config, cost_factory, collected_at):
    await _seed(sink, cost_factory, collected_at)
    relay = RelayRecorder()

    result = await _job(sink, config, relay).run_weekly_analysis(PERIOD_START, PERIOD_END)

    assert [a.service_name for a in result.anomalies] == ["Microsoft.Compute"]
    assert result.ai_available is False
    body = relay.requests[0]["content"][0]["value"]
    subject = relay.requests[0]["subject"]
    assert "125.00 USD" in subject
    assert "AI analysis was unavailable" in body
    assert "500.00" in body  # reported separately as excluded


@pytest.mark.asyncio
async def test_failed_send_is_marked_and_retried_next_run(sink, config, cost_factory, collected_at):
    await _seed(sink, cost_factory, collected_at)
    relay = RelayRecorder(statuses=[400])
    job = _job(sink, config, relay)

    failed = await job.run_weekly_analysis(PERIOD_START, PERIOD_END)
    assert failed.status == AnalysisStatus.FAILED
    assert (await sink.get_report_run("2025-W30")).status == ReportStatus.FAILED.value

    retried = await job.run_weekly_analysis(PERIOD_START, PERIOD_END)
    assert retried.status == AnalysisStatus.SENT
    assert len(relay.requests) == 2


class BrokenComposer(ReportComposer):
    def render(self, report):
        raise TypeError("unsupported operand type(s)")


@pytest.mark.asyncio
async def test_sent_report_is_never_resent_when_ledger_write_fails(sink, config, cost_factory, collected_at,
                                                                   monkeypatch):
    await _seed(sink, cost_factory, collected_at)
    relay = RelayRecorder()
    job = _job(sink, config, relay)

    async def sink_down(*args, **kwargs):
        raise SinkError("database unavailable")

    monkeypatch.setattr(sink, "mark_sent", sink_down)
    first = await job.run_weekly_analysis(PERIOD_START, PERIOD_END)
    second = await job.run_weekly_analysis(PERIOD_START, PERIOD_END)

    assert first.status == AnalysisStatus.SENT
    assert first.email_sent is True
    assert "not recorded" in first.error
    assert second.status == AnalysisStatus.SKIPPED_DUPLICATE
    assert len(relay.requests) == 1

    run = await sink.get_report_run("2025-W30")
    assert run.status == ReportStatus.SENT_UNCONFIRMED.value
    assert run.provider_message_id == "msg-1"


@pytest.mark.asyncio
async def test_ledger_write_is_retried_after_send(sink, config, cost_factory, collected_at, monkeypatch):
    await _seed(sink, cost_factory, collected_at)
    relay = RelayRecorder()
    calls = []
    mark_sent = sink.mark_sent

    async def flaky_mark_sent(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            raise SinkError("connection reset")
        return await mark_sent(*args, **kwargs)

    monkeypatch.setattr(sink, "mark_sent", flaky_mark_sent)
    result = await _job(sink, config, relay).run_weekly_analysis(PERIOD_START, PERIOD_END)

    assert result.status == AnalysisStatus.SENT
    assert result.error is None
    assert len(calls) == 2
    assert (await sink.get_report_run("2025-W30")).status == ReportStatus.SENT.value


@pytest.mark.asyncio
async def test_unexpected_error_fails_run_and_releases_week(sink, config, cost_factory, collected_at):
    await _seed(sink, cost_factory, collected_at)
    relay = RelayRecorder()
    job = _job(sink, config, relay)
    job.composer = BrokenComposer()

    failed = await job.run_weekly_analysis(PERIOD_START, PERIOD_END)

    assert failed.status == AnalysisStatus.FAILED
    assert "TypeError" in failed.error
    assert relay.requests == []
    assert (await sink.get_report_run("2025-W30")).status == ReportStatus.FAILED.value

    job.composer = ReportComposer()
    retried = await job.run_weekly_analysis(PERIOD_START, PERIOD_END)
    assert retried.status == AnalysisStatus.SENT
    assert len(relay.requests) == 1


@pytest.mark.asyncio
async def test_optional_analyses_run_when_enabled(sink, config, cost_factory, collected_at):
    await _seed(sink, cost_factory, collected_at)
    config = config.model_copy(update={"forecasting": True, "chargeback_analysis": True})
    relay = RelayRecorder()

    result = await _job(sink, config, relay).run_weekly_analysis(PERIOD_START, PERIOD_END)

    assert result.status == AnalysisStatus.SENT
    body = relay.requests[0]["content"][0]["value"]
    assert "Chargeback by CostCenter" in body
    assert "Forecast" in body


def test_week_helpers():
    assert week_key_for(date(2025, 7, 27)) == "2025-W30"
    assert week_key_for(date(2025, 1, 1)) == "2025-W01"
    assert previous_week(date(2025, 7, 28)) == (PERIOD_START, PERIOD_END)
    assert previous_week(date(2025, 7, 30)) == (PERIOD_START, PERIOD_END)
