import pytest
from datetime import date
from unittest.mock import AsyncMock, MagicMock, patch

from costpulse import cli
from costpulse.core.exceptions import ConfigurationError
from costpulse.schemas.analysis import AnalysisStatus, RunStatus


@pytest.fixture(autouse=True)
def quiet_logging():
    with patch("costpulse.cli.setup_logging"):
        yield


def test_collect_arguments():
    args = cli.build_parser().parse_args(["collect", "--date", "2025-07-24", "--subscriptions", "sub-A, sub-B"])

    assert args.date == date(2025, 7, 24)
    assert args.subscriptions == "sub-A, sub-B"


def test_bad_date_is_rejected():
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["analyze", "--start", "24/07/2025", "--end", "2025-07-27"])


@pytest.mark.parametrize("status, code", [
    (RunStatus.COMPLETED, cli.EXIT_OK),
    (RunStatus.COMPLETED_WITH_SKIPS, cli.EXIT_OK),
    (RunStatus.COMPLETED_WITH_FAILURES, cli.EXIT_PARTIAL),
    (RunStatus.FAILED, cli.EXIT_FAILED),
])
def test_collect_exit_codes(status, code):
    run = AsyncMock(return_value=MagicMock(status=status))
    with patch("costpulse.cli.runtime.run_collection", new=run):
        assert cli.main(["collect", "--subscriptions", "sub-A,sub-B"]) == code

    run.assert_awaited_once_with(["sub-A", "sub-B"], None)


def test_analyze_exit_codes():
    sent = AsyncMock(return_value=MagicMock(status=AnalysisStatus.SKIPPED_DUPLICATE))
    with patch("costpulse.cli.runtime.run_weekly_analysis", new=sent):
        assert cli.main(["analyze"]) == cli.EXIT_OK

    failed = AsyncMock(return_value=MagicMock(status=AnalysisStatus.FAILED))
    with patch("costpulse.cli.runtime.run_weekly_analysis", new=failed):
        assert cli.main(["analyze", "--start", "2025-07-21", "--end", "2025-07-27"]) == cli.EXIT_FAILED
    failed.assert_awaited_once_with(date(2025, 7, 21), date(2025, 7, 27))


def test_half_open_period_is_a_configuration_error():
    assert cli.main(["analyze", "--start", "2025-07-21"]) == cli.EXIT_CONFIG


def test_configuration_error_exit_code():
    run = AsyncMock(side_effect=ConfigurationError("SENDGRID_API_KEY is not configured"))
    with patch("costpulse.cli.runtime.run_weekly_analysis", new=run):
        assert cli.main(["analyze"]) == cli.EXIT_CONFIG


def test_reversed_period_is_a_configuration_error():
    assert cli.main(["analyze", "--start", "2025-07-27", "--end", "2025-07-21"]) == cli.EXIT_CONFIG
