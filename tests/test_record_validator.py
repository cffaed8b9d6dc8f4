"""
Record validator: the sink must never receive diagnostic console output,
partial rows or non-numeric amounts.
"""

import pytest
from datetime import date
from decimal import Decimal

from costpulse.core.exceptions import RecordValidationError
from costpulse.schemas.analysis import Dataset
from costpulse.services.costs.validator import RecordValidator, coerce_amount, looks_like_diagnostic


@pytest.fixture
def validator():
    return RecordValidator()


def _row(**overrides):
    row = {
        "subscription_id": "sub-A",
        "resource_name": "vm-app-01",
        "service_name": "Microsoft.Compute",
        "meter_category": "Virtual Machines",
        "cost": "12.50",
        "currency": "usd",
        "collection_date": date(2025, 7, 23),
    }
    row.update(overrides)
    return row


def test_string_amount_is_parsed_exactly(validator):
    record = validator.validate(Dataset.COSTS, _row())

    assert record.cost == Decimal("12.50")
    assert record.currency == "USD"


def test_float_amount_keeps_shortest_representation():
    assert coerce_amount(0.1) == Decimal("0.1")


@pytest.mark.parametrize("line", [
    "VERBOSE: Querying cost data for subscription",
    "WARNING: Rate limit approaching",
    "ERROR: The remote server returned an error: (429)",
    "[INFO] fetched 120 rows",
    "2025-07-24 06:00:01 ERROR Invoke-RestMethod failed",
    "Traceback (most recent call last):",
    "At line:12 char:5",
    "    + CategoryInfo          : InvalidOperation",
    "System.Net.WebException: The operation has timed out",
    "Exception calling \"GetResponse\" with \"0\" argument(s)",
])
def test_diagnostic_lines_are_detected(line):
    assert looks_like_diagnostic(line) is True


@pytest.mark.parametrize("field, value", [
    ("resource_name", "WARNING: resource group not found"),
    ("cost", "ERROR: The remote server returned an error"),
    ("service_name", "Traceback (most recent call last):\n  File \"x.py\", line 3"),
    ("meter_category", "Virtual\nMachines"),
])
def test_diagnostic_contamination_is_rejected(validator, field, value):
    with pytest.raises(RecordValidationError) as exc:
        validator.validate(Dataset.COSTS, _row(**{field: value}))

    assert exc.value.reason == "diagnostic"
    assert exc.value.field == field


def test_missing_required_field_is_rejected(validator):
    row = _row()
    del row["meter_category"]

    with pytest.raises(RecordValidationError) as exc:
        validator.validate(Dataset.COSTS, row)

    assert exc.value.reason == "missing_field"


@pytest.mark.parametrize("amount, reason", [
    ("abc", "non_numeric"),
    ("-4.00", "negative"),
    ("NaN", "non_finite"),
    (True, "non_numeric"),
])
def test_bad_amounts_are_rejected(validator, amount, reason):
    with pytest.raises(RecordValidationError) as exc:
        validator.validate(Dataset.COSTS, _row(cost=amount))

    assert exc.value.reason == reason


def test_invalid_currency_is_rejected(validator):
    with pytest.raises(RecordValidationError) as exc:
        validator.validate(Dataset.COSTS, _row(currency="US Dollars"))

    assert exc.value.reason == "currency"


def test_validate_batch_counts_rejections_without_raising(validator):
    rows = [
        _row(),
        _row(resource_name="vm-app-02", cost="ERROR: quota exceeded"),
        _row(resource_name="vm-app-03", cost=None),
        "VERBOSE: not even a mapping",
    ]

    outcome = validator.validate_batch(Dataset.COSTS, rows, subscription_id="sub-A")

    assert len(outcome.accepted) == 1
    assert outcome.rejected == 3
    assert outcome.reasons["diagnostic"] == 1
    assert outcome.reasons["missing_field"] == 1
    assert outcome.reasons["malformed"] == 1


def test_budget_optional_forecast(validator):
    record = validator.validate(Dataset.BUDGETS, {
        "subscription_id": "sub-A",
        "budget_name": "monthly-cap",
        "amount": "1000",
        "current_spend": 420.6,
        "forecast_spend": None,
        "collection_date": date(2025, 7, 23),
    })

    assert record.current_spend == Decimal("420.6")
    assert record.forecast_spend is None
    assert record.utilization_percent == Decimal("42.1")


def test_advisor_record_without_savings(validator):
    record = validator.validate(Dataset.ADVISOR, {
        "subscription_id": "sub-A",
        "recommendation_id": "rec-1",
        "category": "Cost",
        "impact": "High",
        "impacted_value": "vm-app-01",
        "problem": "Right-size or shutdown underutilized virtual machines",
        "potential_savings": "",
        "collection_date": date(2025, 7, 23),
    })

    assert record.potential_savings is None
