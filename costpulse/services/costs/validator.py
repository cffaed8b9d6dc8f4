"""
Record Validator

Guards the sink against malformed, partial, or diagnostic-contaminated records.
Diagnostic console output (verbose/warning streams, stack traces) captured into
data fields has previously been forwarded as if it were a data row; every
record passes through these checks before it is written.

Rejections are counted and logged; they never abort a run.
"""

import re
from collections import Counter
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Type

import structlog
from pydantic import BaseModel, ValidationError

from costpulse.core.exceptions import RecordValidationError
from costpulse.schemas.analysis import Dataset
from costpulse.schemas.costs import AdvisorRecord, BudgetRecord, CostRecord, ReservationRecord

logger = structlog.get_logger()

MAX_SHORT_TEXT_LENGTH = 512

# Signatures of log lines and stack traces that must never appear in data fields.
DIAGNOSTIC_PATTERNS = [
    # "ERROR: ...", "VERBOSE: ...", "[WARN] ..."
    re.compile(r"^\s*\[?\s*(VERBOSE|DEBUG|INFO|WARN|WARNING|ERROR|FATAL|CRITICAL|TRACE)\s*[\]:]", re.IGNORECASE),
    # "2025-07-24 06:00:01 ERROR something" / "2025-07-24T06:00:01Z [INFO] ..."
    re.compile(
        r"^\s*\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}(:\d{2})?\S*\s+\[?(DEBUG|INFO|WARN|WARNING|ERROR|FATAL|CRITICAL|TRACE)\b",
        re.IGNORECASE,
    ),
    re.compile(r"Traceback \(most recent call last\)"),
    re.compile(r"File \"[^\"]+\", line \d+"),
    re.compile(r"\bat [A-Za-z_][\w.`]*\.[\w<>`]+\(.*\)"),          # .NET / JS stack frame
    re.compile(r"\bSystem\.[\w.]*Exception\b"),
    re.compile(r"At line:\d+ char:\d+"),                             # PowerShell error position
    re.compile(r"\b(CategoryInfo|FullyQualifiedErrorId)\s*:"),
    re.compile(r"\bException calling \""),
    re.compile(r"\bWrite-(Host|Output|Verbose|Warning|Error|Debug)\b"),
]

_CURRENCY_PATTERN = re.compile(r"^[A-Z]{3}$")


@dataclass(frozen=True)
class DatasetRules:
    schema: Type[BaseModel]
    required: Tuple[str, ...]
    numeric: Tuple[str, ...]
    optional_numeric: Tuple[str, ...] = ()
    short_text: Tuple[str, ...] = ()
    currency_fields: Tuple[str, ...] = ()


RULES: Dict[Dataset, DatasetRules] = {
    Dataset.COSTS: DatasetRules(
        schema=CostRecord,
        required=("subscription_id", "resource_name", "service_name", "meter_category", "cost",
                  "currency", "collection_date"),
        numeric=("cost",),
        short_text=("subscription_id", "resource_name", "service_name", "meter_category", "location",
                    "resource_group"),
        currency_fields=("currency",),
    ),
    Dataset.BUDGETS: DatasetRules(
        schema=BudgetRecord,
        required=("subscription_id", "budget_name", "amount", "current_spend", "collection_date"),
        numeric=("amount", "current_spend"),
        optional_numeric=("forecast_spend",),
        short_text=("subscription_id", "budget_name", "time_grain"),
        currency_fields=("currency",),
    ),
    Dataset.RESERVATIONS: DatasetRules(
        schema=ReservationRecord,
        required=("subscription_id", "reservation_id", "avg_utilization_percent", "usage_date",
                  "collection_date"),
        numeric=("avg_utilization_percent",),
        optional_numeric=("min_utilization_percent", "max_utilization_percent", "reserved_hours",
                          "used_hours"),
        short_text=("subscription_id", "reservation_id", "sku_name"),
    ),
    Dataset.ADVISOR: DatasetRules(
        schema=AdvisorRecord,
        required=("subscription_id", "recommendation_id", "category", "impact", "collection_date"),
        numeric=(),
        optional_numeric=("potential_savings",),
        short_text=("subscription_id", "recommendation_id", "category", "impact", "impacted_field",
                    "impacted_value"),
        currency_fields=("savings_currency",),
    ),
}


def looks_like_diagnostic(text: str) -> bool:
    return any(p.search(text) for p in DIAGNOSTIC_PATTERNS)


def coerce_amount(value: Any, field_name: str = "cost") -> Decimal:
    """
    Coerce a numeric field to a finite, non-negative Decimal.

    Strings are parsed exactly ("12.50" -> Decimal("12.50")); floats go through
    str() so their shortest representation is kept.
    """
    if isinstance(value, bool) or value is None:
        raise RecordValidationError(f"{field_name} is not numeric", field=field_name, reason="non_numeric")
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, (int, float)):
        amount = Decimal(str(value))
    elif isinstance(value, str):
        text = value.strip()
        if looks_like_diagnostic(text):
            raise RecordValidationError(
                f"{field_name} contains diagnostic output", field=field_name, reason="diagnostic"
            )
        try:
            amount = Decimal(text)
        except InvalidOperation:
            raise RecordValidationError(f"{field_name} is not numeric", field=field_name, reason="non_numeric")
    else:
        raise RecordValidationError(f"{field_name} is not numeric", field=field_name, reason="non_numeric")

    if not amount.is_finite():
        raise RecordValidationError(f"{field_name} is not finite", field=field_name, reason="non_finite")
    if amount < 0:
        raise RecordValidationError(f"{field_name} is negative", field=field_name, reason="negative")
    return amount


@dataclass
class ValidationOutcome:
    accepted: List[BaseModel] = field(default_factory=list)
    rejected: int = 0
    reasons: Counter = field(default_factory=Counter)


class RecordValidator:
    """Validates raw source rows for one dataset kind into typed records."""

    def validate(self, dataset: Dataset, raw: Mapping[str, Any]) -> BaseModel:
        """
        Validate a single raw record.

        Raises:
            RecordValidationError: with a machine-readable reason.
        """
        rules = RULES[dataset]
        if not isinstance(raw, Mapping):
            raise RecordValidationError("record is not a mapping", reason="malformed")

        for name in rules.required:
            value = raw.get(name)
            if value is None or (isinstance(value, str) and not value.strip()):
                raise RecordValidationError(f"missing required field '{name}'", field=name, reason="missing_field")

        values: Dict[str, Any] = dict(raw)

        for name, value in raw.items():
            if isinstance(value, str) and looks_like_diagnostic(value):
                raise RecordValidationError(f"{name} contains diagnostic output", field=name, reason="diagnostic")

        for name in rules.short_text:
            value = raw.get(name)
            if value is None:
                continue
            if not isinstance(value, str):
                raise RecordValidationError(f"{name} must be text", field=name, reason="malformed")
            if "\n" in value or "\r" in value or len(value) > MAX_SHORT_TEXT_LENGTH:
                raise RecordValidationError(f"{name} is not short text", field=name, reason="diagnostic")
            values[name] = value.strip()

        for name in rules.numeric:
            values[name] = coerce_amount(raw.get(name), name)
        for name in rules.optional_numeric:
            if raw.get(name) not in (None, ""):
                values[name] = coerce_amount(raw.get(name), name)
            else:
                values[name] = None

        for name in rules.currency_fields:
            value = raw.get(name)
            if value is None:
                continue
            code = str(value).strip().upper()
            if not _CURRENCY_PATTERN.match(code):
                raise RecordValidationError(f"{name} '{value}' is not a currency code", field=name,
                                            reason="currency")
            values[name] = code

        try:
            return rules.schema(**values)
        except ValidationError as e:
            raise RecordValidationError(f"record failed schema validation: {e.errors()[0]['msg']}",
                                        reason="schema") from e

    def validate_batch(
        self,
        dataset: Dataset,
        raws: Iterable[Mapping[str, Any]],
        subscription_id: Optional[str] = None,
    ) -> ValidationOutcome:
        outcome = ValidationOutcome()
        for raw in raws:
            try:
                outcome.accepted.append(self.validate(dataset, raw))
            except RecordValidationError as e:
                outcome.rejected += 1
                outcome.reasons[e.reason] += 1
                logger.warning(
                    "record_rejected",
                    dataset=dataset.value,
                    subscription_id=subscription_id,
                    reason=e.reason,
                    field=e.field,
                )
        if outcome.rejected:
            logger.info(
                "validation_summary",
                dataset=dataset.value,
                subscription_id=subscription_id,
                accepted=len(outcome.accepted),
                rejected=outcome.rejected,
                reasons=dict(outcome.reasons),
            )
        return outcome
