"""
AI Narrative Builder

Builds the prompt for the weekly report from aggregated costs, anomalies and
(when enabled) forecast, chargeback and optimization data, invokes the chat
model under a token budget and a response timeout, and parses the labeled
sections out of the response.

Any failure (provider error, timeout, unsectioned response) yields
template-only sections stating that AI analysis was unavailable; the report is
still sent.
"""

import asyncio
import json
import os
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
import yaml
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.prompts import ChatPromptTemplate
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from costpulse.core.exceptions import AIAnalysisError
from costpulse.core.pipeline_config import PipelineConfig
from costpulse.schemas.analysis import Anomaly, CostBreakdown, NarrativeSection
from costpulse.services.llm.guardrails import LLMGuardrails

logger = structlog.get_logger()

SUMMARY = "SUMMARY"
ANOMALIES = "ANOMALIES"
RECOMMENDATIONS = "RECOMMENDATIONS"
FORECAST = "FORECAST"

SECTION_TITLES = {
    SUMMARY: "Executive Summary",
    ANOMALIES: "Anomalies",
    RECOMMENDATIONS: "Recommendations",
    FORECAST: "Forecast",
}

SECTION_PATTERN = re.compile(r"^[ \t]*=+[ \t]*SECTION:[ \t]*([A-Za-z_ ]+?)[ \t]*=+[ \t]*$", re.MULTILINE | re.IGNORECASE)

TOP_ITEMS = 10


def _load_prompt_registry() -> Dict[str, Any]:
    prompt_path = os.path.join(os.path.dirname(__file__), "prompts.yaml")
    with open(prompt_path, "r") as f:
        return yaml.safe_load(f)["cost_narrative"]


def _money(value: Any) -> str:
    return f"{Decimal(str(value)):,.2f}"


def _strip_markdown(text: str) -> str:
    """Removes a markdown code block wrapper; models often ignore 'plain text' instructions."""
    match = re.match(r"^```[a-z]*\s*\n?(.*?)\n?```$", text.strip(), re.DOTALL)
    return match.group(1).strip() if match else text.strip()


def expected_sections(config: PipelineConfig) -> List[str]:
    sections = [SUMMARY, ANOMALIES, RECOMMENDATIONS]
    if config.forecasting:
        sections.append(FORECAST)
    return sections


def parse_sections(text: str, expected: List[str]) -> List[NarrativeSection]:
    """
    Split a model response on `=== SECTION: <NAME> ===` delimiters.

    Unknown section names are ignored. A response without a non-empty SUMMARY
    is rejected; other missing sections are reported back as missing.

    Raises:
        AIAnalysisError: when the response does not follow the contract.
    """
    content = _strip_markdown(text or "")
    matches = list(SECTION_PATTERN.finditer(content))
    if not matches:
        raise AIAnalysisError("Model response has no section delimiters", code="unsectioned_response")

    bodies: Dict[str, str] = {}
    for i, match in enumerate(matches):
        name = re.sub(r"\s+", "_", match.group(1).strip().upper())
        end = matches[i + 1].start() if i + 1 < len(matches) else len(content)
        body = content[match.end():end].strip()
        if name in expected and body and name not in bodies:
            bodies[name] = body

    if SUMMARY not in bodies:
        raise AIAnalysisError("Model response is missing the SUMMARY section", code="malformed_response")

    return [
        NarrativeSection(name=name.lower(), title=SECTION_TITLES[name], body=bodies[name])
        for name in expected
        if name in bodies
    ]


@dataclass
class NarrativeContext:
    """Inputs to the narrative for one reporting period."""
    period_start: Any
    period_end: Any
    week_key: str
    breakdown: CostBreakdown
    anomalies: List[Anomaly] = field(default_factory=list)
    budgets: List[Dict[str, Any]] = field(default_factory=list)
    recommendations: List[Dict[str, Any]] = field(default_factory=list)
    forecast: Optional[Dict[str, Any]] = None
    chargeback: Optional[Dict[str, Any]] = None


@dataclass
class NarrativeResult:
    sections: List[NarrativeSection]
    ai_available: bool
    error: Optional[str] = None


class NarrativeBuilder:
    """
    Wraps a LangChain chat model behind the section-delimiter contract.

    Args:
        llm: chat model, or None when no provider is configured (always falls back).
        config: frozen per-run configuration (flags, timeout).
        invoke_attempts: attempts per narrative, retried with exponential backoff.
    """

    def __init__(self, llm: Optional[BaseChatModel], config: PipelineConfig, invoke_attempts: int = 2):
        self.llm = llm
        self.config = config
        self.invoke_attempts = invoke_attempts
        registry = _load_prompt_registry()

        system_prompt = registry["system"]
        if config.advanced_prompting:
            system_prompt = f"{system_prompt}\n{registry['advanced_steps']}"
        self.prompt = ChatPromptTemplate.from_messages([
            ("system", system_prompt),
            ("user", registry["user"]),
        ])
        self.prompt_version = registry.get("version")

    def build_payload(self, ctx: NarrativeContext) -> Dict[str, Any]:
        """Compact, sanitized JSON-able view of the period for the prompt."""
        b = ctx.breakdown
        payload: Dict[str, Any] = {
            "totals": {
                "total_cost": _money(b.total_cost),
                "currency": b.currency,
                "previous_period_total": _money(b.previous_total_cost) if b.previous_total_cost is not None else None,
                "change_percent": b.change_percent,
                "excluded_virtual_desktop_cost": _money(b.excluded_cost),
                "other_currency_costs": {code: _money(cost) for code, cost in b.other_currency_costs.items()},
            },
            "top_services": [
                {"service": name, "cost": _money(cost)}
                for name, cost in list(b.by_service.items())[:TOP_ITEMS]
            ],
            "by_subscription": [
                {"subscription": name, "cost": _money(cost)}
                for name, cost in list(b.by_subscription.items())[:TOP_ITEMS]
            ],
            "top_resources": [
                {**r, "cost": _money(r["cost"])} for r in b.top_resources[:TOP_ITEMS]
            ],
            "anomalies": [
                {
                    "subscription": a.subscription_id,
                    "service": a.service_name,
                    "observed": _money(a.observed_cost),
                    "baseline_mean": _money(a.baseline_mean),
                    "deviation_sigma": a.deviation_score,
                    "severity": a.severity.value,
                }
                for a in ctx.anomalies
            ] if self.config.anomaly_detection else "anomaly detection disabled",
            "budgets": ctx.budgets,
        }
        if self.config.optimization_recommendations:
            payload["advisor_cost_recommendations"] = ctx.recommendations[:TOP_ITEMS]
        if self.config.forecasting and ctx.forecast:
            payload["forecast"] = ctx.forecast
        if self.config.chargeback_analysis and ctx.chargeback:
            payload["chargeback"] = {
                "tag_key": ctx.chargeback["tag_key"],
                "compliance_percent": ctx.chargeback["compliance_percent"],
                "untagged_cost": _money(ctx.chargeback["untagged_cost"]),
                "by_unit": {k: _money(v) for k, v in list(ctx.chargeback["by_unit"].items())[:TOP_ITEMS]},
            }
        return LLMGuardrails.sanitize_input(payload)

    async def _invoke(self, variables: Dict[str, Any]) -> str:
        chain = self.prompt | self.llm

        @retry(
            stop=stop_after_attempt(self.invoke_attempts),
            wait=wait_exponential(multiplier=1, min=2, max=10),
            retry=retry_if_exception_type(Exception),
            reraise=True,
        )
        async def _invoke_with_retry():
            logger.info("invoking_llm", prompt_version=self.prompt_version)
            response = await chain.ainvoke(variables)
            return response.content

        try:
            content = await asyncio.wait_for(_invoke_with_retry(), timeout=self.config.llm_timeout_seconds)
        except asyncio.TimeoutError as e:
            raise AIAnalysisError(
                f"Model did not respond within {self.config.llm_timeout_seconds} seconds", code="llm_timeout"
            ) from e
        except Exception as e:
            logger.error("llm_invocation_failed", error=str(e))
            raise AIAnalysisError(f"Failed to invoke LLM: {e}", code="llm_failed") from e

        if isinstance(content, list):
            # Some providers return content blocks
            content = "".join(part.get("text", "") if isinstance(part, dict) else str(part) for part in content)
        return content

    async def build(self, ctx: NarrativeContext) -> NarrativeResult:
        expected = expected_sections(self.config)
        if self.llm is None:
            return NarrativeResult(self.fallback_sections(ctx, "no language model configured"), False,
                                   "no language model configured")

        variables = {
            "section_list": "\n".join(f"=== SECTION: {name} ===" for name in expected),
            "period_start": str(ctx.period_start),
            "period_end": str(ctx.period_end),
            "week_key": ctx.week_key,
            "cost_data": json.dumps(self.build_payload(ctx), indent=2, default=str),
        }

        try:
            content = await self._invoke(variables)
            parsed = parse_sections(content, expected)
        except AIAnalysisError as e:
            logger.warning("ai_narrative_unavailable", code=e.code, error=e.message)
            return NarrativeResult(self.fallback_sections(ctx, e.message), False, e.message)

        present = {s.name.upper() for s in parsed}
        missing = [name for name in expected if name not in present]
        if missing:
            logger.warning("ai_narrative_sections_missing", missing=missing)
            templates = {s.name.upper(): s for s in self.fallback_sections(ctx, "section missing from AI response")}
            parsed = [
                next(s for s in parsed if s.name.upper() == name) if name in present else templates[name]
                for name in expected
            ]

        logger.info("ai_narrative_built", sections=[s.name for s in parsed])
        return NarrativeResult(parsed, True)

    def fallback_sections(self, ctx: NarrativeContext, reason: str) -> List[NarrativeSection]:
        """Template-only sections built from the deterministic data."""
        b = ctx.breakdown
        change = f" ({b.change_percent:+.1f}% vs previous period)" if b.change_percent is not None else ""
        sections = [
            NarrativeSection(
                name=SUMMARY.lower(),
                title=SECTION_TITLES[SUMMARY],
                body=(
                    f"AI analysis was unavailable for this report ({reason}). "
                    f"Total spend for {ctx.period_start} to {ctx.period_end} was "
                    f"{_money(b.total_cost)} {b.currency}{change}, excluding "
                    f"{_money(b.excluded_cost)} {b.currency} of virtual desktop resources."
                ),
            ),
            NarrativeSection(
                name=ANOMALIES.lower(),
                title=SECTION_TITLES[ANOMALIES],
                body=(
                    f"{len(ctx.anomalies)} service(s) deviated from their baseline beyond "
                    f"{self.config.anomaly_threshold} standard deviations. See the anomaly table."
                    if ctx.anomalies else "No statistically significant cost anomalies were detected."
                ),
            ),
            NarrativeSection(
                name=RECOMMENDATIONS.lower(),
                title=SECTION_TITLES[RECOMMENDATIONS],
                body=(
                    f"{len(ctx.recommendations)} Advisor cost recommendation(s) are listed below."
                    if ctx.recommendations else "No automated recommendations are available this week."
                ),
            ),
        ]
        if self.config.forecasting:
            forecast = ctx.forecast or {}
            sections.append(NarrativeSection(
                name=FORECAST.lower(),
                title=SECTION_TITLES[FORECAST],
                body=(
                    f"Statistical forecast ({forecast.get('model')}): {_money(forecast['next_7_days'])} "
                    f"{b.currency} expected over the next 7 days."
                    if forecast.get("available") else "Not enough history for a forecast."
                ),
            ))
        return sections
