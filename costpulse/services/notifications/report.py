"""
Report Composer

Renders the weekly AnalysisReport into a self-contained HTML email. All dynamic
text (narrative, resource names, advisor text, tag values) is HTML-escaped.
"""

from decimal import Decimal
from typing import Any, Iterable, List, Tuple

from costpulse.schemas.analysis import AnalysisReport, Severity
from costpulse.services.notifications.email_service import escape_html

SEVERITY_COLORS = {
    Severity.HIGH: "#dc2626",
    Severity.MEDIUM: "#f59e0b",
    Severity.LOW: "#2563eb",
}

TOP_SERVICES = 10


def _money(value: Any) -> str:
    if value is None:
        return "-"
    return f"{Decimal(str(value)):,.2f}"


def _table(headers: List[str], rows: Iterable[Tuple[Any, ...]]) -> str:
    head = "".join(f"<th>{escape_html(h)}</th>" for h in headers)
    body = "".join(
        "<tr>" + "".join(f"<td>{cell}</td>" for cell in row) + "</tr>"
        for row in rows
    )
    return f"<table><thead><tr>{head}</tr></thead><tbody>{body}</tbody></table>"


def _paragraphs(text: str) -> str:
    blocks = [b.strip() for b in text.split("\n\n") if b.strip()]
    return "".join(f"<p>{escape_html(b).replace(chr(10), '<br>')}</p>" for b in blocks)


class ReportComposer:
    """Builds the subject line and HTML body for the weekly report."""

    def __init__(self, app_name: str = "CostPulse"):
        self.app_name = app_name

    def subject(self, report: AnalysisReport) -> str:
        b = report.breakdown
        flag = f" - {len(report.anomalies)} anomalies" if report.anomalies else ""
        return (
            f"{self.app_name} weekly cost report {report.week_key}: "
            f"{_money(b.total_cost)} {b.currency}{flag}"
        )

    def render(self, report: AnalysisReport) -> str:
        b = report.breakdown
        change = (
            f"{b.change_percent:+.1f}% vs previous period" if b.change_percent is not None else "no prior period data"
        )
        other_currencies = ""
        if b.other_currency_costs:
            listed = ", ".join(
                f"{_money(cost)} {escape_html(code)}" for code, cost in b.other_currency_costs.items()
            )
            other_currencies = f"<p>Billed in other currencies, not included in totals: {listed}.</p>"

        narrative_html = "".join(
            f'<div class="section"><h2>{escape_html(s.title)}</h2>{_paragraphs(s.body)}</div>'
            for s in report.narrative_sections
        )
        ai_notice = "" if report.ai_available else (
            '<p class="notice">AI analysis was unavailable; this report contains statistical results only.</p>'
        )

        services_html = _table(
            ["Service", f"Cost ({b.currency})"],
            [(escape_html(name), _money(cost)) for name, cost in list(b.by_service.items())[:TOP_SERVICES]],
        )
        subscriptions_html = _table(
            ["Subscription", f"Cost ({b.currency})"],
            [(escape_html(name), _money(cost)) for name, cost in b.by_subscription.items()],
        )

        anomalies_html = "<p>No anomalies detected.</p>"
        if report.anomalies:
            anomalies_html = _table(
                ["Severity", "Subscription", "Service", "Observed", "Baseline mean", "Deviation"],
                [
                    (
                        f'<span style="color: {SEVERITY_COLORS[a.severity]}; font-weight: bold;">'
                        f"{escape_html(a.severity.value.upper())}</span>",
                        escape_html(a.subscription_id),
                        escape_html(a.service_name),
                        _money(a.observed_cost),
                        _money(a.baseline_mean),
                        f"{a.deviation_score:.1f}&sigma;",
                    )
                    for a in report.anomalies
                ],
            )

        budgets_html = "<p>No budgets configured.</p>"
        if report.budgets:
            budgets_html = _table(
                ["Subscription", "Budget", "Amount", "Current spend", "Forecast", "Used"],
                [
                    (
                        escape_html(bd["subscription_id"]),
                        escape_html(bd["budget_name"]),
                        _money(bd["amount"]),
                        _money(bd["current_spend"]),
                        _money(bd.get("forecast_spend")),
                        f"{escape_html(bd['utilization_percent'])}%",
                    )
                    for bd in report.budgets
                ],
            )

        extra_html = ""
        if report.recommendations:
            extra_html += "<h2>Optimization Recommendations</h2>" + _table(
                ["Impact", "Resource", "Recommendation", "Est. annual savings"],
                [
                    (
                        escape_html(r.get("impact")),
                        escape_html(r.get("impacted_value")),
                        escape_html(r.get("solution") or r.get("problem")),
                        _money(r.get("potential_savings")),
                    )
                    for r in report.recommendations
                ],
            )
        if report.forecast and report.forecast.get("available"):
            f = report.forecast
            extra_html += (
                "<h2>Forecast</h2>"
                f"<p>Next 7 days: <strong>{_money(f['next_7_days'])} {escape_html(b.currency)}</strong>; "
                f"next {escape_html(f['horizon_days'])} days: {_money(f['horizon_total'])} "
                f"({escape_html(f['model'])}, {escape_html(f['confidence'])} confidence)</p>"
            )
        if report.chargeback_summary:
            c = report.chargeback_summary
            extra_html += (
                f"<h2>Chargeback by {escape_html(c['tag_key'])}</h2>"
                f"<p>Tag compliance: <strong>{escape_html(c['compliance_percent'])}%</strong> of cost; "
                f"{escape_html(c['untagged_resource_count'])} untagged resource(s).</p>"
                + _table(
                    ["Unit", f"Cost ({b.currency})"],
                    [(escape_html(unit), _money(cost)) for unit, cost in c["by_unit"].items()],
                )
            )

        return f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; color: #0f172a; }}
        .container {{ max-width: 760px; margin: 0 auto; padding: 20px; }}
        .header {{ background: #0f172a; color: white; padding: 20px; border-radius: 8px 8px 0 0; }}
        .content {{ background: #f8fafc; padding: 20px; border-radius: 0 0 8px 8px; }}
        .metric {{ background: white; padding: 15px; border-radius: 8px; margin: 10px 0; }}
        .notice {{ color: #b45309; font-weight: bold; }}
        table {{ border-collapse: collapse; width: 100%; background: white; margin: 10px 0; }}
        th, td {{ border: 1px solid #e2e8f0; padding: 6px 8px; text-align: left; font-size: 13px; }}
        th {{ background: #f1f5f9; }}
    </style>
</head>
<body>
    <div class="container">
        <div class="header">
            <h1>{escape_html(self.app_name)} Weekly Cost Report</h1>
            <p>{escape_html(report.period_start)} to {escape_html(report.period_end)} ({escape_html(report.week_key)})</p>
        </div>
        <div class="content">
            <div class="metric">
                <h3>Total spend</h3>
                <p><strong>{_money(b.total_cost)} {escape_html(b.currency)}</strong> ({escape_html(change)})</p>
                <p>Virtual desktop resources excluded from totals: {_money(b.excluded_cost)} {escape_html(b.currency)}
                   across {b.excluded_resource_count} resource(s).</p>
                {other_currencies}
            </div>
            {ai_notice}
            {narrative_html}
            <h2>Top Services</h2>
            {services_html}
            <h2>Cost by Subscription</h2>
            {subscriptions_html}
            <h2>Anomalies</h2>
            {anomalies_html}
            <h2>Budget Status</h2>
            {budgets_html}
            {extra_html}
            <p style="color: #64748b; font-size: 12px;">Sent by {escape_html(self.app_name)}</p>
        </div>
    </div>
</body>
</html>
"""
