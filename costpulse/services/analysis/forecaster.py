"""
Cost Forecasting Engine

Deterministic statistical forecast of daily spend (statsmodels Holt-Winters),
used as numeric grounding for the narrative's FORECAST section.
"""

from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterable, List

import numpy as np
import pandas as pd
import structlog
from statsmodels.tsa.holtwinters import ExponentialSmoothing

logger = structlog.get_logger()

MIN_HISTORY_DAYS = 7
SEASONAL_HISTORY_DAYS = 14


class CostForecaster:
    """Forecasts total daily spend from sink cost rows."""

    @staticmethod
    def _detect_outliers(df: pd.DataFrame) -> pd.DataFrame:
        """
        Median Absolute Deviation outlier flags.
        More robust than a z-score for sudden billing spikes.
        """
        median = df["y"].median()
        mad = (df["y"] - median).abs().median()
        if mad == 0:
            return df.assign(is_outlier=False)
        df["z_score_mad"] = 0.6745 * (df["y"] - median) / mad
        df["is_outlier"] = df["z_score_mad"].abs() > 3.5
        return df

    @staticmethod
    def daily_series(records: Iterable[Any]) -> pd.DataFrame:
        rows = [
            {"ds": r.collection_date, "y": float(r.cost)}
            for r in records
            if not r.is_excluded_resource
        ]
        if not rows:
            return pd.DataFrame(columns=["ds", "y"])
        df = pd.DataFrame(rows)
        df["ds"] = pd.to_datetime(df["ds"])
        # Missing days count as zero spend
        return df.groupby("ds")["y"].sum().resample("D").sum().reset_index()

    @staticmethod
    def _fit(ts: pd.Series):
        if len(ts) >= SEASONAL_HISTORY_DAYS:
            try:
                return (
                    ExponentialSmoothing(ts, seasonal_periods=7, trend="add", seasonal="add").fit(),
                    "Holt-Winters (Triple)",
                )
            except (ValueError, np.linalg.LinAlgError) as e:
                logger.warning("seasonal_forecast_failed", error=str(e))
        return (
            ExponentialSmoothing(ts, trend="add", damped_trend=True, seasonal=None).fit(),
            "Holt-Winters (Double)",
        )

    @classmethod
    def forecast(cls, records: Iterable[Any], days: int = 30, confidence_interval_width: float = 0.95) -> Dict[str, Any]:
        """
        Forecast the next `days` days of total spend.

        Holt-Winters with weekly seasonality when there are at least two weeks of
        history, damped-trend double smoothing below that, and a flat mean for
        the shortest histories.
        """
        df = cls.daily_series(records)
        if len(df) < 2:
            logger.warning("insufficient_data_for_forecast", days=len(df))
            return {"forecast": [], "confidence": "low",
                    "reason": f"Need at least 2 days of data, got {len(df)}"}

        df = cls._detect_outliers(df)
        outliers = df[df["is_outlier"]]
        ts = df.set_index("ds")["y"]
        last_day = df["ds"].iloc[-1]

        def _day(i: int) -> str:
            return (last_day + pd.Timedelta(days=i + 1)).date().isoformat()

        if ts.sum() == 0:
            return {
                "forecast": [{"date": _day(i), "amount": Decimal("0"), "confidence_lower": Decimal("0"),
                              "confidence_upper": Decimal("0")} for i in range(days)],
                "total_forecasted_cost": Decimal("0"),
                "confidence": "medium",
                "model": "Zero-Cost Baseline",
            }

        if len(ts) < MIN_HISTORY_DAYS:
            mean = float(ts.mean())
            values = np.full(days, mean)
            residuals = ts - mean
            model_name = "Mean (short history)"
            confidence = "low"
        else:
            try:
                model, model_name = cls._fit(ts)
            except (ValueError, np.linalg.LinAlgError) as e:
                logger.error("cost_forecast_failed", error=str(e), history_days=len(ts))
                return {"forecast": [], "confidence": "error", "reason": f"Forecast model failed: {e}"}
            values = np.asarray(model.forecast(days), dtype=float)
            residuals = ts - model.fittedvalues
            confidence = "medium"

        se = float(np.std(residuals)) or 0.01
        z_score = 1.96 if confidence_interval_width >= 0.95 else 1.645

        results = []
        for i, val in enumerate(values):
            # Interval grows with the square root of the horizon
            interval = z_score * se * np.sqrt(i + 1)
            results.append({
                "date": _day(i),
                "amount": Decimal(str(max(0.0, round(float(val), 4)))),
                "confidence_lower": Decimal(str(max(0.0, round(float(val - interval), 4)))),
                "confidence_upper": Decimal(str(max(0.0, round(float(val + interval), 4)))),
            })

        total = sum((r["amount"] for r in results), Decimal("0"))
        logger.info("cost_forecast_complete", model=model_name, history_days=len(ts), horizon_days=days)
        return {
            "forecast": results,
            "total_forecasted_cost": total.quantize(Decimal("0.01")),
            "confidence": confidence,
            "model": model_name,
            "history_days": len(ts),
            "diagnostics": {
                "outliers_detected": int(len(outliers)),
                "outlier_dates": [d.date().isoformat() for d in outliers["ds"]],
            },
        }

    @staticmethod
    def summarize(result: Dict[str, Any], period_end: date) -> Dict[str, Any]:
        """Compact view used by the prompt and the report table."""
        points: List[Dict[str, Any]] = result.get("forecast", [])
        if not points:
            return {"available": False, "reason": result.get("reason", "no forecast")}
        next_7 = sum((p["amount"] for p in points[:7]), Decimal("0"))
        return {
            "available": True,
            "model": result.get("model"),
            "confidence": result.get("confidence"),
            "as_of": period_end.isoformat(),
            "horizon_days": len(points),
            "next_7_days": next_7.quantize(Decimal("0.01")),
            "horizon_total": result["total_forecasted_cost"],
            "outliers_detected": result.get("diagnostics", {}).get("outliers_detected", 0),
        }
