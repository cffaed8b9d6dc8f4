from costpulse.models.cost import CostRecord, BudgetRecord, ReservationRecord, AdvisorRecord
from costpulse.models.analysis import BaselineRecord, AnomalyFlag
from costpulse.models.report_run import ReportRun, ReportStatus

__all__ = [
    "CostRecord",
    "BudgetRecord",
    "ReservationRecord",
    "AdvisorRecord",
    "BaselineRecord",
    "AnomalyFlag",
    "ReportRun",
    "ReportStatus",
]
