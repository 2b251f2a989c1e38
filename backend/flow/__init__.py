"""
Lead-to-cash flow analytics: period windows, percentage change, view reads
and per-stage aggregation.
"""

from .period_calculator import Period, PeriodComparison, get_period_comparison, get_extended_date_range
from .percentage_change import PercentageChange, calculate_percentage_change, get_trend_info
from .filters import FlowFilters
from .flow_metrics import FlowData, StageStats, process_flow_data, calculate_trend_comparisons
from .flow_data_service import FlowDataService, FlowDataError

__all__ = [
    "Period",
    "PeriodComparison",
    "get_period_comparison",
    "get_extended_date_range",
    "PercentageChange",
    "calculate_percentage_change",
    "get_trend_info",
    "FlowFilters",
    "FlowData",
    "StageStats",
    "process_flow_data",
    "calculate_trend_comparisons",
    "FlowDataService",
    "FlowDataError",
]
