from .engine import Engine
from .executor import LiquidationExecutor, PlanExecution
from .health import HealthEvaluator
from .ingestion import EventIngestor
from .monitor import MonitorLoop, MonitorStats, TickSummary
from .planner import LiquidationPlanner, PlanDecision

__all__ = [
    "Engine",
    "EventIngestor",
    "HealthEvaluator",
    "LiquidationExecutor",
    "LiquidationPlanner",
    "MonitorLoop",
    "MonitorStats",
    "PlanDecision",
    "PlanExecution",
    "TickSummary",
]
