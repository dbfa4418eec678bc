"""Placement plans: models, simulation rules and the publish orchestrator."""
from yodeck_orchestrator.placement.models import (
    BulkSummary,
    OperationResult,
    PlacementPlan,
    PlacementTarget,
    PlanStatus,
    PublishReport,
    RejectionReason,
    SimulationReport,
    TargetResult,
)
from yodeck_orchestrator.placement.rules import simulate_placement
from yodeck_orchestrator.placement.orchestrator import PublishOrchestrator

__all__ = [
    "BulkSummary", "OperationResult", "PlacementPlan", "PlacementTarget",
    "PlanStatus", "PublishReport", "RejectionReason", "SimulationReport",
    "TargetResult",
    "simulate_placement",
    "PublishOrchestrator",
]
