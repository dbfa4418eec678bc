"""Truth reconciliation of live Yodeck screens against published plans."""
from yodeck_orchestrator.reconcile.reconciler import (
    ReconcileResult,
    ScreenReconcileReport,
    TruthReconciler,
)
from yodeck_orchestrator.reconcile.scheduler import ReconcileScheduler

__all__ = [
    "ReconcileResult", "ScreenReconcileReport", "TruthReconciler",
    "ReconcileScheduler",
]
