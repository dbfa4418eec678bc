"""
Background reconcile scheduler.

``ReconcileScheduler`` runs as an asyncio background task that, every
``interval_seconds``:

1. Reconciles every active location against live Yodeck state.
2. Recovers placement plans stuck in ``publishing`` (the worker that claimed
   them died mid-flight) by moving them to ``failed`` so they can be retried.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Any

from yodeck_orchestrator.placement.models import PlanStatus
from yodeck_orchestrator.reconcile.reconciler import TruthReconciler
from yodeck_orchestrator.utils import parse_datetime, utc_now

logger = logging.getLogger(__name__)

STUCK_PUBLISHING = "STUCK_PUBLISHING"


class ReconcileScheduler:
    """Periodic reconcile loop with start/stop.

    Args:
        db: Storage (``SupabaseDB`` or a compatible double).
        reconciler: The truth reconciler to run per location.
        interval_seconds: Pause between cycles (default: 900 seconds).
        push: Whether drift is repaired (assign playlist + push).
        stuck_after_minutes: Age after which a PUBLISHING plan is recovered.
    """

    def __init__(
        self,
        db: Any,
        reconciler: TruthReconciler,
        interval_seconds: int = 900,
        push: bool = False,
        stuck_after_minutes: int = 30,
    ) -> None:
        self.db = db
        self.reconciler = reconciler
        self.interval_seconds = interval_seconds
        self.push = push
        self.stuck_after = timedelta(minutes=stuck_after_minutes)
        self._running: bool = False
        self._cycle_count: int = 0

    @property
    def is_running(self) -> bool:
        return self._running

    # ================================================================
    # LIFECYCLE
    # ================================================================

    async def start(self) -> None:
        """Run cycles until :meth:`stop` is called or the task is cancelled."""
        self._running = True
        self._cycle_count = 0
        logger.info(
            "[SCHEDULER] Reconcile scheduler started (interval=%ds)",
            self.interval_seconds,
        )

        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                logger.info("[SCHEDULER] Reconcile scheduler cancelled")
                break
            except Exception:
                logger.exception("[SCHEDULER] Unexpected error in reconcile loop")

            if not self._running:
                break
            try:
                await asyncio.sleep(self.interval_seconds)
            except asyncio.CancelledError:
                logger.info("[SCHEDULER] Reconcile scheduler sleep cancelled")
                break

        self._running = False
        logger.info("[SCHEDULER] Reconcile scheduler stopped")

    async def stop(self) -> None:
        """Ask the loop to exit after the current cycle."""
        self._running = False
        logger.info("[SCHEDULER] Reconcile scheduler stop requested")

    # ================================================================
    # CYCLE
    # ================================================================

    async def run_once(self) -> int:
        """One cycle. Returns the number of locations reconciled cleanly."""
        self._cycle_count += 1
        recovered = await self.recover_stuck_plans()
        if recovered:
            logger.warning("[SCHEDULER] Recovered %d stuck plans", recovered)

        locations = await self.db.get_active_locations()
        clean = 0
        for location in locations:
            result = await self.reconciler.reconcile(
                str(location["id"]),
                push=self.push,
                reason=f"scheduled:{self._cycle_count}",
            )
            if result.ok:
                clean += 1
        logger.info(
            "[SCHEDULER] Cycle %d: %d/%d locations reconciled",
            self._cycle_count,
            clean,
            len(locations),
        )
        return clean

    async def recover_stuck_plans(self) -> int:
        """Move plans stuck in PUBLISHING past ``stuck_after`` to FAILED."""
        cutoff = utc_now() - self.stuck_after
        rows = await self.db.list_plans(status=PlanStatus.PUBLISHING.value)
        recovered = 0
        for row in rows:
            started = parse_datetime(row.get("publish_started_at"))
            if started is not None and started > cutoff:
                continue
            released = await self.db.release_stuck_plan(
                row["id"],
                cutoff if started is not None else None,
                {
                    "status": PlanStatus.FAILED.value,
                    "failed_at": utc_now().isoformat(),
                    "last_error_code": STUCK_PUBLISHING,
                    "last_error_message": "publishing did not finish; plan released for retry",
                },
            )
            if not released:
                logger.info("[SCHEDULER] Plan %s moved on before release, skipped", row["id"])
                continue
            logger.warning("[SCHEDULER] Plan %s was stuck in publishing", row["id"])
            recovered += 1
        return recovered


__all__ = ["STUCK_PUBLISHING", "ReconcileScheduler"]
