"""
Publish orchestrator: drives placement plans through their lifecycle.

``PublishOrchestrator`` owns the plan state machine (see ``PlanStatus``):

- ``simulate``  evaluates placement rules (no remote writes)
- ``approve``   freezes the simulated targets
- ``publish``   atomically claims the plan, then per target: ensure media ->
  add media to the location playlist -> assign the playlist to the screen ->
  push the screen
- ``retry``     re-publishes every target of a FAILED plan
- ``rollback``  removes the ad media from every target playlist
- ``cancel``    abandons a plan before publishing

Targets are published concurrently (bounded by the gateway semaphore); each
target's own steps are strictly sequential, and one target failing never
aborts the others. Every public method returns an ``OperationResult``; no
exception escapes to the caller, and an unexpected error during publishing
lands the plan in FAILED rather than leaving it in PUBLISHING.
"""

import asyncio
import hashlib
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from yodeck_orchestrator.config import Settings, get_settings
from yodeck_orchestrator.exceptions import (
    ConcurrencyConflictError,
    MediaNotReadyError,
    PlanNotFoundError,
    PlanStateError,
)
from yodeck_orchestrator.logging import ComponentLogger, LogComponent
from yodeck_orchestrator.placement.models import (
    PRE_PUBLISH_STATUSES,
    SIMULATABLE_STATUSES,
    BulkSummary,
    OperationResult,
    PlacementPlan,
    PlacementTarget,
    PlanStatus,
    PublishReport,
    TargetResult,
    TargetStatus,
)
from yodeck_orchestrator.placement.rules import simulate_placement
from yodeck_orchestrator.utils import utc_now
from yodeck_orchestrator.yodeck.client import YodeckClient
from yodeck_orchestrator.yodeck.media import MediaLifecycleResolver
from yodeck_orchestrator.yodeck.models import (
    ApiResult,
    ErrorKind,
    ScreenContentPointer,
    SourceType,
)

logger = logging.getLogger(__name__)

MEDIA_NOT_READY = "MEDIA_NOT_READY"
PARTIAL_PUBLISH_FAILURE = "PARTIAL_PUBLISH_FAILURE"
UNEXPECTED_ERROR = "UNEXPECTED_ERROR"


def idempotency_key(plan: PlacementPlan) -> str:
    """Stable key for one approved (plan, media, target set) combination."""
    locations = ",".join(sorted(t.location_id for t in plan.approved_targets))
    raw = f"{plan.id}:{plan.media_id}:{locations}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _failed(
    target: PlacementTarget, result: ApiResult, step: str, steps: List[str]
) -> TargetResult:
    return TargetResult(
        target_screen_id=target.yodeck_screen_id,
        location_id=target.location_id,
        playlist_id=target.yodeck_playlist_id,
        status=TargetStatus.FAILED,
        http_status=result.status,
        error=f"{step}: {result.error}",
        steps=steps,
    )


class PublishOrchestrator:
    """State machine for placement plans.

    Args:
        db: Storage (``SupabaseDB`` or a compatible double).
        client: Yodeck client context.
        media: Media resolver; built from *client* when omitted.
        reconciler: Optional ``TruthReconciler`` run after remote changes.
        settings: Application settings.
    """

    def __init__(
        self,
        db: "SupabaseDB",  # noqa: F821
        client: YodeckClient,
        media: Optional[MediaLifecycleResolver] = None,
        reconciler: Optional["TruthReconciler"] = None,  # noqa: F821
        settings: Optional[Settings] = None,
    ) -> None:
        self.db = db
        self.client = client
        self.media = media or MediaLifecycleResolver(client)
        self.reconciler = reconciler
        self.settings = settings or get_settings()
        self.log = ComponentLogger(LogComponent.ORCHESTRATOR)

    # ================================================================
    # HELPERS
    # ================================================================

    async def _load(self, plan_id: str) -> PlacementPlan:
        row = await self.db.get_plan(plan_id)
        if row is None:
            raise PlanNotFoundError(plan_id)
        return PlacementPlan.from_row(row)

    @staticmethod
    def _require(plan: PlacementPlan, allowed: Iterable[PlanStatus]) -> None:
        allowed = set(allowed)
        if plan.status not in allowed:
            raise PlanStateError(
                plan.id, plan.status.value, [s.value for s in allowed]
            )

    async def _guarded(
        self,
        plan_id: str,
        operation: str,
        func: Callable[[], Awaitable[OperationResult]],
    ) -> OperationResult:
        """Run *func*, converting every exception into a typed result."""
        try:
            return await func()
        except PlanNotFoundError as exc:
            return OperationResult.failure(plan_id, str(exc), 404, ErrorKind.NOT_FOUND)
        except PlanStateError as exc:
            return OperationResult.failure(
                plan_id, str(exc), 400, plan_status=PlanStatus(exc.current)
            )
        except ConcurrencyConflictError as exc:
            return OperationResult.failure(
                plan_id,
                str(exc),
                409,
                ErrorKind.CONCURRENCY_CONFLICT,
                plan_status=PlanStatus.PUBLISHING,
            )
        except Exception as exc:
            logger.exception("[PUBLISH] %s of plan %s crashed", operation, plan_id)
            await self.log.bind(plan_id=plan_id).error(
                f"{operation} crashed", error=exc
            )
            return OperationResult.failure(plan_id, str(exc), 500)

    # ================================================================
    # SIMULATE / APPROVE / CANCEL
    # ================================================================

    async def simulate(
        self, plan_id: str, locations: Optional[List[Dict[str, Any]]] = None
    ) -> OperationResult:
        """Evaluate placement rules and record SIMULATED_OK or SIMULATED_FAIL.

        Re-running overwrites the previous report. No remote writes.
        """

        async def run() -> OperationResult:
            plan = await self._load(plan_id)
            self._require(plan, SIMULATABLE_STATUSES)
            candidates = (
                locations
                if locations is not None
                else await self.db.get_candidate_locations()
            )
            report = simulate_placement(plan, candidates, self.settings.placement)

            plan.status = PlanStatus.SIMULATED_OK if report.ok else PlanStatus.SIMULATED_FAIL
            plan.proposed_targets = report.selected
            plan.simulation_report = report.to_dict()
            plan.simulated_at = report.simulated_at
            await self.db.update_plan(
                plan.id,
                {
                    "status": plan.status.value,
                    "proposed_targets": [t.to_dict() for t in plan.proposed_targets],
                    "simulation_report": plan.simulation_report,
                    "simulated_at": plan.simulated_at.isoformat(),
                },
            )
            await self.log.bind(plan_id=plan.id).info(
                f"Simulation {report.selected_count}/{report.required_count} targets",
                data=plan.simulation_report["rejected_reasons"],
            )
            if report.ok:
                return OperationResult.success(plan, plan.simulation_report)
            return OperationResult.failure(
                plan.id,
                f"INSUFFICIENT_TARGETS: {report.selected_count}/{report.required_count}",
                422,
                plan_status=plan.status,
                report=plan.simulation_report,
            )

        return await self._guarded(plan_id, "simulate", run)

    async def approve(self, plan_id: str) -> OperationResult:
        """Freeze the proposed targets. Requires SIMULATED_OK."""

        async def run() -> OperationResult:
            plan = await self._load(plan_id)
            self._require(plan, [PlanStatus.SIMULATED_OK])
            plan.status = PlanStatus.APPROVED
            plan.approved_targets = list(plan.proposed_targets)
            plan.approved_at = utc_now()
            plan.idempotency_key = idempotency_key(plan)
            await self.db.update_plan(
                plan.id,
                {
                    "status": plan.status.value,
                    "approved_targets": [t.to_dict() for t in plan.approved_targets],
                    "approved_at": plan.approved_at.isoformat(),
                    "idempotency_key": plan.idempotency_key,
                },
            )
            await self.log.bind(plan_id=plan.id).info(
                f"Plan approved with {len(plan.approved_targets)} targets"
            )
            return OperationResult.success(plan)

        return await self._guarded(plan_id, "approve", run)

    async def cancel(self, plan_id: str) -> OperationResult:
        """Abandon a plan that has not started publishing."""

        async def run() -> OperationResult:
            plan = await self._load(plan_id)
            self._require(plan, PRE_PUBLISH_STATUSES)
            plan.status = PlanStatus.CANCELED
            plan.canceled_at = utc_now()
            await self.db.update_plan(
                plan.id,
                {"status": plan.status.value, "canceled_at": plan.canceled_at.isoformat()},
            )
            await self.log.bind(plan_id=plan.id).info("Plan canceled")
            return OperationResult.success(plan)

        return await self._guarded(plan_id, "cancel", run)

    # ================================================================
    # PUBLISH / RETRY
    # ================================================================

    async def publish(self, plan_id: str) -> OperationResult:
        """Publish an APPROVED plan to all approved targets."""
        return await self._guarded(
            plan_id, "publish", lambda: self._claim_and_publish(plan_id, PlanStatus.APPROVED)
        )

    async def retry(self, plan_id: str) -> OperationResult:
        """Re-publish all targets of a FAILED plan; increments ``retry_count``."""
        return await self._guarded(
            plan_id, "retry", lambda: self._claim_and_publish(plan_id, PlanStatus.FAILED)
        )

    async def _claim_and_publish(
        self, plan_id: str, from_status: PlanStatus
    ) -> OperationResult:
        plan = await self._load(plan_id)
        if plan.status == PlanStatus.PUBLISHING:
            raise ConcurrencyConflictError(plan_id)
        self._require(plan, [from_status])

        claimed = await self.db.claim_plan(plan_id, [from_status.value])
        if not claimed:
            current = await self._load(plan_id)
            if current.status == PlanStatus.PUBLISHING:
                raise ConcurrencyConflictError(plan_id)
            self._require(current, [from_status])
            raise ConcurrencyConflictError(plan_id)

        is_retry = from_status == PlanStatus.FAILED
        plan.status = PlanStatus.PUBLISHING
        plan.publish_started_at = utc_now()
        plan.retry_count = plan.retry_count + 1 if is_retry else 0
        return await self._execute_publish(plan, "retry" if is_retry else "publish")

    async def _execute_publish(
        self, plan: PlacementPlan, operation: str
    ) -> OperationResult:
        log = self.log.bind(plan_id=plan.id)
        report = PublishReport(operation=operation, attempt=plan.retry_count + 1)
        try:
            async with log.timed(f"{operation} to {len(plan.approved_targets)} targets"):
                report.results = await self._publish_targets(plan)
        except Exception as exc:
            logger.exception("[PUBLISH] Plan %s crashed while publishing", plan.id)
            report.finished_at = utc_now()
            await self._mark_failed(plan, report, UNEXPECTED_ERROR, str(exc))
            return OperationResult.failure(
                plan.id, str(exc), 500, plan_status=plan.status, report=plan.publish_report
            )

        report.finished_at = utc_now()
        if report.all_succeeded:
            plan.status = PlanStatus.PUBLISHED
            plan.published_at = report.finished_at
            plan.publish_report = report.to_dict()
            await self.db.update_plan(
                plan.id,
                {
                    "status": plan.status.value,
                    "media_id": plan.media_id,
                    "publish_report": plan.publish_report,
                    "retry_count": plan.retry_count,
                    "published_at": plan.published_at.isoformat(),
                    "last_error_code": None,
                    "last_error_message": None,
                    "last_error_details": None,
                },
            )
            await log.info(
                f"Published to {report.success_count}/{report.total_targets} targets"
            )
            await self._reconcile_targets(plan, operation)
            return OperationResult.success(plan, plan.publish_report)

        message = f"{report.failed_count}/{report.total_targets} targets failed"
        await self._mark_failed(plan, report, PARTIAL_PUBLISH_FAILURE, message)
        await self._reconcile_targets(plan, operation)
        return OperationResult.failure(
            plan.id, message, 502, plan_status=plan.status, report=plan.publish_report
        )

    async def _mark_failed(
        self, plan: PlacementPlan, report: PublishReport, code: str, message: str
    ) -> None:
        plan.status = PlanStatus.FAILED
        plan.failed_at = utc_now()
        plan.publish_report = report.to_dict()
        plan.last_error_code = code
        plan.last_error_message = message
        plan.last_error_details = {
            "failed_targets": [r.to_dict() for r in report.failed_results()]
        }
        await self.db.update_plan(
            plan.id,
            {
                "status": plan.status.value,
                "media_id": plan.media_id,
                "publish_report": plan.publish_report,
                "retry_count": plan.retry_count,
                "failed_at": plan.failed_at.isoformat(),
                "last_error_code": code,
                "last_error_message": message,
                "last_error_details": plan.last_error_details,
            },
        )
        await self.log.bind(plan_id=plan.id).error(
            f"Publish failed: {message}", data={"code": code}
        )
        await self._alert(
            plan,
            title=f"Placement plan {plan.id} failed to publish",
            message=message,
            details={"code": code, "retry_count": plan.retry_count},
        )

    async def _resolve_plan_media(self, plan: PlacementPlan) -> int:
        """Resolve the plan's media to a playable id or raise MediaNotReadyError."""
        resolution = await self.media.ensure_media_ready(plan.media_id, plan.media_name)
        if not resolution.ok:
            raise MediaNotReadyError(
                plan.media_id,
                stale_cleaned=resolution.stale_cleaned,
                diagnostics=resolution.diagnostics,
            )
        if resolution.resolved_id != plan.media_id:
            logger.info(
                "[PUBLISH] Plan %s media %s resolved to %s via %s",
                plan.id,
                plan.media_id,
                resolution.resolved_id,
                resolution.method,
            )
        return resolution.resolved_id

    async def _publish_targets(self, plan: PlacementPlan) -> List[TargetResult]:
        try:
            plan.media_id = await self._resolve_plan_media(plan)
        except MediaNotReadyError as exc:
            logger.warning("[PUBLISH] Plan %s: %s", plan.id, exc)
            suffix = " (stale media deleted, re-upload required)" if exc.stale_cleaned else ""
            return [
                TargetResult(
                    target_screen_id=t.yodeck_screen_id,
                    location_id=t.location_id,
                    playlist_id=t.yodeck_playlist_id,
                    status=TargetStatus.FAILED,
                    error=f"{MEDIA_NOT_READY}{suffix}",
                    steps=exc.diagnostics + [str(exc)],
                )
                for t in plan.approved_targets
            ]

        outcomes = await asyncio.gather(
            *(
                self._publish_target(t, plan.media_id, plan.video_duration_seconds)
                for t in plan.approved_targets
            ),
            return_exceptions=True,
        )
        results = []
        for target, outcome in zip(plan.approved_targets, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.error(
                    "[PUBLISH] Target %s crashed: %s", target.location_id, outcome
                )
                outcome = TargetResult(
                    target_screen_id=target.yodeck_screen_id,
                    location_id=target.location_id,
                    playlist_id=target.yodeck_playlist_id,
                    status=TargetStatus.FAILED,
                    error=f"{UNEXPECTED_ERROR}: {outcome}",
                )
            results.append(outcome)
        return results

    async def _publish_target(
        self, target: PlacementTarget, media_id: int, duration: int
    ) -> TargetResult:
        """ensure-in-playlist -> assign playlist -> push, strictly in order."""
        steps: List[str] = []
        playlist_id = target.yodeck_playlist_id

        added = await self.client.add_media_to_playlist(playlist_id, media_id, duration)
        if not added.ok:
            return _failed(target, added, "add_to_playlist", steps)
        steps.append("added_to_playlist" if added.data.get("added") else "already_in_playlist")

        screen_id = target.yodeck_screen_id
        if screen_id is not None:
            screen = await self.client.get_screen(screen_id)
            if not screen.ok:
                return _failed(target, screen, "get_screen", steps)
            pointer = screen.data.content
            assigned = (
                pointer is not None
                and pointer.source_type == SourceType.PLAYLIST
                and pointer.source_id == playlist_id
            )
            if not assigned:
                patched = await self.client.patch_screen_content(
                    screen_id, ScreenContentPointer(SourceType.PLAYLIST, playlist_id)
                )
                if not patched.ok:
                    return _failed(target, patched, "assign_playlist", steps)
                steps.append("playlist_assigned")

            if self.settings.placement.push_after_publish:
                pushed = await self.client.push_screen(screen_id)
                # Content is already assigned; the player picks it up on its next sync
                steps.append("pushed" if pushed.ok else f"push_failed:{pushed.error}")

        return TargetResult(
            target_screen_id=screen_id,
            location_id=target.location_id,
            playlist_id=playlist_id,
            status=TargetStatus.SUCCESS,
            http_status=added.status,
            steps=steps,
        )

    # ================================================================
    # ROLLBACK
    # ================================================================

    async def rollback(self, plan_id: str) -> OperationResult:
        """Remove the ad from every target playlist of a PUBLISHED plan.

        The plan records ROLLED_BACK as soon as at least one target was
        cleaned; remaining failures are reported for operator follow-up.
        """

        async def run() -> OperationResult:
            plan = await self._load(plan_id)
            self._require(plan, [PlanStatus.PUBLISHED])
            log = self.log.bind(plan_id=plan.id)

            report = PublishReport(operation="rollback", attempt=1)
            report.results = await asyncio.gather(
                *(self._rollback_target(t, plan.media_id) for t in plan.approved_targets)
            )
            report.finished_at = utc_now()
            plan.publish_report = report.to_dict()

            if report.total_targets and report.success_count == 0:
                await self.db.update_plan(plan.id, {"publish_report": plan.publish_report})
                await log.error("Rollback failed on every target")
                return OperationResult.failure(
                    plan.id,
                    "rollback failed on every target",
                    502,
                    plan_status=plan.status,
                    report=plan.publish_report,
                )

            plan.status = PlanStatus.ROLLED_BACK
            plan.rolled_back_at = report.finished_at
            fields: Dict[str, Any] = {
                "status": plan.status.value,
                "publish_report": plan.publish_report,
                "rolled_back_at": plan.rolled_back_at.isoformat(),
            }
            if not report.all_succeeded:
                fields.update(
                    {
                        "last_error_code": "PARTIAL_ROLLBACK",
                        "last_error_message": f"{report.failed_count}/{report.total_targets} targets not cleaned",
                        "last_error_details": {
                            "failed_targets": [r.to_dict() for r in report.failed_results()]
                        },
                    }
                )
            await self.db.update_plan(plan.id, fields)
            await log.info(
                f"Rolled back {report.success_count}/{report.total_targets} targets"
            )
            await self._reconcile_targets(plan, "rollback")

            if report.all_succeeded:
                return OperationResult.success(plan, plan.publish_report)
            await self._alert(
                plan,
                title=f"Placement plan {plan.id} partially rolled back",
                message=fields["last_error_message"],
                details=fields["last_error_details"],
            )
            return OperationResult.failure(
                plan.id,
                fields["last_error_message"],
                207,
                plan_status=plan.status,
                report=plan.publish_report,
            )

        return await self._guarded(plan_id, "rollback", run)

    async def _rollback_target(
        self, target: PlacementTarget, media_id: Optional[int]
    ) -> TargetResult:
        if media_id is None:
            return TargetResult(
                target_screen_id=target.yodeck_screen_id,
                location_id=target.location_id,
                playlist_id=target.yodeck_playlist_id,
                status=TargetStatus.SUCCESS,
                steps=["no_media"],
            )
        removed = await self.client.remove_media_from_playlist(
            target.yodeck_playlist_id, media_id
        )
        if not removed.ok:
            return _failed(target, removed, "remove_from_playlist", [])
        steps = ["removed_from_playlist" if removed.data.get("removed") else "not_in_playlist"]
        if target.yodeck_screen_id is not None and self.settings.placement.push_after_publish:
            pushed = await self.client.push_screen(target.yodeck_screen_id)
            steps.append("pushed" if pushed.ok else f"push_failed:{pushed.error}")
        return TargetResult(
            target_screen_id=target.yodeck_screen_id,
            location_id=target.location_id,
            playlist_id=target.yodeck_playlist_id,
            status=TargetStatus.SUCCESS,
            http_status=removed.status,
            steps=steps,
        )

    # ================================================================
    # BULK
    # ================================================================

    async def _bulk(
        self, plan_ids: List[str], op: Callable[[str], Awaitable[OperationResult]]
    ) -> BulkSummary:
        results = list(await asyncio.gather(*(op(plan_id) for plan_id in plan_ids)))
        return BulkSummary(
            success_count=sum(1 for r in results if r.ok),
            total=len(plan_ids),
            results=results,
        )

    async def bulk_simulate(self, plan_ids: List[str]) -> BulkSummary:
        return await self._bulk(plan_ids, self.simulate)

    async def bulk_approve(self, plan_ids: List[str]) -> BulkSummary:
        return await self._bulk(plan_ids, self.approve)

    async def bulk_publish(self, plan_ids: List[str]) -> BulkSummary:
        return await self._bulk(plan_ids, self.publish)

    # ================================================================
    # SIDE CHANNELS
    # ================================================================

    async def _reconcile_targets(self, plan: PlacementPlan, operation: str) -> None:
        if self.reconciler is None:
            return
        for location_id in sorted({t.location_id for t in plan.approved_targets}):
            try:
                await self.reconciler.reconcile(
                    location_id, push=False, reason=f"{operation}:{plan.id}"
                )
            except Exception:
                logger.exception(
                    "[PUBLISH] Reconcile of location %s after %s failed",
                    location_id,
                    operation,
                )

    async def _alert(
        self,
        plan: PlacementPlan,
        title: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        try:
            await self.db.create_alert(
                category="publish",
                severity="error",
                title=title,
                message=message,
                dedup_key=f"plan:{plan.id}:{plan.status.value}",
                details=details,
            )
        except Exception:
            logger.exception("[PUBLISH] Could not raise alert for plan %s", plan.id)


__all__ = [
    "MEDIA_NOT_READY",
    "PARTIAL_PUBLISH_FAILURE",
    "UNEXPECTED_ERROR",
    "idempotency_key",
    "PublishOrchestrator",
]
