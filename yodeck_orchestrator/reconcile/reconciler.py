"""
Truth reconciler: compares what a location's screens actually play with what
the published placement plans say they should play.

For every screen linked to the location:

1. Fetch the live screen from Yodeck and resolve its content graph.
2. Expected media = ``media_id`` of every PUBLISHED plan targeting the
   location. Missing media or a screen not pointed at the location playlist
   means drift.
3. With ``push=True`` drift is repaired: the location playlist is assigned
   to the screen and the screen is pushed.
4. The last-known status is written to the ``screens`` table (the dashboard
   read model).

A failing screen is recorded in the report and the loop moves on; the
reconciler never raises.
"""

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Set

from yodeck_orchestrator.logging import ComponentLogger, LogComponent
from yodeck_orchestrator.placement.models import PlacementPlan
from yodeck_orchestrator.utils import generate_id, utc_now
from yodeck_orchestrator.yodeck.client import YodeckClient
from yodeck_orchestrator.yodeck.content import resolve_screen_content
from yodeck_orchestrator.yodeck.models import ScreenContentPointer, SourceType

logger = logging.getLogger(__name__)


@dataclass
class ScreenReconcileReport:
    screen_id: str
    yodeck_screen_id: Optional[int]
    online: Optional[bool] = None
    source_type: Optional[str] = None
    source_id: Optional[int] = None
    media_count: int = 0
    compliant: bool = False
    expected_media_ids: List[int] = field(default_factory=list)
    missing_media_ids: List[int] = field(default_factory=list)
    pushed: bool = False
    error: Optional[str] = None


@dataclass
class ReconcileResult:
    ok: bool
    correlation_id: str
    location_id: str
    reason: str
    screens: List[ScreenReconcileReport] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def expected_media_for_location(
    plans: List[Dict[str, Any]], location_id: str
) -> List[int]:
    """Media ids of published plans with a target at *location_id*."""
    media: Set[int] = set()
    for row in plans:
        plan = PlacementPlan.from_row(row)
        if plan.media_id is None:
            continue
        if any(t.location_id == location_id for t in plan.approved_targets):
            media.add(plan.media_id)
    return sorted(media)


class TruthReconciler:
    """Reconciles database truth with live Yodeck state per location.

    Args:
        db: Storage (``SupabaseDB`` or a compatible double).
        client: Yodeck client context.
    """

    def __init__(self, db: Any, client: YodeckClient) -> None:
        self.db = db
        self.client = client
        self.log = ComponentLogger(LogComponent.RECONCILER)

    async def reconcile(
        self,
        location_id: str,
        push: bool = False,
        reason: str = "manual",
        correlation_id: Optional[str] = None,
    ) -> ReconcileResult:
        started = time.monotonic()
        result = ReconcileResult(
            ok=False,
            correlation_id=correlation_id or f"reconcile-{generate_id()[:8]}",
            location_id=location_id,
            reason=reason,
        )
        log = self.log.bind(correlation_id=result.correlation_id)
        logger.info(
            "[RECONCILE] [%s] start location=%s push=%s reason=%s",
            result.correlation_id,
            location_id,
            push,
            reason,
        )

        try:
            location = await self.db.get_location(location_id)
            if location is None:
                result.errors.append(f"location {location_id} not found")
            else:
                screens = await self.db.get_location_screens(location_id)
                expected = expected_media_for_location(
                    await self.db.get_published_plans(), location_id
                )
                playlist_id = location.get("yodeck_playlist_id")
                for row in screens:
                    report = await self._reconcile_screen(
                        row,
                        int(playlist_id) if playlist_id else None,
                        expected,
                        push,
                    )
                    result.screens.append(report)
                    if report.error:
                        result.errors.append(f"screen {report.screen_id}: {report.error}")
        except Exception as exc:
            logger.exception("[RECONCILE] [%s] aborted", result.correlation_id)
            result.errors.append(str(exc))

        result.ok = not result.errors
        result.duration_ms = int((time.monotonic() - started) * 1000)
        summary = (
            f"Reconciled {len(result.screens)} screens at {location_id}: "
            f"{sum(1 for s in result.screens if s.compliant)} compliant"
        )
        if result.ok:
            await log.info(summary, duration_ms=result.duration_ms)
        else:
            await log.warning(
                summary, data={"errors": result.errors}, duration_ms=result.duration_ms
            )
        return result

    async def _reconcile_screen(
        self,
        row: Dict[str, Any],
        playlist_id: Optional[int],
        expected: List[int],
        push: bool,
    ) -> ScreenReconcileReport:
        yodeck_id = row.get("yodeck_screen_id")
        report = ScreenReconcileReport(
            screen_id=str(row["id"]),
            yodeck_screen_id=int(yodeck_id) if yodeck_id is not None else None,
            expected_media_ids=list(expected),
        )
        if report.yodeck_screen_id is None:
            report.error = "no yodeck screen linked"
            return report

        try:
            fetched = await self.client.get_screen(report.yodeck_screen_id)
            if not fetched.ok:
                report.error = f"get_screen: {fetched.error}"
                return report
            screen = fetched.data
            report.online = screen.online
            pointer = screen.content
            if pointer is not None and pointer.is_set:
                report.source_type = pointer.source_type.value
                report.source_id = pointer.source_id

            content = await resolve_screen_content(self.client, screen)
            playing = set(content.media_ids)
            report.media_count = content.unique_media_count
            report.missing_media_ids = [m for m in expected if m not in playing]
            on_playlist = playlist_id is None or (
                report.source_type == SourceType.PLAYLIST.value
                and report.source_id == playlist_id
            )
            report.compliant = on_playlist and not report.missing_media_ids

            if not report.compliant and push and playlist_id is not None:
                report.pushed = await self._repair(report, playlist_id, on_playlist)
        except Exception as exc:
            logger.exception("[RECONCILE] screen %s failed", report.screen_id)
            report.error = str(exc)

        await self._write_status(report)
        return report

    async def _repair(
        self, report: ScreenReconcileReport, playlist_id: int, on_playlist: bool
    ) -> bool:
        if not on_playlist:
            patched = await self.client.patch_screen_content(
                report.yodeck_screen_id,
                ScreenContentPointer(SourceType.PLAYLIST, playlist_id),
            )
            if not patched.ok:
                report.error = f"assign_playlist: {patched.error}"
                return False
            report.source_type = SourceType.PLAYLIST.value
            report.source_id = playlist_id
        pushed = await self.client.push_screen(report.yodeck_screen_id)
        if not pushed.ok:
            report.error = f"push: {pushed.error}"
            return False
        logger.info(
            "[RECONCILE] screen %s pushed playlist %s", report.screen_id, playlist_id
        )
        return True

    async def _write_status(self, report: ScreenReconcileReport) -> None:
        fields = {
            "online": report.online,
            "current_source_type": report.source_type,
            "current_source_id": report.source_id,
            "media_count": report.media_count,
            "compliant": report.compliant,
            "last_reconciled_at": utc_now().isoformat(),
        }
        if report.online:
            fields["last_seen_at"] = fields["last_reconciled_at"]
        try:
            await self.db.update_screen_status(report.screen_id, fields)
        except Exception as exc:
            logger.warning(
                "[RECONCILE] could not store status of screen %s: %s",
                report.screen_id,
                exc,
            )
            report.error = report.error or f"status write: {exc}"


__all__ = [
    "ScreenReconcileReport",
    "ReconcileResult",
    "expected_media_for_location",
    "TruthReconciler",
]
