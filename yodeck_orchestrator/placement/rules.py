"""
Placement simulation rules.

Evaluates candidate locations for a plan against hard constraints and picks
the required number of targets. Pure: no remote calls, no writes.

Constraints, checked in order (first failure is the rejection reason):
    1. NOT_ACTIVE         location status is not ``active``
    2. NO_PLAYLIST        no Yodeck playlist linked
    3. OFFLINE            the location's screen is known to be offline
    4. REGION_MISMATCH    outside the advertiser's target regions
    5. CATEGORY_MISMATCH  advertiser category not in the location allow-list
    6. NO_CAPACITY        current ad load + ad length exceeds loop capacity
    7. STALE_SYNC         location not synced with Yodeck recently

Eligible locations are ranked by expected weekly impressions
(visitors x view factor) and selected with city spread: one per city first,
then the best remaining.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from yodeck_orchestrator.config import PlacementConfig
from yodeck_orchestrator.placement.models import (
    PlacementPlan,
    PlacementTarget,
    Rejection,
    RejectionReason,
    SimulationReport,
)
from yodeck_orchestrator.utils import parse_datetime, utc_now


def check_location(
    plan: PlacementPlan,
    location: Dict[str, Any],
    config: PlacementConfig,
    now: datetime,
) -> Tuple[Optional[str], Optional[PlacementTarget]]:
    """Return ``(reason, None)`` for a rejection or ``(None, target)``."""
    if location.get("status") != "active":
        return RejectionReason.NOT_ACTIVE, None

    playlist_id = location.get("yodeck_playlist_id")
    if not playlist_id:
        return RejectionReason.NO_PLAYLIST, None

    if location.get("online") is False:
        return RejectionReason.OFFLINE, None

    region = location.get("region_code")
    if plan.target_region_codes and region and region not in plan.target_region_codes:
        return RejectionReason.REGION_MISMATCH, None

    allowed = location.get("categories_allowed") or []
    if plan.category and allowed and plan.category not in allowed:
        return RejectionReason.CATEGORY_MISMATCH, None

    duration = plan.video_duration_seconds or config.default_video_duration_seconds
    load = int(location.get("current_ad_load_seconds") or 0)
    capacity = int(
        location.get("ad_slot_capacity_seconds") or config.default_capacity_seconds
    )
    if load + duration > capacity:
        return RejectionReason.NO_CAPACITY, None

    last_sync = parse_datetime(location.get("last_sync_at"))
    if last_sync is not None and last_sync < now - timedelta(
        minutes=config.stale_sync_minutes
    ):
        return RejectionReason.STALE_SYNC, None

    visitors = int(
        location.get("avg_visitors_per_week") or config.default_visitors_per_week
    )
    impressions = round(visitors * config.view_factor)
    screen_id = location.get("yodeck_screen_id")
    return None, PlacementTarget(
        location_id=str(location["id"]),
        location_name=location.get("name") or "",
        yodeck_playlist_id=int(playlist_id),
        yodeck_screen_id=int(screen_id) if screen_id is not None else None,
        city=location.get("city"),
        score=float(impressions),
        expected_impressions_per_week=impressions,
        capacity_before=load,
        capacity_after=load + duration,
    )


def select_with_spread(
    eligible: List[PlacementTarget], count: int
) -> List[PlacementTarget]:
    """Pick *count* targets, preferring distinct cities. *eligible* is ranked."""
    if count <= 1:
        return eligible[:count]

    selected: List[PlacementTarget] = []
    used_cities = set()
    for target in eligible:
        if len(selected) >= count:
            break
        city = target.city or "unknown"
        if city not in used_cities:
            selected.append(target)
            used_cities.add(city)

    for target in eligible:
        if len(selected) >= count:
            break
        if target not in selected:
            selected.append(target)

    return selected


def simulate_placement(
    plan: PlacementPlan,
    locations: List[Dict[str, Any]],
    config: Optional[PlacementConfig] = None,
    now: Optional[datetime] = None,
) -> SimulationReport:
    """Evaluate every candidate location and build the simulation report."""
    config = config or PlacementConfig()
    now = now or utc_now()

    eligible: List[PlacementTarget] = []
    rejected: List[Rejection] = []
    for location in locations:
        reason, target = check_location(plan, location, config, now)
        if reason is not None:
            rejected.append(
                Rejection(
                    location_id=str(location.get("id")),
                    location_name=location.get("name") or "",
                    reason=reason,
                )
            )
        elif target is not None:
            eligible.append(target)

    # Stable sort keeps input order among equal scores
    eligible.sort(key=lambda t: t.score, reverse=True)
    selected = select_with_spread(eligible, plan.required_target_count)
    # Eligible but outranked, or beyond the package size
    not_selected = [t for t in eligible if t not in selected]

    return SimulationReport(
        selected=selected,
        rejected=rejected,
        not_selected=not_selected,
        required_count=plan.required_target_count,
        simulated_at=now,
    )


__all__ = ["check_location", "select_with_spread", "simulate_placement"]
