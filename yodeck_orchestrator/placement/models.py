"""
Placement data models: PlanStatus, PlacementPlan, reports and typed results.

- ``PlanStatus``: lifecycle of a placement plan.
- ``PlacementTarget``: one location/screen a plan will publish to.
- ``SimulationReport``: selected, not selected and rejected candidates.
- ``TargetResult`` / ``PublishReport``: per-target outcome of one attempt.
- ``PlacementPlan``: the durable intent record (owned by this system).
- ``OperationResult`` / ``BulkSummary``: what the boundary layer receives.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from yodeck_orchestrator.utils import parse_datetime, utc_now
from yodeck_orchestrator.yodeck.models import ErrorKind


# =============================================================================
# PLAN STATUS
# =============================================================================


class PlanStatus(Enum):
    """Lifecycle status of a placement plan.

    Transitions:
        PROPOSED -> SIMULATED_OK | SIMULATED_FAIL   (simulate, repeatable)
        SIMULATED_OK -> APPROVED -> PUBLISHING -> PUBLISHED | FAILED
        FAILED -> PUBLISHING                          (retry)
        PUBLISHED -> ROLLED_BACK                      (rollback)
        PROPOSED | SIMULATED_* | APPROVED -> CANCELED (cancel)
    """

    PROPOSED = "proposed"
    SIMULATED_OK = "simulated_ok"
    SIMULATED_FAIL = "simulated_fail"
    APPROVED = "approved"
    PUBLISHING = "publishing"
    PUBLISHED = "published"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        """Check if status is terminal for this plan instance."""
        return self in {PlanStatus.PUBLISHED, PlanStatus.CANCELED, PlanStatus.ROLLED_BACK}

    @property
    def is_pre_publish(self) -> bool:
        return self in PRE_PUBLISH_STATUSES


PRE_PUBLISH_STATUSES = frozenset(
    {
        PlanStatus.PROPOSED,
        PlanStatus.SIMULATED_OK,
        PlanStatus.SIMULATED_FAIL,
        PlanStatus.APPROVED,
    }
)

SIMULATABLE_STATUSES = frozenset(
    {PlanStatus.PROPOSED, PlanStatus.SIMULATED_OK, PlanStatus.SIMULATED_FAIL}
)


class Package(Enum):
    """Advertiser package and the number of screens it buys."""

    SINGLE = 1
    TRIPLE = 3
    TEN = 10

    @classmethod
    def parse(cls, value: Any) -> "Package":
        """Accept a Package, its screen count or its name in any case."""
        if isinstance(value, cls):
            return value
        if isinstance(value, int):
            return cls(value)
        return cls[str(value).strip().upper()]


class RejectionReason:
    NOT_ACTIVE = "NOT_ACTIVE"
    OFFLINE = "OFFLINE"
    NO_PLAYLIST = "NO_PLAYLIST"
    REGION_MISMATCH = "REGION_MISMATCH"
    CATEGORY_MISMATCH = "CATEGORY_MISMATCH"
    NO_CAPACITY = "NO_CAPACITY"
    STALE_SYNC = "STALE_SYNC"


# =============================================================================
# TARGETS AND REPORTS
# =============================================================================


@dataclass
class PlacementTarget:
    """A location selected to carry the ad."""

    location_id: str
    location_name: str
    yodeck_playlist_id: int
    yodeck_screen_id: Optional[int] = None
    city: Optional[str] = None
    score: float = 0.0
    expected_impressions_per_week: int = 0
    capacity_before: int = 0
    capacity_after: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "PlacementTarget":
        return cls(
            location_id=str(raw["location_id"]),
            location_name=raw.get("location_name") or "",
            yodeck_playlist_id=int(raw["yodeck_playlist_id"]),
            yodeck_screen_id=(
                int(raw["yodeck_screen_id"])
                if raw.get("yodeck_screen_id") is not None
                else None
            ),
            city=raw.get("city"),
            score=raw.get("score", 0.0),
            expected_impressions_per_week=raw.get("expected_impressions_per_week", 0),
            capacity_before=raw.get("capacity_before", 0),
            capacity_after=raw.get("capacity_after", 0),
        )


@dataclass
class Rejection:
    location_id: str
    location_name: str
    reason: str


@dataclass
class SimulationReport:
    selected: List[PlacementTarget] = field(default_factory=list)
    rejected: List[Rejection] = field(default_factory=list)
    not_selected: List[PlacementTarget] = field(default_factory=list)
    required_count: int = 0
    simulated_at: datetime = field(default_factory=utc_now)

    @property
    def selected_count(self) -> int:
        return len(self.selected)

    @property
    def rejected_count(self) -> int:
        return len(self.rejected)

    @property
    def ok(self) -> bool:
        return self.selected_count >= self.required_count

    @property
    def total_expected_impressions(self) -> int:
        return sum(t.expected_impressions_per_week for t in self.selected)

    def rejected_reasons(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for rejection in self.rejected:
            counts[rejection.reason] = counts.get(rejection.reason, 0) + 1
        return counts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "selected_count": self.selected_count,
            "rejected_count": self.rejected_count,
            "required_count": self.required_count,
            "total_expected_impressions": self.total_expected_impressions,
            "rejected_reasons": self.rejected_reasons(),
            "rejected": [asdict(r) for r in self.rejected],
            "not_selected": [
                {"location_id": t.location_id, "location_name": t.location_name, "score": t.score}
                for t in self.not_selected
            ],
            "capacity_snapshot": [
                {
                    "location_id": t.location_id,
                    "before": t.capacity_before,
                    "after": t.capacity_after,
                }
                for t in self.selected
            ],
            "simulated_at": self.simulated_at.isoformat(),
        }


class TargetStatus:
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class TargetResult:
    target_screen_id: Optional[int]
    location_id: str
    playlist_id: Optional[int]
    status: str
    http_status: Optional[int] = None
    error: Optional[str] = None
    steps: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == TargetStatus.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PublishReport:
    """Outcome of one publish, retry or rollback attempt.

    Superseded, never merged, by the next attempt.
    """

    operation: str
    attempt: int
    results: List[TargetResult] = field(default_factory=list)
    started_at: datetime = field(default_factory=utc_now)
    finished_at: Optional[datetime] = None

    @property
    def total_targets(self) -> int:
        return len(self.results)

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.ok)

    @property
    def failed_count(self) -> int:
        return self.total_targets - self.success_count

    @property
    def all_succeeded(self) -> bool:
        return self.failed_count == 0

    def failed_results(self) -> List[TargetResult]:
        return [r for r in self.results if not r.ok]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "attempt": self.attempt,
            "total_targets": self.total_targets,
            "success_count": self.success_count,
            "failed_count": self.failed_count,
            "results": [r.to_dict() for r in self.results],
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


# =============================================================================
# PLACEMENT PLAN
# =============================================================================


@dataclass
class PlacementPlan:
    """An advertiser placement and its lifecycle.

    Attributes:
        id: Plan id (UUID).
        advertiser_id: Advertiser owning the ad.
        ad_asset_id: Local asset reference.
        media_id: Yodeck media id of the ad, once known.
        media_name: Name the media was uploaded under (for name search).
        required_target_count: Number of screens the package buys.
        package: Package sold, when known; fills a missing target count.
        video_duration_seconds: Ad length used for capacity checks.
        target_region_codes: Empty means any region.
        category: Advertiser business category.
        status: Current lifecycle status.
        proposed_targets: Targets chosen by the last simulation.
        approved_targets: Targets frozen at approval.
        simulation_report: Last simulation report (dict form).
        publish_report: Last publish/retry/rollback report (dict form).
        retry_count: Number of retries since the last fresh failure.
    """

    id: str
    advertiser_id: str
    required_target_count: int
    status: PlanStatus = PlanStatus.PROPOSED

    ad_asset_id: Optional[str] = None
    media_id: Optional[int] = None
    media_name: Optional[str] = None
    video_duration_seconds: int = 15
    target_region_codes: List[str] = field(default_factory=list)
    category: Optional[str] = None
    package: Optional[Package] = None

    proposed_targets: List[PlacementTarget] = field(default_factory=list)
    approved_targets: List[PlacementTarget] = field(default_factory=list)
    simulation_report: Optional[Dict[str, Any]] = None
    publish_report: Optional[Dict[str, Any]] = None

    retry_count: int = 0
    last_error_code: Optional[str] = None
    last_error_message: Optional[str] = None
    last_error_details: Optional[Dict[str, Any]] = None
    idempotency_key: Optional[str] = None

    created_at: datetime = field(default_factory=utc_now)
    simulated_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    publish_started_at: Optional[datetime] = None
    published_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    rolled_back_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None

    TIMESTAMP_FIELDS = (
        "created_at",
        "simulated_at",
        "approved_at",
        "publish_started_at",
        "published_at",
        "failed_at",
        "rolled_back_at",
        "canceled_at",
    )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PlacementPlan":
        """Convert a ``placement_plans`` row into a ``PlacementPlan``."""
        package = Package.parse(row["package"]) if row.get("package") else None
        required = row.get("required_target_count") or (package.value if package else 1)
        plan = cls(
            id=row["id"],
            advertiser_id=row.get("advertiser_id") or "",
            required_target_count=int(required),
            status=PlanStatus(row.get("status") or PlanStatus.PROPOSED.value),
            ad_asset_id=row.get("ad_asset_id"),
            media_id=row.get("media_id"),
            media_name=row.get("media_name"),
            video_duration_seconds=int(row.get("video_duration_seconds") or 15),
            target_region_codes=list(row.get("target_region_codes") or []),
            category=row.get("category"),
            package=package,
            proposed_targets=[
                PlacementTarget.from_dict(t) for t in row.get("proposed_targets") or []
            ],
            approved_targets=[
                PlacementTarget.from_dict(t) for t in row.get("approved_targets") or []
            ],
            simulation_report=row.get("simulation_report"),
            publish_report=row.get("publish_report"),
            retry_count=int(row.get("retry_count") or 0),
            last_error_code=row.get("last_error_code"),
            last_error_message=row.get("last_error_message"),
            last_error_details=row.get("last_error_details"),
            idempotency_key=row.get("idempotency_key"),
        )
        for name in cls.TIMESTAMP_FIELDS:
            value = parse_datetime(row.get(name))
            if value is not None:
                setattr(plan, name, value)
        return plan

    def to_row(self) -> Dict[str, Any]:
        row: Dict[str, Any] = {
            "id": self.id,
            "advertiser_id": self.advertiser_id,
            "required_target_count": self.required_target_count,
            "package": self.package.name if self.package else None,
            "status": self.status.value,
            "ad_asset_id": self.ad_asset_id,
            "media_id": self.media_id,
            "media_name": self.media_name,
            "video_duration_seconds": self.video_duration_seconds,
            "target_region_codes": list(self.target_region_codes),
            "category": self.category,
            "proposed_targets": [t.to_dict() for t in self.proposed_targets],
            "approved_targets": [t.to_dict() for t in self.approved_targets],
            "simulation_report": self.simulation_report,
            "publish_report": self.publish_report,
            "retry_count": self.retry_count,
            "last_error_code": self.last_error_code,
            "last_error_message": self.last_error_message,
            "last_error_details": self.last_error_details,
            "idempotency_key": self.idempotency_key,
        }
        for name in self.TIMESTAMP_FIELDS:
            value = getattr(self, name)
            row[name] = value.isoformat() if value else None
        return row


# =============================================================================
# BOUNDARY RESULTS
# =============================================================================


@dataclass
class OperationResult:
    """Typed result of a plan operation; never an uncaught exception.

    ``status`` mirrors an HTTP status the boundary layer can return
    (409 for ``concurrency_conflict``).
    """

    ok: bool
    plan_id: str
    error: Optional[str] = None
    status: int = 200
    kind: Optional[ErrorKind] = None
    plan_status: Optional[PlanStatus] = None
    report: Optional[Dict[str, Any]] = None

    @classmethod
    def success(
        cls,
        plan: PlacementPlan,
        report: Optional[Dict[str, Any]] = None,
    ) -> "OperationResult":
        return cls(ok=True, plan_id=plan.id, plan_status=plan.status, report=report)

    @classmethod
    def failure(
        cls,
        plan_id: str,
        error: str,
        status: int = 400,
        kind: Optional[ErrorKind] = None,
        plan_status: Optional[PlanStatus] = None,
        report: Optional[Dict[str, Any]] = None,
    ) -> "OperationResult":
        return cls(
            ok=False,
            plan_id=plan_id,
            error=error,
            status=status,
            kind=kind,
            plan_status=plan_status,
            report=report,
        )

    @property
    def is_conflict(self) -> bool:
        return self.kind == ErrorKind.CONCURRENCY_CONFLICT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "plan_id": self.plan_id,
            "error": self.error,
            "status": self.status,
            "kind": self.kind.value if self.kind else None,
            "plan_status": self.plan_status.value if self.plan_status else None,
            "report": self.report,
        }


@dataclass
class BulkSummary:
    success_count: int
    total: int
    results: List[OperationResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success_count": self.success_count,
            "total": self.total,
            "results": [r.to_dict() for r in self.results],
        }


__all__ = [
    "PlanStatus",
    "PRE_PUBLISH_STATUSES",
    "SIMULATABLE_STATUSES",
    "Package",
    "RejectionReason",
    "PlacementTarget",
    "Rejection",
    "SimulationReport",
    "TargetStatus",
    "TargetResult",
    "PublishReport",
    "PlacementPlan",
    "OperationResult",
    "BulkSummary",
]
