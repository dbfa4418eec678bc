"""Tests for the truth reconciler and the background reconcile scheduler."""

import asyncio
from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from yodeck_orchestrator.placement.models import PlacementPlan, PlacementTarget, PlanStatus
from yodeck_orchestrator.reconcile import ReconcileScheduler, TruthReconciler
from yodeck_orchestrator.reconcile.reconciler import expected_media_for_location
from yodeck_orchestrator.reconcile.scheduler import STUCK_PUBLISHING
from yodeck_orchestrator.utils import utc_now

AD_MEDIA_ID = 500


def published_row(plan_id, media_id, *location_ids):
    plan = PlacementPlan(
        id=plan_id,
        advertiser_id="adv-1",
        required_target_count=len(location_ids),
        status=PlanStatus.PUBLISHED,
        media_id=media_id,
        approved_targets=[
            PlacementTarget(location_id=loc, location_name=loc, yodeck_playlist_id=101)
            for loc in location_ids
        ],
    )
    return plan.to_row()


@pytest.fixture
def site(fake_db, fake_yodeck, location_factory):
    """One location with one linked screen and one published plan."""
    fake_db.locations["loc-1"] = location_factory("loc-1", 101, 1, "Amsterdam")
    fake_db.screens["scr-1"] = {"id": "scr-1", "location_id": "loc-1", "yodeck_screen_id": 1}
    fake_db.plans["plan-1"] = published_row("plan-1", AD_MEDIA_ID, "loc-1")
    fake_yodeck.add_media(AD_MEDIA_ID, "ad.mp4")
    fake_yodeck.add_playlist(101, [{"id": AD_MEDIA_ID, "type": "media"}])
    return fake_yodeck


@pytest.fixture
def reconciler(fake_db, yodeck_client):
    return TruthReconciler(fake_db, yodeck_client)


# =============================================================================
# Expected media
# =============================================================================


class TestExpectedMedia:
    """Which media a location should be playing."""

    def test_only_plans_targeting_the_location_count(self):
        """Media of plans for other locations are ignored; result is sorted."""
        rows = [
            published_row("a", 30, "loc-1"),
            published_row("b", 10, "loc-1", "loc-2"),
            published_row("c", 20, "loc-2"),
            published_row("d", None, "loc-1"),
        ]

        assert expected_media_for_location(rows, "loc-1") == [10, 30]


# =============================================================================
# Reconcile
# =============================================================================


class TestReconcile:
    """Per-screen comparison and status writes."""

    @pytest.mark.asyncio
    async def test_compliant_screen(self, site, fake_db, reconciler):
        """A screen on the location playlist with the ad is compliant."""
        site.add_screen(1, "playlist", 101)

        result = await reconciler.reconcile("loc-1")

        assert result.ok is True
        screen = result.screens[0]
        assert screen.compliant is True
        assert screen.media_count == 1
        assert screen.missing_media_ids == []
        screen_id, fields = fake_db.screen_updates[0]
        assert screen_id == "scr-1"
        assert fields["compliant"] is True
        assert fields["current_source_type"] == "playlist"
        assert fields["current_source_id"] == 101
        assert "last_seen_at" in fields

    @pytest.mark.asyncio
    async def test_missing_media_is_drift(self, site, fake_db, reconciler):
        """An empty location playlist reports the published ad as missing."""
        site.add_screen(1, "playlist", 101)
        site.playlists[101]["items"] = []

        result = await reconciler.reconcile("loc-1")

        screen = result.screens[0]
        assert screen.compliant is False
        assert screen.missing_media_ids == [AD_MEDIA_ID]
        assert screen.pushed is False
        assert site.count("POST", "/screens/1/push") == 0

    @pytest.mark.asyncio
    async def test_drift_repaired_with_push(self, site, reconciler):
        """push=True assigns the location playlist and pushes the screen."""
        site.add_screen(1, "layout", 7)
        site.layouts[7] = {"id": 7, "name": "other", "regions": []}

        result = await reconciler.reconcile("loc-1", push=True, reason="manual-fix")

        screen = result.screens[0]
        assert screen.pushed is True
        assert (screen.source_type, screen.source_id) == ("playlist", 101)
        assert site.screens[1]["screen_content"] == {"source_type": "playlist", "source_id": 101}
        assert site.count("POST", "/screens/1/push") == 1
        assert result.reason == "manual-fix"

    @pytest.mark.asyncio
    async def test_offline_screen_keeps_last_seen(self, site, fake_db, reconciler):
        """Offline screens do not bump last_seen_at."""
        site.add_screen(1, "playlist", 101, online=False)

        await reconciler.reconcile("loc-1")

        _, fields = fake_db.screen_updates[0]
        assert fields["online"] is False
        assert "last_seen_at" not in fields

    @pytest.mark.asyncio
    async def test_unlinked_screen_is_reported(self, site, fake_db, reconciler):
        """A screen row without a Yodeck id is an error and is not written."""
        fake_db.screens["scr-1"]["yodeck_screen_id"] = None

        result = await reconciler.reconcile("loc-1")

        assert result.ok is False
        assert result.errors == ["screen scr-1: no yodeck screen linked"]
        assert fake_db.screen_updates == []

    @pytest.mark.asyncio
    async def test_unreachable_screen_does_not_stop_others(self, site, fake_db, reconciler):
        """One failing screen is recorded; the next screen is still reconciled."""
        fake_db.screens["scr-2"] = {"id": "scr-2", "location_id": "loc-1", "yodeck_screen_id": 2}
        site.add_screen(2, "playlist", 101)

        result = await reconciler.reconcile("loc-1")

        assert result.errors == ["screen scr-1: get_screen: http_404"]
        assert result.screens[1].compliant is True
        assert [s for s, _ in fake_db.screen_updates] == ["scr-2"]

    @pytest.mark.asyncio
    async def test_unknown_location(self, reconciler):
        """A missing location yields ok=False with a readable error."""
        result = await reconciler.reconcile("nowhere")

        assert result.ok is False
        assert result.errors == ["location nowhere not found"]

    @pytest.mark.asyncio
    async def test_status_write_failure_is_recorded(self, site, fake_db, reconciler):
        """A failing screens-table write does not raise."""
        site.add_screen(1, "playlist", 101)
        fake_db.update_screen_status = AsyncMock(side_effect=ConnectionError("db down"))

        result = await reconciler.reconcile("loc-1")

        assert result.ok is False
        assert "status write: db down" in result.errors[0]

    @pytest.mark.asyncio
    async def test_correlation_id_is_kept(self, site, reconciler):
        """A caller-supplied correlation id is echoed in the result."""
        site.add_screen(1, "playlist", 101)

        result = await reconciler.reconcile("loc-1", correlation_id="corr-42")

        assert result.correlation_id == "corr-42"
        assert result.to_dict()["screens"][0]["screen_id"] == "scr-1"


# =============================================================================
# Scheduler
# =============================================================================


class TestReconcileScheduler:
    """Periodic cycles and stuck-plan recovery."""

    @pytest.mark.asyncio
    async def test_run_once_reconciles_active_locations(self, fake_db, location_factory):
        """Every active location is reconciled; the clean count is returned."""
        fake_db.locations["loc-1"] = location_factory("loc-1", 101, 1, "A")
        fake_db.locations["loc-2"] = location_factory("loc-2", 102, 2, "B")
        fake_db.locations["loc-3"] = location_factory("loc-3", 103, 3, "C", status="paused")
        reconciler = AsyncMock()
        reconciler.reconcile.side_effect = [
            SimpleNamespace(ok=True),
            SimpleNamespace(ok=False),
        ]
        scheduler = ReconcileScheduler(fake_db, reconciler, push=True)

        clean = await scheduler.run_once()

        assert clean == 1
        called = [c.args[0] for c in reconciler.reconcile.await_args_list]
        assert called == ["loc-1", "loc-2"]
        assert reconciler.reconcile.await_args_list[0].kwargs == {
            "push": True,
            "reason": "scheduled:1",
        }

    @pytest.mark.asyncio
    async def test_stuck_publishing_plans_are_released(self, fake_db):
        """Old or undated PUBLISHING plans become FAILED; recent ones stay."""
        now = utc_now()
        fake_db.plans = {
            "old": {"id": "old", "status": "publishing",
                    "publish_started_at": (now - timedelta(hours=2)).isoformat()},
            "undated": {"id": "undated", "status": "publishing", "publish_started_at": None},
            "fresh": {"id": "fresh", "status": "publishing",
                      "publish_started_at": (now - timedelta(minutes=5)).isoformat()},
        }
        scheduler = ReconcileScheduler(fake_db, AsyncMock())

        recovered = await scheduler.recover_stuck_plans()

        assert recovered == 2
        assert fake_db.plans["old"]["status"] == "failed"
        assert fake_db.plans["old"]["last_error_code"] == STUCK_PUBLISHING
        assert fake_db.plans["undated"]["status"] == "failed"
        assert fake_db.plans["fresh"]["status"] == "publishing"

    @pytest.mark.asyncio
    async def test_plan_finishing_after_read_is_not_released(self, fake_db):
        """A stale row read before the publish completes never overwrites PUBLISHED."""
        started = (utc_now() - timedelta(hours=1)).isoformat()
        fake_db.plans = {
            "late": {"id": "late", "status": "publishing", "publish_started_at": started},
        }
        list_plans = fake_db.list_plans

        async def list_then_finish(status=None, limit=100):
            rows = await list_plans(status=status, limit=limit)
            fake_db.plans["late"]["status"] = "published"
            return rows

        fake_db.list_plans = list_then_finish
        scheduler = ReconcileScheduler(fake_db, AsyncMock())

        recovered = await scheduler.recover_stuck_plans()

        assert recovered == 0
        assert fake_db.plans["late"]["status"] == "published"
        assert "last_error_code" not in fake_db.plans["late"]

    @pytest.mark.asyncio
    async def test_plan_reclaimed_after_read_is_not_released(self, fake_db):
        """A plan re-claimed by a retry carries a fresh start time and is kept."""
        fake_db.plans = {
            "again": {"id": "again", "status": "publishing",
                      "publish_started_at": (utc_now() - timedelta(hours=1)).isoformat()},
        }
        list_plans = fake_db.list_plans

        async def list_then_reclaim(status=None, limit=100):
            rows = await list_plans(status=status, limit=limit)
            fake_db.plans["again"]["publish_started_at"] = utc_now().isoformat()
            return rows

        fake_db.list_plans = list_then_reclaim
        scheduler = ReconcileScheduler(fake_db, AsyncMock())

        assert await scheduler.recover_stuck_plans() == 0
        assert fake_db.plans["again"]["status"] == "publishing"

    @pytest.mark.asyncio
    async def test_stop_ends_loop_after_cycle(self, fake_db):
        """stop() during a cycle makes start() return without sleeping."""
        scheduler = ReconcileScheduler(fake_db, AsyncMock(), interval_seconds=3600)

        async def locations():
            await scheduler.stop()
            return []

        fake_db.get_active_locations = locations

        await asyncio.wait_for(scheduler.start(), timeout=1)

        assert scheduler.is_running is False

    @pytest.mark.asyncio
    async def test_cycle_error_does_not_kill_loop(self, fake_db):
        """An exception in one cycle is logged and the next cycle runs."""
        scheduler = ReconcileScheduler(fake_db, AsyncMock(), interval_seconds=0)
        calls = []

        async def locations():
            calls.append(1)
            if len(calls) == 1:
                raise ConnectionError("db down")
            await scheduler.stop()
            return []

        fake_db.get_active_locations = locations

        await asyncio.wait_for(scheduler.start(), timeout=1)

        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_cancel_stops_sleeping_scheduler(self, fake_db):
        """Cancelling the background task exits the loop cleanly."""
        scheduler = ReconcileScheduler(fake_db, AsyncMock(), interval_seconds=3600)
        task = asyncio.create_task(scheduler.start())
        for _ in range(5):
            await asyncio.sleep(0)
        assert scheduler.is_running is True

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

        assert scheduler.is_running is False
