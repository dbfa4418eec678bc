"""Tests for the content graph resolver and content inventory.

Validates:
- classification (has_content, empty, unknown, unknown_tagbased, error)
- media de-duplication in first-seen order
- cycle safety and the depth bound
- shared nodes expanded once
- layouts, schedules (filler kept separate) and tag-based playlists
- takeover evaluation against UTC now
- inventory aggregation across screens
"""

from datetime import timedelta

import pytest

from yodeck_orchestrator.yodeck.content import (
    ResolveStatus,
    build_content_inventory,
    evaluate_takeover,
    resolve,
    resolve_screen_content,
)
from yodeck_orchestrator.yodeck.models import ScreenContentPointer, SourceType, YodeckScreen


def media_item(media_id, duration=None):
    item = {"id": media_id, "type": "media"}
    if duration is not None:
        item["duration"] = duration
    return item


def playlist_item(playlist_id):
    return {"id": playlist_id, "type": "playlist"}


def pointer(source_type, source_id):
    return ScreenContentPointer(SourceType.parse(source_type), source_id)


# =============================================================================
# Classification and dedup
# =============================================================================


class TestClassification:
    """Status of the resolved content."""

    @pytest.mark.asyncio
    async def test_playlist_with_media_has_content(self, fake_yodeck, yodeck_client):
        """Media items are resolved with names from the media index."""
        fake_yodeck.add_media(1, "welcome.mp4")
        fake_yodeck.add_media(2, "menu.png", origin_type="image")
        fake_yodeck.add_playlist(10, [media_item(1, 10), media_item(2)])

        content = await resolve(yodeck_client, pointer("playlist", 10))

        assert content.status == ResolveStatus.HAS_CONTENT
        assert content.media_ids == [1, 2]
        assert content.media_items[0].name == "welcome.mp4"
        assert content.media_items[0].duration_seconds == 10
        assert content.media_items[1].media_type == "image"

    @pytest.mark.asyncio
    async def test_duplicates_are_counted_once_in_first_seen_order(
        self, fake_yodeck, yodeck_client
    ):
        """The same media reached twice appears once, at its first position."""
        for media_id in (1, 2, 3):
            fake_yodeck.add_media(media_id)
        fake_yodeck.add_playlist(11, [media_item(3), media_item(1)])
        fake_yodeck.add_playlist(10, [media_item(1), media_item(2), playlist_item(11)])

        content = await resolve(yodeck_client, pointer("playlist", 10))

        assert content.media_ids == [1, 2, 3]
        assert content.unique_media_count == 3

    @pytest.mark.asyncio
    async def test_empty_playlist_is_empty(self, fake_yodeck, yodeck_client):
        """A playlist without items resolves as empty."""
        fake_yodeck.add_playlist(10, [])

        content = await resolve(yodeck_client, pointer("playlist", 10))

        assert content.status == ResolveStatus.EMPTY
        assert content.warnings == []

    @pytest.mark.asyncio
    async def test_no_pointer_is_unknown(self, yodeck_client):
        """A screen without screen_content is unknown."""
        content = await resolve(yodeck_client, None)

        assert content.status == ResolveStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_unreachable_root_is_error(self, yodeck_client):
        """A root structure that cannot be fetched is an error with a warning."""
        content = await resolve(yodeck_client, pointer("playlist", 404))

        assert content.status == ResolveStatus.ERROR
        assert "playlist 404 unavailable" in content.warnings[0]

    @pytest.mark.asyncio
    async def test_media_missing_from_index_gets_placeholder(
        self, fake_yodeck, yodeck_client
    ):
        """Unknown media still counts, named 'Media <id>', with a warning."""
        fake_yodeck.add_playlist(10, [media_item(77)])

        content = await resolve(yodeck_client, pointer("playlist", 10))

        assert content.status == ResolveStatus.HAS_CONTENT
        assert content.media_items[0].name == "Media 77"
        assert any("77" in w for w in content.warnings)

    @pytest.mark.asyncio
    async def test_unknown_item_types_are_traced_not_expanded(
        self, fake_yodeck, yodeck_client
    ):
        """Widgets appear in the trace but contribute no media."""
        fake_yodeck.add_playlist(10, [{"id": 5, "type": "widget", "name": "clock"}])

        content = await resolve(yodeck_client, pointer("playlist", 10))

        assert content.status == ResolveStatus.EMPTY
        assert [i.type for i in content.items] == ["playlist", "widget"]


# =============================================================================
# Graph safety
# =============================================================================


class TestGraphSafety:
    """Cycles, depth and shared nodes."""

    @pytest.mark.asyncio
    async def test_cycle_terminates_with_warning(self, fake_yodeck, yodeck_client):
        """A playlist that (indirectly) contains itself is not re-expanded."""
        fake_yodeck.add_media(1)
        fake_yodeck.add_playlist(10, [media_item(1), playlist_item(20)])
        fake_yodeck.add_playlist(20, [playlist_item(10)])

        content = await resolve(yodeck_client, pointer("playlist", 10))

        assert content.media_ids == [1]
        assert any("cycle detected at playlist:10" in w for w in content.warnings)
        assert fake_yodeck.count("GET", "/playlists/10") == 1

    @pytest.mark.asyncio
    async def test_self_reference_is_a_cycle(self, fake_yodeck, yodeck_client):
        """A playlist listing itself resolves without recursion."""
        fake_yodeck.add_playlist(10, [playlist_item(10)])

        content = await resolve(yodeck_client, pointer("playlist", 10))

        assert content.status == ResolveStatus.EMPTY
        assert any("cycle" in w for w in content.warnings)

    @pytest.mark.asyncio
    async def test_depth_bound_stops_expansion(self, fake_yodeck, yodeck_client):
        """Structures nested past max_depth are reported, not expanded."""
        for media_id in (1, 2, 3):
            fake_yodeck.add_media(media_id)
        fake_yodeck.add_playlist(10, [media_item(1), playlist_item(20)])
        fake_yodeck.add_playlist(20, [media_item(2), playlist_item(30)])
        fake_yodeck.add_playlist(30, [media_item(3)])

        content = await resolve(yodeck_client, pointer("playlist", 10), max_depth=1)

        assert content.media_ids == [1, 2]
        assert any("max depth 1 exceeded at playlist:30" in w for w in content.warnings)
        assert fake_yodeck.count("GET", "/playlists/30") == 0

    @pytest.mark.asyncio
    async def test_shared_child_is_expanded_once(self, fake_yodeck, yodeck_client):
        """Two layout regions showing the same playlist expand it once."""
        fake_yodeck.add_media(1)
        fake_yodeck.add_playlist(10, [media_item(1)])
        fake_yodeck.layouts[5] = {
            "id": 5,
            "name": "split",
            "regions": [
                {"item": {"type": "playlist", "id": 10}},
                {"item": {"type": "playlist", "id": 10}},
            ],
        }

        content = await resolve(yodeck_client, pointer("layout", 5))

        assert content.media_ids == [1]
        assert any("playlist:10 already visited" in w for w in content.warnings)


# =============================================================================
# Structure types
# =============================================================================


class TestStructures:
    """Layouts, schedules and tag-based playlists."""

    @pytest.mark.asyncio
    async def test_layout_regions_and_background_audio(self, fake_yodeck, yodeck_client):
        """Region content and background audio both contribute media."""
        fake_yodeck.add_media(1)
        fake_yodeck.add_media(2, origin_type="audio")
        fake_yodeck.add_playlist(10, [media_item(1)])
        fake_yodeck.layouts[5] = {
            "id": 5,
            "name": "main",
            "regions": [{"item": {"type": "playlist", "id": 10}}],
            "background_audio": {"item": {"type": "media", "id": 2}},
        }

        content = await resolve(yodeck_client, pointer("layout", 5))

        assert content.media_ids == [1, 2]

    @pytest.mark.asyncio
    async def test_schedule_filler_is_separate(self, fake_yodeck, yodeck_client):
        """Filler media are reported in filler_content and not counted."""
        fake_yodeck.add_media(1)
        fake_yodeck.add_media(9)
        fake_yodeck.add_playlist(10, [media_item(1)])
        fake_yodeck.add_playlist(90, [media_item(9)])
        fake_yodeck.schedules[3] = {
            "id": 3,
            "name": "week",
            "events": [{"source": {"source_type": "playlist", "source_id": 10}}],
            "filler_content": {"source_type": "playlist", "source_id": 90},
        }

        content = await resolve(yodeck_client, pointer("schedule", 3))

        assert content.media_ids == [1]
        assert content.filler_content["media_ids"] == [9]
        assert content.filler_content["source_id"] == 90

    @pytest.mark.asyncio
    async def test_tagbased_playlist_applies_includes_and_excludes(
        self, fake_yodeck, yodeck_client
    ):
        """Tag matches minus excludes plus explicit includes."""
        fake_yodeck.add_media(1, tags=["promo"], workspace=5)
        fake_yodeck.add_media(2, tags=["promo"], workspace=5)
        fake_yodeck.add_media(3, tags=["other"], workspace=5)
        fake_yodeck.tagbased[7] = {
            "id": 7,
            "name": "promos",
            "tags": [{"name": "promo"}],
            "workspaces": [{"id": 5}],
            "includes": {"media": [3]},
            "excludes": {"media": [2]},
        }

        content = await resolve(yodeck_client, pointer("tagbased_playlist", 7))

        assert content.status == ResolveStatus.HAS_CONTENT
        assert content.media_ids == [1, 3]

    @pytest.mark.asyncio
    async def test_tagbased_without_tags_is_unknown_tagbased(
        self, fake_yodeck, yodeck_client
    ):
        """A tag-based playlist that cannot be evaluated is unknown_tagbased."""
        fake_yodeck.tagbased[7] = {"id": 7, "name": "empty", "tags": [], "workspaces": []}

        content = await resolve(yodeck_client, pointer("tagbased-playlist", 7))

        assert content.status == ResolveStatus.UNKNOWN_TAGBASED


# =============================================================================
# Takeover
# =============================================================================


class TestTakeover:
    """Takeover windows are informational and evaluated in UTC."""

    def test_inside_window_is_active(self, sample_utc_now):
        """now within [start, end) is active."""
        takeover = {
            "source_type": "playlist",
            "source_id": 9,
            "start": (sample_utc_now - timedelta(hours=1)).isoformat(),
            "end": (sample_utc_now + timedelta(hours=1)).isoformat(),
        }
        assert evaluate_takeover(takeover, sample_utc_now)["active"] is True

    def test_after_window_is_inactive(self, sample_utc_now):
        """An expired window is inactive."""
        takeover = {"source_id": 9, "end": "2025-06-15T11:00:00Z"}
        assert evaluate_takeover(takeover, sample_utc_now)["active"] is False

    def test_disabled_takeover_is_inactive(self, sample_utc_now):
        """enabled=False wins over the window."""
        assert evaluate_takeover({"enabled": False}, sample_utc_now)["active"] is False

    def test_no_takeover(self, sample_utc_now):
        """No takeover block gives None."""
        assert evaluate_takeover(None, sample_utc_now) is None

    @pytest.mark.asyncio
    async def test_takeover_does_not_change_resolved_media(
        self, fake_yodeck, yodeck_client, sample_utc_now
    ):
        """An active takeover is reported alongside the normal content."""
        fake_yodeck.add_media(1)
        fake_yodeck.add_playlist(10, [media_item(1)])
        raw = fake_yodeck.add_screen(
            3, "playlist", 10, takeover_content={"source_type": "playlist", "source_id": 99}
        )

        content = await resolve_screen_content(
            yodeck_client, YodeckScreen.from_api(raw), now=sample_utc_now
        )

        assert content.media_ids == [1]
        assert content.takeover_content["active"] is True
        assert content.takeover_content["source_id"] == 99


# =============================================================================
# Inventory
# =============================================================================


class TestInventory:
    """Aggregation over all screens."""

    @pytest.mark.asyncio
    async def test_inventory_totals_and_top_media(self, fake_yodeck, yodeck_client):
        """Totals per status, media breakdown and most-shown media."""
        fake_yodeck.add_media(1, "shared.mp4")
        fake_yodeck.add_media(2, "solo.png", origin_type="image")
        fake_yodeck.add_playlist(10, [media_item(1), media_item(2)])
        fake_yodeck.add_playlist(20, [media_item(1)])
        fake_yodeck.add_screen(1, "playlist", 10)
        fake_yodeck.add_screen(2, "playlist", 20, online=False)
        fake_yodeck.add_screen(3)

        inventory = await build_content_inventory(yodeck_client)

        assert inventory.totals["screens"] == 3
        assert inventory.totals["online"] == 2
        assert inventory.totals["has_content"] == 2
        assert inventory.totals["unknown"] == 1
        assert inventory.totals["unique_media"] == 2
        assert inventory.media_breakdown == {"video": 1, "image": 1}
        assert inventory.top_media[0] == {"media_id": 1, "name": "shared.mp4", "screens": 2}
