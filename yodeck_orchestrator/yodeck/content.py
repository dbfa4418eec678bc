"""
Content graph resolver: which media is a screen actually playing?

A screen's ``screen_content`` points at a playlist, layout, schedule or
tag-based playlist, each of which may reference further structures. The
resolver walks that graph depth-first and returns the flattened, de-duplicated
media set plus a full structural trace.

The walk is a pure recursive function. Each call receives an immutable
``Traversal`` (visited keys + depth) and returns an immutable ``Fragment``;
parents merge their children's fragments. No state is shared between
resolutions, so one client can resolve many screens concurrently.

Rules:
    - visited keys are ``type:id``; revisiting records a cycle warning
    - structures deeper than ``max_depth`` are not expanded (warning)
    - schedule filler is resolved separately and never counted
    - media missing from the index becomes a ``Media <id>`` placeholder
    - takeover windows are evaluated against UTC now (informational)
"""

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from yodeck_orchestrator.utils import utc_now
from yodeck_orchestrator.yodeck.client import YodeckClient
from yodeck_orchestrator.yodeck.models import (
    ContentRef,
    Layout,
    MediaAsset,
    Playlist,
    Schedule,
    ScreenContentPointer,
    SourceType,
    TagbasedPlaylist,
    YodeckScreen,
    parse_window,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 3


# =============================================================================
# RESULT TYPES
# =============================================================================


class ResolveStatus:
    HAS_CONTENT = "has_content"
    EMPTY = "empty"
    UNKNOWN = "unknown"
    UNKNOWN_TAGBASED = "unknown_tagbased"
    ERROR = "error"


@dataclass(frozen=True)
class MediaItem:
    id: int
    name: str
    type: str = "media"
    duration_seconds: Optional[float] = None
    media_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "duration_seconds": self.duration_seconds,
            "media_type": self.media_type,
        }


@dataclass(frozen=True)
class TraceItem:
    type: str
    id: int
    name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "id": self.id, "name": self.name}


@dataclass
class ResolvedContent:
    """What a screen is playing. Derived and ephemeral; never persisted as truth."""

    status: str
    media_items: List[MediaItem] = field(default_factory=list)
    items: List[TraceItem] = field(default_factory=list)
    filler_content: Optional[Dict[str, Any]] = None
    takeover_content: Optional[Dict[str, Any]] = None
    warnings: List[str] = field(default_factory=list)
    resolved_at: datetime = field(default_factory=utc_now)

    @property
    def media_ids(self) -> List[int]:
        return [item.id for item in self.media_items]

    @property
    def unique_media_count(self) -> int:
        return len(self.media_items)

    @property
    def total_items_in_structure(self) -> int:
        return len(self.items)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "unique_media_count": self.unique_media_count,
            "total_items_in_structure": self.total_items_in_structure,
            "media_items": [item.to_dict() for item in self.media_items],
            "media_ids": self.media_ids,
            "items": [item.to_dict() for item in self.items],
            "filler_content": self.filler_content,
            "takeover_content": self.takeover_content,
            "warnings": list(self.warnings),
            "resolved_at": self.resolved_at.isoformat(),
        }


# =============================================================================
# TRAVERSAL STATE
# =============================================================================


@dataclass(frozen=True)
class Traversal:
    """Immutable per-branch traversal context."""

    visited: FrozenSet[str] = frozenset()
    depth: int = 0
    max_depth: int = DEFAULT_MAX_DEPTH

    def enter(self, key: str) -> "Traversal":
        return replace(self, visited=self.visited | {key}, depth=self.depth + 1)


@dataclass(frozen=True)
class Fragment:
    """Immutable partial result returned by every recursive call."""

    items: Tuple[TraceItem, ...] = ()
    media: Tuple[MediaItem, ...] = ()
    warnings: Tuple[str, ...] = ()
    visited: FrozenSet[str] = frozenset()
    unresolved_tagbased: bool = False
    filler: Optional[Dict[str, Any]] = None

    def merge(self, other: "Fragment") -> "Fragment":
        return Fragment(
            items=self.items + other.items,
            media=self.media + other.media,
            warnings=self.warnings + other.warnings,
            visited=self.visited | other.visited,
            unresolved_tagbased=self.unresolved_tagbased or other.unresolved_tagbased,
            filler=self.filler or other.filler,
        )


EMPTY = Fragment()


def _warn(message: str) -> Fragment:
    return Fragment(warnings=(message,))


def _dedupe(media: Tuple[MediaItem, ...]) -> List[MediaItem]:
    seen = set()
    unique = []
    for item in media:
        if item.id not in seen:
            seen.add(item.id)
            unique.append(item)
    return unique


def _media_item(media: MediaAsset, duration: Optional[float] = None) -> MediaItem:
    return MediaItem(
        id=media.id,
        name=media.name or f"Media {media.id}",
        duration_seconds=duration if duration is not None else media.duration,
        media_type=media.origin_type,
    )


# =============================================================================
# RECURSIVE WALK
# =============================================================================


async def _walk(
    client: YodeckClient,
    ref: ContentRef,
    trav: Traversal,
    visited: FrozenSet[str],
) -> Fragment:
    """Resolve one node.

    *visited* carries keys seen anywhere earlier in the walk (siblings
    included) so a node shared by two branches is expanded once.
    """
    if ref.type == "media":
        return await _walk_media(client, ref)

    source_type = SourceType.parse(ref.type)
    if source_type is None:
        # Widgets and future types: part of the structure, no media
        return Fragment(items=(TraceItem(ref.type, ref.id, ref.name),))

    key = f"{source_type.value}:{ref.id}"
    if key in trav.visited:
        return _warn(f"cycle detected at {key}, skipped")
    if key in visited:
        return _warn(f"{key} already visited, skipped")
    if trav.depth > trav.max_depth:
        return _warn(f"max depth {trav.max_depth} exceeded at {key}, not expanded")

    inner = trav.enter(key)
    seen = visited | {key}
    if source_type == SourceType.PLAYLIST:
        fragment = await _walk_playlist(client, ref.id, inner, seen)
    elif source_type == SourceType.LAYOUT:
        fragment = await _walk_layout(client, ref.id, inner, seen)
    elif source_type == SourceType.SCHEDULE:
        fragment = await _walk_schedule(client, ref.id, inner, seen)
    else:
        fragment = await _walk_tagbased(client, ref.id)
    return Fragment(visited=frozenset({key})).merge(fragment)


async def _walk_children(
    client: YodeckClient,
    children: List[ContentRef],
    trav: Traversal,
    visited: FrozenSet[str],
) -> Fragment:
    result = EMPTY
    for child in children:
        fragment = await _walk(client, child, trav, visited | result.visited)
        result = result.merge(fragment)
    return result


async def _walk_media(client: YodeckClient, ref: ContentRef) -> Fragment:
    index = await client.get_media_index()
    media = index.get(ref.id)
    if media is None:
        placeholder = MediaItem(
            id=ref.id, name=f"Media {ref.id}", duration_seconds=ref.duration
        )
        return Fragment(
            items=(TraceItem("media", ref.id, placeholder.name),),
            media=(placeholder,),
            warnings=(f"media {ref.id} not found in media index",),
        )
    item = _media_item(media, ref.duration)
    return Fragment(items=(TraceItem("media", media.id, item.name),), media=(item,))


async def _walk_playlist(
    client: YodeckClient, playlist_id: int, trav: Traversal, visited: FrozenSet[str]
) -> Fragment:
    result = await client.get_playlist(playlist_id)
    if not result.ok:
        return _warn(f"playlist {playlist_id} unavailable ({result.error})")
    playlist: Playlist = result.data
    head = Fragment(items=(TraceItem("playlist", playlist.id, playlist.name),))
    return head.merge(await _walk_children(client, playlist.items, trav, visited))


async def _walk_layout(
    client: YodeckClient, layout_id: int, trav: Traversal, visited: FrozenSet[str]
) -> Fragment:
    result = await client.get_layout(layout_id)
    if not result.ok:
        return _warn(f"layout {layout_id} unavailable ({result.error})")
    layout: Layout = result.data
    children = list(layout.regions)
    if layout.background_audio is not None:
        children.append(layout.background_audio)
    head = Fragment(items=(TraceItem("layout", layout.id, layout.name),))
    return head.merge(await _walk_children(client, children, trav, visited))


async def _walk_schedule(
    client: YodeckClient, schedule_id: int, trav: Traversal, visited: FrozenSet[str]
) -> Fragment:
    result = await client.get_schedule(schedule_id)
    if not result.ok:
        return _warn(f"schedule {schedule_id} unavailable ({result.error})")
    schedule: Schedule = result.data
    head = Fragment(items=(TraceItem("schedule", schedule.id, schedule.name),))
    fragment = head.merge(await _walk_children(client, schedule.events, trav, visited))

    if schedule.filler is None:
        return fragment
    # Filler plays only outside events: resolved on its own, never counted
    filler = await _walk(client, schedule.filler, trav, visited)
    filler_media = _dedupe(filler.media)
    summary = {
        "source_type": schedule.filler.type,
        "source_id": schedule.filler.id,
        "source_name": schedule.filler.name,
        "media_ids": [item.id for item in filler_media],
        "media_items": [item.to_dict() for item in filler_media],
        "items": [item.to_dict() for item in filler.items],
    }
    return fragment.merge(Fragment(warnings=filler.warnings, filler=summary))


async def _walk_tagbased(client: YodeckClient, playlist_id: int) -> Fragment:
    result = await client.get_tagbased_playlist(playlist_id)
    if not result.ok:
        return Fragment(
            warnings=(f"tag-based playlist {playlist_id} unavailable ({result.error})",),
            unresolved_tagbased=True,
        )
    tagbased: TagbasedPlaylist = result.data
    head = Fragment(items=(TraceItem("tagbased-playlist", tagbased.id, tagbased.name),))
    if not tagbased.tags or not tagbased.workspace_ids:
        return head.merge(
            Fragment(
                warnings=(
                    f"tag-based playlist {tagbased.id} has no tags or workspace; "
                    "content unknown",
                ),
                unresolved_tagbased=True,
            )
        )

    excluded = set(tagbased.exclude_media)
    matches = await client.get_media_by_tags(tagbased.workspace_ids[0], tagbased.tags)
    media = [m for m in matches if m.id not in excluded]

    if tagbased.include_media:
        index = await client.get_media_index()
        known = {m.id for m in media}
        for media_id in tagbased.include_media:
            if media_id in excluded or media_id in known:
                continue
            if media_id in index:
                media.append(index[media_id])

    return head.merge(
        Fragment(
            items=tuple(TraceItem("media", m.id, m.name) for m in media),
            media=tuple(_media_item(m) for m in media),
        )
    )


# =============================================================================
# PUBLIC ENTRY POINTS
# =============================================================================


def evaluate_takeover(
    takeover: Optional[Dict[str, Any]], now: Optional[datetime] = None
) -> Optional[Dict[str, Any]]:
    """Annotate a screen's takeover block with ``active`` for *now* (UTC)."""
    if not takeover:
        return None
    now = now or utc_now()
    start, end = parse_window(takeover)
    active = takeover.get("enabled", True) is not False
    if start is not None and now < start:
        active = False
    if end is not None and now >= end:
        active = False
    return {
        "source_type": takeover.get("source_type"),
        "source_id": takeover.get("source_id"),
        "source_name": takeover.get("source_name"),
        "start": start.isoformat() if start else None,
        "end": end.isoformat() if end else None,
        "active": active,
    }


async def resolve(
    client: YodeckClient,
    pointer: Optional[ScreenContentPointer],
    screen: Optional[YodeckScreen] = None,
    now: Optional[datetime] = None,
    max_depth: Optional[int] = None,
) -> ResolvedContent:
    """Resolve a content pointer to the unique media it plays.

    Args:
        client: Yodeck client context.
        pointer: The screen's ``screen_content``.
        screen: Optional screen snapshot (for takeover evaluation).
        now: Override of "now" for takeover evaluation.
        max_depth: Structure depth cap; defaults to ``client.config.max_depth``.
    """
    takeover = evaluate_takeover(screen.takeover if screen else None, now)
    if pointer is None or not pointer.is_set:
        return ResolvedContent(
            status=ResolveStatus.UNKNOWN,
            takeover_content=takeover,
            warnings=["screen has no content assigned"],
        )

    depth_cap = max_depth if max_depth is not None else client.config.max_depth
    root = ContentRef(
        type=pointer.source_type.value,  # type: ignore[union-attr]
        id=pointer.source_id,  # type: ignore[arg-type]
        name=pointer.source_name,
    )
    fragment = await _walk(client, root, Traversal(max_depth=depth_cap), frozenset())

    if not fragment.items and fragment.warnings:
        status = ResolveStatus.ERROR
    elif fragment.media:
        status = ResolveStatus.HAS_CONTENT
    elif fragment.unresolved_tagbased:
        status = ResolveStatus.UNKNOWN_TAGBASED
    else:
        status = ResolveStatus.EMPTY

    content = ResolvedContent(
        status=status,
        media_items=_dedupe(fragment.media),
        items=list(fragment.items),
        filler_content=fragment.filler,
        takeover_content=takeover,
        warnings=list(fragment.warnings),
    )
    if content.warnings:
        logger.debug(
            "[RESOLVER] %s:%s resolved with %d warnings",
            root.type,
            root.id,
            len(content.warnings),
        )
    return content


async def resolve_screen_content(
    client: YodeckClient, screen: YodeckScreen, now: Optional[datetime] = None
) -> ResolvedContent:
    """Resolve what *screen* is playing right now."""
    return await resolve(client, screen.content, screen=screen, now=now)


# =============================================================================
# CONTENT INVENTORY
# =============================================================================


@dataclass
class ContentInventory:
    screens: List[Dict[str, Any]] = field(default_factory=list)
    totals: Dict[str, int] = field(default_factory=dict)
    media_breakdown: Dict[str, int] = field(default_factory=dict)
    top_media: List[Dict[str, Any]] = field(default_factory=list)
    generated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "screens": self.screens,
            "totals": self.totals,
            "media_breakdown": self.media_breakdown,
            "top_media": self.top_media,
            "generated_at": self.generated_at.isoformat(),
        }


async def build_content_inventory(
    client: YodeckClient,
    screens: Optional[List[YodeckScreen]] = None,
    top_n: int = 10,
) -> ContentInventory:
    """Resolve every screen and summarise what plays where."""
    if screens is None:
        screens = await client.get_screens()

    resolutions = await asyncio.gather(
        *(resolve_screen_content(client, screen) for screen in screens)
    )

    inventory = ContentInventory()
    status_counts: Counter = Counter()
    screens_per_media: Counter = Counter()
    media_names: Dict[int, str] = {}
    media_types: Dict[int, str] = {}

    for screen, content in zip(screens, resolutions):
        status_counts[content.status] += 1
        pointer = screen.content
        inventory.screens.append(
            {
                "screen_id": screen.id,
                "name": screen.name,
                "online": screen.online,
                "status": content.status,
                "source_type": pointer.source_type.value
                if pointer and pointer.source_type
                else None,
                "source_id": pointer.source_id if pointer else None,
                "unique_media_count": content.unique_media_count,
                "warnings": len(content.warnings),
            }
        )
        for item in content.media_items:
            screens_per_media[item.id] += 1
            media_names[item.id] = item.name
            media_types[item.id] = item.media_type or "unknown"

    inventory.totals = {
        "screens": len(screens),
        "online": sum(1 for s in screens if s.online),
        "unique_media": len(screens_per_media),
        **{status: status_counts.get(status, 0) for status in (
            ResolveStatus.HAS_CONTENT,
            ResolveStatus.EMPTY,
            ResolveStatus.UNKNOWN,
            ResolveStatus.UNKNOWN_TAGBASED,
            ResolveStatus.ERROR,
        )},
    }
    inventory.media_breakdown = dict(Counter(media_types.values()))
    inventory.top_media = [
        {"media_id": media_id, "name": media_names[media_id], "screens": count}
        for media_id, count in sorted(
            screens_per_media.items(), key=lambda kv: (-kv[1], kv[0])
        )[:top_n]
    ]
    return inventory


__all__ = [
    "DEFAULT_MAX_DEPTH",
    "ResolveStatus",
    "MediaItem",
    "TraceItem",
    "ResolvedContent",
    "Traversal",
    "Fragment",
    "evaluate_takeover",
    "resolve",
    "resolve_screen_content",
    "ContentInventory",
    "build_content_inventory",
]
