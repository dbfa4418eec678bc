"""
Yodeck client context: gateway + caches + typed endpoint wrappers.

``YodeckClient`` is the explicitly constructed context object passed to every
core operation. It owns the rate-limited gateway (and with it the
concurrency semaphore) and the five TTL caches. ``reset()`` clears cached
state and ``dispose()`` also closes the HTTP transport (credential rotation).

Every mutating method invalidates the affected cache entry after the remote
write succeeds and before returning. Read methods return ``ApiResult`` with a
typed model in ``data``; raw payloads never leave this module.

Usage::

    client = await get_client()
    if client is None:
        ...  # Yodeck integration not configured
    result = await client.get_playlist(123)
"""

import asyncio
import logging
import os
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Type

import httpx

from yodeck_orchestrator.config import Settings, YodeckConfig, get_settings
from yodeck_orchestrator.yodeck.cache import MEDIA_INDEX_KEY, CacheSet, TTLCache
from yodeck_orchestrator.yodeck.gateway import YodeckGateway
from yodeck_orchestrator.yodeck.models import (
    ApiResult,
    ErrorKind,
    Layout,
    MediaAsset,
    Playlist,
    Schedule,
    ScreenContentPointer,
    TagbasedPlaylist,
    YodeckScreen,
)

logger = logging.getLogger(__name__)


class YodeckClient:
    """Context object for all Yodeck operations.

    Args:
        gateway: The rate-limited gateway.
        config: Tunables (TTL, timeouts). Defaults to the gateway's config.
        clock: Monotonic clock for the caches (tests inject a fake).
    """

    def __init__(
        self,
        gateway: YodeckGateway,
        config: Optional[YodeckConfig] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.gateway = gateway
        self.config = config or gateway.config
        self.caches = CacheSet(self.config.cache_ttl_seconds, clock or time.monotonic)

    @classmethod
    def from_token(
        cls,
        token: str,
        config: Optional[YodeckConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        **gateway_kwargs: Any,
    ) -> "YodeckClient":
        """Build a client (and its gateway) from an API token."""
        config = config or YodeckConfig()
        gateway = YodeckGateway(token, config, transport=transport, **gateway_kwargs)
        return cls(gateway, config)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def clear_caches(self) -> None:
        self.caches.clear()

    def reset(self) -> None:
        """Drop all cached structures; the transport stays open."""
        self.clear_caches()
        logger.info("[YODECK] Client caches reset")

    async def dispose(self) -> None:
        """Reset and close the HTTP transport. The client is unusable afterwards."""
        self.reset()
        await self.gateway.aclose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _fetch(self, path: str, model: Type[Any]) -> ApiResult:
        result = await self.gateway.request("GET", path)
        if result.ok:
            result.data = model.from_api(result.data)
        return result

    async def _cached_fetch(
        self, cache: TTLCache, key: int, path: str, model: Type[Any]
    ) -> ApiResult:
        cached = cache.get(key)
        if cached is not None:
            return ApiResult.success(cached)
        result = await self._fetch(path, model)
        if result.ok:
            cache.set(key, result.data)
        return result

    # ------------------------------------------------------------------
    # Screens
    # ------------------------------------------------------------------

    async def get_screens(self) -> List[YodeckScreen]:
        rows = await self.gateway.list_all("/screens")
        return [YodeckScreen.from_api(row) for row in rows]

    async def get_screen(self, screen_id: int) -> ApiResult:
        return await self._fetch(f"/screens/{screen_id}", YodeckScreen)

    async def patch_screen_content(
        self, screen_id: int, pointer: ScreenContentPointer
    ) -> ApiResult:
        """Assign a new ``screen_content`` pointer to a screen."""
        return await self.gateway.request(
            "PATCH",
            f"/screens/{screen_id}/",
            json={"screen_content": pointer.to_api()},
        )

    async def push_screen(
        self, screen_id: int, use_download_timeslots: bool = False
    ) -> ApiResult:
        """Ask the player to refresh its content immediately."""
        return await self.gateway.request(
            "POST",
            f"/screens/{screen_id}/push/",
            json={"use_download_timeslots": use_download_timeslots},
        )

    # ------------------------------------------------------------------
    # Playlists
    # ------------------------------------------------------------------

    async def get_playlist(self, playlist_id: int) -> ApiResult:
        return await self._cached_fetch(
            self.caches.playlists, playlist_id, f"/playlists/{playlist_id}", Playlist
        )

    async def get_playlist_fresh(self, playlist_id: int) -> ApiResult:
        """Bypass the cache; use right after a mutation when certainty matters."""
        result = await self._fetch(f"/playlists/{playlist_id}", Playlist)
        if result.ok:
            self.caches.playlists.set(playlist_id, result.data)
        return result

    async def create_playlist(
        self,
        name: str,
        items: Optional[List[Dict[str, Any]]] = None,
        workspace_id: Optional[int] = None,
    ) -> ApiResult:
        body: Dict[str, Any] = {"name": name, "items": items or []}
        if workspace_id is not None:
            body["workspace"] = workspace_id
        result = await self.gateway.request("POST", "/playlists/", json=body)
        if result.ok:
            result.data = Playlist.from_api(result.data)
        return result

    async def update_playlist_items(
        self, playlist_id: int, items: List[Dict[str, Any]]
    ) -> ApiResult:
        """Replace a playlist's items.

        Each item's ``id`` is the referenced media/playlist primary key, not
        the playlist-item key returned by GET.
        """
        result = await self.gateway.request(
            "PATCH", f"/playlists/{playlist_id}/", json={"items": items}
        )
        if result.ok:
            self.caches.playlists.delete(playlist_id)
        return result

    async def delete_playlist(self, playlist_id: int) -> ApiResult:
        result = await self.gateway.request("DELETE", f"/playlists/{playlist_id}/")
        if result.ok:
            self.caches.playlists.delete(playlist_id)
        return result

    async def add_media_to_playlist(
        self, playlist_id: int, media_id: int, duration: Optional[float] = None
    ) -> ApiResult:
        """Append a media item to a playlist unless it is already present.

        ``data`` is ``{"added": bool}`` on success.
        """
        current = await self.get_playlist_fresh(playlist_id)
        if not current.ok:
            return current
        playlist: Playlist = current.data
        if media_id in playlist.media_ids():
            logger.info(
                "[YODECK] Media %s already in playlist %s", media_id, playlist_id
            )
            return ApiResult.success({"added": False})

        items = playlist.items_payload()
        items.append({"id": media_id, "type": "media", "duration": duration or 15})
        result = await self.update_playlist_items(playlist_id, items)
        if result.ok:
            result.data = {"added": True}
        return result

    async def remove_media_from_playlist(
        self, playlist_id: int, media_id: int
    ) -> ApiResult:
        """Remove every occurrence of a media item. ``data`` is ``{"removed": bool}``."""
        current = await self.get_playlist_fresh(playlist_id)
        if not current.ok:
            return current
        playlist: Playlist = current.data
        if media_id not in playlist.media_ids():
            return ApiResult.success({"removed": False})

        items = [
            item
            for item in playlist.items_payload()
            if not (item["type"] == "media" and item["id"] == media_id)
        ]
        result = await self.update_playlist_items(playlist_id, items)
        if result.ok:
            result.data = {"removed": True}
        return result

    # ------------------------------------------------------------------
    # Layouts / schedules / tag-based playlists (read-only)
    # ------------------------------------------------------------------

    async def get_layout(self, layout_id: int) -> ApiResult:
        return await self._cached_fetch(
            self.caches.layouts, layout_id, f"/layouts/{layout_id}", Layout
        )

    async def get_schedule(self, schedule_id: int) -> ApiResult:
        return await self._cached_fetch(
            self.caches.schedules, schedule_id, f"/schedules/{schedule_id}", Schedule
        )

    async def get_tagbased_playlist(self, playlist_id: int) -> ApiResult:
        return await self._cached_fetch(
            self.caches.tagbased,
            playlist_id,
            f"/tagbased-playlists/{playlist_id}",
            TagbasedPlaylist,
        )

    # ------------------------------------------------------------------
    # Media
    # ------------------------------------------------------------------

    async def get_media(self, media_id: int) -> ApiResult:
        """Fetch one media object directly (never cached: status changes fast)."""
        return await self._fetch(f"/media/{media_id}", MediaAsset)

    async def get_media_index(self) -> Dict[int, MediaAsset]:
        cached = self.caches.media_index.get(MEDIA_INDEX_KEY)
        if cached is not None:
            return cached
        rows = await self.gateway.list_all("/media")
        index = {}
        for row in rows:
            media = MediaAsset.from_api(row)
            index[media.id] = media
        logger.info("[YODECK] Media index built with %d items", len(index))
        self.caches.media_index.set(MEDIA_INDEX_KEY, index)
        return index

    async def get_media_by_tags(
        self, workspace_id: int, tags: Iterable[str]
    ) -> List[MediaAsset]:
        tags = [tag for tag in tags if tag]
        if not tags:
            return []
        rows = await self.gateway.list_all(
            "/media", {"workspace": workspace_id, "tags": ",".join(tags)}
        )
        return [MediaAsset.from_api(row) for row in rows]

    async def search_media_by_name(self, name: str) -> List[MediaAsset]:
        rows = await self.gateway.list_all("/media", {"search": name})
        return [MediaAsset.from_api(row) for row in rows]

    def _invalidate_media(self) -> None:
        self.caches.media_index.delete(MEDIA_INDEX_KEY)

    async def create_media(self, payload: Dict[str, Any]) -> ApiResult:
        """Create a media shell (30s timeout: origin creation is slow)."""
        result = await self.gateway.request(
            "POST",
            "/media/",
            json=payload,
            timeout=self.config.upload_timeout_seconds,
        )
        if result.ok:
            self._invalidate_media()
        return result

    async def patch_media(self, media_id: int, fields: Dict[str, Any]) -> ApiResult:
        result = await self.gateway.request(
            "PATCH", f"/media/{media_id}/", json=fields
        )
        if result.ok:
            self._invalidate_media()
        return result

    async def delete_media(self, media_id: int) -> ApiResult:
        result = await self.gateway.request("DELETE", f"/media/{media_id}/")
        if result.ok:
            self._invalidate_media()
        return result

    async def get_upload_url(self, media_id: int) -> ApiResult:
        """``data`` is the signed upload URL string."""
        result = await self.gateway.request("GET", f"/media/{media_id}/upload")
        if result.ok:
            upload_url = (result.data or {}).get("upload_url")
            if not upload_url:
                return ApiResult.failure(
                    "upload_url_missing",
                    ErrorKind.HTTP_ERROR,
                    result.status,
                    payload=result.data,
                )
            result.data = upload_url
        return result

    async def put_upload(self, upload_url: str, content: bytes) -> ApiResult:
        return await self.gateway.put_bytes(upload_url, content, "video/mp4")

    async def complete_upload(self, media_id: int) -> ApiResult:
        result = await self.gateway.request(
            "PUT", f"/media/{media_id}/upload/complete"
        )
        if result.ok:
            self._invalidate_media()
        return result


# ======================================================================
# PROCESS CLIENT
# ======================================================================

_client_instance: Optional[YodeckClient] = None
_client_lock: Optional[asyncio.Lock] = None


async def resolve_token(db: Any = None) -> Optional[str]:
    """Find the API token: ``YODECK_API_TOKEN`` first, then stored credentials."""
    token = os.environ.get("YODECK_API_TOKEN")
    if token:
        return token
    if db is None:
        return None
    credentials = await db.get_integration_credentials("yodeck")
    if not credentials:
        return None
    if credentials.get("label") and credentials.get("value"):
        return f"{credentials['label']}:{credentials['value']}"
    return credentials.get("api_key") or credentials.get("token")


async def get_client(
    db: Any = None, settings: Optional[Settings] = None
) -> Optional[YodeckClient]:
    """Return the process-wide client, or ``None`` when Yodeck is unconfigured."""
    global _client_instance, _client_lock
    if _client_lock is None:
        _client_lock = asyncio.Lock()

    if _client_instance is None:
        async with _client_lock:
            if _client_instance is None:
                token = await resolve_token(db)
                if not token:
                    logger.warning("[YODECK] No API token configured")
                    return None
                settings = settings or get_settings()
                _client_instance = YodeckClient.from_token(token, settings.yodeck)
    return _client_instance


async def clear_client() -> None:
    """Dispose the process-wide client (credentials rotated)."""
    global _client_instance
    if _client_instance is not None:
        await _client_instance.dispose()
        _client_instance = None


__all__ = [
    "YodeckClient",
    "resolve_token",
    "get_client",
    "clear_client",
]
