"""
Media lifecycle: resolve, clean up, upload and safely patch Yodeck media.

The platform's create/upload pipeline is asynchronous and sometimes leaves
orphaned or stuck shells behind. ``MediaLifecycleResolver.ensure_media_ready``
resolves a media reference in layers, short-circuiting on the first hit:

1. direct fetch by id (``finished`` wins immediately);
2. stale shell detection: delete and report ``stale_cleaned``;
3. exact-name search over the expected and alternate names;
4. substring-name search;
5. polling the original id on a capped exponential schedule;
6. ``unresolved``.

Upload runs as create -> signed URL -> PUT bytes -> complete -> wait for a
file. Each step is exposed separately so callers can retry individual steps.

Nothing here raises for expected remote failures; results are typed.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from yodeck_orchestrator.config import YodeckConfig
from yodeck_orchestrator.exceptions import RetryExhaustedError, YodeckAPIError
from yodeck_orchestrator.utils import backoff_delays, with_retry
from yodeck_orchestrator.yodeck.client import YodeckClient
from yodeck_orchestrator.yodeck.models import (
    URL_FIELDS,
    ApiResult,
    ErrorKind,
    MediaAsset,
    MediaStatus,
)

logger = logging.getLogger(__name__)

UPLOAD_NOT_READY = "UPLOAD_NOT_READY"
UPLOAD_FAILED = "UPLOAD_FAILED"
MEDIA_URL_MISSING = "MEDIA_URL_MISSING"

STALE_STATUSES = (MediaStatus.INITIALIZED, MediaStatus.PROCESSING)


# =============================================================================
# RESULT TYPES
# =============================================================================


class ResolveMethod:
    DIRECT = "direct"
    NAME_SEARCH = "name_search"
    POLL = "poll"
    UNRESOLVED = "unresolved"


@dataclass
class MediaResolution:
    """Outcome of ``ensure_media_ready``.

    Attributes:
        resolved_id: Playable media id, or ``None``.
        method: How it was resolved (see ``ResolveMethod``).
        stale_cleaned: A stale shell was deleted; the caller must recreate
            the media instead of retrying the same id.
        diagnostics: Human-readable trail of what was tried.
    """

    resolved_id: Optional[int]
    method: str
    stale_cleaned: bool = False
    diagnostics: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.resolved_id is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resolved_id": self.resolved_id,
            "method": self.method,
            "stale_cleaned": self.stale_cleaned,
            "diagnostics": list(self.diagnostics),
        }


def is_stale(media: MediaAsset) -> bool:
    """A shell stuck before ``finished`` with a remote origin or buffering flag."""
    if media.status not in STALE_STATUSES:
        return False
    return (not media.is_local) or bool(media.arguments.get("buffering"))


def pick_best(candidates: Sequence[MediaAsset]) -> Optional[MediaAsset]:
    """Prefer ``finished`` media, then the highest (most recent) id."""
    if not candidates:
        return None
    return max(candidates, key=lambda m: (m.is_finished, m.id))


# =============================================================================
# RESOLVER
# =============================================================================


class MediaLifecycleResolver:
    """Resolves, uploads and patches media against one ``YodeckClient``.

    Args:
        client: The Yodeck client context.
        config: Poll and timeout tunables; defaults to the client's config.
        sleep: Coroutine used for every wait (tests pass an ``AsyncMock``).
    """

    def __init__(
        self,
        client: YodeckClient,
        config: Optional[YodeckConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.client = client
        self.config = config or client.config
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def ensure_media_ready(
        self,
        media_id: Optional[int],
        expected_name: Optional[str] = None,
        search_names: Sequence[str] = (),
    ) -> MediaResolution:
        """Resolve a media reference to a playable (``finished``) media id.

        Args:
            media_id: Id the caller believes is correct (may be ``None``).
            expected_name: Name the media was created with.
            search_names: Alternate names to try during name search.

        Returns:
            ``MediaResolution``. A stale shell is never returned as resolved.
        """
        diagnostics: List[str] = []
        pollable = False

        # Step 1-2: direct fetch and stale check
        if media_id is not None:
            direct = await self.client.get_media(media_id)
            if direct.ok:
                media: MediaAsset = direct.data
                if media.is_finished:
                    return MediaResolution(media.id, ResolveMethod.DIRECT, diagnostics=diagnostics)
                diagnostics.append(f"media {media_id} status={media.status}")
                if is_stale(media):
                    deleted = await self.client.delete_media(media_id)
                    if deleted.ok:
                        logger.warning(
                            "[MEDIA] Deleted stale media %s (status=%s, source=%s)",
                            media_id,
                            media.status,
                            media.origin_source,
                        )
                        diagnostics.append(f"stale media {media_id} deleted")
                        return MediaResolution(
                            None, ResolveMethod.UNRESOLVED, True, diagnostics
                        )
                    diagnostics.append(
                        f"stale media {media_id} delete failed: {deleted.error}"
                    )
                    return MediaResolution(None, ResolveMethod.UNRESOLVED, False, diagnostics)
                pollable = not media.is_failed
            else:
                diagnostics.append(f"direct fetch of {media_id} failed: {direct.error}")
                pollable = direct.kind != ErrorKind.NOT_FOUND

        # Step 3-4: name search
        names = _unique_names(expected_name, search_names)
        if names:
            found = await self._search_by_name(names, diagnostics)
            if found is not None:
                return MediaResolution(found.id, ResolveMethod.NAME_SEARCH, diagnostics=diagnostics)

        # Step 5: poll the original id
        if media_id is not None and pollable:
            polled = await self.poll_media_until_ready(media_id)
            if polled.ok:
                return MediaResolution(media_id, ResolveMethod.POLL, diagnostics=diagnostics)
            diagnostics.append(f"poll of {media_id} ended: {polled.error}")

        logger.info("[MEDIA] Could not resolve media %s (%s)", media_id, expected_name)
        return MediaResolution(None, ResolveMethod.UNRESOLVED, diagnostics=diagnostics)

    async def _search_by_name(
        self, names: List[str], diagnostics: List[str]
    ) -> Optional[MediaAsset]:
        candidates: Dict[int, MediaAsset] = {}
        for name in names:
            for media in await self.client.search_media_by_name(name):
                candidates[media.id] = media
        usable = [m for m in candidates.values() if not is_stale(m) and not m.is_failed]

        exact = [m for m in usable if m.name in names]
        best = pick_best(exact)
        if best is not None and best.is_finished:
            diagnostics.append(f"exact name match {best.id}")
            return best

        lowered = [name.lower() for name in names]
        partial = [
            m for m in usable if any(name in m.name.lower() for name in lowered)
        ]
        best = pick_best(partial)
        if best is not None and best.is_finished:
            diagnostics.append(f"partial name match {best.id}")
            return best

        diagnostics.append(f"no finished match for {names}")
        return None

    async def poll_media_until_ready(self, media_id: int) -> ApiResult:
        """Poll on the capped exponential schedule until ``finished``.

        Returns the ``MediaAsset`` in ``data`` on success, ``UPLOAD_FAILED``
        when the platform reports failure, ``UPLOAD_NOT_READY`` when the
        schedule is exhausted.
        """
        delays = backoff_delays(
            self.config.poll_initial_seconds,
            self.config.poll_attempts,
            cap=self.config.poll_max_seconds,
        )
        for attempt, delay in enumerate(delays, start=1):
            await self._sleep(delay)
            result = await self.client.get_media(media_id)
            if not result.ok:
                if result.kind == ErrorKind.NOT_FOUND:
                    return result
                continue
            media: MediaAsset = result.data
            if media.is_finished:
                logger.info("[MEDIA] Media %s finished after %d polls", media_id, attempt)
                return result
            if media.is_failed:
                return ApiResult.failure(UPLOAD_FAILED, ErrorKind.VALIDATION, payload=media.status)
        return ApiResult.failure(UPLOAD_NOT_READY, ErrorKind.TRANSPORT)

    # ------------------------------------------------------------------
    # Upload flow
    # ------------------------------------------------------------------

    async def create_media_video_local(self, name: str) -> ApiResult:
        """Create an empty local-origin video shell. ``data`` is the new id."""
        result = await self.client.create_media(
            {
                "name": name,
                "description": "",
                "media_origin": {"type": "video", "source": "local", "format": None},
                "arguments": {"buffering": False, "resolution": "highest"},
            }
        )
        if result.ok:
            result.data = int(result.data["id"])
        return result

    async def get_upload_url(self, media_id: int) -> ApiResult:
        return await self.client.get_upload_url(media_id)

    async def upload_to_signed_url(self, upload_url: str, content: bytes) -> ApiResult:
        return await self.client.put_upload(upload_url, content)

    async def complete_upload(self, media_id: int) -> ApiResult:
        return await self.client.complete_upload(media_id)

    async def wait_until_media_has_file(
        self,
        media_id: int,
        timeout: Optional[float] = None,
        interval: Optional[float] = None,
    ) -> ApiResult:
        """Poll at a fixed interval until the media reports a non-zero file size.

        Returns ``UPLOAD_NOT_READY`` after *timeout* seconds (default 60) and
        ``UPLOAD_FAILED`` if the platform marks the media failed.
        """
        timeout = timeout or self.config.upload_ready_timeout_seconds
        interval = interval or self.config.upload_ready_interval_seconds
        polls = max(1, int(timeout // interval))

        try:
            result = await asyncio.wait_for(
                self._poll_for_file(media_id, polls, interval), timeout=timeout
            )
        except asyncio.TimeoutError:
            result = None
        if result is not None:
            return result

        logger.warning("[MEDIA] Media %s has no file after %.0fs", media_id, timeout)
        return ApiResult.failure(UPLOAD_NOT_READY, ErrorKind.TRANSPORT)

    async def _poll_for_file(
        self, media_id: int, polls: int, interval: float
    ) -> Optional[ApiResult]:
        for _ in range(polls):
            result = await self.client.get_media(media_id)
            if result.ok:
                media: MediaAsset = result.data
                if media.is_failed:
                    return ApiResult.failure(UPLOAD_FAILED, ErrorKind.VALIDATION, payload=media.status)
                if media.has_file:
                    return result
            await self._sleep(interval)
        return None

    async def upload_video(self, name: str, content: bytes) -> ApiResult:
        """Run the full upload flow. ``data`` is the media id on success.

        The signed-URL step is retried with a fresh URL. On any failure after
        the shell was created, the shell is deleted so no orphan is left.
        """
        created = await self.create_media_video_local(name)
        if not created.ok:
            return created
        media_id: int = created.data

        @with_retry(
            max_attempts=3,
            base_delay=self.config.backoff_base_seconds,
            retryable_exceptions=(YodeckAPIError,),
            operation_name=f"upload media {media_id}",
        )
        async def _put() -> None:
            url = await self.get_upload_url(media_id)
            if not url.ok:
                raise YodeckAPIError(url.error or "upload_url", url.status)
            put = await self.upload_to_signed_url(url.data, content)
            if not put.ok:
                raise YodeckAPIError(put.error or "upload_put", put.status)

        try:
            await _put()
        except RetryExhaustedError as exc:
            await self.client.delete_media(media_id)
            last = exc.last_error
            return ApiResult.failure(
                getattr(last, "error", "upload_put"),
                ErrorKind.TRANSPORT,
                getattr(last, "status", None),
            )

        completed = await self.complete_upload(media_id)
        if not completed.ok:
            await self.client.delete_media(media_id)
            return completed

        ready = await self.wait_until_media_has_file(media_id)
        if not ready.ok:
            await self.client.delete_media(media_id)
            return ready
        return ApiResult.success(media_id)

    # ------------------------------------------------------------------
    # Safe partial patch
    # ------------------------------------------------------------------

    async def patch_media_safe(
        self, media_id: int, partial_args: Dict[str, Any]
    ) -> ApiResult:
        """Merge *partial_args* into the media's current ``arguments``.

        Local media never receive URL fields (the platform rejects them).
        URL media keep their existing URL fields unless new ones are given,
        and a patch that would leave no URL field at all is refused without
        calling the platform.
        """
        current = await self.client.get_media(media_id)
        if not current.ok:
            return current
        media: MediaAsset = current.data

        merged = dict(media.arguments)
        merged.update({k: v for k, v in partial_args.items() if v is not None})

        origin = (media.origin_source or "").lower()
        if media.is_local:
            for key in URL_FIELDS:
                merged.pop(key, None)
        elif origin == "url":
            for key in URL_FIELDS:
                if partial_args.get(key) is None and media.arguments.get(key):
                    merged[key] = media.arguments[key]
            if not any(merged.get(key) for key in URL_FIELDS):
                return ApiResult.failure(
                    MEDIA_URL_MISSING,
                    ErrorKind.VALIDATION,
                    payload={"media_id": media_id},
                )

        return await self.client.patch_media(media_id, {"arguments": merged})


def _unique_names(expected_name: Optional[str], search_names: Sequence[str]) -> List[str]:
    names: List[str] = []
    for name in [expected_name, *search_names]:
        if name and name not in names:
            names.append(name)
    return names


__all__ = [
    "UPLOAD_NOT_READY",
    "UPLOAD_FAILED",
    "MEDIA_URL_MISSING",
    "ResolveMethod",
    "MediaResolution",
    "is_stale",
    "pick_best",
    "MediaLifecycleResolver",
]
