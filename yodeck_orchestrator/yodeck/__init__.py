"""Yodeck platform integration: gateway, caches, client, media and content resolution."""
from yodeck_orchestrator.yodeck.models import (
    ApiResult,
    ErrorKind,
    MediaAsset,
    ScreenContentPointer,
    SourceType,
    YodeckScreen,
)
from yodeck_orchestrator.yodeck.gateway import YodeckGateway
from yodeck_orchestrator.yodeck.cache import CacheSet, TTLCache
from yodeck_orchestrator.yodeck.client import YodeckClient, clear_client, get_client
from yodeck_orchestrator.yodeck.media import MediaLifecycleResolver, MediaResolution
from yodeck_orchestrator.yodeck.content import (
    ResolvedContent,
    ResolveStatus,
    build_content_inventory,
    resolve,
    resolve_screen_content,
)

__all__ = [
    "ApiResult", "ErrorKind", "MediaAsset", "ScreenContentPointer",
    "SourceType", "YodeckScreen",
    "YodeckGateway",
    "CacheSet", "TTLCache",
    "YodeckClient", "get_client", "clear_client",
    "MediaLifecycleResolver", "MediaResolution",
    "ResolvedContent", "ResolveStatus", "resolve", "resolve_screen_content",
    "build_content_inventory",
]
