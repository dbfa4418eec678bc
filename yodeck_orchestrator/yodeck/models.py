"""
Typed Yodeck API models: results, content pointers, screens, structures, media.

Raw JSON from the platform is converted into these dataclasses by the
``from_api()`` constructors inside ``YodeckClient``. Nothing above the client
handles untyped payloads.

- ``ErrorKind`` / ``ApiResult``: typed success/failure of a single call.
- ``SourceType`` / ``ScreenContentPointer``: what a screen is told to show.
- ``ContentRef``: a typed reference from one structure to another.
- ``YodeckScreen``, ``Playlist``, ``Layout``, ``Schedule``,
  ``TagbasedPlaylist``, ``MediaAsset``: entity snapshots.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from yodeck_orchestrator.utils import parse_datetime


# =============================================================================
# RESULTS
# =============================================================================


class ErrorKind(Enum):
    """Failure taxonomy shared by the gateway, media resolver and orchestrator."""

    TRANSPORT = "transport"
    RATE_LIMITED = "rate_limited"
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    HTTP_ERROR = "http_error"
    STALE_REMOTE_STATE = "stale_remote_state"
    CONCURRENCY_CONFLICT = "concurrency_conflict"

    @classmethod
    def from_status(cls, status: int) -> "ErrorKind":
        """Map an HTTP status to its failure kind."""
        if status == 429:
            return cls.RATE_LIMITED
        if status == 404:
            return cls.NOT_FOUND
        if status == 400:
            return cls.VALIDATION
        return cls.HTTP_ERROR


@dataclass
class ApiResult:
    """Outcome of one gateway call.

    Attributes:
        ok: ``True`` for a 2xx response.
        data: Decoded JSON body (``None`` for empty bodies and failures).
        error: ``"timeout"``, ``"transport"`` or ``"http_<status>"``.
        status: HTTP status when a response was received.
        kind: Failure classification.
        payload: Raw error body returned by the platform, kept for operator
            diagnosis of validation failures.
    """

    ok: bool
    data: Any = None
    error: Optional[str] = None
    status: Optional[int] = None
    kind: Optional[ErrorKind] = None
    payload: Any = None

    @classmethod
    def success(cls, data: Any = None, status: int = 200) -> "ApiResult":
        return cls(ok=True, data=data, status=status)

    @classmethod
    def failure(
        cls,
        error: str,
        kind: ErrorKind,
        status: Optional[int] = None,
        payload: Any = None,
    ) -> "ApiResult":
        return cls(ok=False, error=error, status=status, kind=kind, payload=payload)

    @classmethod
    def from_status(cls, status: int, payload: Any = None) -> "ApiResult":
        return cls.failure(
            f"http_{status}", ErrorKind.from_status(status), status, payload
        )


# =============================================================================
# CONTENT POINTERS
# =============================================================================


def normalize_type(value: Optional[str]) -> Optional[str]:
    """Normalize Yodeck type spellings (``tagbased_playlist`` -> ``tagbased-playlist``)."""
    if not value:
        return None
    return value.strip().lower().replace("_", "-")


class SourceType(Enum):
    """Kinds of structure a screen (or a region, event or item) can point at."""

    PLAYLIST = "playlist"
    LAYOUT = "layout"
    SCHEDULE = "schedule"
    TAGBASED_PLAYLIST = "tagbased-playlist"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["SourceType"]:
        """Parse a platform type string; unknown or empty values yield ``None``."""
        normalized = normalize_type(value)
        for member in cls:
            if member.value == normalized:
                return member
        return None


@dataclass(frozen=True)
class ScreenContentPointer:
    """The ``screen_content`` a screen is currently assigned."""

    source_type: Optional[SourceType]
    source_id: Optional[int]
    source_name: Optional[str] = None

    @property
    def is_set(self) -> bool:
        return self.source_type is not None and self.source_id is not None

    @classmethod
    def from_api(cls, raw: Optional[Dict[str, Any]]) -> Optional["ScreenContentPointer"]:
        if not raw:
            return None
        source_id = raw.get("source_id")
        return cls(
            source_type=SourceType.parse(raw.get("source_type")),
            source_id=int(source_id) if source_id is not None else None,
            source_name=raw.get("source_name"),
        )

    def to_api(self) -> Dict[str, Any]:
        """Body fragment for ``PATCH /screens/{id}/``."""
        return {
            "source_type": self.source_type.value if self.source_type else None,
            "source_id": self.source_id,
        }


@dataclass(frozen=True)
class ContentRef:
    """A reference from a structure to a child node.

    ``type`` is kept as a normalized string rather than ``SourceType``
    because items can also be ``media``, ``widget`` or types the platform
    adds later; unknown types are recorded but never expanded.
    """

    type: str
    id: int
    name: Optional[str] = None
    duration: Optional[float] = None

    @classmethod
    def from_api(
        cls, raw: Optional[Dict[str, Any]], type_key: str = "type", id_key: str = "id"
    ) -> Optional["ContentRef"]:
        if not raw:
            return None
        ref_type = normalize_type(raw.get(type_key))
        ref_id = raw.get(id_key)
        if not ref_type or ref_id is None:
            return None
        return cls(
            type=ref_type,
            id=int(ref_id),
            name=raw.get("name") or raw.get("source_name"),
            duration=raw.get("duration"),
        )


# =============================================================================
# SCREENS
# =============================================================================


def _workspace_id(raw: Dict[str, Any]) -> Optional[int]:
    workspace = raw.get("workspace")
    if isinstance(workspace, dict):
        return workspace.get("id")
    if isinstance(workspace, int):
        return workspace
    return None


def _is_online(raw: Dict[str, Any]) -> bool:
    """Screens report online status under several field names."""
    state = raw.get("state") or {}
    if isinstance(state, dict):
        if "online" in state:
            return bool(state["online"])
        if state.get("status") is not None:
            return str(state["status"]).lower() == "online"
    if "is_online" in raw:
        return bool(raw["is_online"])
    return bool(raw.get("online", False))


@dataclass
class YodeckScreen:
    """Snapshot of a Yodeck screen (player)."""

    id: int
    name: str
    online: bool = False
    last_seen: Optional[str] = None
    workspace_id: Optional[int] = None
    tags: List[str] = field(default_factory=list)
    content: Optional[ScreenContentPointer] = None
    takeover: Optional[Dict[str, Any]] = None

    @classmethod
    def from_api(cls, raw: Dict[str, Any]) -> "YodeckScreen":
        state = raw.get("state") or {}
        return cls(
            id=int(raw["id"]),
            name=raw.get("name") or f"Screen {raw['id']}",
            online=_is_online(raw),
            last_seen=state.get("last_seen") if isinstance(state, dict) else None,
            workspace_id=_workspace_id(raw),
            tags=list(raw.get("tags") or []),
            content=ScreenContentPointer.from_api(raw.get("screen_content")),
            takeover=raw.get("takeover_content") or raw.get("takeover"),
        )


# =============================================================================
# STRUCTURES
# =============================================================================


@dataclass
class Playlist:
    id: int
    name: str
    items: List[ContentRef] = field(default_factory=list)
    workspace_id: Optional[int] = None

    @classmethod
    def from_api(cls, raw: Dict[str, Any]) -> "Playlist":
        items = [ContentRef.from_api(item) for item in raw.get("items") or []]
        return cls(
            id=int(raw["id"]),
            name=raw.get("name") or "",
            items=[item for item in items if item is not None],
            workspace_id=_workspace_id(raw),
        )

    def media_ids(self) -> List[int]:
        return [item.id for item in self.items if item.type == "media"]

    def items_payload(self) -> List[Dict[str, Any]]:
        """Item array for PATCH/PUT, keyed by the referenced object's id.

        Yodeck expects the media (or nested playlist) primary key here, not
        the playlist-item primary key it returns on GET.
        """
        payload = []
        for item in self.items:
            entry: Dict[str, Any] = {"id": item.id, "type": item.type}
            if item.duration is not None:
                entry["duration"] = item.duration
            payload.append(entry)
        return payload


@dataclass
class TagbasedPlaylist:
    id: int
    name: str
    tags: List[str] = field(default_factory=list)
    workspace_ids: List[int] = field(default_factory=list)
    include_media: List[int] = field(default_factory=list)
    exclude_media: List[int] = field(default_factory=list)

    @classmethod
    def from_api(cls, raw: Dict[str, Any]) -> "TagbasedPlaylist":
        tags = []
        for tag in raw.get("tags") or []:
            name = tag.get("name") if isinstance(tag, dict) else tag
            if name:
                tags.append(str(name))
        workspaces = [
            ws.get("id") if isinstance(ws, dict) else ws
            for ws in raw.get("workspaces") or []
        ]
        return cls(
            id=int(raw["id"]),
            name=raw.get("name") or "",
            tags=tags,
            workspace_ids=[int(ws) for ws in workspaces if ws is not None],
            include_media=list((raw.get("includes") or {}).get("media") or []),
            exclude_media=list((raw.get("excludes") or {}).get("media") or []),
        )


@dataclass
class Layout:
    id: int
    name: str
    regions: List[ContentRef] = field(default_factory=list)
    background_audio: Optional[ContentRef] = None

    @classmethod
    def from_api(cls, raw: Dict[str, Any]) -> "Layout":
        regions = [
            ContentRef.from_api(region.get("item"))
            for region in raw.get("regions") or []
        ]
        audio = raw.get("background_audio") or {}
        return cls(
            id=int(raw["id"]),
            name=raw.get("name") or "",
            regions=[ref for ref in regions if ref is not None],
            background_audio=ContentRef.from_api(audio.get("item")),
        )


@dataclass
class Schedule:
    id: int
    name: str
    events: List[ContentRef] = field(default_factory=list)
    filler: Optional[ContentRef] = None

    @classmethod
    def from_api(cls, raw: Dict[str, Any]) -> "Schedule":
        events = [
            ContentRef.from_api(event.get("source"), "source_type", "source_id")
            for event in raw.get("events") or []
        ]
        return cls(
            id=int(raw["id"]),
            name=raw.get("name") or "",
            events=[ref for ref in events if ref is not None],
            filler=ContentRef.from_api(
                raw.get("filler_content"), "source_type", "source_id"
            ),
        )


# =============================================================================
# MEDIA
# =============================================================================


class MediaStatus:
    """Known media status strings (the platform may add others)."""

    INITIALIZED = "initialized"
    PROCESSING = "processing"
    FINISHED = "finished"
    FAILED = "failed"


URL_FIELDS = ("play_from_url", "download_from_url")


@dataclass
class MediaAsset:
    """Snapshot of a remote media object."""

    id: int
    name: str
    status: Optional[str] = None
    origin_type: Optional[str] = None
    origin_source: Optional[str] = None
    origin_format: Optional[str] = None
    file_size: int = 0
    arguments: Dict[str, Any] = field(default_factory=dict)
    tags: List[str] = field(default_factory=list)
    workspace_id: Optional[int] = None
    duration: Optional[float] = None

    @classmethod
    def from_api(cls, raw: Dict[str, Any]) -> "MediaAsset":
        origin = raw.get("media_origin") or {}
        file_info = raw.get("file") or {}
        arguments = raw.get("arguments") or {}
        return cls(
            id=int(raw["id"]),
            name=raw.get("name") or "",
            status=(raw.get("status") or "").lower() or None,
            origin_type=origin.get("type"),
            origin_source=origin.get("source"),
            origin_format=origin.get("format"),
            file_size=int(file_info.get("size") or raw.get("filesize") or 0),
            arguments=dict(arguments),
            tags=list(raw.get("tags") or []),
            workspace_id=_workspace_id(raw),
            duration=raw.get("duration") or arguments.get("duration"),
        )

    @property
    def is_finished(self) -> bool:
        return self.status == MediaStatus.FINISHED

    @property
    def is_failed(self) -> bool:
        return self.status == MediaStatus.FAILED

    @property
    def is_local(self) -> bool:
        return (self.origin_source or "").lower() == "local"

    @property
    def has_file(self) -> bool:
        return self.file_size > 0


def parse_window(takeover: Optional[Dict[str, Any]]):
    """Return ``(start, end)`` aware datetimes for a takeover block."""
    if not takeover:
        return None, None
    start = parse_datetime(
        takeover.get("start") or takeover.get("start_date") or takeover.get("starts_at")
    )
    end = parse_datetime(
        takeover.get("end") or takeover.get("end_date") or takeover.get("ends_at")
    )
    return start, end


__all__ = [
    "ErrorKind",
    "ApiResult",
    "normalize_type",
    "SourceType",
    "ScreenContentPointer",
    "ContentRef",
    "YodeckScreen",
    "Playlist",
    "TagbasedPlaylist",
    "Layout",
    "Schedule",
    "MediaStatus",
    "URL_FIELDS",
    "MediaAsset",
    "parse_window",
]
