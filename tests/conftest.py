"""Shared fixtures for the Yodeck orchestrator test suite."""

import asyncio
import copy
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from yodeck_orchestrator.config import PlacementConfig, Settings, YodeckConfig, reset_settings
from yodeck_orchestrator.logging import init_logger
from yodeck_orchestrator.utils import generate_id, parse_datetime, utc_now
from yodeck_orchestrator.yodeck.client import YodeckClient


# ---------------------------------------------------------------------------
# Ensure we don't hit real services during tests
# ---------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def _block_env_keys(monkeypatch):
    """Clear all keys and overrides so tests never hit real services."""
    keys = [
        "SUPABASE_URL",
        "SUPABASE_SERVICE_KEY",
        "YODECK_API_TOKEN",
        "YODECK_BASE_URL",
        "YODECK_TIMEOUT_SECONDS",
        "YODECK_UPLOAD_TIMEOUT_SECONDS",
        "YODECK_MAX_CONCURRENT",
        "YODECK_MAX_RETRIES",
        "YODECK_CACHE_TTL_SECONDS",
        "ENCRYPTION_KEY",
        "LOG_LEVEL",
        "LOG_DIR",
    ]
    for key in keys:
        monkeypatch.delenv(key, raising=False)
    reset_settings()
    yield
    reset_settings()


@pytest.fixture(autouse=True)
def ops_logger(tmp_path):
    """Every test gets an operational logger writing into its tmp dir."""
    return init_logger(log_dir=str(tmp_path / "logs"))


@pytest.fixture
def sample_utc_now():
    """A fixed UTC datetime for deterministic tests."""
    return datetime(2025, 6, 15, 12, 0, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Mock Supabase client
# ---------------------------------------------------------------------------
@pytest.fixture
def mock_supabase_client():
    """A mock Supabase async client; set ``table_mock.result`` to shape data."""
    client = MagicMock()
    table_mock = MagicMock()
    for name in ("select", "insert", "update", "upsert", "delete", "eq", "in_",
                 "gte", "lte", "is_", "order", "limit", "range", "single"):
        getattr(table_mock, name).return_value = table_mock
    table_mock.result = MagicMock(data=[], count=0)

    async def mock_execute():
        return table_mock.result

    table_mock.execute = mock_execute
    client.table.return_value = table_mock
    client.table_mock = table_mock
    return client


# ---------------------------------------------------------------------------
# Fake Yodeck API served through httpx.MockTransport
# ---------------------------------------------------------------------------
API_PREFIX = "/api/v2"
UPLOAD_HOST = "storage.example.com"


class FakeYodeck:
    """In-memory Yodeck API.

    State lives in plain dicts keyed by id, in the shape the API returns.
    ``fail(method, path, *statuses)`` queues one-shot error responses;
    ``fail_always(method, path, status)`` makes an endpoint fail for good.
    Paths are given without the ``/api/v2`` prefix and without trailing
    slash, e.g. ``("PATCH", "/playlists/11")``.
    """

    def __init__(self) -> None:
        self.screens: Dict[int, Dict[str, Any]] = {}
        self.playlists: Dict[int, Dict[str, Any]] = {}
        self.layouts: Dict[int, Dict[str, Any]] = {}
        self.schedules: Dict[int, Dict[str, Any]] = {}
        self.tagbased: Dict[int, Dict[str, Any]] = {}
        self.media: Dict[int, Dict[str, Any]] = {}
        self.calls: List[tuple] = []
        self.bodies: List[tuple] = []
        self.uploads: Dict[str, bytes] = {}
        self._queued: Dict[tuple, List[int]] = {}
        self._always: Dict[tuple, int] = {}
        self._next_id = 9000

    # -- builders ---------------------------------------------------------

    def add_media(self, media_id: int, name: str = "", status: str = "finished",
                  source: str = "local", size: int = 1024, **extra: Any) -> Dict[str, Any]:
        row = {
            "id": media_id,
            "name": name or f"media-{media_id}",
            "status": status,
            "media_origin": {"type": extra.pop("origin_type", "video"),
                             "source": source, "format": None},
            "file": {"size": size},
            "arguments": extra.pop("arguments", {}),
            "tags": extra.pop("tags", []),
            "workspace": extra.pop("workspace", None),
        }
        row.update(extra)
        self.media[media_id] = row
        return row

    def add_playlist(self, playlist_id: int, items: Optional[List[Dict[str, Any]]] = None,
                     name: str = "") -> Dict[str, Any]:
        row = {"id": playlist_id, "name": name or f"playlist-{playlist_id}",
               "items": list(items or [])}
        self.playlists[playlist_id] = row
        return row

    def add_screen(self, screen_id: int, source_type: Optional[str] = None,
                   source_id: Optional[int] = None, online: bool = True,
                   **extra: Any) -> Dict[str, Any]:
        content = None
        if source_type is not None:
            content = {"source_type": source_type, "source_id": source_id}
        row = {
            "id": screen_id,
            "name": f"screen-{screen_id}",
            "state": {"online": online, "last_seen": "2025-06-15T11:59:00Z"},
            "screen_content": content,
        }
        row.update(extra)
        self.screens[screen_id] = row
        return row

    # -- failure injection -----------------------------------------------

    def fail(self, method: str, path: str, *statuses: int) -> None:
        self._queued.setdefault((method, path), []).extend(statuses)

    def fail_always(self, method: str, path: str, status: int) -> None:
        self._always[(method, path)] = status

    def count(self, method: str, path: str) -> int:
        return sum(1 for call in self.calls if call == (method, path))

    # -- transport --------------------------------------------------------

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def handler(self, request: httpx.Request) -> httpx.Response:
        method = request.method
        if request.url.host == UPLOAD_HOST:
            self.calls.append((method, request.url.path))
            self.uploads[request.url.path] = request.content
            return httpx.Response(200)

        path = request.url.path
        if path.startswith(API_PREFIX):
            path = path[len(API_PREFIX):]
        path = path.rstrip("/") or "/"
        self.calls.append((method, path))
        body = json.loads(request.content) if request.content else None
        if body is not None:
            self.bodies.append((method, path, body))

        key = (method, path)
        if key in self._always:
            return httpx.Response(self._always[key], json={"detail": "injected"})
        if self._queued.get(key):
            status = self._queued[key].pop(0)
            return httpx.Response(status, json={"detail": "injected"})
        return self._route(method, path.strip("/").split("/"), request, body)

    def _route(self, method, parts, request, body) -> httpx.Response:
        kind = parts[0]
        if kind == "screens":
            return self._screens(method, parts, request, body)
        if kind == "playlists":
            return self._playlists(method, parts, body)
        if kind == "media":
            return self._media(method, parts, request, body)
        store = {"layouts": self.layouts, "schedules": self.schedules,
                 "tagbased-playlists": self.tagbased}.get(kind)
        if store is not None and method == "GET" and len(parts) == 2:
            return self._get(store, int(parts[1]))
        return httpx.Response(404, json={"detail": "no route"})

    @staticmethod
    def _get(store, item_id) -> httpx.Response:
        if item_id not in store:
            return httpx.Response(404, json={"detail": "Not found."})
        return httpx.Response(200, json=copy.deepcopy(store[item_id]))

    def _page(self, rows, request) -> httpx.Response:
        params = dict(request.url.params)
        limit = int(params.get("limit", 100))
        offset = int(params.get("offset", 0))
        page = rows[offset:offset + limit]
        next_url = None
        if offset + limit < len(rows):
            next_url = str(request.url.copy_set_param("offset", offset + limit))
        return httpx.Response(200, json={"count": len(rows), "next": next_url,
                                         "results": copy.deepcopy(page)})

    def _screens(self, method, parts, request, body) -> httpx.Response:
        if len(parts) == 1 and method == "GET":
            return self._page(list(self.screens.values()), request)
        screen_id = int(parts[1])
        if len(parts) == 3 and parts[2] == "push" and method == "POST":
            if screen_id not in self.screens:
                return httpx.Response(404, json={"detail": "Not found."})
            return httpx.Response(200, json={"status": "ok"})
        if method == "PATCH":
            if screen_id not in self.screens:
                return httpx.Response(404, json={"detail": "Not found."})
            self.screens[screen_id]["screen_content"] = body["screen_content"]
            return httpx.Response(200, json=copy.deepcopy(self.screens[screen_id]))
        return self._get(self.screens, screen_id)

    def _playlists(self, method, parts, body) -> httpx.Response:
        if len(parts) == 1 and method == "POST":
            self._next_id += 1
            row = self.add_playlist(self._next_id, body.get("items"), body.get("name", ""))
            return httpx.Response(201, json=copy.deepcopy(row))
        playlist_id = int(parts[1])
        if playlist_id not in self.playlists:
            return httpx.Response(404, json={"detail": "Not found."})
        if method == "PATCH":
            self.playlists[playlist_id]["items"] = list(body.get("items") or [])
            return httpx.Response(200, json=copy.deepcopy(self.playlists[playlist_id]))
        if method == "DELETE":
            del self.playlists[playlist_id]
            return httpx.Response(204)
        return self._get(self.playlists, playlist_id)

    def _media(self, method, parts, request, body) -> httpx.Response:
        if len(parts) == 1:
            if method == "POST":
                self._next_id += 1
                origin = body.get("media_origin") or {}
                row = self.add_media(self._next_id, body.get("name", ""), status="initialized",
                                     source=origin.get("source", "local"), size=0,
                                     arguments=body.get("arguments") or {})
                return httpx.Response(201, json=copy.deepcopy(row))
            params = dict(request.url.params)
            rows = list(self.media.values())
            if "search" in params:
                needle = params["search"].lower()
                rows = [m for m in rows if needle in m["name"].lower()]
            if "tags" in params:
                wanted = set(params["tags"].split(","))
                rows = [m for m in rows if wanted & set(m.get("tags") or [])]
            if "workspace" in params:
                rows = [m for m in rows if str(m.get("workspace")) == params["workspace"]]
            return self._page(rows, request)

        media_id = int(parts[1])
        if media_id not in self.media:
            return httpx.Response(404, json={"detail": "Not found."})
        if len(parts) == 3 and parts[2] == "upload" and method == "GET":
            return httpx.Response(
                200, json={"upload_url": f"https://{UPLOAD_HOST}/upload/{media_id}"}
            )
        if len(parts) == 4 and parts[3] == "complete" and method == "PUT":
            uploaded = self.uploads.get(f"/upload/{media_id}", b"")
            self.media[media_id]["status"] = "finished"
            self.media[media_id]["file"] = {"size": len(uploaded)}
            return httpx.Response(200, json={"status": "ok"})
        if method == "PATCH":
            self.media[media_id].update(body)
            return httpx.Response(200, json=copy.deepcopy(self.media[media_id]))
        if method == "DELETE":
            del self.media[media_id]
            return httpx.Response(204)
        return self._get(self.media, media_id)


@pytest.fixture
def fake_yodeck():
    return FakeYodeck()


@pytest.fixture
def sleep_mock():
    """Stand-in for ``asyncio.sleep``; records requested delays."""
    return AsyncMock(return_value=None)


@pytest.fixture
def yodeck_config():
    return YodeckConfig()


@pytest.fixture
def yodeck_client(fake_yodeck, sleep_mock, yodeck_config):
    """Client wired to the fake API with instant backoff sleeps."""
    return YodeckClient.from_token(
        "test:token", yodeck_config, transport=fake_yodeck.transport, sleep=sleep_mock
    )


@pytest.fixture
def settings():
    return Settings(yodeck=YodeckConfig(), placement=PlacementConfig())


# ---------------------------------------------------------------------------
# In-memory storage double
# ---------------------------------------------------------------------------
class FakeDB:
    """Async in-memory stand-in for ``SupabaseDB``.

    Every read yields to the event loop once so concurrent callers
    interleave the way they would against a real database.
    """

    def __init__(self) -> None:
        self.plans: Dict[str, Dict[str, Any]] = {}
        self.locations: Dict[str, Dict[str, Any]] = {}
        self.screens: Dict[str, Dict[str, Any]] = {}
        self.alerts: List[Dict[str, Any]] = []
        self.screen_updates: List[tuple] = []

    async def save_plan(self, plan: Dict[str, Any]) -> str:
        row = copy.deepcopy(plan)
        row.setdefault("id", generate_id())
        self.plans[row["id"]] = row
        return row["id"]

    async def get_plan(self, plan_id: str) -> Optional[Dict[str, Any]]:
        await asyncio.sleep(0)
        row = self.plans.get(plan_id)
        return copy.deepcopy(row) if row is not None else None

    async def update_plan(self, plan_id: str, fields: Dict[str, Any]) -> None:
        self.plans[plan_id].update(copy.deepcopy(fields))
        self.plans[plan_id]["updated_at"] = utc_now().isoformat()

    async def list_plans(self, status: Optional[str] = None, limit: int = 100):
        rows = [r for r in self.plans.values() if status is None or r["status"] == status]
        return copy.deepcopy(rows[:limit])

    async def claim_plan(self, plan_id, from_statuses, fields=None) -> bool:
        row = self.plans.get(plan_id)
        if row is None or row["status"] not in list(from_statuses):
            return False
        row.update(fields or {})
        row["status"] = "publishing"
        row["publish_started_at"] = utc_now().isoformat()
        return True

    async def release_stuck_plan(self, plan_id, cutoff, fields) -> bool:
        row = self.plans.get(plan_id)
        if row is None or row["status"] != "publishing":
            return False
        started = parse_datetime(row.get("publish_started_at"))
        if cutoff is None and started is not None:
            return False
        if cutoff is not None and (started is None or started > cutoff):
            return False
        row.update(copy.deepcopy(fields))
        return True

    async def get_published_plans(self):
        return await self.list_plans(status="published")

    async def get_candidate_locations(self):
        return copy.deepcopy(list(self.locations.values()))

    async def get_active_locations(self):
        return [l for l in await self.get_candidate_locations() if l.get("status") == "active"]

    async def get_location(self, location_id: str):
        row = self.locations.get(location_id)
        return copy.deepcopy(row) if row is not None else None

    async def get_location_screens(self, location_id: str):
        return [copy.deepcopy(s) for s in self.screens.values()
                if s.get("location_id") == location_id]

    async def update_screen_status(self, screen_id: str, fields: Dict[str, Any]) -> None:
        self.screen_updates.append((screen_id, dict(fields)))
        self.screens.setdefault(screen_id, {"id": screen_id}).update(fields)

    async def create_alert(self, category, severity, title, message, dedup_key, details=None):
        self.alerts.append({"category": category, "severity": severity, "title": title,
                            "message": message, "dedup_key": dedup_key,
                            "details": details or {}})
        return f"alert-{len(self.alerts)}"


@pytest.fixture
def fake_db():
    return FakeDB()


def make_location(location_id: str, playlist_id: Optional[int], screen_id: Optional[int],
                  city: str, visitors: int = 1000, **overrides: Any) -> Dict[str, Any]:
    """A location row that passes every placement rule unless overridden."""
    row = {
        "id": location_id,
        "name": f"Location {location_id}",
        "status": "active",
        "yodeck_playlist_id": playlist_id,
        "yodeck_screen_id": screen_id,
        "online": True,
        "region_code": "NH",
        "categories_allowed": [],
        "current_ad_load_seconds": 30,
        "ad_slot_capacity_seconds": 120,
        "last_sync_at": utc_now().isoformat(),
        "avg_visitors_per_week": visitors,
        "city": city,
    }
    row.update(overrides)
    return row


@pytest.fixture
def location_factory():
    return make_location
