"""
Unified async storage client for the orchestrator.

ALL persistence goes through the ``SupabaseDB`` class defined here: placement
plans, location/screen rows (including the cached last-known screen status
the dashboard reads), alerts, encrypted integration credentials and the
operational log table. No direct Supabase calls appear anywhere else.

The one transactional invariant lives in :meth:`SupabaseDB.claim_plan`:
moving a plan into ``publishing`` is a conditional UPDATE that matches only
when the plan is still in an allowed state, so two concurrent publish or
retry calls can never both proceed.

Usage::

    from yodeck_orchestrator.database import get_db

    db = await get_db()
    plan = await db.get_plan(plan_id)
"""

import asyncio
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Union

from supabase import AsyncClient, create_async_client

from yodeck_orchestrator.crypto import decrypt_credentials, encrypt_credentials
from yodeck_orchestrator.exceptions import DatabaseError, ValidationError
from yodeck_orchestrator.utils import generate_id, utc_now

logger = logging.getLogger(__name__)

PLANS_TABLE = "placement_plans"
LOCATIONS_TABLE = "locations"
SCREENS_TABLE = "screens"
ALERTS_TABLE = "alerts"
CREDENTIALS_TABLE = "integration_credentials"
OPS_LOGS_TABLE = "ops_logs"

ALERT_DEDUP_WINDOW = timedelta(minutes=5)


# =============================================================================
# VALIDATION HELPERS
# =============================================================================


def validate_not_empty(value: Any, name: str) -> None:
    """Validate that *value* is not ``None`` or a blank string.

    Raises:
        ValidationError: If *value* is ``None`` or a blank string.
    """
    if value is None:
        raise ValidationError(f"{name} cannot be None")
    if isinstance(value, str) and not value.strip():
        raise ValidationError(f"{name} cannot be empty string")


def validate_positive(value: Union[int, float], name: str) -> None:
    """Validate that *value* is strictly positive.

    Raises:
        ValidationError: If *value* is ``None`` or not positive.
    """
    if value is None:
        raise ValidationError(f"{name} cannot be None")
    if value <= 0:
        raise ValidationError(f"{name} must be positive, got {value}")


# =============================================================================
# CONFIGURATION
# =============================================================================


@dataclass
class SupabaseConfig:
    """Supabase configuration loaded from environment variables.

    Attributes:
        url: The Supabase project URL (``SUPABASE_URL``).
        key: The service-role key (``SUPABASE_SERVICE_KEY``).
    """

    url: str
    key: str

    @classmethod
    def from_env(cls) -> "SupabaseConfig":
        """Create a config instance from environment variables.

        Raises:
            ValueError: If either variable is missing or empty.
        """
        url = os.environ.get("SUPABASE_URL")
        key = os.environ.get("SUPABASE_SERVICE_KEY")

        if not url or not key:
            raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set")

        return cls(url=url, key=key)


# =============================================================================
# SUPABASE DATABASE CLIENT
# =============================================================================


class SupabaseDB:
    """Unified **async** storage client.

    **Important:** Use the :meth:`create` factory method instead of
    ``__init__`` directly; the async client requires an ``await`` during
    initialisation.
    """

    def __init__(self, client: AsyncClient) -> None:
        """Private constructor.  Use :meth:`create` factory method."""
        self.client = client

    @classmethod
    async def create(cls, config: Optional[SupabaseConfig] = None) -> "SupabaseDB":
        """Factory method to create an async :class:`SupabaseDB` instance.

        Args:
            config: Optional configuration.  When ``None``,
                :meth:`SupabaseConfig.from_env` is used.
        """
        config = config or SupabaseConfig.from_env()
        client = await create_async_client(config.url, config.key)
        return cls(client)

    # -----------------------------------------------------------------
    # PLACEMENT PLANS
    # -----------------------------------------------------------------

    async def save_plan(self, plan: Dict[str, Any]) -> str:
        """Insert a new placement plan row.

        Returns:
            The plan id.

        Raises:
            ValidationError: If *plan* is empty.
            DatabaseError: If the insert returned no row.
        """
        if not plan:
            raise ValidationError("plan cannot be None or empty")
        row = dict(plan)
        row.setdefault("id", generate_id())
        row.setdefault("created_at", utc_now().isoformat())
        result = await self.client.table(PLANS_TABLE).insert(row).execute()
        if not result.data:
            raise DatabaseError(f"Failed to insert plan {row['id']}")
        return result.data[0]["id"]

    async def get_plan(self, plan_id: str) -> Optional[Dict[str, Any]]:
        validate_not_empty(plan_id, "plan_id")
        result = await (
            self.client.table(PLANS_TABLE).select("*").eq("id", plan_id).execute()
        )
        return result.data[0] if result.data else None

    async def update_plan(self, plan_id: str, fields: Dict[str, Any]) -> None:
        """Write *fields* onto a plan unconditionally.

        Raises:
            ValidationError: If *plan_id* or *fields* is empty.
        """
        validate_not_empty(plan_id, "plan_id")
        if not fields:
            raise ValidationError("plan update cannot be empty")
        row = {**fields, "updated_at": utc_now().isoformat()}
        await self.client.table(PLANS_TABLE).update(row).eq("id", plan_id).execute()

    async def list_plans(
        self, status: Optional[str] = None, limit: int = 100
    ) -> List[Dict[str, Any]]:
        validate_positive(limit, "limit")
        query = self.client.table(PLANS_TABLE).select("*")
        if status is not None:
            query = query.eq("status", status)
        result = await query.order("created_at", desc=True).limit(limit).execute()
        return result.data

    async def claim_plan(
        self,
        plan_id: str,
        from_statuses: Iterable[str],
        fields: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Atomically move a plan into ``publishing``.

        The UPDATE only matches while the plan's status is one of
        *from_statuses*, so exactly one of several concurrent callers wins.

        Returns:
            ``True`` if this caller claimed the plan.
        """
        validate_not_empty(plan_id, "plan_id")
        allowed = list(from_statuses)
        if not allowed:
            raise ValidationError("from_statuses cannot be empty")
        now = utc_now().isoformat()
        row = {
            **(fields or {}),
            "status": "publishing",
            "publish_started_at": now,
            "updated_at": now,
        }
        result = await (
            self.client.table(PLANS_TABLE)
            .update(row)
            .eq("id", plan_id)
            .in_("status", allowed)
            .execute()
        )
        # If data is returned, the update matched and the claim succeeded
        return bool(result.data)

    async def release_stuck_plan(
        self,
        plan_id: str,
        cutoff: Optional[datetime],
        fields: Dict[str, Any],
    ) -> bool:
        """Conditionally write *fields* onto a plan stuck in ``publishing``.

        Matches only while the plan is still ``publishing`` and its
        ``publish_started_at`` is at or before *cutoff* (``None`` matches a
        plan without a start time). A plan that finished or was re-claimed
        after it was read is left untouched.

        Returns:
            ``True`` if the plan was released.
        """
        validate_not_empty(plan_id, "plan_id")
        row = {**fields, "updated_at": utc_now().isoformat()}
        query = (
            self.client.table(PLANS_TABLE)
            .update(row)
            .eq("id", plan_id)
            .eq("status", "publishing")
        )
        if cutoff is None:
            query = query.is_("publish_started_at", "null")
        else:
            query = query.lte("publish_started_at", cutoff.isoformat())
        result = await query.execute()
        return bool(result.data)

    async def get_published_plans(self) -> List[Dict[str, Any]]:
        result = await (
            self.client.table(PLANS_TABLE).select("*").eq("status", "published").execute()
        )
        return result.data

    # -----------------------------------------------------------------
    # LOCATIONS AND SCREENS
    # -----------------------------------------------------------------

    async def get_candidate_locations(self) -> List[Dict[str, Any]]:
        """All locations; the placement rules decide which are eligible."""
        result = await self.client.table(LOCATIONS_TABLE).select("*").execute()
        return result.data

    async def get_active_locations(self) -> List[Dict[str, Any]]:
        result = await (
            self.client.table(LOCATIONS_TABLE).select("*").eq("status", "active").execute()
        )
        return result.data

    async def get_location(self, location_id: str) -> Optional[Dict[str, Any]]:
        validate_not_empty(location_id, "location_id")
        result = await (
            self.client.table(LOCATIONS_TABLE).select("*").eq("id", location_id).execute()
        )
        return result.data[0] if result.data else None

    async def get_location_screens(self, location_id: str) -> List[Dict[str, Any]]:
        validate_not_empty(location_id, "location_id")
        result = await (
            self.client.table(SCREENS_TABLE)
            .select("*")
            .eq("location_id", location_id)
            .execute()
        )
        return result.data

    async def update_screen_status(self, screen_id: str, fields: Dict[str, Any]) -> None:
        """Write the cached last-known status of one screen (dashboard read model)."""
        validate_not_empty(screen_id, "screen_id")
        if not fields:
            raise ValidationError("screen status update cannot be empty")
        await (
            self.client.table(SCREENS_TABLE).update(fields).eq("id", screen_id).execute()
        )

    # -----------------------------------------------------------------
    # ALERTS
    # -----------------------------------------------------------------

    async def create_alert(
        self,
        category: str,
        severity: str,
        title: str,
        message: str,
        dedup_key: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[str]:
        """Raise an alert unless one with the same *dedup_key* was raised recently.

        Returns:
            The new alert id, or ``None`` when suppressed by deduplication.
        """
        validate_not_empty(dedup_key, "dedup_key")
        since = (utc_now() - ALERT_DEDUP_WINDOW).isoformat()
        recent = await (
            self.client.table(ALERTS_TABLE)
            .select("id")
            .eq("dedup_key", dedup_key)
            .gte("created_at", since)
            .limit(1)
            .execute()
        )
        if recent.data:
            logger.debug("[ALERTS] Suppressed duplicate alert %s", dedup_key)
            return None

        row = {
            "id": generate_id(),
            "category": category,
            "severity": severity,
            "title": title,
            "message": message,
            "dedup_key": dedup_key,
            "details": details or {},
            "status": "open",
            "created_at": utc_now().isoformat(),
        }
        result = await self.client.table(ALERTS_TABLE).insert(row).execute()
        return result.data[0]["id"] if result.data else row["id"]

    async def get_active_alerts(self, limit: int = 50) -> List[Dict[str, Any]]:
        validate_positive(limit, "limit")
        result = await (
            self.client.table(ALERTS_TABLE)
            .select("*")
            .eq("status", "open")
            .order("created_at", desc=True)
            .limit(limit)
            .execute()
        )
        return result.data

    async def acknowledge_alert(self, alert_id: str, acknowledged_by: str) -> bool:
        """Mark an open alert acknowledged. Returns ``False`` if nothing matched."""
        validate_not_empty(alert_id, "alert_id")
        result = await (
            self.client.table(ALERTS_TABLE)
            .update(
                {
                    "status": "acknowledged",
                    "acknowledged_by": acknowledged_by,
                    "acknowledged_at": utc_now().isoformat(),
                }
            )
            .eq("id", alert_id)
            .eq("status", "open")
            .execute()
        )
        return bool(result.data)

    # -----------------------------------------------------------------
    # INTEGRATION CREDENTIALS
    # -----------------------------------------------------------------

    async def get_integration_credentials(self, provider: str) -> Optional[Dict[str, str]]:
        """Load and decrypt stored credentials for *provider*."""
        validate_not_empty(provider, "provider")
        result = await (
            self.client.table(CREDENTIALS_TABLE)
            .select("encrypted_credentials")
            .eq("provider", provider)
            .limit(1)
            .execute()
        )
        if not result.data or not result.data[0].get("encrypted_credentials"):
            return None
        return decrypt_credentials(result.data[0]["encrypted_credentials"])

    async def save_integration_credentials(
        self, provider: str, credentials: Dict[str, str]
    ) -> None:
        validate_not_empty(provider, "provider")
        await (
            self.client.table(CREDENTIALS_TABLE)
            .upsert(
                {
                    "provider": provider,
                    "encrypted_credentials": encrypt_credentials(credentials),
                    "updated_at": utc_now().isoformat(),
                },
                on_conflict="provider",
            )
            .execute()
        )

    # -----------------------------------------------------------------
    # OPERATIONAL LOG
    # -----------------------------------------------------------------

    async def save_ops_log(self, entry: Dict[str, Any]) -> None:
        await self.client.table(OPS_LOGS_TABLE).insert(entry).execute()


# =============================================================================
# GLOBAL DATABASE INSTANCE (Singleton)
# =============================================================================

_db_instance: Optional[SupabaseDB] = None
_db_lock: Optional[asyncio.Lock] = None

# Thread lock for safe initialisation of the async lock itself.
_init_lock = threading.Lock()


async def get_db() -> SupabaseDB:
    """Get the global async database instance."""
    global _db_instance, _db_lock

    if _db_lock is None:
        with _init_lock:
            if _db_lock is None:
                _db_lock = asyncio.Lock()

    if _db_instance is None:
        async with _db_lock:
            if _db_instance is None:
                _db_instance = await SupabaseDB.create()

    return _db_instance


__all__ = [
    "validate_not_empty",
    "validate_positive",
    "SupabaseConfig",
    "SupabaseDB",
    "get_db",
]
