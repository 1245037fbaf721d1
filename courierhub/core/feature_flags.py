"""
Feature Flags Service

- 30-second cache TTL for performance
- Provider-level toggles via database (module='carriers', feature=<provider>)
- Booking path toggle (module='booking', feature='quote_sessions')
- No deployment required for toggling

Usage:
    if await FeatureFlags.is_provider_enabled(CarrierProvider.VELOCITY):
        ...

    if await FeatureFlags.quote_sessions_enabled():
        ...
"""
import time
import logging
from typing import Dict, List, Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from courierhub.core.database import get_db_session
from courierhub.models.feature_flag import FeatureFlag

logger = logging.getLogger(__name__)

CARRIERS_MODULE = "carriers"
BOOKING_MODULE = "booking"
QUOTE_SESSIONS_FEATURE = "quote_sessions"


class FeatureFlagCache:
    """
    In-memory cache for feature flags with TTL.

    Cache is refreshed when stale (> cache_ttl seconds since last refresh).
    Stores (is_enabled, config) snapshots rather than ORM rows.
    """

    def __init__(self, cache_ttl: int = 30):
        self._cache: Dict[str, dict] = {}
        self._cache_ttl = cache_ttl  # seconds
        self._last_refresh: float = 0

    @property
    def is_stale(self) -> bool:
        return time.time() - self._last_refresh > self._cache_ttl

    async def refresh(self, db: Optional[AsyncSession] = None) -> None:
        """
        Refresh the cache from database.

        Uses provided session or creates new one.
        """
        try:
            if db:
                await self._load_flags(db)
            else:
                async with get_db_session() as session:
                    await self._load_flags(session)

            self._last_refresh = time.time()
            logger.debug(f"Feature flags cache refreshed: {len(self._cache)} flags loaded")

        except Exception as e:
            logger.error(f"Failed to refresh feature flags cache: {e}")
            # Keep stale cache on failure rather than clearing
            if not self._cache:
                raise

    async def _load_flags(self, db: AsyncSession) -> None:
        result = await db.execute(select(FeatureFlag))
        self._cache = {
            flag.flag_key: {
                "module": flag.module,
                "feature": flag.feature,
                "is_enabled": flag.is_enabled,
                "config": dict(flag.config_json or {}),
            }
            for flag in result.scalars().all()
        }

    def get(self, key: str) -> Optional[dict]:
        return self._cache.get(key)

    def get_by_module(self, module: str) -> List[dict]:
        return [entry for entry in self._cache.values() if entry["module"] == module]

    def clear(self) -> None:
        """Clear the cache (forces refresh on next access)."""
        self._cache.clear()
        self._last_refresh = 0


# Global cache instance
_flag_cache = FeatureFlagCache(cache_ttl=30)


class FeatureFlags:
    """Classmethods for checking feature flags."""

    @classmethod
    async def _ensure_cache_fresh(cls, db: Optional[AsyncSession] = None) -> None:
        if _flag_cache.is_stale:
            await _flag_cache.refresh(db)

    @classmethod
    async def is_enabled(
        cls,
        module: str,
        feature: str,
        db: Optional[AsyncSession] = None,
        default: bool = False,
    ) -> bool:
        """
        Check if a feature is enabled.

        Args:
            module: Module name (e.g., 'carriers')
            feature: Feature name (e.g., 'velocity')
            db: Optional database session
            default: Returned when no flag row exists

        Returns:
            The flag's state, or default when not found
        """
        await cls._ensure_cache_fresh(db)

        entry = _flag_cache.get(f"{module}:{feature}")
        return entry["is_enabled"] if entry else default

    @classmethod
    async def is_provider_enabled(cls, provider, db: Optional[AsyncSession] = None) -> bool:
        """
        Check if a carrier provider is enabled.

        Providers without a flag row are enabled; a row with is_enabled=False
        switches the provider off platform-wide.
        """
        value = provider.value if hasattr(provider, "value") else str(provider)
        return await cls.is_enabled(CARRIERS_MODULE, value.lower(), db, default=True)

    @classmethod
    async def quote_sessions_enabled(cls, db: Optional[AsyncSession] = None) -> bool:
        """Quote-session booking is the default path; the flag turns it off."""
        return await cls.is_enabled(BOOKING_MODULE, QUOTE_SESSIONS_FEATURE, db, default=True)

    @classmethod
    async def get_config(cls, module: str, feature: str, db: Optional[AsyncSession] = None) -> dict:
        await cls._ensure_cache_fresh(db)
        entry = _flag_cache.get(f"{module}:{feature}")
        return dict(entry["config"]) if entry else {}

    @classmethod
    async def get_module_flags(cls, module: str, db: Optional[AsyncSession] = None) -> List[dict]:
        await cls._ensure_cache_fresh(db)
        return _flag_cache.get_by_module(module)

    @classmethod
    def invalidate_cache(cls) -> None:
        """
        Invalidate the cache (forces refresh on next access).

        Call this after updating flags in the database.
        """
        _flag_cache.clear()
        logger.info("Feature flags cache invalidated")
