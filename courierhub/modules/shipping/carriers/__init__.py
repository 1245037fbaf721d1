"""
Carrier Registry and Factory

- register_carrier fills the registry keyed by CarrierProvider
- CarrierFactory returns adapter instances cached per (company_id, provider)
- A cache entry is dropped explicitly via invalidate(), or implicitly when the
  integration's config_version no longer matches the cached instance
- Dropped adapters may still be serving a request, so their HTTP clients are
  closed by close_all() rather than on eviction
- Providers switched off by feature flag are skipped
"""
from typing import Dict, List, Optional, Tuple, Type
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from courierhub.core.feature_flags import FeatureFlags
from courierhub.models.carrier_integration import CarrierIntegration, CarrierProvider
from courierhub.modules.shipping.carriers.base import BaseCarrier

logger = logging.getLogger(__name__)

# Registry of carrier implementations
_CARRIER_REGISTRY: Dict[CarrierProvider, Type[BaseCarrier]] = {}

# Adapter instances keyed by (company_id, provider)
_ADAPTER_CACHE: Dict[Tuple[int, CarrierProvider], BaseCarrier] = {}

# Evicted adapters whose HTTP clients are still open
_RETIRED_ADAPTERS: List[BaseCarrier] = []


def register_carrier(provider: CarrierProvider):
    """
    Decorator to register a carrier implementation.

    Usage:
        @register_carrier(CarrierProvider.VELOCITY)
        class VelocityCarrier(BaseCarrier):
            ...
    """
    def decorator(cls: Type[BaseCarrier]):
        cls.provider = provider
        _CARRIER_REGISTRY[provider] = cls
        logger.info(f"Registered carrier: {provider.value} -> {cls.__name__}")
        return cls
    return decorator


def _as_provider(provider) -> Optional[CarrierProvider]:
    if isinstance(provider, CarrierProvider):
        return provider
    try:
        return CarrierProvider(str(provider).lower())
    except ValueError:
        return None


class CarrierFactory:
    """Factory for creating and caching carrier adapters."""

    @classmethod
    def get_carrier_class(cls, provider) -> Optional[Type[BaseCarrier]]:
        """Registered adapter class for a provider key (enum or string)."""
        provider = _as_provider(provider)
        if provider is None:
            return None
        return _CARRIER_REGISTRY.get(provider)

    @classmethod
    def get_adapter(cls, integration: CarrierIntegration) -> BaseCarrier:
        """
        Adapter for an integration, reusing the cached instance when its
        config_version still matches.

        Raises:
            KeyError: no implementation registered for the provider
        """
        provider = _as_provider(integration.provider)
        carrier_cls = _CARRIER_REGISTRY.get(provider) if provider else None
        if carrier_cls is None:
            raise KeyError(f"No implementation registered for carrier: {integration.provider}")

        key = (integration.company_id, provider)
        cached = _ADAPTER_CACHE.get(key)
        if cached is not None and cached.config_version == integration.config_version:
            return cached

        if cached is not None:
            logger.info(
                f"Carrier config changed for company {integration.company_id}/{provider.value} "
                f"(v{cached.config_version} -> v{integration.config_version}), rebuilding adapter"
            )
            _RETIRED_ADAPTERS.append(cached)

        adapter = carrier_cls(integration)
        _ADAPTER_CACHE[key] = adapter
        return adapter

    @classmethod
    def invalidate(cls, company_id: int, provider=None) -> None:
        """
        Drop cached adapters for a company (one provider, or all of them).

        Call after credential or config changes.
        """
        if provider is not None:
            keys = [(company_id, _as_provider(provider))]
        else:
            keys = [k for k in _ADAPTER_CACHE if k[0] == company_id]
        for key in keys:
            adapter = _ADAPTER_CACHE.pop(key, None)
            if adapter is not None:
                _RETIRED_ADAPTERS.append(adapter)

    @classmethod
    def clear_cache(cls) -> None:
        _ADAPTER_CACHE.clear()
        _RETIRED_ADAPTERS.clear()

    @classmethod
    async def close_all(cls) -> None:
        """Close the HTTP client of every cached or evicted adapter and empty the cache."""
        adapters = list(_ADAPTER_CACHE.values()) + _RETIRED_ADAPTERS
        _ADAPTER_CACHE.clear()
        _RETIRED_ADAPTERS.clear()
        for adapter in adapters:
            await adapter.close()

    @classmethod
    async def get_integration(
        cls,
        db: AsyncSession,
        company_id: int,
        provider,
    ) -> Optional[CarrierIntegration]:
        provider = _as_provider(provider)
        if provider is None:
            return None
        result = await db.execute(
            select(CarrierIntegration).where(
                CarrierIntegration.company_id == company_id,
                CarrierIntegration.provider == provider.value,
                CarrierIntegration.is_active.is_(True),
            )
        )
        return result.scalar_one_or_none()

    @classmethod
    async def get_company_adapter(cls, db: AsyncSession, company_id: int, provider) -> Optional[BaseCarrier]:
        """Adapter for a company's active, enabled integration with a provider."""
        integration = await cls.get_integration(db, company_id, provider)
        if integration is None:
            return None
        if not await FeatureFlags.is_provider_enabled(integration.provider):
            logger.debug(f"Carrier {integration.provider} is disabled")
            return None
        return cls.get_adapter(integration)

    @classmethod
    async def get_active_adapters(cls, db: AsyncSession, company_id: int) -> List[BaseCarrier]:
        """Adapters for every active integration of a company whose provider is enabled."""
        result = await db.execute(
            select(CarrierIntegration)
            .where(
                CarrierIntegration.company_id == company_id,
                CarrierIntegration.is_active.is_(True),
            )
            .order_by(CarrierIntegration.id)
        )

        adapters = []
        for integration in result.scalars().all():
            if cls.get_carrier_class(integration.provider) is None:
                logger.warning(f"No implementation registered for carrier: {integration.provider}")
                continue
            if not await FeatureFlags.is_provider_enabled(integration.provider):
                logger.debug(f"Carrier {integration.provider} is disabled")
                continue
            adapters.append(cls.get_adapter(integration))
        return adapters

    @classmethod
    def get_registered_providers(cls) -> List[CarrierProvider]:
        return list(_CARRIER_REGISTRY.keys())


# Import carriers to trigger registration
# These imports must be at the bottom to avoid circular imports
from courierhub.modules.shipping.carriers.velocity import VelocityCarrier  # noqa: E402, F401
from courierhub.modules.shipping.carriers.delhivery import DelhiveryCarrier  # noqa: E402, F401
from courierhub.modules.shipping.carriers.ekart import EkartCarrier  # noqa: E402, F401
