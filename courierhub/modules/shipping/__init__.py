"""
Shipping Module

- BaseCarrier interface for all carrier implementations
- CarrierFactory registry with per-company adapter cache
- Provider-level feature flags (Velocity, Delhivery, Ekart individually toggleable)
"""
from courierhub.modules.shipping.carriers import CarrierFactory, register_carrier
from courierhub.modules.shipping.carriers.base import BaseCarrier

__all__ = [
    "CarrierFactory",
    "register_carrier",
    "BaseCarrier",
]
