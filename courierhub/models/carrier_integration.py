"""
Carrier integration model

One row per (company, provider). Holds encrypted credentials, the webhook
secret, the persisted bearer-token cache and the carrier-side warehouse
references created lazily on first booking.

config_version is bumped whenever credentials or config change; the adapter
factory compares it against cached instances.
"""
from enum import Enum as PyEnum

from sqlalchemy import (
    Column, Integer, String, Boolean, Text, JSON,
    ForeignKey, UniqueConstraint
)

from courierhub.core.database import Base, UTCDateTime, utcnow


class CarrierProvider(str, PyEnum):
    """Supported courier aggregators / carriers."""
    VELOCITY = "velocity"
    DELHIVERY = "delhivery"
    EKART = "ekart"


class CarrierIntegration(Base):
    __tablename__ = "carrier_integrations"
    __table_args__ = (
        UniqueConstraint("company_id", "provider", name="uq_carrier_integrations_company_provider"),
    )

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True)
    provider = Column(String(30), nullable=False)

    is_active = Column(Boolean, default=True, nullable=False)

    # Fernet-encrypted JSON: {"username": ..., "password": ...} / {"api_token": ...}
    credentials_encrypted = Column(Text, nullable=True)
    webhook_secret = Column(String(255), nullable=True)

    # Persisted token cache (shared across processes)
    token_encrypted = Column(Text, nullable=True)
    token_expires_at = Column(UTCDateTime, nullable=True)

    # {"<warehouse_id>": "<carrier warehouse ref>"}
    warehouse_refs = Column(JSON, default=dict, nullable=False)

    # Free-form provider config (e.g. {"client_name": "..."} for Delhivery)
    config_json = Column(JSON, default=dict, nullable=False)
    config_version = Column(Integer, default=1, nullable=False)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<CarrierIntegration(company={self.company_id}, provider={self.provider}, active={self.is_active})>"
