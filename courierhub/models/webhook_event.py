"""
Webhook idempotency log

One row per distinct carrier status delivery. The idempotency key is a
sha256 over provider, AWB, status and the carrier's updated_at, so a replayed
payload collides on the unique index.
"""
from sqlalchemy import Column, Integer, String

from courierhub.core.database import Base, UTCDateTime, utcnow


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    idempotency_key = Column(String(64), unique=True, nullable=False)
    provider = Column(String(30), nullable=False)
    tracking_number = Column(String(100), nullable=False, index=True)
    status = Column(String(50), nullable=False)
    result = Column(String(20), nullable=True)  # processed, not_found, unchanged, ignored
    processed_at = Column(UTCDateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f"<WebhookEvent(provider={self.provider}, awb={self.tracking_number}, status={self.status})>"
