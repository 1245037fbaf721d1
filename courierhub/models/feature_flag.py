"""
Feature Flag model for runtime feature toggles

- Provider-level runtime toggles: (module='carriers', feature='velocity')
- Booking path toggle: (module='booking', feature='quote_sessions')
- No deployment required for toggling

Audit trail for state changes (disabled_by, disabled_at, disabled_reason).
"""
from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, String, Boolean, Text, JSON, Index, UniqueConstraint
)

from courierhub.core.database import Base, UTCDateTime, utcnow


class FeatureFlag(Base):
    __tablename__ = "feature_flags"
    __table_args__ = (
        UniqueConstraint("module", "feature", name="uq_feature_flags_module_feature"),
        Index("idx_feature_flags_lookup", "module", "feature"),
    )

    id = Column(Integer, primary_key=True, index=True)

    module = Column(String(50), nullable=False, index=True)  # e.g., 'carriers', 'booking'
    feature = Column(String(50), nullable=False)  # e.g., 'velocity', 'quote_sessions'
    is_enabled = Column(Boolean, default=True, nullable=False)

    # e.g., {"reliability": 0.85}
    config_json = Column(JSON, default=dict, nullable=False)

    disabled_reason = Column(Text, nullable=True)
    disabled_at = Column(UTCDateTime, nullable=True)
    disabled_by = Column(String(100), nullable=True)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<FeatureFlag(module={self.module}, feature={self.feature}, enabled={self.is_enabled})>"

    @property
    def flag_key(self) -> str:
        """Returns the cache key for this flag: 'module:feature'"""
        return f"{self.module}:{self.feature}"

    def disable(self, reason: str, disabled_by: str) -> None:
        """Disable the feature with audit trail."""
        self.is_enabled = False
        self.disabled_reason = reason
        self.disabled_by = disabled_by
        self.disabled_at = datetime.now(timezone.utc)

    def enable(self) -> None:
        """Enable the feature and clear audit trail."""
        self.is_enabled = True
        self.disabled_reason = None
        self.disabled_by = None
        self.disabled_at = None
