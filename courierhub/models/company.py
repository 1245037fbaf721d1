"""
Company (seller), wallet ledger and warehouse models

Wallet balance lives on the company row and is guarded by an optimistic
version counter (wallet_version). Every debit/credit appends one
WalletTransaction row; ledger rows are never updated except to flag
is_reversed on a compensated debit.

DB Compliance:
- Numeric(12,2) for monetary fields
- Timezone-aware UTC timestamps
- CHECK constraint: wallet balance never negative
"""
from enum import Enum as PyEnum

from sqlalchemy import (
    Column, Integer, String, Boolean, Text, Numeric,
    ForeignKey, Index, CheckConstraint
)
from sqlalchemy.orm import relationship

from courierhub.core.database import Base, UTCDateTime, utcnow


class WalletTransactionType(str, PyEnum):
    DEBIT = "debit"
    CREDIT = "credit"


class WalletTransactionReason(str, PyEnum):
    SHIPPING_CHARGE = "shipping_charge"
    SHIPPING_REVERSAL = "shipping_reversal"
    RTO_CHARGE = "rto_charge"
    RECHARGE = "recharge"
    COD_REMITTANCE = "cod_remittance"
    ADJUSTMENT = "adjustment"


class Company(Base):
    """
    A seller account.

    kyc_tier gates booking and warehouse creation (see require_kyc_tier).
    """
    __tablename__ = "companies"
    __table_args__ = (
        CheckConstraint("wallet_balance >= 0", name="ck_companies_wallet_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)

    kyc_tier = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    wallet_balance = Column(Numeric(12, 2), default=0, nullable=False)
    wallet_version = Column(Integer, default=0, nullable=False)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    warehouses = relationship("Warehouse", back_populates="company")

    def __repr__(self):
        return f"<Company(id={self.id}, name={self.name}, balance={self.wallet_balance})>"


class WalletTransaction(Base):
    """
    Append-only wallet ledger entry.

    A shipping debit is either referenced by a shipment or has exactly one
    reversal credit pointing back at it via reverses_transaction_id.
    """
    __tablename__ = "wallet_transactions"
    __table_args__ = (
        Index("ix_wallet_transactions_company_id", "company_id"),
        Index("ix_wallet_transactions_reference", "reference_type", "reference_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete="RESTRICT"), nullable=False)

    type = Column(String(10), nullable=False)  # debit / credit
    reason = Column(String(30), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    balance_after = Column(Numeric(12, 2), nullable=False)
    version_after = Column(Integer, nullable=False)

    reference_type = Column(String(30), nullable=True)  # order, shipment, rto_event, remittance
    reference_id = Column(String(64), nullable=True)
    description = Column(Text, nullable=True)

    reverses_transaction_id = Column(Integer, ForeignKey("wallet_transactions.id"), nullable=True)
    is_reversed = Column(Boolean, default=False, nullable=False)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f"<WalletTransaction(id={self.id}, {self.type} {self.amount} {self.reason})>"


class Warehouse(Base):
    """Seller pickup location."""
    __tablename__ = "warehouses"
    __table_args__ = (
        Index("ix_warehouses_company_id", "company_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)

    name = Column(String(100), nullable=False)
    contact_name = Column(String(100), nullable=False)
    phone = Column(String(20), nullable=False)
    email = Column(String(255), nullable=True)

    address_line1 = Column(String(255), nullable=False)
    address_line2 = Column(String(255), nullable=True)
    city = Column(String(100), nullable=False)
    state = Column(String(100), nullable=False)
    pincode = Column(String(10), nullable=False)
    country = Column(String(2), default="IN", nullable=False)

    is_default = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    company = relationship("Company", back_populates="warehouses")

    def __repr__(self):
        return f"<Warehouse(id={self.id}, name={self.name}, pincode={self.pincode})>"
