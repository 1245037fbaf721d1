"""
Wallet Service

Seller wallet debits and credits under an optimistic version check.

Each mutation is a single conditional UPDATE on the company row:

    UPDATE companies
       SET wallet_balance = wallet_balance - :amt, wallet_version = wallet_version + 1
     WHERE id = :id AND wallet_version = :v AND wallet_balance >= :amt

and appends exactly one WalletTransaction. A rowcount of 0 is classified by
re-reading the row: balance too low -> InsufficientBalanceError, otherwise
a concurrent writer moved the version -> WalletVersionConflictError.
"""
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from courierhub.core.exceptions import (
    InsufficientBalanceError,
    NotFoundError,
    StateConflictError,
    ValidationError,
    WalletVersionConflictError,
)
from courierhub.models.company import (
    Company,
    WalletTransaction,
    WalletTransactionReason,
    WalletTransactionType,
)

logger = logging.getLogger(__name__)

TWO_PLACES = Decimal("0.01")

# Credits are compensations or payouts and must land; retry on version races
CREDIT_MAX_ATTEMPTS = 3


def to_money(value) -> Decimal:
    """Quantize any numeric to 2dp Decimal."""
    return Decimal(str(value or 0)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


class WalletService:
    """Wallet ledger operations for a company."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_balance(self, company_id: int) -> Tuple[Decimal, int]:
        """Current (balance, version) read straight from the row."""
        result = await self.db.execute(
            select(Company.wallet_balance, Company.wallet_version).where(Company.id == company_id)
        )
        row = result.one_or_none()
        if row is None:
            raise NotFoundError(f"Company {company_id} not found", details={"company_id": company_id})
        return to_money(row.wallet_balance), row.wallet_version

    async def debit(
        self,
        company_id: int,
        amount,
        reason: WalletTransactionReason,
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
        description: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> WalletTransaction:
        """
        Debit the wallet.

        expected_version pins the debit to a version the caller already
        observed; without it the current version is read first.

        Raises:
            InsufficientBalanceError: balance below amount
            WalletVersionConflictError: version moved under us
        """
        amount = to_money(amount)
        if amount <= 0:
            raise ValidationError("Debit amount must be positive", details={"amount": str(amount)})

        balance, version = await self.get_balance(company_id)
        if expected_version is None:
            expected_version = version

        if version == expected_version and balance < amount:
            raise InsufficientBalanceError(
                f"Wallet balance {balance} is less than {amount}",
                required=float(amount),
                available=float(balance),
            )

        result = await self.db.execute(
            update(Company)
            .where(
                Company.id == company_id,
                Company.wallet_version == expected_version,
                Company.wallet_balance >= amount,
            )
            .values(
                wallet_balance=Company.wallet_balance - amount,
                wallet_version=Company.wallet_version + 1,
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            current_balance, current_version = await self.get_balance(company_id)
            if current_balance < amount:
                raise InsufficientBalanceError(
                    f"Wallet balance {current_balance} is less than {amount}",
                    required=float(amount),
                    available=float(current_balance),
                )
            logger.warning(
                f"Wallet version conflict for company {company_id}: "
                f"expected v{expected_version}, found v{current_version}"
            )
            raise WalletVersionConflictError(
                "Wallet was modified concurrently, retry the operation",
                company_id=company_id,
                expected_version=expected_version,
            )

        txn = WalletTransaction(
            company_id=company_id,
            type=WalletTransactionType.DEBIT.value,
            reason=reason.value,
            amount=amount,
            balance_after=balance - amount,
            version_after=expected_version + 1,
            reference_type=reference_type,
            reference_id=str(reference_id) if reference_id is not None else None,
            description=description,
        )
        self.db.add(txn)
        await self.db.flush()

        logger.info(
            f"Wallet debit {amount} ({reason.value}) company={company_id} txn={txn.id} "
            f"balance={txn.balance_after} v{txn.version_after}"
        )
        return txn

    async def credit(
        self,
        company_id: int,
        amount,
        reason: WalletTransactionReason,
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
        description: Optional[str] = None,
        reverses_transaction_id: Optional[int] = None,
    ) -> WalletTransaction:
        """Credit the wallet, re-reading the version on a concurrent update."""
        amount = to_money(amount)
        if amount <= 0:
            raise ValidationError("Credit amount must be positive", details={"amount": str(amount)})

        for attempt in range(CREDIT_MAX_ATTEMPTS):
            balance, version = await self.get_balance(company_id)
            result = await self.db.execute(
                update(Company)
                .where(Company.id == company_id, Company.wallet_version == version)
                .values(
                    wallet_balance=Company.wallet_balance + amount,
                    wallet_version=Company.wallet_version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                break
            logger.warning(f"Wallet credit version race for company {company_id} (attempt {attempt + 1})")
        else:
            raise WalletVersionConflictError(
                "Wallet credit could not be applied after repeated conflicts",
                company_id=company_id,
                expected_version=version,
            )

        txn = WalletTransaction(
            company_id=company_id,
            type=WalletTransactionType.CREDIT.value,
            reason=reason.value,
            amount=amount,
            balance_after=balance + amount,
            version_after=version + 1,
            reference_type=reference_type,
            reference_id=str(reference_id) if reference_id is not None else None,
            description=description,
            reverses_transaction_id=reverses_transaction_id,
        )
        self.db.add(txn)
        await self.db.flush()

        logger.info(
            f"Wallet credit {amount} ({reason.value}) company={company_id} txn={txn.id} "
            f"balance={txn.balance_after} v{txn.version_after}"
        )
        return txn

    async def reverse(
        self,
        transaction_id: int,
        reason: WalletTransactionReason = WalletTransactionReason.SHIPPING_REVERSAL,
        description: Optional[str] = None,
    ) -> WalletTransaction:
        """
        Compensate a debit with a linked credit and flag the original.

        Raises:
            StateConflictError: already reversed, or not a debit
        """
        result = await self.db.execute(
            select(WalletTransaction).where(WalletTransaction.id == transaction_id)
        )
        original = result.scalar_one_or_none()
        if original is None:
            raise NotFoundError(f"Wallet transaction {transaction_id} not found")
        if original.type != WalletTransactionType.DEBIT.value:
            raise StateConflictError(f"Wallet transaction {transaction_id} is not a debit")

        # Claim the reversal so a debit is compensated at most once
        claimed = await self.db.execute(
            update(WalletTransaction)
            .where(WalletTransaction.id == transaction_id, WalletTransaction.is_reversed.is_(False))
            .values(is_reversed=True)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount == 0:
            raise StateConflictError(
                f"Wallet transaction {transaction_id} already reversed",
                code="ALREADY_REVERSED",
            )

        txn = await self.credit(
            original.company_id,
            original.amount,
            reason,
            reference_type=original.reference_type,
            reference_id=original.reference_id,
            description=description or f"Reversal of transaction {transaction_id}",
            reverses_transaction_id=transaction_id,
        )
        logger.warning(
            f"Wallet debit {transaction_id} reversed by credit {txn.id} "
            f"(company={original.company_id}, amount={original.amount})"
        )
        return txn
