"""
Booking Service

Turns an order into a carrier shipment as a two-step compensating saga:

    1. debit the seller wallet (optimistic version check), commit
    2. call the carrier adapter's create_shipment
    3. on any adapter failure, commit a reversal credit linked to the debit
       and re-raise; on success persist the shipment

book_from_quote consumes one option of a single-use QuoteSession;
book_direct is the legacy path used when quote sessions are switched off.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from courierhub.core.exceptions import (
    CarrierAPIError,
    CarrierNotServiceableError,
    NotFoundError,
    QuoteExpiredError,
    QuoteSessionConsumedError,
    StateConflictError,
    ValidationError,
)
from courierhub.models.company import WalletTransactionReason, Warehouse
from courierhub.models.order import Order, OrderStatus
from courierhub.models.quote_session import QuoteSession, QuoteSessionStatus
from courierhub.models.shipment import (
    CollectionStatus,
    Shipment,
    ShipmentStatus,
    ShipmentStatusHistory,
)
from courierhub.modules.shipping.carriers import CarrierFactory
from courierhub.modules.shipping.carriers.base import (
    AddressInput,
    BaseCarrier,
    Package,
    ShipmentRequest,
    validate_destination,
)
from courierhub.services.quote_engine import QuoteEngine, address_from_warehouse, price_option
from courierhub.services.wallet_service import WalletService, to_money

logger = logging.getLogger(__name__)


def address_from_order(order: Order) -> AddressInput:
    return AddressInput(
        name=order.customer_name,
        phone=order.customer_phone,
        address_line1=order.address_line1,
        address_line2=order.address_line2,
        city=order.city,
        state=order.state,
        pincode=order.pincode,
        email=order.customer_email,
    )


class BookingService:
    """Quote-session and direct booking of orders."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.wallet = WalletService(db)
        self.quotes = QuoteEngine(db)

    # ------------------------------------------------------------------
    # Preconditions
    # ------------------------------------------------------------------

    async def _load_order(self, company_id: int, order_id: int) -> Order:
        result = await self.db.execute(
            select(Order).where(Order.id == order_id, Order.company_id == company_id)
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFoundError(f"Order {order_id} not found", details={"order_id": order_id})

        existing = await self.db.execute(select(Shipment.id).where(Shipment.order_id == order_id))
        if existing.scalar_one_or_none() is not None:
            raise StateConflictError(
                f"Order {order_id} already has a shipment",
                code="ALREADY_SHIPPED",
                details={"order_id": order_id},
            )

        if not order.is_operational_currency and order.base_currency_total is None:
            raise ValidationError(
                "Non-INR order is missing base_currency_total",
                code="MISSING_BASE_CURRENCY_TOTAL",
                details={"order_id": order_id, "currency": order.currency},
            )
        return order

    async def _get_adapter(self, company_id: int, provider: str) -> BaseCarrier:
        adapter = await CarrierFactory.get_company_adapter(self.db, company_id, provider)
        if adapter is None:
            raise ValidationError(
                f"Carrier {provider} is not available for this company",
                code="PROVIDER_UNAVAILABLE",
                details={"provider": provider},
            )
        return adapter

    # ------------------------------------------------------------------
    # Session claim
    # ------------------------------------------------------------------

    async def _claim_session(self, session: QuoteSession) -> None:
        """active -> booking, atomically. Losing the race means someone else is booking it."""
        result = await self.db.execute(
            update(QuoteSession)
            .where(
                QuoteSession.id == session.id,
                QuoteSession.status == QuoteSessionStatus.ACTIVE.value,
            )
            .values(status=QuoteSessionStatus.BOOKING.value)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise QuoteSessionConsumedError(
                f"Quote session {session.session_id} was already used",
                details={"session_id": session.session_id},
            )
        await self.db.commit()

    async def _release_session(self, session_pk: int, session_id: str) -> None:
        """booking -> active after a failed saga. Anything uncommitted is discarded first."""
        await self.db.rollback()
        await self.db.execute(
            update(QuoteSession)
            .where(
                QuoteSession.id == session_pk,
                QuoteSession.status == QuoteSessionStatus.BOOKING.value,
            )
            .values(status=QuoteSessionStatus.ACTIVE.value)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        logger.warning(f"Quote session {session_id} released after failed booking")

    # ------------------------------------------------------------------
    # Saga
    # ------------------------------------------------------------------

    async def _run_saga(
        self,
        company_id: int,
        order: Order,
        adapter: BaseCarrier,
        service_code: Optional[str],
        amount,
        carrier_name: Optional[str] = None,
    ) -> Shipment:
        destination = address_from_order(order)
        validate_destination(destination)

        warehouse = await self.quotes.resolve_warehouse(company_id, order.warehouse_id)
        amount = to_money(amount)
        operational_total = order.operational_total
        cod_amount = operational_total if order.is_cod else Decimal("0")

        debit = await self.wallet.debit(
            company_id,
            amount,
            WalletTransactionReason.SHIPPING_CHARGE,
            reference_type="order",
            reference_id=order.id,
            description=f"Shipping for order {order.order_number} via {adapter.provider.value}",
        )
        await self.db.commit()
        debit_id = debit.id
        order_number = order.order_number

        request = ShipmentRequest(
            order_number=order.order_number,
            destination=destination,
            package=Package(
                weight=order.weight,
                length=order.length or 0.0,
                width=order.width or 0.0,
                height=order.height or 0.0,
                declared_value=float(operational_total),
            ),
            payment_mode=order.payment_method,
            warehouse=warehouse,
            service_code=service_code,
            cod_amount=float(cod_amount),
            invoice_value=float(operational_total),
            items=list(order.items or []),
        )

        try:
            result = await adapter.create_shipment(request)
        except Exception as e:
            logger.error(
                f"Carrier booking failed for order {order.id} via {adapter.provider.value}: {e}. "
                f"Reversing wallet debit {debit_id} ({amount})"
            )
            await self._compensate(debit_id, order_number)
            raise

        try:
            shipment = await self._persist_shipment(
                company_id, order, adapter, warehouse, debit, result,
                service_code, amount, cod_amount, carrier_name,
            )
        except Exception as e:
            # The carrier holds a live AWB nothing points at; it needs a manual cancel
            logger.error(
                f"Saving booking for order {order_number} failed after {adapter.provider.value} "
                f"issued AWB {result.tracking_number}: {e}. Reversing wallet debit {debit_id}; "
                f"cancel the AWB with the carrier"
            )
            await self.db.rollback()
            await self._compensate(debit_id, order_number)
            raise

        logger.info(
            f"Order {order.id} booked: {shipment.tracking_number} via {adapter.provider.value} "
            f"(charge {amount}, txn {debit_id})"
        )
        return shipment

    async def _compensate(self, debit_id: int, order_number: str) -> None:
        await self.wallet.reverse(debit_id, description=f"Booking failed for order {order_number}")
        await self.db.commit()

    async def _persist_shipment(
        self,
        company_id: int,
        order: Order,
        adapter: BaseCarrier,
        warehouse: Warehouse,
        debit,
        result,
        service_code: Optional[str],
        amount: Decimal,
        cod_amount: Decimal,
        carrier_name: Optional[str],
    ) -> Shipment:
        shipment = Shipment(
            order_id=order.id,
            company_id=company_id,
            warehouse_id=warehouse.id,
            provider=adapter.provider.value,
            carrier_name=result.carrier_name or carrier_name or adapter.carrier_name,
            service_code=service_code,
            tracking_number=result.tracking_number,
            carrier_shipment_id=result.carrier_shipment_id,
            label_url=result.label_url,
            status=ShipmentStatus.CREATED.value,
            declared_weight=order.weight,
            payment_type=order.payment_method,
            cod_amount=cod_amount,
            collection_status=CollectionStatus.PENDING.value,
            shipping_charge=amount,
            wallet_transaction_id=debit.id,
            shipping_paid_from_wallet=True,
        )
        self.db.add(shipment)
        await self.db.flush()

        self.db.add(ShipmentStatusHistory(
            shipment_id=shipment.id,
            status=ShipmentStatus.CREATED.value,
            description=f"Booked with {shipment.carrier_name}",
            source="booking",
        ))

        debit.reference_type = "shipment"
        debit.reference_id = str(shipment.id)

        order.base_currency_shipping_charge = amount
        if order.is_operational_currency:
            order.shipping_charge = amount
        else:
            # Mirror the INR charge into the order currency at the order's own rate
            rate = Decimal(str(order.total)) / Decimal(str(order.base_currency_total))
            order.shipping_charge = to_money(amount * rate)
        order.status = OrderStatus.SHIPPED.value
        await self.db.flush()
        return shipment

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def book_from_quote(
        self,
        company_id: int,
        order_id: int,
        session_id: str,
        option_id: str,
    ) -> Shipment:
        """
        Book one option of a quote session.

        Raises:
            QuoteSessionNotFoundError: unknown session (or another company's)
            QuoteExpiredError: session past expires_at; nothing is debited
            QuoteSessionConsumedError: session already used or being used
            ValidationError: unknown option, missing base-currency total
            InsufficientBalanceError / WalletVersionConflictError: debit failed
            CarrierAPIError: carrier failed; the debit has been reversed
        """
        session = await self.quotes.get_session(company_id, session_id)

        if session.is_expired:
            raise QuoteExpiredError(
                "Quote session has expired, request fresh rates",
                session_id=session_id,
                expired_at=session.expires_at.isoformat(),
            )

        if session.status != QuoteSessionStatus.ACTIVE.value:
            raise QuoteSessionConsumedError(
                f"Quote session {session_id} was already used",
                details={"session_id": session_id, "status": session.status},
            )

        option: Optional[Dict[str, Any]] = session.get_option(option_id)
        if option is None:
            raise ValidationError(
                f"Unknown option {option_id} for quote session",
                code="UNKNOWN_OPTION",
                details={"session_id": session_id, "option_id": option_id},
            )

        order = await self._load_order(company_id, order_id)
        adapter = await self._get_adapter(company_id, option["provider"])

        session_pk = session.id
        await self._claim_session(session)
        try:
            shipment = await self._run_saga(
                company_id,
                order,
                adapter,
                option.get("service_code"),
                option["quoted_amount"],
                carrier_name=option.get("carrier_name"),
            )
        except Exception:
            await self._release_session(session_pk, session_id)
            raise

        await self.db.execute(
            update(QuoteSession)
            .where(QuoteSession.id == session_pk)
            .values(
                status=QuoteSessionStatus.CONSUMED.value,
                consumed_option_id=option_id,
                consumed_at=datetime.now(timezone.utc),
                order_id=order_id,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return shipment

    async def book_direct(
        self,
        company_id: int,
        order_id: int,
        provider: Optional[str] = None,
        service_code: Optional[str] = None,
    ) -> Shipment:
        """
        Legacy booking without a quote session.

        Rates the chosen provider (or every active provider) live and books
        the requested service, else the cheapest one.
        """
        order = await self._load_order(company_id, order_id)

        if provider:
            adapters = [await self._get_adapter(company_id, provider)]
        else:
            adapters = await CarrierFactory.get_active_adapters(self.db, company_id)

        warehouse: Warehouse = await self.quotes.resolve_warehouse(company_id, order.warehouse_id)
        origin = address_from_warehouse(warehouse)
        destination = address_from_order(order)
        package = Package(
            weight=order.weight,
            length=order.length or 0.0,
            width=order.width or 0.0,
            height=order.height or 0.0,
            declared_value=float(order.operational_total),
        )
        cod_amount = float(order.operational_total) if order.is_cod else 0.0

        best = None
        for adapter in adapters:
            try:
                rates = await adapter.get_rates(origin, destination, package, order.payment_method, cod_amount)
            except CarrierNotServiceableError:
                continue
            except CarrierAPIError as e:
                if provider:
                    raise
                logger.warning(f"Direct booking: skipping {adapter.provider.value}: {e.message}")
                continue
            if service_code:
                rates = [r for r in rates if r.service_code == service_code]
            for rate in rates:
                if best is None or rate.total < best[1].total:
                    best = (adapter, rate)

        if best is None:
            raise CarrierNotServiceableError(
                "No serviceable option for direct booking",
                provider=provider,
                origin_pincode=origin.pincode,
                destination_pincode=destination.pincode,
            )

        adapter, rate = best
        pricing = price_option(rate.total, order.payment_method, cod_amount)
        shipment = await self._run_saga(
            company_id,
            order,
            adapter,
            rate.service_code,
            pricing["quoted_amount"],
            carrier_name=rate.carrier_name,
        )
        await self.db.commit()
        return shipment
