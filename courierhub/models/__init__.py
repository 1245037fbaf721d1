from courierhub.models.company import (
    Company,
    WalletTransaction,
    WalletTransactionType,
    WalletTransactionReason,
    Warehouse,
)
from courierhub.models.carrier_integration import CarrierIntegration, CarrierProvider
from courierhub.models.order import Order, OrderStatus, PaymentMethod
from courierhub.models.shipment import (
    Shipment,
    ShipmentStatus,
    ShipmentStatusHistory,
    CollectionStatus,
)
from courierhub.models.quote_session import QuoteSession, QuoteSessionStatus, QuoteConfidence
from courierhub.models.ndr import (
    NDREvent,
    NDRWorkflow,
    NDRType,
    NDRStatus,
    NDRActionType,
    NDRActionResult,
)
from courierhub.models.rto import RTOEvent, RTOTriggeredBy, RTOStatus
from courierhub.models.scheduled_job import ScheduledJob, ScheduledJobStatus, ScheduledJobType
from courierhub.models.cod import (
    CODDiscrepancy,
    CODRemittanceBatch,
    EarlyCODEnrollment,
    DiscrepancyType,
    DiscrepancySeverity,
    DiscrepancySource,
    DiscrepancyStatus,
    ResolutionMethod,
    RemittanceBatchType,
    RemittanceStatus,
    EarlyCODTier,
    EnrollmentStatus,
    EARLY_COD_TIER_FEES,
)
from courierhub.models.webhook_event import WebhookEvent
from courierhub.models.feature_flag import FeatureFlag
