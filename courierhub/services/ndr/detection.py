"""
NDR Detection Service

Turns a carrier non-delivery status into an NDREvent:
- pattern match on the carrier's NDR status codes and remark keywords
- 24h per-shipment dedup window (carriers resend the same NDR)
- classification (AI when configured, keywords otherwise)
- starts the resolution workflow
"""
import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from courierhub.core.config import settings
from courierhub.core.database import utcnow
from courierhub.models.ndr import NDREvent, NDRStatus
from courierhub.models.shipment import Shipment, ShipmentStatus, ShipmentStatusHistory
from courierhub.modules.shipping.carriers.base import NDRPatterns
from courierhub.services.collaborators import NotificationSender
from courierhub.services.ndr.classifier import Classification, NDRClassifier
from courierhub.services.ndr.resolution import NDRResolutionService

logger = logging.getLogger(__name__)

MIN_REMARKS_LENGTH = 10


class NDRDetectionService:
    """Detects, deduplicates and records NDR events."""

    def __init__(
        self,
        db: AsyncSession,
        classifier: Optional[NDRClassifier] = None,
        notifier: Optional[NotificationSender] = None,
    ):
        self.db = db
        self.classifier = classifier or NDRClassifier()
        self.notifier = notifier

    @staticmethod
    def is_ndr_status(status_code: Optional[str], remarks: Optional[str], patterns: NDRPatterns) -> bool:
        code = (status_code or "").upper()
        if code and any(pattern.upper() in code for pattern in patterns.status_codes):
            return True
        text = (remarks or "").lower()
        return bool(text) and any(keyword.lower() in text for keyword in patterns.keywords)

    @staticmethod
    def extract_reason(status_code: Optional[str], remarks: Optional[str]) -> str:
        cleaned = (remarks or "").strip()
        if len(cleaned) >= MIN_REMARKS_LENGTH:
            return cleaned
        return (status_code or "unknown").replace("_", " ").title()

    async def classify(self, reason: str) -> Classification:
        return await self.classifier.classify(reason)

    async def _recent_ndr_exists(self, shipment_id: int) -> bool:
        window_start = utcnow() - timedelta(hours=settings.NDR_DEDUP_WINDOW_HOURS)
        result = await self.db.execute(
            select(NDREvent.id)
            .where(NDREvent.shipment_id == shipment_id, NDREvent.detected_at >= window_start)
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def _claim_window(self, shipment_id: int, now) -> bool:
        """
        Stamp last_ndr_at unless another NDR holds the window. Concurrent
        deliveries for one AWB race on this UPDATE; only one row count wins.
        """
        window_start = now - timedelta(hours=settings.NDR_DEDUP_WINDOW_HOURS)
        result = await self.db.execute(
            update(Shipment)
            .where(
                Shipment.id == shipment_id,
                or_(Shipment.last_ndr_at.is_(None), Shipment.last_ndr_at < window_start),
            )
            .values(last_ndr_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def detect_ndr(
        self,
        shipment: Shipment,
        status_code: Optional[str],
        remarks: Optional[str],
        provider: str,
        start_workflow: bool = True,
    ) -> Optional[NDREvent]:
        """
        Record an NDR for the shipment.

        Returns None when an NDR was already recorded inside the dedup window.
        Workflow failures are logged; the NDR event is kept.
        """
        if await self._recent_ndr_exists(shipment.id):
            logger.info(
                f"[NDR] Duplicate NDR for shipment {shipment.id} ({shipment.tracking_number}) "
                f"within {settings.NDR_DEDUP_WINDOW_HOURS}h, ignoring"
            )
            return None

        now = utcnow()
        if not await self._claim_window(shipment.id, now):
            logger.info(
                f"[NDR] NDR window for shipment {shipment.id} ({shipment.tracking_number}) "
                f"already claimed, ignoring"
            )
            return None

        count_result = await self.db.execute(
            select(func.count(NDREvent.id)).where(NDREvent.shipment_id == shipment.id)
        )
        attempt_number = count_result.scalar_one() + 1

        reason = self.extract_reason(status_code, remarks)
        classification = await self.classify(reason)

        ndr_event = NDREvent(
            shipment_id=shipment.id,
            company_id=shipment.company_id,
            provider=provider,
            tracking_number=shipment.tracking_number,
            ndr_type=classification.ndr_type.value,
            classification_source=classification.source,
            ndr_reason=reason,
            raw_status_code=status_code,
            attempt_number=attempt_number,
            detected_at=now,
            resolution_deadline=now + timedelta(hours=settings.NDR_RESOLUTION_DEADLINE_HOURS),
            status=NDRStatus.DETECTED.value,
            resolution_actions=[],
        )
        self.db.add(ndr_event)
        await self.db.flush()

        if shipment.status != ShipmentStatus.NDR.value:
            shipment.status = ShipmentStatus.NDR.value
            self.db.add(ShipmentStatusHistory(
                shipment_id=shipment.id,
                status=ShipmentStatus.NDR.value,
                carrier_status=status_code,
                description=reason,
                source="ndr",
            ))
        shipment.current_ndr_id = ndr_event.id
        await self.db.flush()

        logger.info(
            f"[NDR] NDR {ndr_event.id} detected for {shipment.tracking_number}: "
            f"type={ndr_event.ndr_type} ({classification.source}), attempt {attempt_number}"
        )

        if start_workflow:
            try:
                await NDRResolutionService(self.db, self.notifier).execute_workflow(ndr_event)
            except Exception as e:
                logger.error(f"[NDR] Workflow start failed for NDR {ndr_event.id}: {e}")

        return ndr_event
