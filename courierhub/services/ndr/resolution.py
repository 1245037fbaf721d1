"""
NDR Resolution Service

Drives an NDR event through its workflow:

    detected -> in_resolution -> resolved | escalated | rto_triggered

Immediate actions run inline; delayed actions become ScheduledJob rows that
the job worker hands back to execute_scheduled_action. Before every action
the NDR status is re-read so a manual resolution abandons the rest of the
workflow.

The deadline sweep claims overdue NDRs one at a time by pushing their
deadline forward (a lease), then either triggers auto-RTO or escalates.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from courierhub.core.config import settings
from courierhub.core.database import utcnow
from courierhub.core.exceptions import NotFoundError, StateConflictError
from courierhub.models.ndr import (
    TERMINAL_NDR_STATUSES,
    NDRActionResult,
    NDRActionType,
    NDREvent,
    NDRStatus,
)
from courierhub.models.rto import RTOEvent, RTOTriggeredBy
from courierhub.models.scheduled_job import ScheduledJob, ScheduledJobStatus, ScheduledJobType
from courierhub.services.collaborators import NotificationSender
from courierhub.services.ndr.actions import ActionOutcome, NDRActionExecutor
from courierhub.services.ndr.workflows import Workflow, get_workflow
from courierhub.services.rto_service import RTOService

logger = logging.getLogger(__name__)

OPEN_STATUSES = (NDRStatus.DETECTED.value, NDRStatus.IN_RESOLUTION.value)


@dataclass
class WorkflowRun:
    ndr_event_id: int
    executed: int = 0
    scheduled: int = 0
    skipped: int = 0
    abandoned: bool = False


class NDRResolutionService:
    """Workflow execution, manual resolution, escalation and deadline sweep."""

    def __init__(self, db: AsyncSession, notifier: Optional[NotificationSender] = None):
        self.db = db
        self.executor = NDRActionExecutor(db, notifier)

    async def _get_ndr(self, ndr_id: int) -> NDREvent:
        result = await self.db.execute(
            select(NDREvent)
            .where(NDREvent.id == ndr_id)
            .execution_options(populate_existing=True)
        )
        ndr_event = result.scalar_one_or_none()
        if ndr_event is None:
            raise NotFoundError(f"NDR event {ndr_id} not found", code="NDR_NOT_FOUND", details={"ndr_id": ndr_id})
        return ndr_event

    async def _current_status(self, ndr_id: int) -> Optional[str]:
        result = await self.db.execute(select(NDREvent.status).where(NDREvent.id == ndr_id))
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Action log
    # ------------------------------------------------------------------

    async def record_action_result(
        self,
        ndr_event: NDREvent,
        outcome: ActionOutcome,
        taken_by: str = "system",
        action: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Append one entry to the NDR's action log."""
        metadata = dict(outcome.metadata)
        if outcome.error:
            metadata["error"] = outcome.error

        entry = {
            "action": action or outcome.action_type,
            "action_type": outcome.action_type,
            "taken_at": utcnow().isoformat(),
            "taken_by": taken_by,
            "result": outcome.result.value,
            "metadata": metadata,
        }
        # New list so the JSON column is flagged dirty; existing entries stay untouched
        ndr_event.resolution_actions = list(ndr_event.resolution_actions or []) + [entry]
        await self.db.flush()
        return entry

    def _schedule(self, ndr_event: NDREvent, action: Dict[str, Any], now: datetime) -> ScheduledJob:
        job = ScheduledJob(
            job_type=ScheduledJobType.NDR_ACTION.value,
            payload={"ndr_event_id": ndr_event.id, **action},
            reference_type="ndr_event",
            reference_id=ndr_event.id,
            run_at=now + timedelta(minutes=int(action["delay_minutes"])),
            status=ScheduledJobStatus.PENDING.value,
        )
        self.db.add(job)
        return job

    async def _run_action(self, ndr_event: NDREvent, action: Dict[str, Any], taken_by: str) -> ActionOutcome:
        if not action.get("auto_execute", True):
            outcome = ActionOutcome(
                action_type=action["action_type"],
                result=NDRActionResult.SKIPPED,
                metadata={"sequence": action.get("sequence")},
                error="awaiting manual approval",
            )
        else:
            outcome = await self.executor.execute(
                action["action_type"], ndr_event, action.get("action_config") or {}
            )
            outcome.metadata.setdefault("sequence", action.get("sequence"))
        await self.record_action_result(ndr_event, outcome, taken_by=taken_by)
        return outcome

    # ------------------------------------------------------------------
    # Workflow
    # ------------------------------------------------------------------

    async def execute_workflow(self, ndr_event: NDREvent) -> WorkflowRun:
        workflow = await get_workflow(self.db, ndr_event.ndr_type, ndr_event.company_id)
        run = WorkflowRun(ndr_event_id=ndr_event.id)

        if ndr_event.status == NDRStatus.DETECTED.value:
            ndr_event.status = NDRStatus.IN_RESOLUTION.value
            await self.db.flush()

        logger.info(
            f"[NDR] Starting workflow '{workflow.name}' ({workflow.source}) for NDR {ndr_event.id}: "
            f"{len(workflow.actions)} actions"
        )

        now = utcnow()
        for action in workflow.ordered_actions:
            status = await self._current_status(ndr_event.id)
            if status in TERMINAL_NDR_STATUSES:
                logger.info(f"[NDR] NDR {ndr_event.id} is {status}, abandoning remaining workflow")
                run.abandoned = True
                break

            if int(action.get("delay_minutes") or 0) > 0:
                self._schedule(ndr_event, action, now)
                run.scheduled += 1
                continue

            outcome = await self._run_action(ndr_event, action, taken_by="system")
            if outcome.result == NDRActionResult.SKIPPED:
                run.skipped += 1
            else:
                run.executed += 1

            if action["action_type"] == NDRActionType.TRIGGER_RTO.value and outcome.success:
                break

        await self.db.flush()
        return run

    async def execute_scheduled_action(self, payload: Dict[str, Any]) -> Optional[ActionOutcome]:
        """Run one delayed workflow action from the job worker."""
        ndr_id = payload.get("ndr_event_id")
        result = await self.db.execute(
            select(NDREvent).where(NDREvent.id == ndr_id).execution_options(populate_existing=True)
        )
        ndr_event = result.scalar_one_or_none()
        if ndr_event is None:
            logger.warning(f"[NDR] Scheduled action for missing NDR {ndr_id}")
            return None

        if ndr_event.is_terminal:
            logger.info(
                f"[NDR] Skipping scheduled {payload.get('action_type')} for NDR {ndr_id}: "
                f"status {ndr_event.status}"
            )
            return None

        return await self._run_action(ndr_event, payload, taken_by="system:scheduled")

    # ------------------------------------------------------------------
    # Manual transitions
    # ------------------------------------------------------------------

    async def cancel_pending_jobs(self, ndr_id: int) -> int:
        result = await self.db.execute(
            update(ScheduledJob)
            .where(
                ScheduledJob.reference_type == "ndr_event",
                ScheduledJob.reference_id == ndr_id,
                ScheduledJob.status == ScheduledJobStatus.PENDING.value,
            )
            .values(status=ScheduledJobStatus.CANCELLED.value, completed_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def resolve_ndr(
        self,
        ndr_id: int,
        resolution: str,
        resolved_by: str,
        notes: Optional[str] = None,
    ) -> NDREvent:
        """
        Mark an NDR resolved and cancel its pending workflow actions.

        Raises:
            NotFoundError: unknown NDR
            StateConflictError: already resolved or RTO triggered
        """
        ndr_event = await self._get_ndr(ndr_id)
        self._ensure_open(ndr_event, "resolve")

        now = utcnow()
        result = await self.db.execute(
            update(NDREvent)
            .where(NDREvent.id == ndr_id, NDREvent.status.notin_([s.value for s in TERMINAL_NDR_STATUSES]))
            .values(
                status=NDRStatus.RESOLVED.value,
                resolved_at=now,
                resolved_by=resolved_by,
                resolution_method=resolution,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self._ensure_open(await self._get_ndr(ndr_id), "resolve")

        cancelled = await self.cancel_pending_jobs(ndr_id)
        ndr_event = await self._get_ndr(ndr_id)
        await self.record_action_result(
            ndr_event,
            ActionOutcome(
                action_type="manual_resolution",
                result=NDRActionResult.SUCCESS,
                metadata={"resolution": resolution, "notes": notes, "cancelled_jobs": cancelled},
            ),
            taken_by=resolved_by,
        )
        logger.info(f"[NDR] NDR {ndr_id} resolved by {resolved_by} ({resolution}); cancelled {cancelled} jobs")
        return ndr_event

    def _ensure_open(self, ndr_event: NDREvent, verb: str) -> None:
        if ndr_event.status == NDRStatus.RESOLVED.value:
            raise StateConflictError(
                f"Cannot {verb} NDR {ndr_event.id}: already resolved",
                code="NDR_ALREADY_RESOLVED",
                details={"ndr_id": ndr_event.id},
            )
        if ndr_event.status == NDRStatus.RTO_TRIGGERED.value:
            raise StateConflictError(
                f"Cannot {verb} NDR {ndr_event.id}: RTO already triggered",
                code="NDR_RTO_TRIGGERED",
                details={"ndr_id": ndr_event.id},
            )

    async def escalate_ndr(self, ndr_id: int, reason: str) -> NDREvent:
        ndr_event = await self._get_ndr(ndr_id)
        if ndr_event.status == NDRStatus.ESCALATED.value:
            logger.warning(f"[NDR] NDR {ndr_id} already escalated")
            return ndr_event
        self._ensure_open(ndr_event, "escalate")

        ndr_event.status = NDRStatus.ESCALATED.value
        ndr_event.escalated_at = utcnow()
        ndr_event.escalation_reason = reason
        await self.db.flush()
        logger.warning(f"[NDR] NDR {ndr_id} escalated: {reason}")
        return ndr_event

    async def get_ndr(self, ndr_id: int, company_id: Optional[int] = None) -> NDREvent:
        ndr_event = await self._get_ndr(ndr_id)
        if company_id is not None and ndr_event.company_id != company_id:
            raise NotFoundError(f"NDR event {ndr_id} not found", code="NDR_NOT_FOUND", details={"ndr_id": ndr_id})
        return ndr_event

    async def trigger_manual_rto(self, ndr_id: int, reason: str, requested_by: str) -> RTOEvent:
        """
        Seller-requested return to origin for an open NDR.

        Raises:
            StateConflictError: NDR already resolved or RTO triggered
            InsufficientBalanceError: wallet cannot cover the RTO charge
        """
        ndr_event = await self._get_ndr(ndr_id)
        self._ensure_open(ndr_event, "trigger RTO for")

        rto_event = await RTOService(self.db, self.executor.notifier).trigger_rto(
            ndr_event.shipment_id,
            reason,
            ndr_event_id=ndr_event.id,
            triggered_by=RTOTriggeredBy.MANUAL,
        )
        cancelled = await self.cancel_pending_jobs(ndr_id)
        await self.record_action_result(
            await self._get_ndr(ndr_id),
            ActionOutcome(
                action_type=NDRActionType.TRIGGER_RTO.value,
                result=NDRActionResult.SUCCESS,
                metadata={
                    "rto_event_id": rto_event.id,
                    "reverse_awb": rto_event.reverse_awb,
                    "reason": reason,
                    "cancelled_jobs": cancelled,
                },
            ),
            taken_by=requested_by,
            action="manual_rto",
        )
        return rto_event

    # ------------------------------------------------------------------
    # Auto-RTO
    # ------------------------------------------------------------------

    async def _attempt_count(self, shipment_id: int) -> int:
        result = await self.db.execute(
            select(func.count(NDREvent.id)).where(NDREvent.shipment_id == shipment_id)
        )
        return result.scalar_one()

    async def _auto_rto_decision(
        self,
        ndr_event: NDREvent,
        workflow: Workflow,
        now: Optional[datetime] = None,
    ) -> Tuple[bool, str]:
        if not workflow.auto_trigger_rto:
            return False, f"Auto-RTO disabled for {workflow.ndr_type}"

        now = now or utcnow()
        attempts = await self._attempt_count(ndr_event.shipment_id)
        hours_open = (now - ndr_event.detected_at).total_seconds() / 3600

        if workflow.max_attempts and attempts >= workflow.max_attempts:
            return True, f"Max delivery attempts reached ({attempts}/{workflow.max_attempts})"
        if workflow.max_hours and hours_open >= workflow.max_hours:
            return True, f"NDR unresolved for {hours_open:.0f}h (limit {workflow.max_hours}h)"
        return False, "Auto-RTO thresholds not reached"

    async def _execute_auto_rto(self, ndr_event: NDREvent, reason: str, taken_by: str) -> ActionOutcome:
        outcome = await self.executor.execute(
            NDRActionType.TRIGGER_RTO.value, ndr_event, {"reason": f"Auto-RTO: {reason}"}
        )
        await self.record_action_result(ndr_event, outcome, taken_by=taken_by, action="auto_rto")
        return outcome

    async def check_and_trigger_auto_rto(self, ndr_id: int) -> Dict[str, Any]:
        ndr_event = await self._get_ndr(ndr_id)
        if ndr_event.status == NDRStatus.RTO_TRIGGERED.value or ndr_event.auto_rto_triggered:
            return {"triggered": False, "reason": "RTO already triggered", "rto_event_id": None}
        if ndr_event.status == NDRStatus.RESOLVED.value:
            return {"triggered": False, "reason": "NDR already resolved", "rto_event_id": None}

        workflow = await get_workflow(self.db, ndr_event.ndr_type, ndr_event.company_id)
        should_trigger, reason = await self._auto_rto_decision(ndr_event, workflow)
        if not should_trigger:
            return {"triggered": False, "reason": reason, "rto_event_id": None}

        outcome = await self._execute_auto_rto(ndr_event, reason, taken_by="system:auto_rto")
        if not outcome.success:
            return {"triggered": False, "reason": f"RTO failed: {outcome.error}", "rto_event_id": None}
        return {"triggered": True, "reason": reason, "rto_event_id": outcome.metadata.get("rto_event_id")}

    # ------------------------------------------------------------------
    # Deadline sweep
    # ------------------------------------------------------------------

    async def _claim_overdue(self, ndr_id: int, now: datetime) -> bool:
        lease_until = now + timedelta(seconds=settings.NDR_SWEEP_INTERVAL_SECONDS)
        result = await self.db.execute(
            update(NDREvent)
            .where(
                NDREvent.id == ndr_id,
                NDREvent.status.in_(OPEN_STATUSES),
                NDREvent.resolution_deadline < now,
                NDREvent.auto_rto_triggered.is_(False),
            )
            .values(resolution_deadline=lease_until)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def check_resolution_deadlines(self) -> int:
        """Handle one batch of overdue NDRs. Returns the number processed."""
        now = utcnow()
        result = await self.db.execute(
            select(NDREvent.id)
            .where(
                NDREvent.status.in_(OPEN_STATUSES),
                NDREvent.resolution_deadline < now,
                NDREvent.auto_rto_triggered.is_(False),
            )
            .order_by(NDREvent.resolution_deadline)
            .limit(settings.NDR_SWEEP_BATCH_SIZE)
        )
        ndr_ids: List[int] = list(result.scalars().all())
        if not ndr_ids:
            return 0

        logger.info(f"[NDR] Deadline sweep: {len(ndr_ids)} overdue NDRs")
        processed = 0
        for ndr_id in ndr_ids:
            if not await self._claim_overdue(ndr_id, now):
                continue
            try:
                ndr_event = await self._get_ndr(ndr_id)
                workflow = await get_workflow(self.db, ndr_event.ndr_type, ndr_event.company_id)
                should_trigger, reason = await self._auto_rto_decision(ndr_event, workflow, now)

                if should_trigger:
                    outcome = await self._execute_auto_rto(ndr_event, reason, taken_by="system:deadline_sweep")
                    if not outcome.success:
                        await self.escalate_ndr(ndr_id, f"Auto-RTO failed: {outcome.error}")
                else:
                    await self.escalate_ndr(ndr_id, f"Resolution deadline passed ({reason})")

                await self.db.commit()
                processed += 1
            except Exception as e:
                logger.error(f"[NDR] Deadline handling failed for NDR {ndr_id}: {e}")
                await self.db.rollback()

        return processed
