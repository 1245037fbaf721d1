"""
NDR resolution workflows

A workflow is an ordered list of action descriptors plus auto-RTO conditions.
Lookup order: company-specific row, global row (company_id NULL), then the
built-in default for the NDR type.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from courierhub.models.ndr import NDRActionType, NDRType, NDRWorkflow

logger = logging.getLogger(__name__)


def _action(sequence: int, action_type: NDRActionType, delay_minutes: int = 0, auto_execute: bool = True,
            **config) -> Dict[str, Any]:
    return {
        "sequence": sequence,
        "action_type": action_type.value,
        "delay_minutes": delay_minutes,
        "auto_execute": auto_execute,
        "action_config": config,
    }


DEFAULT_WORKFLOWS: Dict[NDRType, Dict[str, Any]] = {
    NDRType.ADDRESS_ISSUE: {
        "name": "Address issue",
        "actions": [
            _action(1, NDRActionType.SEND_WHATSAPP, template="ndr_address_issue"),
            _action(2, NDRActionType.SEND_EMAIL, template="ndr_address_issue"),
            _action(3, NDRActionType.CALL_CUSTOMER, 120, template="ndr_address_call"),
            _action(4, NDRActionType.UPDATE_ADDRESS, 1440, auto_execute=False),
        ],
        "rto_trigger_conditions": {"auto_trigger": True, "max_attempts": 3, "max_hours": 72},
    },
    NDRType.CUSTOMER_UNAVAILABLE: {
        "name": "Customer unavailable",
        "actions": [
            _action(1, NDRActionType.SEND_WHATSAPP, template="ndr_customer_unavailable"),
            _action(2, NDRActionType.CALL_CUSTOMER, 240, template="ndr_reschedule_call"),
            _action(3, NDRActionType.REQUEST_REATTEMPT, 1440),
        ],
        "rto_trigger_conditions": {"auto_trigger": True, "max_attempts": 3, "max_hours": 72},
    },
    NDRType.REFUSED: {
        "name": "Refused by customer",
        "actions": [
            _action(1, NDRActionType.CALL_CUSTOMER, template="ndr_refused_call"),
            _action(2, NDRActionType.TRIGGER_RTO, 1440),
        ],
        "rto_trigger_conditions": {"auto_trigger": True, "max_attempts": 2, "max_hours": 48},
    },
    NDRType.PAYMENT_ISSUE: {
        "name": "COD payment issue",
        "actions": [
            _action(1, NDRActionType.SEND_WHATSAPP, template="ndr_payment_issue"),
            _action(2, NDRActionType.CALL_CUSTOMER, 60, template="ndr_payment_call"),
        ],
        "rto_trigger_conditions": {"auto_trigger": True, "max_attempts": 3, "max_hours": 72},
    },
    NDRType.OTHER: {
        "name": "Other",
        "actions": [
            _action(1, NDRActionType.SEND_EMAIL, template="ndr_generic"),
            _action(2, NDRActionType.CALL_CUSTOMER, 240, template="ndr_generic_call"),
        ],
        "rto_trigger_conditions": {"auto_trigger": False},
    },
}


@dataclass
class Workflow:
    """Resolved workflow, detached from any ORM row."""
    ndr_type: str
    name: str
    actions: List[Dict[str, Any]] = field(default_factory=list)
    rto_trigger_conditions: Dict[str, Any] = field(default_factory=dict)
    source: str = "default"  # company / global / default

    @property
    def ordered_actions(self) -> List[Dict[str, Any]]:
        return sorted(self.actions, key=lambda a: int(a.get("sequence", 0)))

    @property
    def auto_trigger_rto(self) -> bool:
        return bool(self.rto_trigger_conditions.get("auto_trigger"))

    @property
    def max_attempts(self) -> Optional[int]:
        return self.rto_trigger_conditions.get("max_attempts")

    @property
    def max_hours(self) -> Optional[float]:
        return self.rto_trigger_conditions.get("max_hours")


def _from_row(row: NDRWorkflow, source: str) -> Workflow:
    return Workflow(
        ndr_type=row.ndr_type,
        name=row.name or row.ndr_type,
        actions=list(row.actions or []),
        rto_trigger_conditions=dict(row.rto_trigger_conditions or {}),
        source=source,
    )


def default_workflow(ndr_type) -> Workflow:
    try:
        key = NDRType(ndr_type)
    except ValueError:
        key = NDRType.OTHER
    definition = DEFAULT_WORKFLOWS[key]
    return Workflow(
        ndr_type=key.value,
        name=definition["name"],
        actions=[dict(a, action_config=dict(a["action_config"])) for a in definition["actions"]],
        rto_trigger_conditions=dict(definition["rto_trigger_conditions"]),
    )


async def get_workflow(db: AsyncSession, ndr_type: str, company_id: Optional[int]) -> Workflow:
    """Company override, then global row, then built-in default."""
    ndr_type = ndr_type.value if isinstance(ndr_type, NDRType) else ndr_type

    if company_id is not None:
        result = await db.execute(
            select(NDRWorkflow).where(
                NDRWorkflow.company_id == company_id,
                NDRWorkflow.ndr_type == ndr_type,
                NDRWorkflow.is_active.is_(True),
            )
        )
        row = result.scalar_one_or_none()
        if row is not None:
            return _from_row(row, "company")

    result = await db.execute(
        select(NDRWorkflow).where(
            NDRWorkflow.company_id.is_(None),
            NDRWorkflow.ndr_type == ndr_type,
            NDRWorkflow.is_active.is_(True),
        )
    )
    row = result.scalar_one_or_none()
    if row is not None:
        return _from_row(row, "global")

    return default_workflow(ndr_type)
