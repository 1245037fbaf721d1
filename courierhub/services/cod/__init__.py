from courierhub.services.cod.early_cod import EarlyCODService, EligibilityResult
from courierhub.services.cod.reconciliation import CODReconciliationService, ReconciliationResult
from courierhub.services.cod.remittance import CODRemittanceService, RemittanceBatchResult
from courierhub.services.cod.settlement import CODSettlementService

__all__ = [
    "EarlyCODService",
    "EligibilityResult",
    "CODReconciliationService",
    "ReconciliationResult",
    "CODRemittanceService",
    "RemittanceBatchResult",
    "CODSettlementService",
]
