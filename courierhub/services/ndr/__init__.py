from courierhub.services.ndr.classifier import NDRClassifier, classify_by_keywords
from courierhub.services.ndr.detection import NDRDetectionService
from courierhub.services.ndr.resolution import NDRResolutionService
from courierhub.services.ndr.workflows import DEFAULT_WORKFLOWS, get_workflow

__all__ = [
    "NDRClassifier",
    "classify_by_keywords",
    "NDRDetectionService",
    "NDRResolutionService",
    "DEFAULT_WORKFLOWS",
    "get_workflow",
]
