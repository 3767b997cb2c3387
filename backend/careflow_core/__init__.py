from .audit import AuditTrail
from .catalog import CatalogReadModel, Category, Product, SubscriptionDuration
from .errors import ConcurrentModification, FlowError, IncompleteForm, InvalidTransition
from .forms import FormRequirementResolver
from .hooks import CollaboratorHooks, FlowEvent
from .lifecycle import FlowLifecycle
from .locks import FlowLockManager
from .models import CANONICAL_PATH, FLOW_STATES, TERMINAL_STATES, Flow, FlowSnapshot, PricingSnapshot
from .orchestrator import FlowOrchestrator
from .pricing import PricingEngine, PricingRule
from .recommendations import RecommendationEngine

__all__ = [
    "CANONICAL_PATH",
    "FLOW_STATES",
    "TERMINAL_STATES",
    "AuditTrail",
    "CatalogReadModel",
    "Category",
    "CollaboratorHooks",
    "ConcurrentModification",
    "Flow",
    "FlowError",
    "FlowEvent",
    "FlowLifecycle",
    "FlowLockManager",
    "FlowOrchestrator",
    "FlowSnapshot",
    "FormRequirementResolver",
    "IncompleteForm",
    "InvalidTransition",
    "PricingEngine",
    "PricingRule",
    "PricingSnapshot",
    "Product",
    "RecommendationEngine",
    "SubscriptionDuration",
]
