"""Price synchronization engine.

Architecture:
    Scheduler/API → SyncOrchestrator → rules → classifier → store
                                  ↘ ConflictDetector → ConflictDispatcher → strategies

Components:
- **SyncOrchestrator**: Runs sync jobs per tenant and cadence
- **RuleCache** / **apply_rules**: Ordered pricing rule evaluation
- **classify**: Noise and guardrail decision for a proposed price
- **ConflictDetector**: Finds local/ERP divergences
- **ConflictDispatcher**: Auto-resolves or queues conflicts for review
- **EventBus**: Decoupled job and conflict notifications
- **PriceSyncEngine**: Facade used by the API, CLI and scheduler
"""

from pricesync.engine.classifier import ChangeReason, Classification, classify
from pricesync.engine.dispatcher import ConflictDispatcher, ManualResolution, ResolveResult
from pricesync.engine.erp import ErpClient, ErpFact, HttpErpClient
from pricesync.engine.errors import (
    ConcurrentModificationError,
    ConflictNotFoundError,
    ConflictStateError,
    EntityNotFoundError,
    ErpAuthError,
    ErpError,
    ErpTimeoutError,
    ErpUnavailableError,
    InvalidTransitionError,
    JobNotFoundError,
    PriceSyncError,
    RuleError,
    RuleNotFoundError,
)
from pricesync.engine.events import EventBus
from pricesync.engine.orchestrator import RecordOutcome, SyncOrchestrator
from pricesync.engine.rules import RuleCache, apply_rules
from pricesync.engine.service import PriceSyncEngine, PricingRuleInput

__all__ = [
    # Classification
    "ChangeReason",
    "Classification",
    "classify",
    # Conflicts
    "ConflictDispatcher",
    "ManualResolution",
    "ResolveResult",
    # ERP
    "ErpClient",
    "ErpFact",
    "HttpErpClient",
    # Errors
    "ConcurrentModificationError",
    "ConflictNotFoundError",
    "ConflictStateError",
    "EntityNotFoundError",
    "ErpAuthError",
    "ErpError",
    "ErpTimeoutError",
    "ErpUnavailableError",
    "InvalidTransitionError",
    "JobNotFoundError",
    "PriceSyncError",
    "RuleError",
    "RuleNotFoundError",
    # Orchestration
    "EventBus",
    "RecordOutcome",
    "SyncOrchestrator",
    "RuleCache",
    "apply_rules",
    "PriceSyncEngine",
    "PricingRuleInput",
]
