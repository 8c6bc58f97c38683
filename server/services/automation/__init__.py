"""Automation engine package.

Trigger-driven contact workflows with:
- Declarative node graphs validated at save/activate time
- Synchronous walk to the first suspension point on enrollment
- Polling scheduler with row claims and optimistic version checks
- Retry with exponential backoff for transient node failures
"""

from .exceptions import (
    AutomationError,
    ValidationError,
    GraphError,
    ExecutionError,
    MessageSendError,
    ConfigurationError,
    ConcurrencyConflict,
    AutomationNotFound,
    InvalidTransition,
)
from .models import (
    NodeAction,
    OutcomeKind,
    StepOutcome,
    RetryPolicy,
)
from .conditions import (
    ComparisonOptions,
    evaluate,
    evaluate_condition,
    validate_conditions,
    get_nested_value,
    OPERATORS,
)
from .variants import select, select_variant
from .graph import NodeGraph
from .repository import AutomationRepository
from .contact_lists import ContactList, DatabaseContactLists
from .messaging import MessageSender, HttpMessageSender
from .executors import NodeExecutors
from .engine import AutomationEngine
from .triggers import TriggerMatcher, trigger_matches
from .timeline import TimelineService
from .scheduler import AutomationScheduler
from .lifecycle import LifecycleController
from .service import AutomationService, parse_definition

__all__ = [
    # Exceptions
    "AutomationError",
    "ValidationError",
    "GraphError",
    "ExecutionError",
    "MessageSendError",
    "ConfigurationError",
    "ConcurrencyConflict",
    "AutomationNotFound",
    "InvalidTransition",
    # Models
    "NodeAction",
    "OutcomeKind",
    "StepOutcome",
    "RetryPolicy",
    # Conditions
    "ComparisonOptions",
    "evaluate",
    "evaluate_condition",
    "validate_conditions",
    "get_nested_value",
    "OPERATORS",
    # Variants
    "select",
    "select_variant",
    # Graph
    "NodeGraph",
    # Collaborators
    "AutomationRepository",
    "ContactList",
    "DatabaseContactLists",
    "MessageSender",
    "HttpMessageSender",
    # Engine
    "NodeExecutors",
    "AutomationEngine",
    "TriggerMatcher",
    "trigger_matches",
    "TimelineService",
    "AutomationScheduler",
    "LifecycleController",
    "AutomationService",
    "parse_definition",
]
