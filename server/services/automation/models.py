"""Automation engine step and retry models."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Any, Optional

from constants import RUN_EXITED, EXIT_FILTERED_OUT


class NodeAction(str, Enum):
    """Actions recorded in the node execution audit trail."""
    ENTERED = "entered"        # Run created at the root node
    PROCESSED = "processed"    # Node ran, run moved on
    DELAYED = "delayed"        # Node ran, run suspended until scheduled_at
    RETRYING = "retrying"      # Node failed, retry scheduled
    COMPLETED = "completed"    # Run reached the end of the graph
    EXITED = "exited"          # Run left early (filter, deletion)
    FAILED = "failed"          # Run failed permanently


class OutcomeKind(str, Enum):
    ADVANCE = "advance"
    TERMINAL = "terminal"
    ERROR = "error"


@dataclass
class StepOutcome:
    """Result of executing one node for one run.

    advance: move to next_node_id, optionally suspended until wait_until
    terminal: run ends with status completed or exited
    error: node failed; retryable decides whether backoff applies
    """
    kind: OutcomeKind
    next_node_id: Optional[str] = None
    wait_until: Optional[datetime] = None
    status: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False
    output: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def advance(cls, next_node_id: Optional[str], wait_until: Optional[datetime] = None,
                **output) -> "StepOutcome":
        return cls(OutcomeKind.ADVANCE, next_node_id=next_node_id or None,
                   wait_until=wait_until, output=output)

    @classmethod
    def exit(cls, reason: str = EXIT_FILTERED_OUT, **output) -> "StepOutcome":
        return cls(OutcomeKind.TERMINAL, status=RUN_EXITED, reason=reason, output=output)

    @classmethod
    def failure(cls, error: str, retryable: bool, **output) -> "StepOutcome":
        return cls(OutcomeKind.ERROR, error=error, retryable=retryable, output=output)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict for the audit trail."""
        d: Dict[str, Any] = {"outcome": self.kind.value}
        if self.kind == OutcomeKind.ADVANCE:
            d["next_node_id"] = self.next_node_id
            if self.wait_until:
                d["wait_until"] = self.wait_until.isoformat()
        elif self.kind == OutcomeKind.TERMINAL:
            d["status"] = self.status
            d["reason"] = self.reason
        else:
            d["error"] = self.error
            d["retryable"] = self.retryable
        d.update(self.output)
        return d


@dataclass
class RetryPolicy:
    """Retry configuration for failed node executions.

    Implements exponential backoff with configurable limits.
    Delay formula: min(initial_delay * (backoff_multiplier ^ (attempt - 1)), max_delay)
    """
    max_attempts: int = 3
    initial_delay: float = 60.0      # seconds
    max_delay: float = 3600.0        # seconds
    backoff_multiplier: float = 2.0

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay before the next retry.

        Args:
            attempt: Retry number, 1 for the first retry

        Returns:
            Delay in seconds
        """
        delay = self.initial_delay * (self.backoff_multiplier ** max(attempt - 1, 0))
        return min(delay, self.max_delay)

    def should_retry(self, retryable: bool, attempt: int, max_attempts: Optional[int] = None) -> bool:
        """Whether a failure on the given attempt gets another try.

        Args:
            retryable: Whether the error kind is transient
            attempt: Retry count after recording this failure
            max_attempts: Per-run override of max_attempts
        """
        limit = self.max_attempts if max_attempts is None else max_attempts
        return retryable and attempt < limit

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.default_max_retries,
            initial_delay=settings.retry_initial_delay,
            max_delay=settings.retry_max_delay,
            backoff_multiplier=settings.retry_backoff_multiplier,
        )


def audit_entry(node, action: NodeAction, output: Optional[Dict[str, Any]] = None,
                node_id: Optional[str] = None) -> Dict[str, Any]:
    """Build a node execution row for the repository.

    Args:
        node: Node the step ran on, or None when it is missing from the graph
        action: Audit action
        output: Step output payload
        node_id: Id to record when node is None
    """
    return {
        "node_id": node.id if node is not None else node_id,
        "node_type": node.type if node is not None else None,
        "action": action.value,
        "output": output or {},
    }
