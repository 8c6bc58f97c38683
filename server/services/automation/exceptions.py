"""Automation engine exception hierarchy."""


class AutomationError(Exception):
    """Base exception for all automation errors."""


class ValidationError(AutomationError):
    """Malformed automation or node configuration, rejected at save time."""


class GraphError(AutomationError):
    """Structurally invalid node graph (dangling reference, cycle, bad root)."""

    def __init__(self, message: str, node_id: str = None):
        self.node_id = node_id
        super().__init__(f"[{node_id}] {message}" if node_id else message)


class ExecutionError(AutomationError):
    """Transient failure during node execution. Retried with backoff."""


class MessageSendError(ExecutionError):
    """Outbound message provider rejected or failed the send."""


class ConfigurationError(AutomationError):
    """Configuration problem found at execution time. Never retried."""


class ConcurrencyConflict(AutomationError):
    """Run row changed under us (claimed elsewhere, exited or deleted)."""

    def __init__(self, run_id: str, expected_version: int):
        self.run_id = run_id
        self.expected_version = expected_version
        super().__init__(f"Run {run_id} no longer at version {expected_version}")


class AutomationNotFound(AutomationError):
    """Unknown or deleted automation."""

    def __init__(self, automation_id: str):
        self.automation_id = automation_id
        super().__init__(f"Automation {automation_id} not found")


class InvalidTransition(AutomationError):
    """Lifecycle transition not allowed from the current status."""

    def __init__(self, automation_id: str, current: str, target: str):
        self.automation_id = automation_id
        self.current = current
        self.target = target
        super().__init__(f"Automation {automation_id} cannot go from {current} to {target}")
