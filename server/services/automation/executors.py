"""Node executors - one handler per node type, dispatched through a registry.

Handlers take (run, node, context) and return a StepOutcome. They raise
ExecutionError for transient failures and ConfigurationError for problems a
retry cannot fix; `NodeExecutors.execute` turns both into error outcomes.
"""

import asyncio
from datetime import timedelta
from functools import partial
from typing import Any, Callable, Dict, TYPE_CHECKING

from constants import (
    NODE_TRIGGER,
    NODE_EMAIL,
    NODE_DELAY,
    NODE_BRANCH,
    NODE_FILTER,
    NODE_AB_TEST,
    NODE_LIST_STATUS_BRANCH,
    NODE_ADD_TO_LIST,
    NODE_REMOVE_FROM_LIST,
    LIST_STATUS_ACTIVE,
    EXIT_FILTERED_OUT,
)
from core.logging import get_logger
from models.automation import ContactAutomation
from models.database import utcnow
from .conditions import ComparisonOptions, evaluate
from .exceptions import ConfigurationError, ExecutionError, ValidationError
from .models import StepOutcome
from .variants import select_variant

if TYPE_CHECKING:
    from core.config import Settings
    from .contact_lists import ContactList
    from .messaging import MessageSender

logger = get_logger(__name__)

Context = Dict[str, Any]


# =============================================================================
# Handlers
# =============================================================================

async def handle_trigger(run: ContactAutomation, node, context: Context) -> StepOutcome:
    return StepOutcome.advance(node.next_node_id)


async def handle_email(run: ContactAutomation, node, context: Context, *,
                       sender: "MessageSender", timeout: float) -> StepOutcome:
    template_id = node.config.template_id
    try:
        message_id = await asyncio.wait_for(
            sender.send(
                run.workspace_id,
                template_id,
                run.contact_email,
                context,
                idempotency_key=f"{run.id}:{node.id}",
            ),
            timeout=timeout,
        )
    except asyncio.TimeoutError as e:
        raise ExecutionError(f"Email send timed out after {timeout}s") from e

    logger.info("Automation email sent",
               run_id=run.id, node_id=node.id, template_id=template_id, message_id=message_id)
    return StepOutcome.advance(node.next_node_id, template_id=template_id, message_id=message_id)


async def handle_delay(run: ContactAutomation, node, context: Context) -> StepOutcome:
    duration: timedelta = node.config.to_timedelta()
    wait_until = utcnow() + duration
    return StepOutcome.advance(
        node.next_node_id,
        wait_until=wait_until,
        delay_seconds=int(duration.total_seconds()),
    )


async def handle_branch(run: ContactAutomation, node, context: Context, *,
                        options: ComparisonOptions) -> StepOutcome:
    for path in node.config.paths:
        if evaluate(path.conditions, context, options):
            return StepOutcome.advance(path.next_node_id, path_id=path.id)
    return StepOutcome.advance(node.config.default_path_id, path_id=None)


async def handle_filter(run: ContactAutomation, node, context: Context, *,
                        options: ComparisonOptions) -> StepOutcome:
    if evaluate(node.config.conditions, context, options):
        return StepOutcome.advance(node.config.continue_node_id, matched=True)
    if node.config.exit_node_id:
        return StepOutcome.advance(node.config.exit_node_id, matched=False)
    return StepOutcome.exit(EXIT_FILTERED_OUT, matched=False)


async def handle_ab_test(run: ContactAutomation, node, context: Context) -> StepOutcome:
    variant = select_variant(run.contact_email, node.id, node.config.variants)
    return StepOutcome.advance(variant.next_node_id, variant_id=variant.id)


async def handle_list_status_branch(run: ContactAutomation, node, context: Context, *,
                                    contact_lists: "ContactList") -> StepOutcome:
    config = node.config
    status = await contact_lists.get_status(run.workspace_id, run.contact_email, config.list_id)
    if status is None:
        next_node_id = config.not_in_list_node_id
    elif status == LIST_STATUS_ACTIVE:
        next_node_id = config.active_node_id
    else:
        next_node_id = config.non_active_node_id
    return StepOutcome.advance(next_node_id, list_status=status)


async def handle_add_to_list(run: ContactAutomation, node, context: Context, *,
                             contact_lists: "ContactList") -> StepOutcome:
    config = node.config
    await _require_list(contact_lists, run.workspace_id, config.list_id)
    await contact_lists.set_status(run.workspace_id, run.contact_email, config.list_id, config.status)
    return StepOutcome.advance(node.next_node_id, list_id=config.list_id, status=config.status)


async def handle_remove_from_list(run: ContactAutomation, node, context: Context, *,
                                  contact_lists: "ContactList") -> StepOutcome:
    config = node.config
    await _require_list(contact_lists, run.workspace_id, config.list_id)
    await contact_lists.remove(run.workspace_id, run.contact_email, config.list_id)
    return StepOutcome.advance(node.next_node_id, list_id=config.list_id)


async def _require_list(contact_lists: "ContactList", workspace_id: str, list_id: str) -> None:
    if not await contact_lists.list_exists(workspace_id, list_id):
        raise ConfigurationError(f"List {list_id} does not exist")


# =============================================================================
# Dispatch
# =============================================================================

class NodeExecutors:
    """Executes individual automation nodes using registry-based dispatch."""

    def __init__(self, sender: "MessageSender", contact_lists: "ContactList", settings: "Settings"):
        self.sender = sender
        self.contact_lists = contact_lists
        self.settings = settings
        self.options = ComparisonOptions.from_settings(settings)
        self._handlers = self._build_handler_registry()

    def _build_handler_registry(self) -> Dict[str, Callable]:
        """Build handler registry with dependencies bound via partial."""
        return {
            NODE_TRIGGER: handle_trigger,
            NODE_EMAIL: partial(handle_email, sender=self.sender,
                                timeout=self.settings.email_send_timeout),
            NODE_DELAY: handle_delay,
            NODE_BRANCH: partial(handle_branch, options=self.options),
            NODE_FILTER: partial(handle_filter, options=self.options),
            NODE_AB_TEST: handle_ab_test,
            NODE_LIST_STATUS_BRANCH: partial(handle_list_status_branch, contact_lists=self.contact_lists),
            NODE_ADD_TO_LIST: partial(handle_add_to_list, contact_lists=self.contact_lists),
            NODE_REMOVE_FROM_LIST: partial(handle_remove_from_list, contact_lists=self.contact_lists),
        }

    async def execute(self, run: ContactAutomation, node, context: Context) -> StepOutcome:
        """Execute one node for one run; never raises for node failures."""
        handler = self._handlers.get(node.type)
        if handler is None:
            return StepOutcome.failure(f"No executor for node type {node.type}", retryable=False)

        try:
            return await handler(run, node, context)
        except (ConfigurationError, ValidationError) as e:
            logger.warning("Node configuration error",
                          run_id=run.id, node_id=node.id, node_type=node.type, error=str(e))
            return StepOutcome.failure(str(e), retryable=False)
        except ExecutionError as e:
            logger.warning("Node execution failed",
                          run_id=run.id, node_id=node.id, node_type=node.type, error=str(e))
            return StepOutcome.failure(str(e), retryable=True)
        except Exception as e:
            # Unclassified failures (DB contention, network) are treated as transient
            logger.error("Unexpected node error",
                        run_id=run.id, node_id=node.id, node_type=node.type, error=str(e))
            return StepOutcome.failure(f"{type(e).__name__}: {e}", retryable=True)
