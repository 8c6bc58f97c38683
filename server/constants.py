"""Centralized constants for automation node types, statuses and event kinds.

This module provides a single source of truth for the string values stored in
the database and exchanged on the timeline.
"""

from typing import FrozenSet

# =============================================================================
# NODE TYPES
# =============================================================================

NODE_TRIGGER = 'trigger'
NODE_EMAIL = 'email'
NODE_DELAY = 'delay'
NODE_BRANCH = 'branch'
NODE_FILTER = 'filter'
NODE_AB_TEST = 'ab_test'
NODE_LIST_STATUS_BRANCH = 'list_status_branch'
NODE_ADD_TO_LIST = 'add_to_list'
NODE_REMOVE_FROM_LIST = 'remove_from_list'

# =============================================================================
# AUTOMATION / RUN STATUSES
# =============================================================================

AUTOMATION_DRAFT = 'draft'
AUTOMATION_LIVE = 'live'
AUTOMATION_PAUSED = 'paused'

RUN_ACTIVE = 'active'
RUN_COMPLETED = 'completed'
RUN_EXITED = 'exited'
RUN_FAILED = 'failed'

FREQUENCY_ONCE = 'once'
FREQUENCY_EVERY_TIME = 'every_time'

# =============================================================================
# EXIT REASONS (automation.end)
# =============================================================================

EXIT_COMPLETED = 'completed'
EXIT_FILTERED_OUT = 'filtered_out'
EXIT_FAILED = 'failed'
EXIT_AUTOMATION_DELETED = 'automation_deleted'

# =============================================================================
# TIMELINE EVENT KINDS
# =============================================================================

EVENT_AUTOMATION_START = 'automation.start'
EVENT_AUTOMATION_END = 'automation.end'
EVENT_CUSTOM = 'custom_event'

LIST_EVENT_KINDS: FrozenSet[str] = frozenset([
    'list.subscribed',
    'list.pending',
    'list.confirmed',
    'list.resubscribed',
    'list.unsubscribed',
    'list.bounced',
    'list.complained',
    'list.removed',
    'list.status_changed',
])

SEGMENT_EVENT_KINDS: FrozenSet[str] = frozenset([
    'segment.joined',
    'segment.left',
])

CONTACT_EVENT_KINDS: FrozenSet[str] = frozenset([
    'contact.created',
    'contact.updated',
])

# Kinds an automation trigger may listen to
TRIGGER_EVENT_KINDS: FrozenSet[str] = (
    LIST_EVENT_KINDS |
    SEGMENT_EVENT_KINDS |
    CONTACT_EVENT_KINDS |
    frozenset([EVENT_CUSTOM])
)

# =============================================================================
# CONTACT LIST STATUSES
# =============================================================================

LIST_STATUS_ACTIVE = 'active'
LIST_STATUS_PENDING = 'pending'
LIST_STATUS_UNSUBSCRIBED = 'unsubscribed'
LIST_STATUS_BOUNCED = 'bounced'
LIST_STATUS_COMPLAINED = 'complained'

LIST_STATUSES: FrozenSet[str] = frozenset([
    LIST_STATUS_ACTIVE,
    LIST_STATUS_PENDING,
    LIST_STATUS_UNSUBSCRIBED,
    LIST_STATUS_BOUNCED,
    LIST_STATUS_COMPLAINED,
])

# Older add_to_list configs stored 'subscribed', which is not a list status
LEGACY_LIST_STATUS_ALIASES = {
    'subscribed': LIST_STATUS_ACTIVE,
}


def list_event_kind(old_status, new_status) -> str:
    """Map a membership transition to its semantic timeline kind.

    Args:
        old_status: Previous status, or None when the contact was not in the list
        new_status: New status, or None when the membership was removed

    Returns:
        Event kind such as 'list.subscribed' or 'list.confirmed'
    """
    if new_status is None:
        return 'list.removed'

    if old_status is None:
        return {
            LIST_STATUS_ACTIVE: 'list.subscribed',
            LIST_STATUS_PENDING: 'list.pending',
            LIST_STATUS_UNSUBSCRIBED: 'list.unsubscribed',
            LIST_STATUS_BOUNCED: 'list.bounced',
            LIST_STATUS_COMPLAINED: 'list.complained',
        }.get(new_status, 'list.subscribed')

    if old_status == LIST_STATUS_PENDING and new_status == LIST_STATUS_ACTIVE:
        return 'list.confirmed'
    if old_status in (LIST_STATUS_UNSUBSCRIBED, LIST_STATUS_BOUNCED, LIST_STATUS_COMPLAINED) \
            and new_status == LIST_STATUS_ACTIVE:
        return 'list.resubscribed'

    return {
        LIST_STATUS_UNSUBSCRIBED: 'list.unsubscribed',
        LIST_STATUS_BOUNCED: 'list.bounced',
        LIST_STATUS_COMPLAINED: 'list.complained',
        LIST_STATUS_PENDING: 'list.pending',
        LIST_STATUS_ACTIVE: 'list.subscribed',
    }.get(new_status, 'list.status_changed')
