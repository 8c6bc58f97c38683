"""Test doubles and definition builders shared by the automation tests."""

import asyncio
from typing import Any, Dict, List, Optional

from models.automation import ActivityEvent

WORKSPACE = "ws-test"


class FakeSender:
    """Records sends; can be told to fail or stall."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.fail_with: Optional[Exception] = None
        self.delay: float = 0

    async def send(self, workspace_id, template_id, email, context, *, idempotency_key):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append({
            "workspace_id": workspace_id,
            "template_id": template_id,
            "email": email,
            "context": context,
            "idempotency_key": idempotency_key,
        })
        return f"msg-{len(self.sent)}"


def trigger_node(next_node_id=None, node_id="start"):
    return {"id": node_id, "type": "trigger", "config": {}, "next_node_id": next_node_id}


def email_node(node_id, template_id="tpl-welcome", next_node_id=None):
    return {"id": node_id, "type": "email", "config": {"template_id": template_id},
            "next_node_id": next_node_id}


def delay_node(node_id, duration, unit="minutes", next_node_id=None):
    return {"id": node_id, "type": "delay", "config": {"duration": duration, "unit": unit},
            "next_node_id": next_node_id}


def definition(nodes, event_kind="contact.created", frequency="once", name="Welcome", **trigger):
    return {
        "name": name,
        "trigger": {"event_kind": event_kind, "frequency": frequency, **trigger},
        "root_node_id": nodes[0]["id"],
        "nodes": nodes,
    }


def event(kind="contact.created", email="alice@example.com", workspace_id=WORKSPACE, **kwargs):
    return ActivityEvent(workspace_id=workspace_id, contact_email=email, kind=kind, **kwargs)
