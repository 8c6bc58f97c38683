"""Tests for list membership changes feeding back into triggers."""

import pytest

from constants import list_event_kind

from builders import WORKSPACE, definition, email_node, event, trigger_node


@pytest.mark.parametrize("old,new,kind", [
    (None, "active", "list.subscribed"),
    (None, "pending", "list.pending"),
    ("pending", "active", "list.confirmed"),
    ("unsubscribed", "active", "list.resubscribed"),
    ("bounced", "active", "list.resubscribed"),
    ("active", "unsubscribed", "list.unsubscribed"),
    ("active", "complained", "list.complained"),
    ("active", None, "list.removed"),
])
def test_list_event_kind(old, new, kind):
    assert list_event_kind(old, new) == kind


async def test_membership_changes_are_recorded(contact_lists, timeline, service):
    await contact_lists.create_list(WORKSPACE, "Newsletter", list_id="news")

    await contact_lists.set_status(WORKSPACE, "alice@example.com", "news", "pending")
    await contact_lists.set_status(WORKSPACE, "alice@example.com", "news", "active")
    await contact_lists.set_status(WORKSPACE, "alice@example.com", "news", "active")

    events = await service.list_timeline(WORKSPACE, "alice@example.com")
    assert [e.kind for e in events] == ["list.pending", "list.confirmed"]
    assert events[1].entity_id == "news"
    assert events[1].changes == {"status": {"old": "pending", "new": "active"}}


async def test_add_to_list_enrolls_into_list_automation(service, create_live, contact_lists, sender):
    await contact_lists.create_list(WORKSPACE, "Newsletter", list_id="news")
    onboarding = await create_live(definition([
        trigger_node("add"),
        {"id": "add", "type": "add_to_list", "config": {"list_id": "news"}},
    ], name="Onboarding"))
    newsletter = await create_live(definition([
        trigger_node("hello"),
        email_node("hello", template_id="tpl-newsletter"),
    ], event_kind="list.subscribed", list_id="news", name="Newsletter welcome"))

    result = await service.ingest_event(event())

    assert [r.automation_id for r in result.runs] == [onboarding.id]
    assert [s["template_id"] for s in sender.sent] == ["tpl-newsletter"]

    runs = await service.list_contact_runs(WORKSPACE, "alice@example.com")
    assert {r.automation_id: r.status for r in runs} == {
        onboarding.id: "completed",
        newsletter.id: "completed",
    }
    nested = [r for r in runs if r.automation_id == newsletter.id][0]
    assert nested.context["event_kind"] == "list.subscribed"
    assert nested.context["status"] == "active"


async def test_other_list_does_not_enroll(service, create_live, contact_lists, sender):
    await contact_lists.create_list(WORKSPACE, "Promo", list_id="promo")
    await create_live(definition([
        trigger_node("hello"), email_node("hello"),
    ], event_kind="list.subscribed", list_id="news"))

    await contact_lists.set_status(WORKSPACE, "alice@example.com", "promo", "active")

    assert sender.sent == []


async def test_cascade_is_bounded(service, create_live, contact_lists, repository):
    # Two lists feeding each other: each subscription removes and re-adds the
    # contact on the other list, which would loop forever without a depth cap
    for list_id in ("ping", "pong"):
        await contact_lists.create_list(WORKSPACE, list_id, list_id=list_id)
    for source, target in (("ping", "pong"), ("pong", "ping")):
        await create_live(definition([
            trigger_node("drop"),
            {"id": "drop", "type": "remove_from_list", "next_node_id": "add",
             "config": {"list_id": target}},
            {"id": "add", "type": "add_to_list", "config": {"list_id": target}},
        ], event_kind="list.subscribed", list_id=source, frequency="every_time",
            name=f"{source} to {target}"))

    await contact_lists.set_status(WORKSPACE, "alice@example.com", "ping", "active")

    runs = await service.list_contact_runs(WORKSPACE, "alice@example.com")
    assert 0 < len(runs) < 20
    assert all(r.status == "completed" for r in runs)
