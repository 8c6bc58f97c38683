"""Tests for trigger matching and enrollment frequency."""

import asyncio

from models.automation import Trigger
from services.automation import trigger_matches

from builders import WORKSPACE, definition, email_node, event, trigger_node


def welcome(**kwargs):
    return definition([trigger_node("welcome"), email_node("welcome")], **kwargs)


class TestTriggerMatches:

    def test_kind_must_match(self):
        trigger = Trigger(event_kind="contact.created")
        assert trigger_matches(trigger, event("contact.created"))
        assert not trigger_matches(trigger, event("contact.updated"))

    def test_custom_event_matches_on_name(self):
        trigger = Trigger(event_kind="custom_event", custom_event_name="cart_abandoned")
        assert trigger_matches(trigger, event("custom_event", entity_id="cart_abandoned"))
        assert not trigger_matches(trigger, event("custom_event", entity_id="signed_up"))

    def test_list_scoped_trigger(self):
        trigger = Trigger(event_kind="list.subscribed", list_id="news")
        assert trigger_matches(trigger, event("list.subscribed", entity_id="news"))
        assert not trigger_matches(trigger, event("list.subscribed", entity_id="promo"))

    def test_unscoped_list_trigger_matches_any_list(self):
        trigger = Trigger(event_kind="list.subscribed")
        assert trigger_matches(trigger, event("list.subscribed", entity_id="promo"))

    def test_segment_scoped_trigger(self):
        trigger = Trigger(event_kind="segment.joined", segment_id="vip")
        assert trigger_matches(trigger, event("segment.joined", entity_id="vip"))
        assert not trigger_matches(trigger, event("segment.joined", entity_id="churn"))

    def test_frequency_defaults_to_every_time(self):
        assert Trigger(event_kind="contact.created").frequency == "every_time"


class TestEnrollmentFrequency:

    async def test_once_enrolls_a_single_time(self, service, create_live, repository, sender):
        automation = await create_live(welcome(frequency="once"))

        first = await service.ingest_event(event())
        second = await service.ingest_event(event())

        assert len(first.runs) == 1
        assert second.runs == []
        assert len(await service.list_runs(automation.id)) == 1
        assert await repository.count_trigger_log(automation.id, "alice@example.com") == 1
        assert len(sender.sent) == 1

    async def test_every_time_enrolls_per_event(self, service, create_live, repository):
        automation = await create_live(welcome(frequency="every_time"))

        for _ in range(3):
            await service.ingest_event(event())

        runs = await service.list_runs(automation.id)
        assert len(runs) == 3
        assert len({r.entered_at for r in runs}) == 3
        assert await repository.count_trigger_log(automation.id) == 0

    async def test_once_is_per_contact(self, service, create_live):
        automation = await create_live(welcome(frequency="once"))

        await service.ingest_event(event(email="alice@example.com"))
        await service.ingest_event(event(email="bob@example.com"))

        assert len(await service.list_runs(automation.id)) == 2

    async def test_draft_and_other_workspaces_do_not_enroll(self, service, create_live):
        draft = await service.create_automation(WORKSPACE, welcome())
        await create_live(welcome(), workspace_id="ws-other")

        result = await service.ingest_event(event())

        assert result.runs == []
        assert await service.list_runs(draft.id) == []

    async def test_automation_events_never_enroll(self, service, create_live):
        # A trigger can't even be defined on automation.*; the matcher also ignores them
        await create_live(welcome())
        result = await service.ingest_event(event("automation.end"))
        assert result.runs == []

    async def test_custom_event_enrollment(self, service, create_live, sender):
        await create_live(welcome(event_kind="custom_event", custom_event_name="cart_abandoned"))

        miss = await service.ingest_event(event("custom_event", entity_id="viewed_page"))
        hit = await service.ingest_event(event("custom_event", entity_id="cart_abandoned"))

        assert miss.runs == []
        assert len(hit.runs) == 1

    async def test_event_recorded_on_timeline(self, service):
        result = await service.ingest_event(event("contact.updated", changes={"plan": {"old": "free", "new": "pro"}}))

        timeline = await service.list_timeline(WORKSPACE, "alice@example.com", kind="contact.updated")
        assert [e.id for e in timeline] == [result.event.id]
        assert timeline[0].changes == {"plan": {"old": "free", "new": "pro"}}

    async def test_context_snapshot(self, service, create_live):
        await create_live(welcome(event_kind="contact.updated"))

        result = await service.ingest_event(event(
            "contact.updated",
            contact={"first_name": "Alice", "country": "FR"},
            changes={"plan": {"old": "free", "new": "pro"}},
        ))

        context = result.runs[0].context
        assert context["first_name"] == "Alice"
        assert context["plan"] == "pro"
        assert context["contact_email"] == "alice@example.com"
        assert context["event_kind"] == "contact.updated"

    async def test_unset_frequency_enrolls_every_time(self, service, create_live):
        data = welcome()
        del data["trigger"]["frequency"]
        automation = await create_live(data)

        await service.ingest_event(event())
        await service.ingest_event(event())

        assert automation.trigger.frequency == "every_time"
        assert len(await service.list_runs(automation.id)) == 2

    async def test_once_holds_under_concurrent_events(self, service, create_live, repository, sender):
        automation = await create_live(welcome(frequency="once"))

        results = await asyncio.gather(*(service.ingest_event(event()) for _ in range(5)))

        assert sum(len(r.runs) for r in results) == 1
        assert len(await service.list_runs(automation.id)) == 1
        assert await repository.count_trigger_log(automation.id) == 1
        assert len(sender.sent) == 1
        assert (await service.get_automation(automation.id)).stats.enrolled == 1
