"""Tests for graph walking, node semantics and retries."""

from datetime import timedelta

from services.automation import (
    AutomationEngine,
    AutomationScheduler,
    ConfigurationError,
    MessageSendError,
    NodeExecutors,
)
from services.automation.variants import select

from builders import WORKSPACE, FakeSender, definition, delay_node, email_node, event, trigger_node


def actions(executions):
    return [(e.node_id, e.action) for e in executions]


async def history(service, run):
    return await service.get_run_history(run.id)


class TestLinearWalk:

    async def test_trigger_then_email_completes(self, service, create_live, sender):
        automation = await create_live(definition([
            trigger_node("welcome"), email_node("welcome"),
        ]))

        result = await service.ingest_event(event())
        run = result.runs[0]

        assert run.status == "completed"
        assert run.exit_reason == "completed"
        assert run.scheduled_at is None
        assert sender.sent[0]["template_id"] == "tpl-welcome"
        assert sender.sent[0]["email"] == "alice@example.com"

        h = await history(service, run)
        assert actions(h.executions) == [
            ("start", "entered"),
            ("start", "processed"),
            ("welcome", "completed"),
        ]
        assert h.executions[-1].output["message_id"] == "msg-1"

        stats = (await service.get_automation(automation.id)).stats
        assert (stats.enrolled, stats.completed) == (1, 1)

    async def test_idempotency_key_is_run_and_node(self, service, create_live, sender):
        await create_live(definition([trigger_node("welcome"), email_node("welcome")]))
        run = (await service.ingest_event(event())).runs[0]
        assert sender.sent[0]["idempotency_key"] == f"{run.id}:welcome"

    async def test_delay_suspends_run(self, service, create_live, sender):
        await create_live(definition([
            trigger_node("welcome"),
            email_node("welcome", next_node_id="wait"),
            delay_node("wait", 5, next_node_id="followup"),
            email_node("followup", template_id="tpl-followup"),
        ]))

        run = (await service.ingest_event(event())).runs[0]

        assert run.status == "active"
        assert run.current_node_id == "followup"
        assert run.entered_at + timedelta(minutes=4) <= run.scheduled_at
        assert run.scheduled_at <= run.entered_at + timedelta(minutes=6)
        assert [s["template_id"] for s in sender.sent] == ["tpl-welcome"]

        stored = await service.get_run(run.id)
        assert stored.scheduled_at == run.scheduled_at
        h = await history(service, run)
        assert actions(h.executions)[-1] == ("wait", "delayed")

    async def test_run_without_current_node_completes(self, service, create_live, scheduler, make_due):
        await create_live(definition([trigger_node("wait"), delay_node("wait", 1)]))
        run = (await service.ingest_event(event())).runs[0]
        assert run.current_node_id is None
        assert run.status == "active"

        await make_due(run.id)
        assert await scheduler.run_once() == 1

        run = await service.get_run(run.id)
        assert run.status == "completed"
        h = await history(service, run)
        assert actions(h.executions)[-1] == (None, "completed")

    async def test_automation_end_emitted_once(self, service, create_live):
        await create_live(definition([trigger_node("welcome"), email_node("welcome")]))
        await service.ingest_event(event())

        ends = await service.list_timeline(WORKSPACE, "alice@example.com", kind="automation.end")
        starts = await service.list_timeline(WORKSPACE, "alice@example.com", kind="automation.start")
        assert len(starts) == 1
        assert len(ends) == 1
        assert ends[0].changes["exit_reason"] == {"new": "completed"}


class TestFilter:

    def gate(self, exit_node_id=None):
        config = {
            "conditions": {"field": "country", "operator": "equals", "value": "FR"},
            "continue_node_id": "welcome",
        }
        if exit_node_id:
            config["exit_node_id"] = exit_node_id
        return {"id": "gate", "type": "filter", "config": config}

    async def test_match_continues(self, service, create_live, sender):
        await create_live(definition([trigger_node("gate"), self.gate(), email_node("welcome")]))
        run = (await service.ingest_event(event(contact={"country": "FR"}))).runs[0]
        assert run.status == "completed"
        assert len(sender.sent) == 1

    async def test_miss_exits_filtered_out(self, service, create_live, sender):
        automation = await create_live(definition([trigger_node("gate"), self.gate(), email_node("welcome")]))
        run = (await service.ingest_event(event(contact={"country": "DE"}))).runs[0]

        assert run.status == "exited"
        assert run.exit_reason == "filtered_out"
        assert sender.sent == []
        assert (await service.get_automation(automation.id)).stats.exited == 1

    async def test_miss_follows_exit_node(self, service, create_live, sender):
        await create_live(definition([
            trigger_node("gate"),
            self.gate(exit_node_id="sorry"),
            email_node("welcome"),
            email_node("sorry", template_id="tpl-sorry"),
        ]))
        run = (await service.ingest_event(event(contact={"country": "DE"}))).runs[0]

        assert run.status == "completed"
        assert [s["template_id"] for s in sender.sent] == ["tpl-sorry"]

    async def test_missing_field_does_not_match(self, service, create_live):
        await create_live(definition([trigger_node("gate"), self.gate(), email_node("welcome")]))
        run = (await service.ingest_event(event())).runs[0]
        assert run.exit_reason == "filtered_out"


class TestBranch:

    def branch(self):
        return {"id": "br", "type": "branch", "config": {
            "paths": [
                {"id": "vip", "conditions": {"field": "vip", "operator": "equals", "value": True},
                 "next_node_id": "vip_mail"},
                {"id": "fr", "conditions": {"field": "country", "operator": "equals", "value": "FR"},
                 "next_node_id": "fr_mail"},
            ],
            "default_path_id": "other_mail",
        }}

    def automation(self):
        return definition([
            trigger_node("br"),
            self.branch(),
            email_node("vip_mail", template_id="tpl-vip"),
            email_node("fr_mail", template_id="tpl-fr"),
            email_node("other_mail", template_id="tpl-other"),
        ], frequency="every_time")

    async def test_first_matching_path_wins(self, service, create_live, sender):
        await create_live(self.automation())
        await service.ingest_event(event(contact={"vip": True, "country": "FR"}))
        assert [s["template_id"] for s in sender.sent] == ["tpl-vip"]

    async def test_second_path(self, service, create_live, sender):
        await create_live(self.automation())
        run = (await service.ingest_event(event(contact={"country": "FR"}))).runs[0]
        assert [s["template_id"] for s in sender.sent] == ["tpl-fr"]
        h = await history(service, run)
        branch_step = [e for e in h.executions if e.node_id == "br" and e.action == "processed"][0]
        assert branch_step.output["path_id"] == "fr"

    async def test_default_path(self, service, create_live, sender):
        await create_live(self.automation())
        await service.ingest_event(event(contact={"country": "US"}))
        assert [s["template_id"] for s in sender.sent] == ["tpl-other"]

    async def test_no_default_completes(self, service, create_live, sender):
        data = self.automation()
        for node in data["nodes"]:
            if node["id"] == "br":
                node["config"]["default_path_id"] = None
        await create_live(data)
        run = (await service.ingest_event(event(contact={"country": "US"}))).runs[0]
        assert run.status == "completed"
        assert sender.sent == []


class TestABTest:

    def split(self):
        return {"id": "split", "type": "ab_test", "config": {"variants": [
            {"id": "A", "weight": 50, "next_node_id": "mail_a"},
            {"id": "B", "weight": 50, "next_node_id": "mail_b"},
        ]}}

    async def test_assignment_is_deterministic(self, service, create_live, sender):
        automation = await create_live(definition([
            trigger_node("split"),
            self.split(),
            email_node("mail_a", template_id="tpl-a"),
            email_node("mail_b", template_id="tpl-b"),
        ], frequency="every_time"))
        variants = automation.nodes["split"].config.variants
        expected = select("alice@example.com", "split", variants)

        runs = [(await service.ingest_event(event())).runs[0] for _ in range(3)]

        templates = {s["template_id"] for s in sender.sent}
        assert templates == {f"tpl-{expected.lower()}"}
        for run in runs:
            h = await history(service, run)
            step = [e for e in h.executions if e.node_id == "split" and e.action == "processed"][0]
            assert step.output["variant_id"] == expected


class TestListNodes:

    async def test_list_status_branch(self, service, create_live, contact_lists, sender):
        await contact_lists.create_list(WORKSPACE, "Newsletter", list_id="news")
        await contact_lists.set_status(WORKSPACE, "alice@example.com", "news", "unsubscribed")
        await contact_lists.set_status(WORKSPACE, "bob@example.com", "news", "active")

        await create_live(definition([
            trigger_node("check"),
            {"id": "check", "type": "list_status_branch", "config": {
                "list_id": "news",
                "active_node_id": "active_mail",
                "non_active_node_id": "winback_mail",
                "not_in_list_node_id": "invite_mail",
            }},
            email_node("active_mail", template_id="tpl-active"),
            email_node("winback_mail", template_id="tpl-winback"),
            email_node("invite_mail", template_id="tpl-invite"),
        ]))

        for email in ("alice@example.com", "bob@example.com", "carol@example.com"):
            await service.ingest_event(event(email=email))

        sent = {s["email"]: s["template_id"] for s in sender.sent}
        assert sent == {
            "alice@example.com": "tpl-winback",
            "bob@example.com": "tpl-active",
            "carol@example.com": "tpl-invite",
        }

    async def test_add_and_remove(self, service, create_live, contact_lists):
        await contact_lists.create_list(WORKSPACE, "Newsletter", list_id="news")
        await create_live(definition([
            trigger_node("add"),
            {"id": "add", "type": "add_to_list", "next_node_id": "remove",
             "config": {"list_id": "news", "status": "subscribed"}},
            {"id": "remove", "type": "remove_from_list", "config": {"list_id": "news"}},
        ]))

        run = (await service.ingest_event(event())).runs[0]

        assert run.status == "completed"
        assert await contact_lists.get_status(WORKSPACE, "alice@example.com", "news") is None
        kinds = [e.kind for e in await service.list_timeline(WORKSPACE, "alice@example.com")
                 if e.kind.startswith("list.")]
        assert kinds == ["list.subscribed", "list.removed"]

    async def test_missing_list_fails_without_retry(self, service, create_live):
        automation = await create_live(definition([
            trigger_node("add"),
            {"id": "add", "type": "add_to_list", "config": {"list_id": "ghost"}},
        ]))

        run = (await service.ingest_event(event())).runs[0]

        assert run.status == "failed"
        assert run.exit_reason == "failed"
        assert "ghost" in run.last_error
        assert run.retry_count == 1
        assert (await service.get_automation(automation.id)).stats.failed == 1


class TestRetries:

    def automation(self):
        return definition([trigger_node("welcome"), email_node("welcome")])

    async def test_transient_failure_backs_off_then_fails(self, service, create_live, sender,
                                                          scheduler, make_due, settings):
        automation = await create_live(self.automation())
        sender.fail_with = MessageSendError("provider unavailable")

        run = (await service.ingest_event(event())).runs[0]
        assert run.status == "active"
        assert run.current_node_id == "welcome"
        assert run.retry_count == 1
        assert "provider unavailable" in run.last_error
        first_wait = (run.scheduled_at - run.updated_at).total_seconds()
        assert abs(first_wait - settings.retry_initial_delay) < 5

        await make_due(run.id)
        await scheduler.run_once()
        run = await service.get_run(run.id)
        assert run.retry_count == 2
        second_wait = (run.scheduled_at - run.updated_at).total_seconds()
        assert abs(second_wait - settings.retry_initial_delay * settings.retry_backoff_multiplier) < 5

        await make_due(run.id)
        await scheduler.run_once()
        run = await service.get_run(run.id)
        assert run.status == "failed"
        assert run.retry_count == 3
        assert run.scheduled_at is None

        h = await history(service, run)
        assert [a for _, a in actions(h.executions)][-3:] == ["retrying", "retrying", "failed"]
        assert (await service.get_automation(automation.id)).stats.failed == 1

    async def test_recovery_resets_retry_count(self, service, create_live, sender, scheduler, make_due):
        await create_live(self.automation())
        sender.fail_with = MessageSendError("provider unavailable")
        run = (await service.ingest_event(event())).runs[0]

        sender.fail_with = None
        await make_due(run.id)
        await scheduler.run_once()

        run = await service.get_run(run.id)
        assert run.status == "completed"
        assert run.retry_count == 0
        assert run.last_error is None

    async def test_configuration_error_is_not_retried(self, service, create_live, sender):
        await create_live(self.automation())
        sender.fail_with = ConfigurationError("template tpl-welcome not found")
        run = (await service.ingest_event(event())).runs[0]
        assert run.status == "failed"

    async def test_unexpected_error_is_retried(self, service, create_live, sender):
        await create_live(self.automation())
        sender.fail_with = RuntimeError("connection reset")
        run = (await service.ingest_event(event())).runs[0]
        assert run.status == "active"
        assert run.retry_count == 1
        assert "RuntimeError" in run.last_error

    async def test_send_timeout_is_retried(self, repository, contact_lists, settings, create_live):
        slow = FakeSender()
        slow.delay = 0.5
        fast_settings = settings.model_copy(update={"email_send_timeout": 0.05})
        engine = AutomationEngine(
            repository, NodeExecutors(slow, contact_lists, fast_settings), fast_settings
        )
        automation = await create_live(self.automation())

        run = await engine.enroll(automation, "alice@example.com", {})

        assert run.status == "active"
        assert run.retry_count == 1
        assert "timed out" in run.last_error


class TestWalkLimits:

    async def test_missing_node_fails(self, service, create_live, scheduler, make_due):
        automation = await create_live(definition([
            trigger_node("wait"),
            delay_node("wait", 1, next_node_id="followup"),
            email_node("followup"),
        ]))
        run = (await service.ingest_event(event())).runs[0]
        assert run.current_node_id == "followup"

        await service.update_automation(automation.id, definition([
            trigger_node("wait"), delay_node("wait", 1),
        ]))
        await make_due(run.id)
        await scheduler.run_once()

        run = await service.get_run(run.id)
        assert run.status == "failed"
        assert "followup" in run.last_error

    async def test_hop_cap_hands_off_to_scheduler(self, repository, contact_lists, database,
                                                  settings, sender, create_live, service):
        capped_settings = settings.model_copy(update={"walk_max_hops": 2})
        engine = AutomationEngine(
            repository, NodeExecutors(sender, contact_lists, capped_settings), capped_settings
        )
        automation = await create_live(definition([
            trigger_node("one"),
            email_node("one", next_node_id="two"),
            email_node("two", next_node_id="three"),
            email_node("three"),
        ]))

        run = await engine.enroll(automation, "alice@example.com", {})

        assert run.status == "active"
        assert run.current_node_id == "two"
        assert len(sender.sent) == 1

        scheduler = AutomationScheduler(repository, engine, database, capped_settings)
        await scheduler.run_once()

        run = await service.get_run(run.id)
        assert run.status == "completed"
        assert len(sender.sent) == 3
