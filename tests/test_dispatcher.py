"""
Tests for Dispatcher routing, template fallback and error tagging.

All collaborators are FakeChatBackend stubs that record which endpoint
was invoked.
"""
from datetime import timedelta

import pytest

from channels.base import (
    CHAT_HISTORY, DIRECT_SEND, GENERIC_ENDPOINT, TEMPLATE_ENDPOINT,
    AuthRequired, ConversationNotFound, TemplateDispatchError, TemplateRejected, TransportFailure,
)
from models.schemas import (
    Attachment, DispatchOptions, DispatchPath, EngagementAction, MessageDirection,
    TemplateType, UserDetails,
)


class TestRouting:
    @pytest.mark.asyncio
    async def test_inside_window_sends_direct(self, dispatcher, backend, cache, clock):
        cache.record_inbound("abc", clock.now() - timedelta(hours=2))

        result = await dispatcher.send_smart_message("abc", "Your order has shipped")

        assert result.path == DispatchPath.DIRECT
        assert len(backend.calls_to("send")) == 1
        assert backend.calls_to("send_template") == []
        assert backend.calls_to("send_generic_template") == []
        assert cache.get("abc").last_action == EngagementAction.REGULAR_SENT

    @pytest.mark.asyncio
    async def test_outside_window_sends_engagement_template(self, dispatcher, backend, cache, clock, scheduler):
        cache.record_inbound("abc", clock.now() - timedelta(hours=30))

        result = await dispatcher.send_smart_message("abc", "just checking in")

        assert result.path == DispatchPath.TEMPLATE
        assert result.template_type == TemplateType.ENGAGEMENT
        assert backend.calls_to("send") == []
        (_, cid, payload), = backend.calls_to("send_template")
        assert cid == "abc"
        assert payload["template"]["name"] == TemplateType.ENGAGEMENT.value
        assert cache.get("abc").last_action == EngagementAction.TEMPLATE_SENT

    @pytest.mark.asyncio
    async def test_exactly_24h_is_template(self, dispatcher, backend, cache, clock):
        cache.record_inbound("abc", clock.now() - timedelta(hours=24))
        result = await dispatcher.send_smart_message("abc", "hello")
        assert result.path == DispatchPath.TEMPLATE

    @pytest.mark.asyncio
    async def test_unknown_conversation_is_template(self, dispatcher, backend):
        result = await dispatcher.send_smart_message("new", "hello")
        assert result.path == DispatchPath.TEMPLATE
        assert len(backend.calls_to("fetch_messages")) == 1

    @pytest.mark.asyncio
    async def test_template_schedules_follow_up(self, dispatcher, scheduler, clock, cache):
        cache.record_inbound("abc", clock.now() - timedelta(days=3))

        result = await dispatcher.send_smart_message("abc", "Special offer inside")

        (action,) = scheduler.pending()
        assert result.follow_up_action_id == action.action_id
        assert action.template_type == TemplateType.OFFER
        assert action.scheduled_at == result.sent_at + timedelta(hours=24)

    @pytest.mark.asyncio
    async def test_follow_up_can_be_disabled(self, dispatcher, scheduler):
        result = await dispatcher.send_smart_message(
            "abc", "hello", options=DispatchOptions(schedule_follow_up=False),
        )
        assert result.follow_up_action_id is None
        assert len(scheduler) == 0

    @pytest.mark.asyncio
    async def test_explicit_template_type_wins(self, dispatcher, backend):
        result = await dispatcher.send_smart_message(
            "abc", "discount", options=DispatchOptions(template_type=TemplateType.NEWS),
        )
        assert result.template_type == TemplateType.NEWS

    @pytest.mark.asyncio
    async def test_direct_send_passes_attachments_and_ai_flag(self, dispatcher, backend, cache, clock):
        cache.record_inbound("abc", clock.now() - timedelta(minutes=5))
        pdf = Attachment(filename="invoice.pdf", content_type="application/pdf", data=b"%PDF")

        await dispatcher.send_smart_message("abc", "", [pdf], DispatchOptions(ai_enabled=False))

        (_, _, sent), = backend.calls_to("send")
        assert sent["attachments"] == [pdf]
        assert sent["ai_enabled"] is False

    @pytest.mark.asyncio
    async def test_empty_message_rejected(self, dispatcher, backend):
        with pytest.raises(ValueError):
            await dispatcher.send_smart_message("abc", "   ")
        with pytest.raises(ValueError):
            await dispatcher.send_smart_message("", "hello")
        assert backend.calls == []


class TestColdStart:
    @pytest.mark.asyncio
    async def test_history_seeds_the_cache(self, dispatcher, backend, cache, clock):
        backend.add_message("abc", clock.now() - timedelta(hours=5), message_id="in1")
        backend.add_message("abc", clock.now() - timedelta(hours=3), message_id="in2")
        backend.add_message("abc", clock.now() - timedelta(hours=1),
                            direction=MessageDirection.OUTBOUND, message_id="out1")

        assert await dispatcher.is_within_window("abc") is True
        record = cache.get("abc")
        assert record.last_inbound_timestamp == clock.now() - timedelta(hours=3)
        assert record.last_inbound_message_id == "in2"

        await dispatcher.is_within_window("abc")
        assert len(backend.calls_to("fetch_messages")) == 1

    @pytest.mark.asyncio
    async def test_only_outbound_history_is_outside(self, dispatcher, backend, clock):
        backend.add_message("abc", clock.now() - timedelta(hours=1), direction=MessageDirection.OUTBOUND)
        assert await dispatcher.is_within_window("abc") is False

    @pytest.mark.asyncio
    async def test_history_not_found_propagates(self, dispatcher, backend):
        backend.fail("fetch_messages", ConversationNotFound("no such chat"))
        with pytest.raises(ConversationNotFound) as exc:
            await dispatcher.send_smart_message("ghost", "hello")
        assert exc.value.collaborator == CHAT_HISTORY


class TestTemplateFallback:
    @pytest.mark.asyncio
    async def test_generic_endpoint_used_when_template_endpoint_fails(self, dispatcher, backend):
        backend.fail("send_template", TemplateRejected("template not approved"))

        result = await dispatcher.send_smart_message("abc", "just checking in")

        assert result.provider_response == {"status": True, "endpoint": "generic"}
        (_, _, payload), = backend.calls_to("send_generic_template")
        assert payload["is_template_message"] is True
        assert payload["template_type"] == TemplateType.ENGAGEMENT.value
        assert payload["template"]["name"] == TemplateType.ENGAGEMENT.value

    @pytest.mark.asyncio
    async def test_both_endpoints_fail_aggregates(self, dispatcher, backend, scheduler):
        backend.fail("send_template", TemplateRejected("rejected"))
        backend.fail("send_generic_template", TransportFailure("502 bad gateway"))

        with pytest.raises(TemplateDispatchError) as exc:
            await dispatcher.send_smart_message("abc", "hello")

        err = exc.value
        assert err.path == DispatchPath.TEMPLATE
        assert [e.collaborator for e in err.errors] == [TEMPLATE_ENDPOINT, GENERIC_ENDPOINT]
        assert isinstance(err.errors[0], TemplateRejected)
        assert isinstance(err.errors[1], TransportFailure)
        assert err.retryable is True
        assert len(err.to_dict()["causes"]) == 2
        assert len(scheduler) == 0

    @pytest.mark.asyncio
    async def test_auth_required_skips_fallback(self, dispatcher, backend):
        backend.fail("send_template", AuthRequired("token expired"))

        with pytest.raises(AuthRequired) as exc:
            await dispatcher.send_smart_message("abc", "hello")

        assert exc.value.collaborator == TEMPLATE_ENDPOINT
        assert exc.value.path == DispatchPath.TEMPLATE
        assert backend.calls_to("send_generic_template") == []

    @pytest.mark.asyncio
    async def test_send_template_message_never_schedules(self, dispatcher, backend, scheduler, cache, clock):
        cache.record_inbound("abc", clock.now() - timedelta(hours=1))
        response = await dispatcher.send_template_message("abc", "news update")
        assert response == {"status": True, "endpoint": "template"}
        assert len(scheduler) == 0
        assert backend.calls_to("send") == []

    @pytest.mark.asyncio
    async def test_user_details_fill_parameters(self, dispatcher, backend, clock):
        backend.users["abc"] = UserDetails(name="Asha", last_activity=clock.now() - timedelta(days=3))

        await dispatcher.send_template_message("abc", "friendly reminder")

        (_, _, payload), = backend.calls_to("send_template")
        body = payload["template"]["components"][0]["parameters"]
        assert body == [{"type": "text", "text": "Asha"}, {"type": "text", "text": "3"}]

    @pytest.mark.asyncio
    async def test_user_details_failure_uses_defaults(self, dispatcher, backend):
        backend.fail("fetch_user_details", TransportFailure("timeout"))

        await dispatcher.send_template_message("abc", "hello")

        (_, _, payload), = backend.calls_to("send_template")
        assert payload["template"]["components"][0]["parameters"][0]["text"] == "Valued Customer"


class TestErrorTagging:
    @pytest.mark.asyncio
    async def test_direct_failure_tagged(self, dispatcher, backend, cache, clock):
        cache.record_inbound("abc", clock.now() - timedelta(hours=1))
        backend.fail("send", TransportFailure("connection reset"))

        with pytest.raises(TransportFailure) as exc:
            await dispatcher.send_smart_message("abc", "hello")

        assert exc.value.path == DispatchPath.DIRECT
        assert exc.value.collaborator == DIRECT_SEND
        assert backend.calls_to("send_template") == []

    @pytest.mark.asyncio
    async def test_unexpected_exception_wrapped(self, dispatcher, backend, cache, clock):
        cache.record_inbound("abc", clock.now() - timedelta(hours=1))
        backend.fail("send", RuntimeError("socket closed"))

        with pytest.raises(TransportFailure) as exc:
            await dispatcher.send_smart_message("abc", "hello")
        assert isinstance(exc.value.__cause__, RuntimeError)

    @pytest.mark.asyncio
    async def test_send_timeout(self, dispatcher, backend, cache, clock):
        dispatcher.send_timeout = 0.05
        backend.delays["send"] = 0.5
        cache.record_inbound("abc", clock.now() - timedelta(hours=1))

        with pytest.raises(TransportFailure) as exc:
            await dispatcher.send_smart_message("abc", "hello")

        assert "timed out" in str(exc.value)
        assert exc.value.collaborator == DIRECT_SEND
        assert exc.value.retryable is True


class TestFollowUpExecution:
    @pytest.mark.asyncio
    async def test_back_inside_window_gets_direct_message(self, dispatcher, backend, cache, clock, scheduler):
        await dispatcher.send_smart_message("abc", "Special offer inside")
        clock.advance(hours=24)
        cache.record_inbound("abc", clock.now() - timedelta(minutes=10))

        assert await scheduler.tick() == 1

        (_, _, sent), = backend.calls_to("send")
        assert "offers" in sent["text"]
        assert cache.get("abc").last_action == EngagementAction.FOLLOW_UP_SENT
        assert len(scheduler) == 0

    @pytest.mark.asyncio
    async def test_direct_follow_up_counts_as_regular_send(self, dispatcher, cache, clock, scheduler, counters):
        await dispatcher.send_smart_message("abc", "Special offer inside")
        clock.advance(hours=24)
        cache.record_inbound("abc", clock.now() - timedelta(minutes=10))

        await scheduler.tick()

        assert counters.templates_sent == 1
        assert counters.regular_sent == 1
        assert counters.follow_ups_sent == 1
        assert cache.get("abc").engagement_count == 2

    @pytest.mark.asyncio
    async def test_template_follow_up_counts_as_template_send(self, dispatcher, cache, clock, scheduler, counters):
        await dispatcher.send_smart_message("abc", "hello")
        clock.advance(hours=25)

        await scheduler.tick()

        assert counters.templates_sent == 2
        assert counters.regular_sent == 0
        assert counters.follow_ups_sent == 1
        assert cache.get("abc").engagement_count == 2

    @pytest.mark.asyncio
    async def test_still_outside_gets_template_without_new_follow_up(self, dispatcher, backend, clock, scheduler):
        await dispatcher.send_smart_message("abc", "hello")
        clock.advance(hours=25)

        assert await scheduler.tick() == 1

        assert len(backend.calls_to("send_template")) == 2
        assert backend.calls_to("send") == []
        assert len(scheduler) == 0


class TestWithMockCollaborators:
    @pytest.mark.asyncio
    async def test_each_interface_can_be_a_separate_object(self, cache, scheduler, clock):
        from unittest.mock import AsyncMock

        from channels.base import ChatHistory, DirectSender, GenericTemplateSender, TemplateSender
        from core.dispatcher import Dispatcher

        direct = AsyncMock(spec=DirectSender)
        template = AsyncMock(spec=TemplateSender)
        template.send_template.return_value = {"status": True}
        generic = AsyncMock(spec=GenericTemplateSender)
        history = AsyncMock(spec=ChatHistory)
        history.fetch_messages.return_value = []
        history.fetch_user_details.return_value = UserDetails(name="Ravi")

        dispatcher = Dispatcher(cache, direct, template, generic, history, scheduler, clock=clock)
        result = await dispatcher.send_smart_message("abc", "survey time")

        assert result.template_type == TemplateType.SURVEY
        direct.send.assert_not_awaited()
        generic.send_generic_template.assert_not_awaited()
        cid, payload = template.send_template.await_args.args
        assert cid == "abc"
        assert payload["template"]["components"][0]["parameters"][0]["text"] == "Ravi"


class TestRestrictedRegistry:
    @pytest.mark.asyncio
    async def test_unregistered_type_sends_follow_up_reminder(self, cache, backend, scheduler, clock):
        from core.dispatcher import Dispatcher
        from templates.registry import TemplateRegistry

        dispatcher = Dispatcher(cache, backend, backend, backend, backend, scheduler,
                                clock=clock, registry=TemplateRegistry(include_defaults=False))
        backend.users["abc"] = UserDetails(name="Asha")

        result = await dispatcher.send_smart_message("abc", "Special offer inside")

        assert result.template_type == TemplateType.FOLLOW_UP
        (_, _, payload), = backend.calls_to("send_template")
        assert payload["template"]["name"] == TemplateType.FOLLOW_UP.value
        assert payload["template"]["components"][0]["parameters"][0]["text"] == "Asha"
        (action,) = scheduler.pending()
        assert action.template_type == TemplateType.FOLLOW_UP
