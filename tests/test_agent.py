"""Tests for the agent loop: iterations, tool feedback, limits and persistence."""

import asyncio
import json
from datetime import UTC, datetime

import pytest
from pydantic import BaseModel

from assistant.config import SafetyLimits, Settings
from assistant.core.agent import Agent
from assistant.core.models import Conversation, Message, ToolResultBlock
from assistant.errors import (
    ContextManagementError,
    ContextOverflowError,
    ConversationNotFoundError,
    IterationLimitError,
    PersistenceError,
    ProviderError,
    TraceSaveError,
)
from assistant.prompts import SUMMARY_MARKER, SYSTEM_PROMPT
from assistant.tools.registry import ToolExecutionResult
from tests.fakes import (
    RecordingTraceSink,
    ScriptedProvider,
    alternating_messages,
    make_completion,
)


class EmptyInput(BaseModel):
    pass


@pytest.fixture
def make_agent(settings, registry, store, sink, counter):
    def _make(provider, **overrides) -> Agent:
        kwargs = {
            "settings": settings,
            "provider": provider,
            "registry": registry,
            "conversations": store,
            "traces": sink,
            "counter": counter,
        }
        kwargs.update(overrides)
        return Agent(**kwargs)

    return _make


def _tool_results(message: Message) -> list[ToolResultBlock]:
    return [b for b in message.blocks if isinstance(b, ToolResultBlock)]


class TestSingleIteration:
    async def test_text_reply(self, make_agent, store, sink):
        provider = ScriptedProvider([make_completion(text="Hello there!")])
        agent = make_agent(provider)

        result = await agent.process_message("Hi")

        assert result.response == "Hello there!"
        assert len(provider.calls) == 1
        assert provider.calls[0]["system_prompt"] == SYSTEM_PROMPT
        assert provider.calls[0]["model"] == "claude-3-5-haiku-20241022"

        trace = result.trace
        assert len(trace.iterations) == 1
        assert trace.iterations[0].iteration == 1
        assert trace.iterations[0].tools_executed == ()
        assert trace.iterations[0].stop_reason == "end_turn"
        assert trace.user_message == "Hi"
        assert trace.assistant_response == "Hello there!"
        assert trace.conversation_id == result.conversation.id

        saved = store.conversations[result.conversation.id]
        assert saved == result.conversation
        assert [m.role for m in saved.messages] == ["user", "assistant"]
        assert saved.messages[0].content == "Hi"
        assert sink.traces == [trace]

    async def test_usage_matches_trace(self, make_agent):
        provider = ScriptedProvider([make_completion(text="ok", input_tokens=321, output_tokens=12)])
        result = await make_agent(provider).process_message("Hi")
        assert result.usage.input_tokens == 321
        assert result.usage.output_tokens == 12
        assert result.trace.total_tokens == 333

    async def test_token_count_refreshed(self, make_agent, counter, registry):
        provider = ScriptedProvider([make_completion(text="ok")])
        result = await make_agent(provider).process_message("Hi")
        expected = counter.count_request(SYSTEM_PROMPT, result.conversation.messages, registry.definitions())
        assert result.conversation.token_count == expected

    async def test_continues_existing_conversation(self, make_agent, store):
        existing = store.add(Conversation(id="conv-1", messages=alternating_messages(2)))
        provider = ScriptedProvider([make_completion(text="Welcome back")])

        result = await make_agent(provider).process_message("Again", conversation_id="conv-1")

        sent = provider.calls[0]["messages"]
        assert sent[:2] == list(existing.messages)
        assert sent[2].content == "Again"
        assert len(result.conversation.messages) == 4
        assert result.conversation.started_at == existing.started_at

    async def test_max_tokens_passed_through(self, make_agent, settings):
        provider = ScriptedProvider([make_completion(text="ok")])
        await make_agent(provider).process_message("Hi")
        assert provider.calls[0]["max_tokens"] == settings.max_tokens == 1024

    async def test_explicit_safety_limits(self, make_agent):
        provider = ScriptedProvider([make_completion(text="ok")])
        limits = SafetyLimits(max_iterations=2, max_tokens_per_request=77)
        agent = make_agent(provider, safety_limits=limits)
        await agent.process_message("Hi")
        assert agent.safety_limits is limits
        assert provider.calls[0]["max_tokens"] == 77


class TestToolIterations:
    async def test_tool_then_answer(self, make_agent, store):
        provider = ScriptedProvider([
            make_completion(
                text="Let me echo that.",
                tool_uses=[{"id": "t1", "name": "echo", "input": {"message": "ping"}}],
            ),
            make_completion(text=" Done."),
        ])

        result = await make_agent(provider).process_message("Echo ping")

        assert result.response == "Let me echo that. Done."
        iterations = result.trace.iterations
        assert [it.iteration for it in iterations] == [1, 2]
        assert len(iterations[0].tools_executed) == 1
        assert iterations[1].tools_executed == ()

        tool_trace = iterations[0].tools_executed[0]
        assert tool_trace.tool_name == "echo"
        assert tool_trace.tool_use_id == "t1"
        assert tool_trace.input == {"message": "ping"}
        assert tool_trace.success is True
        assert tool_trace.output.data == {"echo": "ping"}
        assert tool_trace.duration_ms >= 0

        # Second request carries the tool result correlated by id
        second = provider.calls[1]["messages"]
        results = _tool_results(second[-1])
        assert second[-1].role == "user"
        assert results[0].tool_use_id == "t1"
        assert results[0].content == '{"echo": "ping"}'
        assert results[0].is_error is False

        saved = store.conversations[result.conversation.id]
        assert [m.role for m in saved.messages] == ["user", "assistant", "user", "assistant"]

    async def test_multiple_tools_run_in_order(self, make_agent):
        provider = ScriptedProvider([
            make_completion(tool_uses=[
                {"id": "a", "name": "add", "input": {"a": 1, "b": 2}},
                {"id": "b", "name": "echo", "input": {}},
            ]),
            make_completion(text="3 and default"),
        ])

        result = await make_agent(provider).process_message("Do both")

        executed = result.trace.iterations[0].tools_executed
        assert [t.tool_use_id for t in executed] == ["a", "b"]
        second = provider.calls[1]["messages"]
        first_result, second_result = _tool_results(second[-2])[0], _tool_results(second[-1])[0]
        assert (first_result.tool_use_id, first_result.content) == ("a", "3.0")
        assert (second_result.tool_use_id, second_result.content) == ("b", '{"echo": "default"}')

    async def test_tool_failure_fed_back(self, make_agent):
        provider = ScriptedProvider([
            make_completion(tool_uses=[{"id": "t1", "name": "lookup", "input": {"key": "missing"}}]),
            make_completion(text="I couldn't find that."),
        ])

        result = await make_agent(provider).process_message("Look it up")

        assert result.response == "I couldn't find that."
        tool_trace = result.trace.iterations[0].tools_executed[0]
        assert tool_trace.success is False
        assert tool_trace.output.error == "No entry for missing"

        fed_back = _tool_results(provider.calls[1]["messages"][-1])[0]
        assert fed_back.content == "Error: No entry for missing"
        assert fed_back.is_error is True

    async def test_unknown_tool_fed_back(self, make_agent):
        provider = ScriptedProvider([
            make_completion(tool_uses=[{"id": "t1", "name": "nope", "input": {}}]),
            make_completion(text="Sorry."),
        ])

        await make_agent(provider).process_message("Use a tool")

        fed_back = _tool_results(provider.calls[1]["messages"][-1])[0]
        assert fed_back.content == "Error: Unknown tool: nope"
        assert fed_back.is_error is True

    async def test_invalid_input_fed_back(self, make_agent):
        provider = ScriptedProvider([
            make_completion(tool_uses=[{"id": "t1", "name": "add", "input": {"a": 1}}]),
            make_completion(text="Need both numbers."),
        ])

        await make_agent(provider).process_message("Add")

        fed_back = _tool_results(provider.calls[1]["messages"][-1])[0]
        assert fed_back.content.startswith("Error: Invalid input for add:")
        assert '"b"' in fed_back.content

    async def test_handler_result_with_rich_data_fed_back(self, make_agent, registry):
        class Task(BaseModel):
            id: str
            due: datetime

        async def due(params: EmptyInput) -> ToolExecutionResult:
            return ToolExecutionResult.ok({
                "due": datetime(2026, 1, 1, tzinfo=UTC),
                "task": Task(id="t1", due=datetime(2026, 1, 2, tzinfo=UTC)),
            })

        registry.register("due", due, EmptyInput, "When is the task due")
        provider = ScriptedProvider([
            make_completion(tool_uses=[{"id": "t1", "name": "due", "input": {}}]),
            make_completion(text="ok"),
        ])

        result = await make_agent(provider).process_message("when?")

        assert result.response == "ok"
        tool_trace = result.trace.iterations[0].tools_executed[0]
        assert tool_trace.success is True
        fed_back = _tool_results(provider.calls[1]["messages"][-1])[0]
        assert fed_back.is_error is False
        assert json.loads(fed_back.content) == {
            "due": "2026-01-01T00:00:00Z",
            "task": {"id": "t1", "due": "2026-01-02T00:00:00Z"},
        }

    async def test_unserializable_handler_result_fed_back_as_error(self, make_agent, registry):
        async def opaque(params: EmptyInput) -> ToolExecutionResult:
            return ToolExecutionResult.ok({"handle": object()})

        registry.register("opaque", opaque, EmptyInput, "Returns something odd")
        provider = ScriptedProvider([
            make_completion(tool_uses=[{"id": "t1", "name": "opaque", "input": {}}]),
            make_completion(text="That failed."),
        ])

        result = await make_agent(provider).process_message("go")

        assert result.response == "That failed."
        fed_back = _tool_results(provider.calls[1]["messages"][-1])[0]
        assert fed_back.is_error is True
        assert fed_back.content.startswith("Error: ")

    async def test_tools_offered_on_every_request(self, make_agent, registry):
        provider = ScriptedProvider([
            make_completion(tool_uses=[{"name": "echo"}]),
            make_completion(text="ok"),
        ])
        await make_agent(provider).process_message("Hi")
        assert all(call["tools"] == registry.definitions() for call in provider.calls)


class TestLimits:
    async def test_iteration_limit(self, make_agent, store, sink):
        provider = ScriptedProvider(lambda n: make_completion(tool_uses=[{"name": "echo"}]))

        with pytest.raises(IterationLimitError) as exc_info:
            await make_agent(provider).process_message("Loop forever")

        assert exc_info.value.max_iterations == 3
        assert len(provider.calls) == 3
        assert store.save_calls == 0
        assert sink.traces == []

    async def test_overflow_before_any_request(self, make_agent, store, sink):
        provider = ScriptedProvider([make_completion(text="never")])
        limits = SafetyLimits(hard_token_limit=50, summarization_threshold=40)

        with pytest.raises(ContextOverflowError) as exc_info:
            await make_agent(provider, safety_limits=limits).process_message("Hi")

        assert exc_info.value.limit == 50
        assert exc_info.value.estimated_tokens > 50
        assert provider.calls == []
        assert store.save_calls == 0
        assert sink.traces == []

    async def test_overflow_after_tool_result(self, make_agent, counter, registry, store):
        tools = registry.definitions()
        base = counter.count_request(SYSTEM_PROMPT, [Message.user("Hi")], tools)
        # Room for the first request but not for the tool round trip
        limits = SafetyLimits(hard_token_limit=base + 10, summarization_threshold=base)
        provider = ScriptedProvider([
            make_completion(tool_uses=[{"name": "echo", "input": {"message": "x" * 100}}]),
            make_completion(text="never"),
        ])

        with pytest.raises(ContextOverflowError):
            await make_agent(provider, safety_limits=limits).process_message("Hi")

        assert len(provider.calls) == 1
        assert store.save_calls == 0


class TestFailures:
    async def test_conversation_not_found(self, make_agent):
        provider = ScriptedProvider([])
        with pytest.raises(ConversationNotFoundError):
            await make_agent(provider).process_message("Hi", conversation_id="missing")
        assert provider.calls == []

    async def test_load_failure(self, make_agent, store):
        store.fail_load = True
        provider = ScriptedProvider([])
        with pytest.raises(PersistenceError):
            await make_agent(provider).process_message("Hi", conversation_id="any")
        assert provider.calls == []

    async def test_save_failure_propagates(self, make_agent, store, sink):
        store.fail_save = True
        provider = ScriptedProvider([make_completion(text="ok")])
        with pytest.raises(PersistenceError):
            await make_agent(provider).process_message("Hi")
        assert sink.traces == []

    async def test_provider_error_propagates(self, make_agent, store):
        conv = store.add(Conversation(id="conv-1", messages=alternating_messages(2)))
        provider = ScriptedProvider([ProviderError("rate limited", status_code=429)])

        with pytest.raises(ProviderError):
            await make_agent(provider).process_message("Hi", conversation_id="conv-1")

        assert store.save_calls == 0
        assert store.conversations["conv-1"] is conv

    async def test_trace_save_failure_is_swallowed(self, make_agent, store):
        provider = ScriptedProvider([make_completion(text="ok")])
        agent = make_agent(provider, traces=RecordingTraceSink(error=TraceSaveError("disk full")))

        result = await agent.process_message("Hi")

        assert result.response == "ok"
        assert store.save_calls == 1


class TestContextManagement:
    @pytest.fixture
    def cm_settings(self) -> Settings:
        return Settings(
            ANTHROPIC_API_KEY="test-key",
            max_iterations=3,
            max_conversation_tokens=150_000,
            keep_recent_messages=2,
            summary_max_tokens=256,
        )

    async def test_summarizes_before_turn(self, make_agent, store, cm_settings):
        store.add(Conversation(id="conv-1", messages=alternating_messages(6), token_count=160_000))
        provider = ScriptedProvider([
            make_completion(text="Earlier we talked."),
            make_completion(text="Sure."),
        ])

        result = await make_agent(provider, settings=cm_settings).process_message(
            "Next", conversation_id="conv-1"
        )

        summary_call, turn_call = provider.calls
        assert summary_call["tools"] is None
        assert summary_call["max_tokens"] == 256
        assert summary_call["system_prompt"] == ""

        sent = turn_call["messages"]
        assert sent[0].content == f"[{SUMMARY_MARKER}: Earlier we talked.]"
        assert sent[1:3] == list(alternating_messages(6)[4:])
        assert sent[3].content == "Next"

        assert len(result.conversation.summaries) == 1
        assert result.conversation.summaries[0].original_message_count == 6
        # Summarization is not a loop iteration
        assert len(result.trace.iterations) == 1

    async def test_below_threshold_skips_summary(self, make_agent, store, cm_settings):
        store.add(Conversation(id="conv-1", messages=alternating_messages(6), token_count=100))
        provider = ScriptedProvider([make_completion(text="Sure.")])

        result = await make_agent(provider, settings=cm_settings).process_message(
            "Next", conversation_id="conv-1"
        )

        assert len(provider.calls) == 1
        assert result.conversation.summaries == ()

    async def test_disabled_by_default(self, make_agent, store):
        store.add(Conversation(id="conv-1", messages=alternating_messages(2), token_count=160_000))
        provider = ScriptedProvider([make_completion(text="Sure.")])

        await make_agent(provider).process_message("Next", conversation_id="conv-1")

        assert len(provider.calls) == 1

    async def test_failure_aborts_turn(self, make_agent, store, cm_settings):
        store.add(Conversation(id="conv-1", messages=alternating_messages(2), token_count=160_000))
        provider = ScriptedProvider([])

        with pytest.raises(ContextManagementError) as exc_info:
            await make_agent(provider, settings=cm_settings).process_message(
                "Next", conversation_id="conv-1"
            )

        assert "start a new conversation" in str(exc_info.value)
        assert provider.calls == []
        assert store.save_calls == 0

    async def test_summary_provider_failure_aborts_turn(self, make_agent, store, cm_settings):
        store.add(Conversation(id="conv-1", messages=alternating_messages(6), token_count=160_000))
        provider = ScriptedProvider([ProviderError("overloaded", status_code=529)])

        with pytest.raises(ContextManagementError):
            await make_agent(provider, settings=cm_settings).process_message(
                "Next", conversation_id="conv-1"
            )

        assert len(provider.calls) == 1
        assert store.save_calls == 0


class TestCost:
    async def test_cost_sums_iterations(self, make_agent):
        provider = ScriptedProvider([
            make_completion(tool_uses=[{"name": "echo"}], input_tokens=100, output_tokens=20),
            make_completion(text="ok", input_tokens=100, output_tokens=20),
        ])

        trace = (await make_agent(provider).process_message("Hi")).trace

        assert trace.total_input_tokens == 200
        assert trace.total_output_tokens == 40
        assert trace.total_tokens == sum(it.total_tokens for it in trace.iterations)
        # 200 in at $1/M + 40 out at $5/M
        assert trace.total_cost_usd == pytest.approx(0.0004)

    async def test_unknown_model_costs_nothing(self, make_agent):
        settings = Settings(ANTHROPIC_API_KEY="k", model="some-future-model")
        provider = ScriptedProvider([make_completion(text="ok")])

        trace = (await make_agent(provider, settings=settings).process_message("Hi")).trace

        assert trace.model == "some-future-model"
        assert trace.total_cost_usd == 0.0


class TestLifecycle:
    async def test_close_releases_resources(self, make_agent, counter):
        provider = ScriptedProvider([])
        async with make_agent(provider):
            pass
        assert provider.closed is True
        assert counter.loaded is False

    async def test_concurrent_turns_are_serialized(self, make_agent, store):
        store.add(Conversation(id="conv-1"))
        active = 0
        max_active = 0

        class SlowProvider(ScriptedProvider):
            async def complete(self, *args, **kwargs):
                nonlocal active, max_active
                active += 1
                max_active = max(max_active, active)
                await asyncio.sleep(0.01)
                active -= 1
                return await super().complete(*args, **kwargs)

        provider = SlowProvider(lambda n: make_completion(text=f"reply {n}"))
        agent = make_agent(provider)

        await asyncio.gather(
            agent.process_message("first", conversation_id="conv-1"),
            agent.process_message("second", conversation_id="conv-1"),
        )

        assert max_active == 1
        # The second turn saw the first turn's messages
        final = store.conversations["conv-1"]
        assert len(final.messages) == 4
        assert len(provider.calls[1]["messages"]) == 3
