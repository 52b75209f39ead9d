"""Brain tool loop, bounded history, and reflection."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from tradeagent.orchestrator.brain import Brain
from tradeagent.shell.config import BrainConfig
from tradeagent.shell.errors import ConfigurationError
from tradeagent.skills.registry import Skill, SkillParameter, SkillRegistry


def _text(text):
    return SimpleNamespace(content=[SimpleNamespace(type="text", text=text)])


def _tool_call(name, params, call_id="toolu_1"):
    return SimpleNamespace(content=[
        SimpleNamespace(type="text", text="Let me check."),
        SimpleNamespace(type="tool_use", id=call_id, name=name, input=params),
    ])


def _ai(*responses, reflection="nothing"):
    ai = MagicMock()
    ai.available = True
    ai.reflection_model = "claude-haiku-4-5-20251001"
    ai.create_message = AsyncMock(side_effect=list(responses))
    ai.ask = AsyncMock(return_value=reflection)
    return ai


def _registry():
    registry = SkillRegistry()

    async def positions(params):
        return "PEPE: $5 @ 0.001"

    async def explode(params):
        raise RuntimeError("wallet locked")

    registry.register(Skill(name="get_open_positions", description="Open positions", handler=positions))
    registry.register(Skill(
        name="explode", description="Always fails", handler=explode,
        parameters=(SkillParameter("token", "string", "", required=True),),
    ))
    return registry


@pytest.mark.asyncio
async def test_reply_without_tools(ledger, store):
    ai = _ai(_text("gm! markets look choppy"))
    brain = Brain(ai, _registry(), ledger, store)

    reply = await brain.process_message("42", "Ana", "gm")
    assert reply == "gm! markets look choppy"
    assert ai.create_message.await_count == 1
    kwargs = ai.create_message.call_args.kwargs
    assert kwargs["messages"] == [{"role": "user", "content": "gm"}]
    assert {t["name"] for t in kwargs["tools"]} == {"get_open_positions", "explode"}
    assert "Win Rate: 0.0%" in kwargs["system"]


@pytest.mark.asyncio
async def test_tool_call_round_trip(ledger, store):
    ai = _ai(_tool_call("get_open_positions", {}), _text("You hold PEPE."))
    brain = Brain(ai, _registry(), ledger, store)

    reply = await brain.process_message("42", "Ana", "what am I holding?")
    assert reply == "You hold PEPE."
    assert ai.create_message.await_count == 2

    messages = ai.create_message.call_args.kwargs["messages"]
    assert messages[-2]["role"] == "assistant"
    assert messages[-2]["content"][1]["type"] == "tool_use"
    result = messages[-1]["content"][0]
    assert result["type"] == "tool_result"
    assert result["tool_use_id"] == "toolu_1"
    assert result["content"] == "PEPE: $5 @ 0.001"
    await brain.wait_background()


@pytest.mark.asyncio
async def test_unknown_skill_becomes_tool_text(ledger, store):
    ai = _ai(_tool_call("teleport", {}), _text("I can't do that."))
    brain = Brain(ai, _registry(), ledger, store)

    reply = await brain.process_message("42", "Ana", "teleport my bags")
    assert reply == "I can't do that."
    result = ai.create_message.call_args.kwargs["messages"][-1]["content"][0]
    assert result["content"] == "Unknown skill: teleport"
    await brain.wait_background()


@pytest.mark.asyncio
async def test_failing_skill_becomes_tool_text(ledger, store):
    ai = _ai(_tool_call("explode", {"token": "PEPE"}), _text("That failed."))
    brain = Brain(ai, _registry(), ledger, store)

    await brain.process_message("42", "Ana", "do the risky thing")
    result = ai.create_message.call_args.kwargs["messages"][-1]["content"][0]
    assert result["content"] == "Error: wallet locked"
    await brain.wait_background()


@pytest.mark.asyncio
async def test_history_is_capped(ledger, store):
    ai = _ai(*[_text(f"reply {i}") for i in range(30)])
    brain = Brain(ai, _registry(), ledger, store, BrainConfig(history_limit=40, context_messages=20))

    for i in range(30):
        await brain.process_message("42", "Ana", f"hi {i}")
    profile = brain.profile("42")
    assert len(profile.history) == 40
    assert profile.history[-1].content == "reply 29"
    assert profile.interaction_count == 30

    sent = ai.create_message.call_args.kwargs["messages"]
    assert len(sent) <= 20
    assert sent[0]["role"] == "user"
    await brain.wait_background()


@pytest.mark.asyncio
async def test_conversations_are_separate(ledger, store):
    ai = _ai(_text("a"), _text("b"))
    brain = Brain(ai, _registry(), ledger, store)
    await brain.process_message("1", "Ana", "hello")
    await brain.process_message("2", "Bo", "hey")
    assert len(brain.profile("1").history) == 2
    assert ai.create_message.call_args.kwargs["messages"] == [{"role": "user", "content": "hey"}]


@pytest.mark.asyncio
async def test_ai_unavailable_message(ledger, store):
    ai = _ai()
    ai.available = False
    brain = Brain(ai, _registry(), ledger, store)
    reply = await brain.process_message("42", "Ana", "scan please")
    assert "ANTHROPIC_API_KEY" in reply
    ai.create_message.assert_not_called()


@pytest.mark.asyncio
async def test_budget_exhausted_is_user_text(ledger, store):
    ai = _ai(ConfigurationError("Daily AI token budget used up"))
    brain = Brain(ai, _registry(), ledger, store)
    reply = await brain.process_message("42", "Ana", "scan please")
    assert reply.startswith("AI is unavailable right now")
    assert "/scan" in reply


@pytest.mark.asyncio
async def test_model_failure_is_user_text(ledger, store):
    ai = _ai(RuntimeError("overloaded"))
    brain = Brain(ai, _registry(), ledger, store)
    reply = await brain.process_message("42", "Ana", "scan please")
    assert "overloaded" in reply
    assert "/scan" in reply


@pytest.mark.asyncio
async def test_reflection_appends_learning(ledger, store):
    ai = _ai(_text("Sure, scanning now."), reflection="User prefers tokens under $20k market cap.")
    brain = Brain(ai, _registry(), ledger, store)

    await brain.process_message("42", "Ana", "only show me sub-20k caps please")
    await brain.wait_background()

    assert len(ledger.learnings) == 1
    assert ledger.learnings[0].endswith("User prefers tokens under $20k market cap.")
    assert ledger.learnings[0].startswith("[")
    assert (await store.load()).learnings == ledger.learnings


@pytest.mark.asyncio
async def test_reflection_skips_nothing_and_short_messages(ledger, store):
    ai = _ai(_text("ok"), _text("ok"), reflection="Nothing.")
    brain = Brain(ai, _registry(), ledger, store)

    await brain.process_message("42", "Ana", "hi")
    await brain.process_message("42", "Ana", "a longer message with no insight")
    await brain.wait_background()

    assert ai.ask.await_count == 1
    assert ledger.learnings == []


@pytest.mark.asyncio
async def test_learnings_are_capped(ledger, store):
    ai = _ai(reflection="Momentum plays beat dip buys this week.")
    brain = Brain(ai, _registry(), ledger, store, BrainConfig(learnings_limit=100))
    ledger.learnings.extend(f"old {i}" for i in range(100))

    await brain.reflect("what worked this week?", "momentum")
    assert len(ledger.learnings) == 100
    assert ledger.learnings[0] == "old 1"
    assert "Momentum plays" in ledger.learnings[-1]


@pytest.mark.asyncio
async def test_reflection_failure_is_swallowed(ledger, store):
    ai = _ai(_text("done"))
    ai.ask.side_effect = RuntimeError("rate limited")
    brain = Brain(ai, _registry(), ledger, store)

    reply = await brain.process_message("42", "Ana", "remember that I like DEGEN")
    await brain.wait_background()
    assert reply == "done"
    assert ledger.learnings == []
