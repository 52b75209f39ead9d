"""Brain: per-conversation tool-calling loop.

received -> model call 1 (with tools) -> execute tool calls -> model call 2 -> reply

The system prompt is rebuilt from the live ledger on every message. After a
reply is produced, a detached reflection task asks the model for a one-line
takeaway and appends it to the ledger's learnings. Reflection is best-effort:
its failures are logged and never reach the caller.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog

from tradeagent.orchestrator.ai_client import AIClient, response_text
from tradeagent.shell.config import BrainConfig
from tradeagent.shell.errors import ConfigurationError
from tradeagent.shell.ledger import LedgerStore
from tradeagent.shell.models import Ledger
from tradeagent.skills.registry import SkillRegistry
from tradeagent.trading.performance import compute_stats, get_open_positions

log = structlog.get_logger()

MIN_REFLECTION_LENGTH = 10

REFLECTION_PROMPT = """You are an AI trading agent reflecting on an interaction.
User said: "{user}"
You responded: "{reply}"

In 1 sentence, what is the takeaway about the user's intent, preferences, or the market? \
If nothing notable, respond with "nothing"."""


@dataclass
class Message:
    role: str
    content: str
    timestamp: float = field(default_factory=time.time)


@dataclass
class ConversationProfile:
    chat_id: str
    name: str
    history: list[Message] = field(default_factory=list)
    last_seen: float = field(default_factory=time.time)
    interaction_count: int = 0

    def remember(self, role: str, content: str, limit: int) -> None:
        self.history.append(Message(role, content))
        if len(self.history) > limit:
            del self.history[:-limit]


def _block_to_param(block: Any) -> dict:
    if block.type == "tool_use":
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
    return {"type": "text", "text": block.text}


class Brain:
    def __init__(
        self,
        ai: AIClient,
        skills: SkillRegistry,
        ledger: Ledger,
        store: LedgerStore,
        config: BrainConfig | None = None,
    ) -> None:
        self._ai = ai
        self._skills = skills
        self._ledger = ledger
        self._store = store
        self._config = config or BrainConfig()
        self._profiles: dict[str, ConversationProfile] = {}
        self._background: set[asyncio.Task] = set()

    def profile(self, chat_id: str) -> ConversationProfile | None:
        return self._profiles.get(str(chat_id))

    def build_system_prompt(self, profile: ConversationProfile) -> str:
        ledger = self._ledger
        s = ledger.settings
        total, win_rate, total_pnl = compute_stats(ledger)
        open_trades = get_open_positions(ledger)
        positions = ", ".join(f"{t.symbol}: ${t.amount} @ {t.price}" for t in open_trades) or "None"
        learnings = "\n".join(ledger.learnings[-10:]) or "No learnings yet, still building experience."

        return f"""You are a sharp, street-smart AI trading agent on the Base blockchain. \
You think, you learn, you adapt.

## STYLE
- Talk like a savvy trader who is also the user's friend
- Be confident but honest about risks; never make up data
- Keep responses concise and use Markdown for readability

## YOUR CAPABILITIES
You can call these skills (tools):
{self._skills.describe_skills()}

## CURRENT STATE
- Open Positions: {positions}
- Total Trades: {total}
- Win Rate: {win_rate * 100:.1f}%
- Total P&L: {total_pnl:+.2f}%
- Auto-Trade: {"ON" if s.auto_trade_enabled else "OFF"}
- Max Market Cap Filter: ${s.max_market_cap:,.0f}
- Buy Amount: ${s.max_buy_amount}
- Take Profit / Stop Loss: {s.take_profit_pct:g}% / {s.stop_loss_pct:g}%

## LEARNINGS FROM PAST TRADES
{learnings}

## USER CONTEXT
- Name: {profile.name}
- Interactions: {profile.interaction_count}

## RULES
1. ALWAYS use a skill when the user wants an action (scan, trade, research, settings)
2. You may call several skills in one turn
3. If a skill reports an error, explain it and suggest a next step
4. If asked for something you can't do, say what you CAN do
5. Never expose keys or other sensitive data"""

    def _context_messages(self, profile: ConversationProfile) -> list[dict]:
        """Recent history as API messages: starts with a user turn, roles alternate."""
        recent = profile.history[-self._config.context_messages:]
        while recent and recent[0].role != "user":
            recent = recent[1:]
        messages: list[dict] = []
        for m in recent:
            if messages and messages[-1]["role"] == m.role:
                messages[-1]["content"] += "\n\n" + m.content
            else:
                messages.append({"role": m.role, "content": m.content})
        return messages

    async def process_message(self, chat_id: str, user_name: str, text: str) -> str:
        chat_id = str(chat_id)
        profile = self._profiles.get(chat_id)
        if profile is None:
            profile = ConversationProfile(chat_id=chat_id, name=user_name)
            self._profiles[chat_id] = profile
        profile.name = user_name
        profile.last_seen = time.time()
        profile.interaction_count += 1
        profile.remember("user", text, self._config.history_limit)

        if not self._ai.available:
            return (
                "My brain isn't connected yet. Add ANTHROPIC_API_KEY to .env to enable AI "
                "reasoning, or use direct commands like /scan, /positions and /performance."
            )

        try:
            reply = await self._run_turn(profile)
        except ConfigurationError as e:
            log.warning("brain.disabled", error=str(e))
            return f"AI is unavailable right now: {e}.\n\nDirect commands like /scan and /positions still work."
        except Exception as e:
            log.error("brain.error", error=str(e), type=type(e).__name__)
            return (
                f"Hmm, my brain glitched: {e}\n\n"
                "Try again, or use a direct command like /scan or /positions."
            )

        profile.remember("assistant", reply, self._config.history_limit)
        self._spawn_reflection(text, reply)
        return reply

    async def _run_turn(self, profile: ConversationProfile) -> str:
        system = self.build_system_prompt(profile)
        tools = self._skills.to_tool_schemas()
        messages = self._context_messages(profile)

        response = await self._ai.create_message(
            messages=messages, system=system, tools=tools,
            max_tokens=self._config.max_tokens, temperature=self._config.temperature,
            purpose="chat",
        )
        tool_calls = [b for b in response.content if getattr(b, "type", None) == "tool_use"]
        if not tool_calls:
            return response_text(response) or "I don't have an answer for that yet."

        messages.append({"role": "assistant", "content": [_block_to_param(b) for b in response.content]})
        results = []
        for call in tool_calls:
            results.append({
                "type": "tool_result",
                "tool_use_id": call.id,
                "content": await self._execute_tool(call.name, call.input),
            })
        messages.append({"role": "user", "content": results})

        final = await self._ai.create_message(
            messages=messages, system=system, tools=tools,
            max_tokens=self._config.max_tokens, temperature=self._config.temperature,
            purpose="chat_followup",
        )
        return response_text(final) or "Done!"

    async def _execute_tool(self, name: str, params: Any) -> str:
        """Run a skill by name. Failures come back as text for the model to read."""
        skill = self._skills.get(name)
        if skill is None:
            log.warning("brain.unknown_skill", skill=name)
            return f"Unknown skill: {name}"
        log.info("brain.tool_call", skill=name, params=params)
        try:
            return await skill.execute(dict(params or {}))
        except Exception as e:
            log.warning("brain.tool_failed", skill=name, error=str(e))
            return f"Error: {e}"

    # --- Reflection ---

    def _spawn_reflection(self, user_message: str, reply: str) -> None:
        if len(user_message) < MIN_REFLECTION_LENGTH:
            return
        task = asyncio.create_task(self.reflect(user_message, reply))
        self._background.add(task)
        task.add_done_callback(self._on_reflection_done)

    def _on_reflection_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            log.debug("brain.reflection_failed", error=str(exc))

    async def reflect(self, user_message: str, reply: str) -> str | None:
        """Ask for a one-sentence takeaway and store it. Returns the stored entry."""
        text = await self._ai.ask(
            REFLECTION_PROMPT.format(user=user_message, reply=reply),
            model=self._ai.reflection_model, max_tokens=100, temperature=0.3,
            purpose="reflection",
        )
        text = text.strip()
        if len(text) <= 5 or text.lower().rstrip(".") == "nothing":
            return None

        entry = f"[{datetime.now(timezone.utc).date().isoformat()}] {text}"
        self._ledger.add_learning(entry, self._config.learnings_limit)
        await self._store.save(self._ledger)
        log.info("brain.learned", learnings=len(self._ledger.learnings))
        return entry

    async def wait_background(self) -> None:
        """Wait for in-flight reflections (used on shutdown and in tests)."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
