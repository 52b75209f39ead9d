"""AI Client — abstraction over Anthropic and Google Vertex APIs.

Provides tool-capable message calls for the brain, a plain-text `ask` for
one-shot prompts, a daily token budget, and per-call cost logging.
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from tradeagent.shell.config import AIConfig
from tradeagent.shell.database import Database
from tradeagent.shell.errors import ConfigurationError

log = structlog.get_logger()

# Cost per million tokens (approximate)
MODEL_COSTS = {
    "claude-sonnet-4-5-20250929": {"input": 3.0, "output": 15.0},
    "claude-haiku-4-5-20251001": {"input": 1.0, "output": 5.0},
}

_TRANSIENT = ("timeout", "rate", "429", "500", "502", "503", "529", "overloaded", "connection")


def response_text(response: Any) -> str:
    return "".join(
        block.text for block in response.content if getattr(block, "type", None) == "text"
    )


class AIClient:
    def __init__(self, config: AIConfig, db: Database) -> None:
        self._config = config
        self._db = db
        self._client = None
        self._daily_tokens_used: int = 0

    async def initialize(self) -> None:
        """Create the API client and seed the token counter from today's usage."""
        if not self._config.configured:
            log.warning("ai.disabled", reason="no credentials configured")
            return

        if self._config.provider == "vertex":
            from anthropic import AsyncAnthropicVertex
            self._client = AsyncAnthropicVertex(
                project_id=self._config.vertex_project_id,
                region=self._config.vertex_region,
                timeout=self._config.request_timeout,
            )
        else:
            from anthropic import AsyncAnthropic
            self._client = AsyncAnthropic(
                api_key=self._config.anthropic_api_key,
                timeout=self._config.request_timeout,
            )
        log.info("ai.initialized", provider=self._config.provider, model=self._config.model)

        row = await self._db.fetchone(
            "SELECT COALESCE(SUM(input_tokens + output_tokens), 0) as total "
            "FROM token_usage WHERE created_at >= date('now')"
        )
        if row and row["total"]:
            self._daily_tokens_used = row["total"]
            log.info("ai.tokens_seeded", used_today=self._daily_tokens_used)

    @property
    def available(self) -> bool:
        return self._client is not None

    @property
    def reflection_model(self) -> str:
        return self._config.reflection_model

    @property
    def tokens_remaining(self) -> int:
        return max(0, self._config.daily_token_limit - self._daily_tokens_used)

    def reset_daily_tokens(self) -> None:
        self._daily_tokens_used = 0
        log.info("ai.daily_tokens_reset")

    async def create_message(
        self,
        messages: list[dict],
        system: str = "",
        tools: list[dict] | None = None,
        model: str | None = None,
        max_tokens: int = 1024,
        temperature: float = 0.7,
        purpose: str = "",
    ) -> Any:
        """Call the Messages API and return the raw response (text and tool_use blocks)."""
        if self._client is None:
            raise ConfigurationError("AI is not configured (set ANTHROPIC_API_KEY)")
        if self._daily_tokens_used >= self._config.daily_token_limit:
            log.warning("ai.daily_limit_reached", used=self._daily_tokens_used,
                        limit=self._config.daily_token_limit)
            raise ConfigurationError("Daily AI token budget used up; resets at midnight")

        model = model or self._config.model
        kwargs: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "messages": messages,
            "temperature": temperature,
        }
        if system:
            kwargs["system"] = system
        if tools:
            kwargs["tools"] = tools

        # Retry with exponential backoff for transient errors
        max_retries = 3
        for attempt in range(max_retries):
            try:
                response = await self._client.messages.create(**kwargs)
                break
            except Exception as e:
                error_str = str(e).lower()
                is_transient = any(k in error_str for k in _TRANSIENT)
                if not is_transient or attempt == max_retries - 1:
                    raise
                wait = 2 ** attempt
                log.warning("ai.retry", attempt=attempt + 1, error=str(e), wait=wait)
                await asyncio.sleep(wait)

        await self._track_usage(model, response, purpose)
        return response

    async def ask(
        self,
        prompt: str,
        model: str | None = None,
        system: str = "",
        max_tokens: int = 1024,
        temperature: float = 0.3,
        purpose: str = "",
    ) -> str:
        response = await self.create_message(
            messages=[{"role": "user", "content": prompt}],
            system=system, model=model, max_tokens=max_tokens,
            temperature=temperature, purpose=purpose,
        )
        return response_text(response)

    async def _track_usage(self, model: str, response: Any, purpose: str) -> None:
        input_tokens = response.usage.input_tokens
        output_tokens = response.usage.output_tokens
        self._daily_tokens_used += input_tokens + output_tokens

        costs = MODEL_COSTS.get(model, {"input": 3.0, "output": 15.0})
        cost = (input_tokens * costs["input"] + output_tokens * costs["output"]) / 1_000_000

        await self._db.execute(
            """INSERT INTO token_usage (model, input_tokens, output_tokens, cost_usd, purpose)
               VALUES (?, ?, ?, ?, ?)""",
            (model, input_tokens, output_tokens, cost, purpose),
        )
        await self._db.commit()

        log.info("ai.response", model=model, input_tokens=input_tokens,
                 output_tokens=output_tokens, cost=f"${cost:.4f}", purpose=purpose)

    async def get_daily_usage(self) -> dict:
        """Today's token usage summary."""
        rows = await self._db.fetchall(
            """SELECT model, SUM(input_tokens) as input_total, SUM(output_tokens) as output_total,
                      SUM(cost_usd) as cost_total, COUNT(*) as calls
               FROM token_usage WHERE created_at >= date('now')
               GROUP BY model"""
        )
        return {
            "models": {r["model"]: {
                "input": r["input_total"], "output": r["output_total"],
                "cost": r["cost_total"], "calls": r["calls"],
            } for r in rows},
            "total_cost": sum(r["cost_total"] for r in rows),
            "daily_limit": self._config.daily_token_limit,
            "used": self._daily_tokens_used,
        }
