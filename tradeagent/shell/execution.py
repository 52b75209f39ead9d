"""Order execution with hard timeouts and result normalization.

The execution collaborator exposes a single `invoke(action_name, args)`.
Backends may answer with a plain string or a structured (JSON-like) body;
both are normalized to a string here. Timeouts and error bodies become
ExecutionError. Nothing is retried automatically.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Protocol

import structlog

from tradeagent.shell.bankr import BankrClient
from tradeagent.shell.errors import ExecutionError

log = structlog.get_logger()


class ExecutionBackend(Protocol):
    async def invoke(self, action_name: str, args: dict[str, Any]) -> Any: ...


def normalize_result(result: Any) -> str:
    """Turn a backend answer into text, raising on error-shaped bodies."""
    if isinstance(result, str):
        text = result.strip()
        if text.lower().startswith("error:"):
            raise ExecutionError(text[6:].strip() or "unknown execution error")
        if text.startswith("{"):
            try:
                parsed = json.loads(text)
            except ValueError:
                return text
            _raise_if_error(parsed)
        return text

    if isinstance(result, dict):
        _raise_if_error(result)
    return json.dumps(result, indent=2, default=str)


def _raise_if_error(body: Any) -> None:
    if not isinstance(body, dict):
        return
    if body.get("error"):
        raise ExecutionError(str(body["error"]))
    if body.get("success") is False:
        raise ExecutionError(str(body.get("message") or "execution reported failure"))


class ActionExecutor:
    """The execution collaborator as the trading engine sees it."""

    def __init__(self, backend: ExecutionBackend, timeout: float = 30.0) -> None:
        self._backend = backend
        self._timeout = timeout

    async def invoke(self, action_name: str, args: dict[str, Any] | None = None) -> str:
        args = args or {}
        try:
            result = await asyncio.wait_for(
                self._backend.invoke(action_name, args), timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            log.warning("execution.timeout", action=action_name, timeout=self._timeout)
            raise ExecutionError(f"Action timeout ({self._timeout:g}s)") from e
        except ExecutionError:
            raise
        except Exception as e:
            log.warning("execution.failed", action=action_name, error=str(e))
            raise ExecutionError(str(e)) from e

        text = normalize_result(result)
        log.info("execution.done", action=action_name, symbol=args.get("symbol"))
        return text


class PaperBackend:
    """Simulated fills at the quoted price. Used in paper mode."""

    async def invoke(self, action_name: str, args: dict[str, Any]) -> dict:
        if action_name not in ("buy", "sell"):
            raise ExecutionError(f"Unsupported paper action: {action_name}")
        return {"status": "filled", "paper": True, "action": action_name, **args}


class BankrBackend:
    """Routes buy/sell orders through the Bankr agent as trade prompts."""

    def __init__(self, bankr: BankrClient, chain: str = "Base") -> None:
        self._bankr = bankr
        self._chain = chain

    async def invoke(self, action_name: str, args: dict[str, Any]) -> str:
        symbol = args["symbol"]
        if action_name == "buy":
            text = f"Buy ${args['amount']} of {symbol} on {self._chain}"
        elif action_name == "sell":
            text = f"Sell {args.get('percentage', 100)}% of my {symbol} on {self._chain}"
        else:
            raise ExecutionError(f"Unsupported action: {action_name}")

        result = await self._bankr.prompt(text)
        if not result.success:
            raise ExecutionError(result.error or "Bankr trade failed")
        return result.response or "Done"
