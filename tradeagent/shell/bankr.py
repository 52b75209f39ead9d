"""Bankr agent API client for research and trade prompts.

Bankr runs each prompt as an asynchronous job: submit, then poll until the
job completes, fails, or the job timeout elapses. `prompt` never raises;
every failure comes back as a PromptResult with success=False.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

import httpx
import structlog

from tradeagent.shell.config import BankrConfig
from tradeagent.shell.errors import ConfigurationError, ResearchError

log = structlog.get_logger()

DONE_STATES = {"completed"}
FAILED_STATES = {"failed", "cancelled", "canceled", "error"}


@dataclass
class PromptResult:
    success: bool
    response: str | None = None
    error: str | None = None
    job_id: str = ""
    thread_id: str | None = None
    status: str = ""


def _json_object(resp: httpx.Response) -> dict:
    """Decode a response body that must be a JSON object."""
    data = resp.json()
    if not isinstance(data, dict):
        raise ResearchError(f"unexpected Bankr response: {str(data)[:200]}")
    return data


class BankrClient:
    def __init__(self, config: BankrConfig, client: httpx.AsyncClient | None = None) -> None:
        self._config = config
        self._client = client or httpx.AsyncClient(timeout=30.0)

    @property
    def configured(self) -> bool:
        return self._config.configured

    async def close(self) -> None:
        await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        return {"X-API-Key": self._config.api_key, "Content-Type": "application/json"}

    async def submit(self, text: str, thread_id: str | None = None) -> dict:
        body: dict[str, str] = {"prompt": text}
        if thread_id:
            body["threadId"] = thread_id
        resp = await self._client.post(
            f"{self._config.api_url}/agent/prompt", json=body, headers=self._headers(),
        )
        resp.raise_for_status()
        data = _json_object(resp)
        if not data.get("jobId"):
            raise ResearchError(f"Bankr did not return a job id: {data}")
        return data

    async def job(self, job_id: str) -> dict:
        resp = await self._client.get(
            f"{self._config.api_url}/agent/job/{job_id}", headers=self._headers(),
        )
        resp.raise_for_status()
        return _json_object(resp)

    async def prompt(self, text: str, thread_id: str | None = None) -> PromptResult:
        """Submit a prompt and poll until it settles."""
        if not self.configured:
            return PromptResult(success=False, error="Bankr API not configured")

        try:
            submitted = await self.submit(text, thread_id)
        except (httpx.HTTPError, ResearchError, ValueError) as e:
            log.warning("bankr.submit_failed", error=str(e))
            return PromptResult(success=False, error=f"submit failed: {e}")

        job_id = submitted["jobId"]
        thread_id = submitted.get("threadId", thread_id)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.job_timeout

        while loop.time() < deadline:
            await asyncio.sleep(self._config.poll_interval)
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            try:
                data = await asyncio.wait_for(self.job(job_id), timeout=remaining)
            except asyncio.TimeoutError:
                break
            except (httpx.HTTPError, ResearchError, ValueError) as e:
                # transient poll failures are retried until the deadline
                log.warning("bankr.poll_failed", job_id=job_id, error=str(e))
                continue

            status = str(data.get("status", "")).lower()
            if status in DONE_STATES:
                log.info("bankr.job_completed", job_id=job_id)
                return PromptResult(
                    success=True, response=data.get("response") or "", job_id=job_id,
                    thread_id=thread_id, status=status,
                )
            if status in FAILED_STATES:
                error = data.get("error") or f"job {status}"
                log.warning("bankr.job_failed", job_id=job_id, status=status, error=error)
                return PromptResult(
                    success=False, error=error, job_id=job_id, thread_id=thread_id, status=status,
                )

        log.warning("bankr.job_timeout", job_id=job_id, timeout=self._config.job_timeout)
        return PromptResult(
            success=False, error=f"timeout after {self._config.job_timeout:g}s",
            job_id=job_id, thread_id=thread_id, status="timeout",
        )

    async def ask(self, text: str) -> str:
        """Like `prompt`, but raises on any non-success outcome."""
        if not self.configured:
            raise ConfigurationError("Bankr API not configured (set BANKR_API_KEY)")
        result = await self.prompt(text)
        if not result.success:
            raise ResearchError(result.error or "unknown Bankr error")
        return result.response or ""
