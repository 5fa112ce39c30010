# assetflow/ai_client.py
import asyncio
import logging
from typing import Dict, List

import httpx

logger = logging.getLogger(__name__)


class AIProviderError(Exception):
    pass


class AITimeoutError(AIProviderError):
    pass


class AIClient:
    """Text-in/text-out completion against an OpenAI-compatible /chat/completions endpoint."""

    def __init__(self, base_url: str, token: str, model: str, http_client: httpx.AsyncClient,
                 retries: int = 2, backoff: float = 1.0):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.model = model
        self.http_client = http_client
        self.retries = max(1, retries)
        self.backoff = backoff

    async def _post_with_retry(self, url, json, headers, timeout):
        delay = self.backoff
        for attempt in range(1, self.retries + 1):
            try:
                resp = await self.http_client.post(url, json=json, headers=headers, timeout=timeout)
                resp.raise_for_status()
                return resp.json()
            except httpx.TimeoutException as e:
                # the caller's timeout is a budget, not a per-attempt limit
                raise AITimeoutError(f"AI request timed out after {timeout}s") from e
            except (httpx.HTTPError, ValueError) as e:
                if attempt == self.retries:
                    logger.error("AI request failed after %s attempts to %s: %s", self.retries, url, e)
                    raise AIProviderError(str(e)) from e
                logger.warning("AI request attempt %s failed, retrying in %.1fs: %s", attempt, delay, e)
                await asyncio.sleep(delay)
                delay *= 2

    async def complete(self, messages: List[Dict[str, str]], temperature: float = 0.1,
                       max_tokens: int = 200, timeout_seconds: float = 60.0) -> str:
        url = f"{self.base_url}/chat/completions"
        headers = {"Authorization": f"Bearer {self.token}", "Content-Type": "application/json"}
        payload = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        resp = await self._post_with_retry(url, payload, headers, timeout=timeout_seconds)
        choices = resp.get("choices") if isinstance(resp, dict) else None
        if not choices or not choices[0].get("message"):
            raise AIProviderError("Invalid LLM response")
        return choices[0]["message"].get("content") or ""
