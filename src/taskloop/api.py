"""Streaming model client - OpenAI-compatible chat completions over SSE.

The engine consumes ``ModelClient.stream`` as an async iterator of typed
fragments (text, reasoning, usage).  The end of the iterator is the
end-of-stream signal; any failure surfaces as ``StreamError``.
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional

import httpx

from .errors import StreamError
from .logger import get_logger
from .models import ApiMessage

_log = get_logger("api")

RETRYABLE_STATUS = (429, 500, 502, 503, 504)


@dataclass
class ApiStreamChunk:
    """One fragment of a streamed model response."""
    type: str  # 'text' | 'reasoning' | 'usage'
    text: str = ""
    usage: Dict[str, int] = field(default_factory=dict)


class ModelClient:
    """Minimal async client for OpenAI-compatible streaming endpoints."""

    def __init__(
        self,
        api_key: str,
        base_url: str,
        model: str,
        temperature: float = 0.7,
        max_tokens: int = 8192,
        timeout: float = 300.0,
        max_retries: int = 3,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.max_retries = max_retries
        self._timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(self._timeout, connect=30.0))
        return self

    async def __aexit__(self, *args):
        if self._client:
            await self._client.aclose()
            self._client = None

    def _get_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }

    @staticmethod
    def _normalize_usage(usage: Dict) -> Dict[str, int]:
        out = {
            "prompt_tokens": int(usage.get("prompt_tokens", 0) or 0),
            "completion_tokens": int(usage.get("completion_tokens", 0) or 0),
        }
        details = usage.get("prompt_tokens_details") or {}
        if isinstance(details, dict) and details.get("cached_tokens"):
            out["prompt_cached_tokens"] = int(details["cached_tokens"])
        return out

    def build_payload(self, system_prompt: str, messages: List[ApiMessage]) -> Dict:
        return {
            "model": self.model,
            "messages": [{"role": "system", "content": system_prompt}] + [m.to_dict() for m in messages],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "stream": True,
            "stream_options": {"include_usage": True},
        }

    @classmethod
    def parse_sse_line(cls, line: str) -> List[ApiStreamChunk]:
        """Turn one ``data: {...}`` line into zero or more chunks."""
        line = line.strip()
        if not line.startswith("data: "):
            return []
        data_str = line[6:]
        if data_str.strip() == "[DONE]":
            return []
        try:
            data = json.loads(data_str)
        except json.JSONDecodeError:
            return []

        chunks: List[ApiStreamChunk] = []
        choices = data.get("choices") or []
        if choices:
            delta = choices[0].get("delta", {}) or {}
            reasoning = delta.get("reasoning_content") or delta.get("reasoning") or ""
            if reasoning:
                chunks.append(ApiStreamChunk("reasoning", text=reasoning))
            content = delta.get("content") or ""
            if isinstance(content, list):
                content = "".join(
                    part.get("text", "") for part in content
                    if isinstance(part, dict) and isinstance(part.get("text"), str)
                )
            if content:
                chunks.append(ApiStreamChunk("text", text=content))
        if data.get("usage"):
            chunks.append(ApiStreamChunk("usage", usage=cls._normalize_usage(data["usage"])))
        return chunks

    async def stream(self, system_prompt: str, messages: List[ApiMessage]) -> AsyncIterator[ApiStreamChunk]:
        """Yield fragments of the model's reply.

        Retries with backoff only while nothing has been yielded yet; once
        content has reached the caller a failure is raised as StreamError.
        """
        if self._client is None:
            raise StreamError("ModelClient used outside of 'async with'")
        url = f"{self.base_url}/chat/completions"
        payload = self.build_payload(system_prompt, messages)
        _log.info("stream: url=%s model=%s msgs=%d", url, self.model, len(messages))

        t0 = time.time()
        for attempt in range(self.max_retries + 1):
            yielded = False
            try:
                async with self._client.stream(
                    "POST", url, headers=self._get_headers(), json=payload
                ) as response:
                    response.raise_for_status()
                    async for line in response.aiter_lines():
                        for chunk in self.parse_sse_line(line):
                            yielded = True
                            yield chunk
                _log.info("stream complete: elapsed=%.1fs", time.time() - t0)
                return
            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                _log.warning("HTTP error %d on attempt %d/%d", status, attempt + 1, self.max_retries)
                if status in RETRYABLE_STATUS and not yielded and attempt < self.max_retries:
                    await asyncio.sleep(min(2 ** (attempt + 1), 60))
                    continue
                raise StreamError(f"API error: HTTP {status}", status_code=status,
                                  received_content=yielded) from e
            except (httpx.TimeoutException, httpx.RequestError) as e:
                _log.warning("Connection error on attempt %d/%d: %s: %s",
                             attempt + 1, self.max_retries, type(e).__name__, e)
                if not yielded and attempt < self.max_retries:
                    await asyncio.sleep(min(2 ** (attempt + 1), 60))
                    continue
                raise StreamError(f"Request failed: {type(e).__name__}: {e}",
                                  received_content=yielded) from e
