"""Ollama HTTP client for the analysis node.

Sends one batch request to Ollama's ``/api/generate`` endpoint and returns
the model's raw reply text.  Parsing is left to the response recoverer:
the reply is not trusted to be valid JSON.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Protocol

import httpx

from ..errors import ExternalServiceUnavailable
from ..timing import timed_node
from .request_builder import AnalysisRequest

log = logging.getLogger(__name__)

RETRY_BACKOFF_BASE_S = 2.0
HEALTH_TIMEOUT_S = 10.0


class AnalysisService(Protocol):
    async def analyze(self, request: AnalysisRequest) -> str: ...


class OllamaAnalysisClient:
    """Resilient Ollama client with bounded retries.

    Connection errors, timeouts, 5xx and 429 responses are retried with
    exponential backoff; other 4xx responses fail immediately.  Exhausted
    retries raise ``ExternalServiceUnavailable``.
    """

    def __init__(
        self,
        base_url: str,
        model_name: str,
        timeout_s: float = 300.0,
        max_retries: int = 3,
        backoff_base_s: float = RETRY_BACKOFF_BASE_S,
        json_mode: bool = True,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model_name = model_name
        self.timeout_s = timeout_s
        self.max_retries = max(1, max_retries)
        self.backoff_base_s = backoff_base_s
        self.json_mode = json_mode
        self._http_client = http_client

    def _payload(self, request: AnalysisRequest) -> dict:
        payload = {
            "model": self.model_name,
            "prompt": request.render_prompt(),
            "system": request.output_instructions,
            "stream": False,
            "options": {"num_predict": -1, "temperature": 0},
        }
        if self.json_mode:
            payload["format"] = "json"
        return payload

    @timed_node("analysis_call", "ai")
    async def analyze(self, request: AnalysisRequest) -> str:
        payload = self._payload(request)
        last_error = ""

        for attempt in range(1, self.max_retries + 1):
            try:
                raw = await self._post(payload)
                log.info("Batch %d: Ollama responded (%d chars)", request.batch_index, len(raw))
                return raw
            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                last_error = f"HTTP {status}: {e.response.text[:200]}"
                if status < 500 and status != 429:
                    break
            except httpx.HTTPError as e:
                last_error = f"{type(e).__name__}: {e}"

            log.warning("Batch %d: Ollama attempt %d/%d failed: %s",
                        request.batch_index, attempt, self.max_retries, last_error)
            if attempt < self.max_retries:
                await asyncio.sleep(self.backoff_base_s ** attempt if self.backoff_base_s else 0)

        raise ExternalServiceUnavailable(
            f"Ollama at {self.base_url} failed for batch {request.batch_index}: {last_error}"
        )

    async def _post(self, payload: dict) -> str:
        if self._http_client is not None:
            resp = await self._http_client.post(
                f"{self.base_url}/api/generate", json=payload, timeout=self.timeout_s,
            )
            resp.raise_for_status()
        else:
            async with httpx.AsyncClient(timeout=self.timeout_s) as client:
                resp = await client.post(f"{self.base_url}/api/generate", json=payload)
                resp.raise_for_status()
        try:
            body = resp.json()
        except ValueError as e:
            raise httpx.DecodingError(f"Ollama returned a non-JSON body: {e}", request=resp.request)
        return body.get("response", "") if isinstance(body, dict) else ""

    async def health(self) -> bool:
        """Return True if Ollama answers on ``/api/tags``."""
        try:
            if self._http_client is not None:
                resp = await self._http_client.get(f"{self.base_url}/api/tags", timeout=HEALTH_TIMEOUT_S)
            else:
                async with httpx.AsyncClient(timeout=HEALTH_TIMEOUT_S) as client:
                    resp = await client.get(f"{self.base_url}/api/tags")
            return resp.status_code == 200
        except httpx.HTTPError as e:
            log.warning("Ollama health check failed: %s", e)
            return False
