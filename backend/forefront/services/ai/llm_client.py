"""
Async HTTP client for OpenAI-compatible model providers.

Design constraints:
- No provider SDKs; plain httpx against /chat/completions and /images/generations
- One pooled httpx.AsyncClient per provider, shared by concurrent requests
- One circuit breaker per model id
- Per-request settings (timeouts, models) are passed per call, never stored

Providers and credentials come from ``forefront.core.config`` (<PROVIDER>_API_BASE,
<PROVIDER>_API_KEY). LLM_COST_PER_1K_TOKENS is an optional cost hint for metrics.
"""
import os
import time
from typing import Any, Dict, List, Optional

import httpx

from forefront.core.circuit_breaker import CircuitBreakerOpenError, get_circuit_breaker
from forefront.core.config import OrchestratorSettings, ProviderSettings, get_settings
from forefront.core.logging import get_logger
from forefront.core.metrics import (
    record_llm_error,
    record_llm_request,
    record_llm_tokens_and_cost,
)
from forefront.services.ai.catalog import get_model_spec

logger = get_logger(__name__)


class LLMClient:
    """Async HTTP client shared by every agent and workflow step."""

    def __init__(
        self,
        providers: Dict[str, ProviderSettings],
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.providers = providers
        self._transport = transport
        self._clients: Dict[str, httpx.AsyncClient] = {}

    def _client_for(self, provider: ProviderSettings) -> httpx.AsyncClient:
        client = self._clients.get(provider.name)
        if client is None:
            headers = {"Content-Type": "application/json"}
            if provider.api_key:
                headers["Authorization"] = f"Bearer {provider.api_key}"
            client = httpx.AsyncClient(
                base_url=provider.api_base.rstrip("/"),
                headers=headers,
                timeout=provider.timeout_seconds,
                transport=self._transport,
            )
            self._clients[provider.name] = client
        return client

    def _provider_for(self, agent: str, model: str) -> ProviderSettings:
        try:
            provider = self.providers[get_model_spec(model).provider]
        except KeyError:
            record_llm_error(agent, "unknown_model")
            raise RuntimeError(f"No provider configured for model {model}") from None
        if not provider.api_key:
            # No API key configured → treat as unavailable and let caller fall back.
            record_llm_error(agent, "missing_api_key")
            raise RuntimeError(f"{provider.name} API key not configured")
        return provider

    async def _post(
        self,
        client: httpx.AsyncClient,
        path: str,
        json_payload: Dict[str, Any],
        timeout: Optional[float],
    ) -> httpx.Response:
        """Low-level POST helper (isolated for circuit breaker)."""
        kwargs: Dict[str, Any] = {"json": json_payload}
        if timeout is not None:
            kwargs["timeout"] = timeout
        response = await client.post(path, **kwargs)
        # Raise inside the breaker so 5xx/429 responses count as failures.
        response.raise_for_status()
        return response

    async def _request(
        self,
        agent: str,
        model: str,
        path: str,
        payload: Dict[str, Any],
        timeout: Optional[float],
    ) -> Dict[str, Any]:
        provider = self._provider_for(agent, model)
        client = self._client_for(provider)
        breaker = get_circuit_breaker(model)

        start = time.time()
        try:
            response: httpx.Response = await breaker.call_async(
                self._post, client, path, json_payload=payload, timeout=timeout
            )
        except CircuitBreakerOpenError:
            record_llm_error(agent, "circuit_open")
            logger.warning("llm_circuit_open", agent=agent, model=model)
            raise
        except httpx.TimeoutException as exc:
            record_llm_error(agent, "timeout")
            logger.warning(
                "llm_timeout",
                agent=agent,
                model=model,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise
        except httpx.HTTPError as exc:
            record_llm_error(agent, "http_error")
            logger.warning(
                "llm_http_error",
                agent=agent,
                model=model,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise
        finally:
            duration_ms = (time.time() - start) * 1000.0
            # Even if request failed, record latency for observability.
            record_llm_request(agent, model, duration_ms)

        data = response.json()
        self._record_usage(agent, model, data)
        return data

    def _record_usage(self, agent: str, model: str, data: Dict[str, Any]) -> None:
        # Best-effort, assumes OpenAI-style usage field.
        usage = data.get("usage") or {}
        input_tokens = int(usage.get("prompt_tokens") or 0)
        output_tokens = int(usage.get("completion_tokens") or 0)

        cost_per_1k = float(os.getenv("LLM_COST_PER_1K_TOKENS", "0.0") or "0.0")
        total_tokens = input_tokens + output_tokens
        cost_usd = 0.0
        if cost_per_1k > 0 and total_tokens > 0:
            cost_usd = (total_tokens / 1000.0) * cost_per_1k

        record_llm_tokens_and_cost(
            agent=agent,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=cost_usd,
        )

    async def chat(
        self,
        agent: str,
        messages: List[Dict[str, str]],
        model: str,
        max_tokens: int = 1024,
        temperature: float = 0.0,
        response_format: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Call the chat completion endpoint of the provider serving ``model``.

        Args:
            agent: Logical caller ("intent", "research", "consensus", ...)
            messages: OpenAI-style chat messages
            model: Catalog model id
            max_tokens: Max tokens for completion
            temperature: Sampling temperature
            response_format: Optional response_format for JSON mode
            timeout: Per-call HTTP timeout, overriding the provider default

        Returns:
            Raw JSON response from the API.
        """
        payload: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if response_format:
            payload["response_format"] = response_format
        return await self._request(agent, model, "/chat/completions", payload, timeout)

    async def generate_image(
        self,
        agent: str,
        prompt: str,
        model: str,
        size: str = "1024x1024",
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Call the image generation endpoint; returns the raw JSON response."""
        payload = {"model": model, "prompt": prompt, "n": 1, "size": size}
        return await self._request(agent, model, "/images/generations", payload, timeout)

    async def aclose(self) -> None:
        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()


_llm_client: Optional[LLMClient] = None


def get_llm_client(settings: Optional[OrchestratorSettings] = None) -> LLMClient:
    """Global LLM client instance (pooled connections shared across requests)."""
    global _llm_client
    if _llm_client is None:
        settings = settings or get_settings()
        _llm_client = LLMClient(providers=settings.providers)
    return _llm_client


def reset_llm_client() -> None:
    global _llm_client
    _llm_client = None
