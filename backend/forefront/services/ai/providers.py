"""
Model provider boundary.

The pipeline treats search, text and image models uniformly: given a model id
and a prompt, produce content. ``ProviderPool`` implements that contract over
the shared ``LLMClient`` and dispatches on the catalog's model kind.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from forefront.core.logging import get_logger
from forefront.services.ai.catalog import ModelKind, get_model_spec
from forefront.services.ai.errors import ProviderError
from forefront.services.ai.llm_client import LLMClient, get_llm_client
from forefront.services.ai.schema import ConversationTurn

logger = get_logger(__name__)


@dataclass(frozen=True)
class ProviderOptions:
    """Per-call options; never stored on the shared clients."""

    agent: str = "workflow"
    system_prompt: Optional[str] = None
    history: Tuple[ConversationTurn, ...] = ()
    max_tokens: int = 2048
    temperature: float = 0.7
    timeout_seconds: Optional[float] = None
    image_size: str = "1024x1024"


@dataclass(frozen=True)
class ProviderResult:
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)


class ModelProvider(Protocol):
    async def invoke(
        self, model_id: str, prompt: str, options: ProviderOptions
    ) -> ProviderResult:
        ...


def _message_content(data: Dict[str, Any]) -> str:
    # OpenAI-compatible shape: choices[0].message.content
    choices = data.get("choices") or [{}]
    return (choices[0].get("message") or {}).get("content") or ""


def _with_sources(content: str, citations: Sequence[str]) -> str:
    """Append the search citations as a numbered source list."""
    if not citations:
        return content
    lines = [f"{index}. {url}" for index, url in enumerate(citations, start=1)]
    return content.rstrip() + "\n\nSources:\n" + "\n".join(lines)


class ProviderPool:
    """Dispatches model calls to OpenAI-compatible chat, search and image endpoints."""

    def __init__(self, llm_client: Optional[LLMClient] = None):
        self._llm_client = llm_client or get_llm_client()

    async def invoke(
        self, model_id: str, prompt: str, options: ProviderOptions
    ) -> ProviderResult:
        """
        Produce content for ``prompt`` with ``model_id``.

        Raises:
            ProviderError for unknown models and empty responses; transport
            errors (httpx, circuit breaker, missing keys) propagate unchanged.
        """
        try:
            spec = get_model_spec(model_id)
        except KeyError:
            raise ProviderError(model_id, "model is not in the catalog") from None

        if spec.kind == ModelKind.IMAGE:
            return await self._invoke_image(model_id, prompt, options)
        return await self._invoke_chat(model_id, spec.kind, prompt, options)

    async def _invoke_chat(
        self,
        model_id: str,
        kind: ModelKind,
        prompt: str,
        options: ProviderOptions,
    ) -> ProviderResult:
        messages: List[Dict[str, str]] = []
        if options.system_prompt:
            messages.append({"role": "system", "content": options.system_prompt})
        for turn in options.history:
            messages.append({"role": turn.role, "content": turn.content})
        messages.append({"role": "user", "content": prompt})

        data = await self._llm_client.chat(
            agent=options.agent,
            messages=messages,
            model=model_id,
            max_tokens=options.max_tokens,
            temperature=options.temperature,
            timeout=options.timeout_seconds,
        )

        content = _message_content(data)
        if not content.strip():
            raise ProviderError(model_id, "empty completion")

        metadata: Dict[str, Any] = {"kind": kind.value}
        usage = data.get("usage")
        if usage:
            metadata["usage"] = usage
        if kind == ModelKind.SEARCH:
            # Search providers return citations next to the completion.
            citations = [str(c) for c in data.get("citations") or []]
            metadata["citations"] = citations
            content = _with_sources(content, citations)

        return ProviderResult(content=content, metadata=metadata)

    async def _invoke_image(
        self, model_id: str, prompt: str, options: ProviderOptions
    ) -> ProviderResult:
        data = await self._llm_client.generate_image(
            agent=options.agent,
            prompt=prompt,
            model=model_id,
            size=options.image_size,
            timeout=options.timeout_seconds,
        )
        images = data.get("data") or []
        if not images:
            raise ProviderError(model_id, "no image returned")

        image = images[0]
        if image.get("url"):
            url = image["url"]
        elif image.get("b64_json"):
            url = f"data:image/png;base64,{image['b64_json']}"
        else:
            raise ProviderError(model_id, "image payload has neither url nor b64_json")

        metadata: Dict[str, Any] = {"kind": ModelKind.IMAGE.value, "image_url": url}
        if image.get("revised_prompt"):
            metadata["revised_prompt"] = image["revised_prompt"]
        return ProviderResult(content=f"![Generated image]({url})", metadata=metadata)


_provider_pool: Optional[ProviderPool] = None


def get_provider_pool() -> ProviderPool:
    """Global singleton accessor."""
    global _provider_pool
    if _provider_pool is None:
        _provider_pool = ProviderPool()
    return _provider_pool
