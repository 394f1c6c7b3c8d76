"""
Completion Router — one entry point for every provider.

Resolves the public model id through the registry, rejects invalid requests
before any network I/O, and hands back the selected adapter's lazy delta
stream. The provider tag on the model descriptor is the only thing that
decides which adapter serves a request.
"""

from __future__ import annotations

import logging
from contextlib import aclosing
from typing import AsyncIterator

import httpx

from multimind.backends.alibaba import AlibabaAdapter
from multimind.backends.base import ChatRequest, DeltaChunk, ProviderAdapter
from multimind.backends.google import GoogleAdapter
from multimind.backends.openrouter import OpenRouterAdapter
from multimind.errors import ImageNotSupported, ProviderError, UnknownProvider
from multimind.registry import ModelDescriptor, ModelRegistry, ProviderTag

logger = logging.getLogger(__name__)

# Provider tag → adapter class
PROVIDERS: dict[ProviderTag, type[ProviderAdapter]] = {
    ProviderTag.GOOGLE: GoogleAdapter,
    ProviderTag.OPENROUTER: OpenRouterAdapter,
    ProviderTag.ALIBABA: AlibabaAdapter,
}


def create_adapter(
    tag: ProviderTag,
    cfg: dict,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ProviderAdapter:
    """Instantiate an adapter from its providers.<tag> config block."""
    cls = PROVIDERS.get(tag)
    if not cls:
        raise UnknownProvider(str(tag))

    kwargs = {
        "url": cfg.get("url", ""),
        "api_key": cfg.get("api_key", ""),
        "timeout": cfg.get("timeout", 120),
        "temperature": cfg.get("temperature", 0.7),
        "max_tokens": cfg.get("max_tokens", 2048),
        "transport": transport,
    }

    # OpenRouter wants app attribution headers
    if tag is ProviderTag.OPENROUTER:
        kwargs["referer"] = cfg.get("referer", "")
        kwargs["title"] = cfg.get("title", "")

    return cls(**kwargs)


class CompletionRouter:
    """Routes a ChatRequest to the adapter that owns its model."""

    def __init__(self, registry: ModelRegistry, adapters: dict[ProviderTag, ProviderAdapter]):
        self.registry = registry
        self.adapters = dict(adapters)
        logger.info(
            "Completion router initialized: %s",
            ", ".join(tag.value for tag in self.adapters),
        )

    @classmethod
    def from_config(
        cls,
        cfg: dict,
        registry: ModelRegistry | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "CompletionRouter":
        registry = registry or ModelRegistry.from_config(cfg.get("models"))
        providers_cfg = cfg.get("providers", {})
        adapters = {
            tag: create_adapter(tag, providers_cfg.get(tag.value, {}), transport=transport)
            for tag in ProviderTag
        }
        return cls(registry, adapters)

    def adapter_for(self, descriptor: ModelDescriptor) -> ProviderAdapter:
        adapter = self.adapters.get(descriptor.provider)
        if adapter is None:
            raise UnknownProvider(str(descriptor.provider.value))
        return adapter

    def route(self, request: ChatRequest) -> AsyncIterator[DeltaChunk]:
        """
        Validate and dispatch a request.

        Raises ModelNotFound, ImageNotSupported, UnknownProvider or
        ProviderAuthError synchronously. The returned stream does no network
        I/O until it is iterated.
        """
        descriptor = self.registry.lookup(request.public_model_id)

        if request.new_user_image and not descriptor.supports_image:
            raise ImageNotSupported(descriptor.display_name)

        adapter = self.adapter_for(descriptor)
        adapter.check_credentials()

        upstream = adapter.translate_request(
            descriptor.upstream_model_id,
            request.conversation,
            request.new_user_content,
            request.new_user_image,
        )
        logger.info(
            "Routing model '%s' to %s (%s)",
            descriptor.public_id, adapter.name, descriptor.upstream_model_id,
        )
        return self._stream(adapter.stream_deltas(upstream), descriptor)

    @staticmethod
    async def _stream(
        deltas: AsyncIterator[DeltaChunk],
        descriptor: ModelDescriptor,
    ) -> AsyncIterator[DeltaChunk]:
        async with aclosing(deltas):
            try:
                async for chunk in deltas:
                    yield chunk
            except ProviderError as e:
                if not e.model_name:
                    e.model_name = descriptor.display_name
                logger.warning("Model '%s' stream failed: %s", descriptor.public_id, e)
                raise
