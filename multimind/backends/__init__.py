"""
Provider adapters for MultiMind.
One adapter per upstream (Google Gemini, OpenRouter, Alibaba DashScope),
selected by the router from the model's provider tag.
"""
from multimind.backends.base import ChatRequest, DeltaChunk, ProviderAdapter
from multimind.backends.google import GoogleAdapter
from multimind.backends.openrouter import OpenRouterAdapter
from multimind.backends.alibaba import AlibabaAdapter
from multimind.backends.router import CompletionRouter

__all__ = [
    "ChatRequest",
    "DeltaChunk",
    "ProviderAdapter",
    "GoogleAdapter",
    "OpenRouterAdapter",
    "AlibabaAdapter",
    "CompletionRouter",
]
