"""
Model registry — public model ids mapped to provider details.

Populated once from the `models:` list in config.yaml (or the built-in
catalog when that list is absent) and never mutated afterwards, so it can be
shared by every request without locking.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass

from multimind.errors import ModelNotFound, UnknownProvider

logger = logging.getLogger(__name__)


class ProviderTag(str, enum.Enum):
    GOOGLE = "google"
    OPENROUTER = "openrouter"
    ALIBABA = "alibaba"


@dataclass(frozen=True)
class ModelDescriptor:
    """One entry of the public model catalog."""
    public_id: str
    display_name: str
    provider: ProviderTag
    upstream_model_id: str
    supports_image: bool = False
    description: str = ""

    def to_catalog_entry(self) -> dict:
        """Shape the client dropdown expects."""
        return {
            "id": self.public_id,
            "name": self.display_name,
            "supportsImage": self.supports_image,
            "description": self.description,
        }


DEFAULT_MODELS: list[dict] = [
    {
        "id": "gemini-pro",
        "name": "Gemini 2.5 Pro",
        "provider": "google",
        "upstream_model": "gemini-2.5-pro-exp-03-25",
        "supports_image": True,
        "description": "Advanced multimodal model with comprehensive language and reasoning capabilities",
    },
    {
        "id": "gemini-flash",
        "name": "Gemini Flash",
        "provider": "google",
        "upstream_model": "gemini-2.0-flash-thinking-exp-01-21",
        "supports_image": True,
        "description": "Fast, efficient model optimized for quick responses",
    },
    {
        "id": "deepseek-zero",
        "name": "DeepSeek R1 Zero",
        "provider": "openrouter",
        "upstream_model": "deepseek/deepseek-r1-zero",
        "supports_image": True,
        "description": "Powerful image understanding and reasoning model",
    },
    {
        "id": "deepseek-chat",
        "name": "DeepSeek Chat V3",
        "provider": "openrouter",
        "upstream_model": "deepseek/deepseek-chat-v3-0324",
        "supports_image": False,
        "description": "Advanced conversation model with excellent reasoning abilities",
    },
    {
        "id": "qwen-vl",
        "name": "Qwen 2.5 VL",
        "provider": "alibaba",
        "upstream_model": "qwen2.5-vl-32b-instruct",
        "supports_image": True,
        "description": "Vision-language model with strong visual understanding",
    },
    {
        "id": "qwen-plus",
        "name": "Qwen Plus",
        "provider": "alibaba",
        "upstream_model": "qwen-plus",
        "supports_image": False,
        "description": "Balanced language model with good performance on diverse tasks",
    },
    {
        "id": "qwen-max",
        "name": "Qwen Max",
        "provider": "alibaba",
        "upstream_model": "qwen-max",
        "supports_image": True,
        "description": "High-performance multimodal model for complex tasks",
    },
]


def _descriptor_from_config(cfg: dict) -> ModelDescriptor:
    """Instantiate a descriptor from one config entry."""
    public_id = cfg.get("id", "")
    if not public_id:
        raise ValueError(f"Model entry without id: {cfg!r}")

    provider = cfg.get("provider", "")
    try:
        tag = ProviderTag(provider)
    except ValueError:
        raise UnknownProvider(provider) from None

    return ModelDescriptor(
        public_id=public_id,
        display_name=cfg.get("name") or public_id,
        provider=tag,
        upstream_model_id=cfg.get("upstream_model") or public_id,
        supports_image=bool(cfg.get("supports_image", False)),
        description=cfg.get("description", ""),
    )


class ModelRegistry:
    """Read-only lookup table of public model ids, in registration order."""

    def __init__(self, descriptors: list[ModelDescriptor]):
        self._models: dict[str, ModelDescriptor] = {}
        for desc in descriptors:
            if desc.public_id in self._models:
                raise ValueError(f"Duplicate model id in registry: {desc.public_id}")
            self._models[desc.public_id] = desc

    @classmethod
    def from_config(cls, models_cfg: list[dict] | None) -> "ModelRegistry":
        entries = models_cfg if models_cfg else DEFAULT_MODELS
        registry = cls([_descriptor_from_config(m) for m in entries])
        logger.info("Model registry loaded: %s", ", ".join(registry.ids()))
        return registry

    def lookup(self, public_id: str) -> ModelDescriptor:
        try:
            return self._models[public_id]
        except KeyError:
            raise ModelNotFound(public_id) from None

    def list_all(self) -> list[ModelDescriptor]:
        return list(self._models.values())

    def ids(self) -> list[str]:
        return list(self._models)

    def catalog(self) -> list[dict]:
        return [m.to_catalog_entry() for m in self._models.values()]

    def __contains__(self, public_id: str) -> bool:
        return public_id in self._models

    def __len__(self) -> int:
        return len(self._models)
