"""
Error taxonomy for the chat gateway.

Validation errors (ModelNotFound, ImageNotSupported, UnknownProvider) are raised
before any stream is opened and become a plain HTTP error response.
Provider errors raised once streaming has begun are turned into a single
error frame by the relay.
"""

from __future__ import annotations


class MultiMindError(Exception):
    """Base for every error the gateway raises on purpose."""

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class ModelNotFound(MultiMindError):
    def __init__(self, model_id: str):
        super().__init__(f"Model ID not found: {model_id}")
        self.model_id = model_id


class ImageNotSupported(MultiMindError):
    def __init__(self, model_name: str):
        super().__init__(f"Model {model_name} does not support images")
        self.model_name = model_name


class UnknownProvider(MultiMindError):
    def __init__(self, provider: str):
        super().__init__(f"Unknown provider: {provider}")
        self.provider = provider


class ProviderError(MultiMindError):
    """An upstream provider refused or could not serve the request."""

    def __init__(self, message: str, provider: str = "", status_code: int | None = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        # Filled in by the router so logs say which public model failed
        self.model_name: str = ""


class ProviderAuthError(ProviderError):
    """Credential missing or rejected by the upstream."""


class ProviderUnavailable(ProviderError):
    """Connection failure, timeout, or non-auth HTTP error from the upstream."""


class UpstreamMalformedEvent(MultiMindError):
    """A single streaming event could not be parsed. Skipped, never fatal."""


class PersistenceFailure(MultiMindError):
    """Saving a finished conversation failed. Logged, never surfaced."""
