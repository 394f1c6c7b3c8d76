"""MultiMind: one streaming chat API in front of Gemini, OpenRouter and DashScope."""

__version__ = "1.0.0"
