"""Fake OpenAI / Anthropic compatible LLM server for testing API clients."""

__version__ = "0.1.0"
