"""Shared LLM clients for the severity classifier.

Provider selection (checked in order):
1. Azure OpenAI: set ``AZURE_OPENAI_ENDPOINT`` (+ ``AZURE_OPENAI_API_KEY``)
2. Anthropic: set ``ANTHROPIC_API_KEY``
3. No provider configured → callers use their local fallback
"""

import os

from anthropic import AsyncAnthropic
from openai import AsyncAzureOpenAI

ANTHROPIC_MODEL = "claude-haiku-4-5-20251001"
AZURE_API_VERSION = "2024-10-21"

_anthropic: AsyncAnthropic | None = None
_azure: AsyncAzureOpenAI | None = None


def configured_provider() -> str | None:
    """Name of the configured provider, or None when running without one."""
    if os.getenv("AZURE_OPENAI_ENDPOINT"):
        return "azure_openai"
    if os.getenv("ANTHROPIC_API_KEY"):
        return "anthropic"
    return None


def get_anthropic_client() -> AsyncAnthropic:
    """Get or create a shared Anthropic client (module-level singleton)."""
    global _anthropic
    if _anthropic is None:
        _anthropic = AsyncAnthropic(api_key=os.environ.get("ANTHROPIC_API_KEY", ""))
    return _anthropic


def get_azure_client() -> AsyncAzureOpenAI:
    """Get or create a shared Azure OpenAI client."""
    global _azure
    if _azure is None:
        _azure = AsyncAzureOpenAI(
            azure_endpoint=os.environ["AZURE_OPENAI_ENDPOINT"],
            api_key=os.getenv("AZURE_OPENAI_API_KEY", ""),
            api_version=AZURE_API_VERSION,
        )
    return _azure


def azure_deployment() -> str:
    """Azure OpenAI deployment name."""
    return os.getenv("AZURE_OPENAI_DEPLOYMENT", "gpt-4o")
