from __future__ import annotations

from chatdesk.core.config import get_settings
from chatdesk.core.errors import ProviderConfigError
from chatdesk.providers.llm.base import LLMProvider
from chatdesk.providers.llm.fake import FakeLLMProvider
from chatdesk.providers.llm.gemini_vertex import GeminiVertexProvider
from chatdesk.providers.llm.openai_chat import OpenAIChatProvider


def get_llm_provider(request_id: str | None = None) -> LLMProvider:
    settings = get_settings()
    provider = (settings.llm_provider or "fake").lower()

    if provider == "fake":
        return FakeLLMProvider()
    if provider == "openai":
        return OpenAIChatProvider(request_id=request_id)
    if provider == "vertex":
        return GeminiVertexProvider(request_id=request_id)
    raise ProviderConfigError(f"Unsupported LLM_PROVIDER: {settings.llm_provider}")
