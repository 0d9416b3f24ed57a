from zapflow.services.llm.base import LLMError, LLMProvider, LLMResponse
from zapflow.services.llm.openai_provider import OpenAIProvider

__all__ = ["LLMError", "LLMProvider", "LLMResponse", "OpenAIProvider"]
