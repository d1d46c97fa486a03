from nurture.services.llm.base import CollaboratorError, LLMProvider, LLMResponse
from nurture.services.llm.openai_provider import OpenAIProvider

__all__ = ["CollaboratorError", "LLMProvider", "LLMResponse", "OpenAIProvider"]
