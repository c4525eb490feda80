from sophia_api.services.llm.base import LLMError, LLMProvider, LLMResponse, ToolCall
from sophia_api.services.llm.openai_provider import OpenAIProvider

__all__ = ["LLMError", "LLMProvider", "LLMResponse", "OpenAIProvider", "ToolCall"]
