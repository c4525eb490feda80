from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional


class LLMError(Exception):
    def __init__(self, message: str, transient: bool = True, status_code: Optional[int] = None):
        self.transient = transient
        self.status_code = status_code
        super().__init__(message)


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: str  # JSON text as returned by the provider


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Optional[dict] = None
    tool_calls: List[ToolCall] = field(default_factory=list)


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    async def generate(
        self,
        messages: List[dict],
        tools: Optional[List[dict]] = None,
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
    ) -> LLMResponse:
        """Generate response from LLM."""
        pass
