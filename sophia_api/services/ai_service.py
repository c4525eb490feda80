import asyncio
import time
from typing import List, Optional

from sophia_api.logging_config import get_logger
from sophia_api.services.calculator_service import tool_definitions
from sophia_api.services.llm import LLMError, LLMProvider, LLMResponse

logger = get_logger("ai_service")

MSG_AI_UNAVAILABLE = "I'm having trouble processing your request right now. Please try again in a moment."

SYSTEM_PROMPT = """You are Sophia, an AI assistant for real-estate agents in Cyprus.

- Answer questions about property sales, rentals, viewings and paperwork concisely.
- When the agent asks for transfer fees, capital gains tax or VAT on a property, call the matching calculator tool with the figures they gave instead of computing it yourself.
- If figures needed for a calculation are missing, ask for them.
- Reply in the language the agent writes in. Keep replies short enough for a chat message."""


def _log_timing(stage: str, elapsed_ms: float, extra: dict | None = None) -> None:
    context: dict = dict(extra or {})
    context["stage"] = stage
    context["elapsed_ms"] = round(elapsed_ms, 2)
    logger.info("Timing", extra={"context": context})


class AIService:
    """Builds the prompt for a chat turn and calls the provider with a hard timeout."""

    def __init__(
        self,
        provider: LLMProvider,
        timeout_seconds: float = 25.0,
        max_attempts: int = 2,
        system_prompt: str = SYSTEM_PROMPT,
    ):
        self.provider = provider
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max(1, max_attempts)
        self.system_prompt = system_prompt

    def build_messages(self, history: List[dict], text: str) -> List[dict]:
        return [{"role": "system", "content": self.system_prompt}, *history, {"role": "user", "content": text}]

    async def generate_reply(self, history: List[dict], text: str, tools: Optional[List[dict]] = None) -> LLMResponse:
        """Call the provider, retrying transient failures immediately. Raises LLMError."""
        messages = self.build_messages(history, text)
        tools = tool_definitions() if tools is None else tools
        last_error: Optional[LLMError] = None

        for attempt in range(1, self.max_attempts + 1):
            started = time.perf_counter()
            try:
                response = await asyncio.wait_for(
                    self.provider.generate(messages, tools=tools or None),
                    timeout=self.timeout_seconds,
                )
            except asyncio.TimeoutError:
                last_error = LLMError(f"AI provider timed out after {self.timeout_seconds}s")
            except LLMError as e:
                last_error = e
            else:
                _log_timing(
                    "llm_generate",
                    (time.perf_counter() - started) * 1000,
                    {"attempt": attempt, "tool_calls": len(response.tool_calls)},
                )
                return response

            logger.warning(
                "AI provider call failed",
                extra={"context": {"attempt": attempt, "transient": last_error.transient, "error": str(last_error)}},
            )
            if not last_error.transient:
                break

        raise last_error
