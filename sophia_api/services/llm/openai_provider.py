from typing import List, Optional

import httpx

from sophia_api.logging_config import get_logger
from sophia_api.services.llm.base import LLMError, LLMProvider, LLMResponse, ToolCall

logger = get_logger("llm.openai")

TRANSIENT_STATUS_CODES = {408, 409, 429, 500, 502, 503, 504}


class OpenAIProvider(LLMProvider):
    """OpenAI chat completions provider."""

    def __init__(
        self,
        api_key: str,
        default_model: str = "gpt-4o-mini",
        timeout_seconds: float = 25.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.default_model = default_model
        self.timeout_seconds = timeout_seconds
        self.base_url = "https://api.openai.com/v1/chat/completions"
        self._transport = transport

    async def generate(
        self,
        messages: List[dict],
        tools: Optional[List[dict]] = None,
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
    ) -> LLMResponse:
        """Generate response from OpenAI."""
        if not self.api_key:
            raise LLMError("OpenAI API key is not configured", transient=False)

        model = model or self.default_model
        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"

        logger.debug(f"OpenAI request: model={model}, messages_count={len(messages)}")
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.post(
                    self.base_url,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.TimeoutException as e:
            raise LLMError(f"OpenAI request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise LLMError(f"OpenAI network error: {e}") from e

        logger.debug(f"OpenAI response status: {response.status_code}")

        if response.status_code != 200:
            logger.error(f"OpenAI error: {response.text[:500]}")
            raise LLMError(
                f"OpenAI API error: {response.status_code}",
                transient=response.status_code in TRANSIENT_STATUS_CODES,
                status_code=response.status_code,
            )

        data = response.json()
        content = ""
        tool_calls: List[ToolCall] = []
        if data.get("choices"):
            message = data["choices"][0].get("message") or {}
            content = message.get("content") or ""
            for call in message.get("tool_calls") or []:
                function = call.get("function") or {}
                if not function.get("name"):
                    continue
                tool_calls.append(
                    ToolCall(
                        id=call.get("id", ""),
                        name=function["name"],
                        arguments=function.get("arguments") or "{}",
                    )
                )
        logger.debug(f"OpenAI content: {content[:100] if content else 'EMPTY'}, tool_calls={len(tool_calls)}")

        return LLMResponse(
            content=content,
            model=data.get("model", model),
            usage=data.get("usage"),
            tool_calls=tool_calls,
        )
