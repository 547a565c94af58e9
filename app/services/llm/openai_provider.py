from typing import List, Optional

import httpx

from app.logging_config import get_logger
from app.services.llm.base import LLMError, LLMProvider, LLMResponse

logger = get_logger("llm.openai")


class OpenAIProvider(LLMProvider):
    """OpenAI Chat Completions provider."""

    def __init__(
        self,
        api_key: str,
        default_model: str = "gpt-4o-mini",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.default_model = default_model
        self.base_url = "https://api.openai.com/v1/chat/completions"
        self._transport = transport

    def _build_payload(
        self,
        messages: List[dict],
        model: str,
        temperature: float,
        max_tokens: int,
        response_schema: Optional[dict],
    ) -> dict:
        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_completion_tokens": max_tokens,
        }
        if response_schema is not None:
            payload["response_format"] = {
                "type": "json_schema",
                "json_schema": {"name": "decision", "strict": True, "schema": response_schema},
            }
        return payload

    async def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.2,
        max_tokens: int = 1000,
        response_schema: Optional[dict] = None,
        timeout_seconds: Optional[float] = None,
    ) -> LLMResponse:
        """Generate response from OpenAI. Raises LLMError on any transport or API failure."""

        model = model or self.default_model
        timeout = timeout_seconds if timeout_seconds is not None else 60.0
        payload = self._build_payload(messages, model, temperature, max_tokens, response_schema)
        logger.debug(f"OpenAI request: model={model}, messages_count={len(messages)}")

        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                response = await client.post(
                    self.base_url,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.TimeoutException as e:
            raise LLMError(f"OpenAI timeout after {timeout}s") from e
        except httpx.HTTPError as e:
            raise LLMError(f"OpenAI transport error: {e}") from e

        logger.debug(f"OpenAI response status: {response.status_code}")

        if response.status_code != 200:
            logger.error(f"OpenAI error: {response.text}")
            raise LLMError(f"OpenAI API error: {response.status_code} - {response.text}")

        try:
            data = response.json()
        except ValueError as e:
            raise LLMError("OpenAI returned a non-JSON body") from e
        if not isinstance(data, dict):
            raise LLMError(f"OpenAI returned a {type(data).__name__} body, expected an object")

        content = ""
        if data.get("choices") and len(data["choices"]) > 0:
            message = data["choices"][0].get("message", {})
            if message.get("refusal"):
                raise LLMError(f"OpenAI refused: {message['refusal']}")
            content = message.get("content") or ""
        logger.debug(f"OpenAI content: {content[:100] if content else 'EMPTY'}")

        return LLMResponse(
            content=content,
            model=data.get("model", model),
            usage=data.get("usage"),
        )
