"""Gemini model provider.

Talks to the Generative Language REST API (``models/{model}:generateContent``)
with httpx. Conversation entries map one to one onto ``contents``; tool
calls come back as ``functionCall`` parts whose ``thoughtSignature`` is
kept as the opaque continuation token.
"""

from __future__ import annotations

import json
import logging
import time

import httpx

from realm.config import ModelConfig
from realm.models.base import (
    Conversation,
    ModelConnectionError,
    ModelProvider,
    ModelResponse,
    TokenUsage,
    ToolCall,
    ToolDefinition,
)

logger = logging.getLogger(__name__)


class GeminiProvider(ModelProvider):
    """Provider for the Gemini ``generateContent`` endpoint."""

    def __init__(self, config: ModelConfig, client: httpx.AsyncClient | None = None):
        self._config = config
        headers: dict[str, str] = {"Content-Type": "application/json"}
        api_key = config.api_key.strip()
        if api_key:
            headers["x-goog-api-key"] = api_key
        self._client = client or httpx.AsyncClient(
            base_url=config.base_url,
            timeout=httpx.Timeout(config.timeout_seconds),
            headers=headers,
        )
        self._model = config.model
        self._temperature = config.temperature

    @staticmethod
    async def _http_error_body(response: httpx.Response, limit: int = 300) -> tuple[str, str]:
        """Return (message, vendor status) from a Gemini error response."""
        try:
            body = await response.aread()
        except httpx.HTTPError:
            return "", ""
        text = body.decode("utf-8", errors="replace") if body else ""
        try:
            error = json.loads(text).get("error", {})
        except (json.JSONDecodeError, AttributeError):
            return text[:limit], ""
        if not isinstance(error, dict):
            return text[:limit], ""
        return str(error.get("message", ""))[:limit], str(error.get("status", "") or "")

    @staticmethod
    def _format_tools(tools: list[ToolDefinition]) -> list[dict]:
        return [{"functionDeclarations": [tool.to_dict() for tool in tools]}]

    def build_payload(
        self,
        conversation: Conversation,
        *,
        tools: list[ToolDefinition] | None = None,
        system_instruction: str | None = None,
    ) -> dict:
        payload: dict = {"contents": [entry.to_dict() for entry in conversation]}
        if tools:
            payload["tools"] = self._format_tools(tools)
        if system_instruction:
            payload["systemInstruction"] = {"parts": [{"text": system_instruction}]}
        if self._temperature is not None:
            payload["generationConfig"] = {"temperature": self._temperature}
        return payload

    async def generate(
        self,
        conversation: Conversation,
        *,
        tools: list[ToolDefinition] | None = None,
        system_instruction: str | None = None,
        model: str | None = None,
    ) -> ModelResponse:
        model_name = model or self._model
        payload = self.build_payload(
            conversation, tools=tools, system_instruction=system_instruction,
        )
        logger.debug(
            "Gemini request: model=%s entries=%d tools=%d payload_chars=%d",
            model_name, len(conversation), len(tools or []), len(json.dumps(payload)),
        )

        start = time.monotonic()
        try:
            response = await self._client.post(
                f"/models/{model_name}:generateContent", json=payload,
            )
            response.raise_for_status()
        except httpx.ConnectError as e:
            raise ModelConnectionError(
                f"Cannot connect to model server at {self._client.base_url}: {e}",
                original=e,
            ) from e
        except httpx.TimeoutException as e:
            raise ModelConnectionError(
                f"Model request timed out ({model_name}): {e}",
                original=e,
            ) from e
        except httpx.HTTPStatusError as e:
            message, vendor_status = await self._http_error_body(e.response)
            raise ModelConnectionError(
                f"Model server returned HTTP {e.response.status_code}"
                f"{' ' + vendor_status if vendor_status else ''}: {message}",
                original=e,
                status_code=e.response.status_code,
                code=vendor_status or None,
            ) from e
        latency = int((time.monotonic() - start) * 1000)

        data = response.json()
        return self.parse_response(data, model_name=model_name, latency_ms=latency)

    @staticmethod
    def parse_response(data: dict, *, model_name: str = "", latency_ms: int = 0) -> ModelResponse:
        candidates = data.get("candidates")
        if not candidates or not isinstance(candidates, list):
            feedback = data.get("promptFeedback", {}) or {}
            reason = feedback.get("blockReason", "")
            if reason:
                raise ModelConnectionError(f"Prompt blocked by safety filter: {reason}")
            raise ModelConnectionError(
                f"Malformed response from {model_name}: missing or empty 'candidates'"
            )

        content = candidates[0].get("content", {}) or {}
        parts = content.get("parts", []) or []

        text_fragments: list[str] = []
        tool_calls: list[ToolCall] = []
        for index, part in enumerate(parts):
            if not isinstance(part, dict):
                continue
            call = part.get("functionCall")
            if isinstance(call, dict):
                args = call.get("args") or {}
                if not isinstance(args, dict):
                    logger.warning("Malformed tool args from Gemini: %s", str(args)[:200])
                    args = {}
                tool_calls.append(ToolCall(
                    id=str(call.get("id", "") or ""),
                    name=str(call.get("name", "")),
                    arguments=args,
                    continuation_token=part.get("thoughtSignature"),
                ))
                continue
            if part.get("thought"):
                continue
            if isinstance(part.get("text"), str):
                text_fragments.append(part["text"])

        usage_data = data.get("usageMetadata", {}) or {}
        usage = TokenUsage(
            input_tokens=int(usage_data.get("promptTokenCount", 0) or 0),
            output_tokens=int(usage_data.get("candidatesTokenCount", 0) or 0),
            total_tokens=int(usage_data.get("totalTokenCount", 0) or 0),
        )
        text = "".join(text_fragments)
        if not text and not tool_calls:
            logger.warning(
                "Gemini response had no text and no tool calls: model=%s finish=%s",
                model_name, candidates[0].get("finishReason", ""),
            )

        return ModelResponse(
            text=text,
            tool_calls=tool_calls or None,
            raw=content,
            usage=usage,
            model=model_name,
            latency_ms=latency_ms,
        )

    async def health_check(self) -> bool:
        try:
            response = await self._client.get(f"/models/{self._model}", timeout=5.0)
            return response.status_code == 200
        except (httpx.ConnectError, httpx.TimeoutException):
            return False

    @property
    def name(self) -> str:
        return self._model

    async def close(self) -> None:
        await self._client.aclose()
