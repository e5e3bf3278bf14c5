"""
HTTP client for the language-model collaborator.

Talks to an OpenAI-compatible ``/chat/completions`` endpoint for two jobs:
JSON field extraction (one request, one answer) and the agent's streamed
reply (server-sent events, re-emitted as cumulative chunks). Every
transport or format problem is raised as an engine error so callers never
have to know about httpx.
"""

import json
import logging
from typing import Any, AsyncIterator, Mapping, Optional, Sequence

import httpx

from agentforms.config import settings
from agentforms.exceptions import ExtractionFailure, LLMTransportError
from agentforms.prompts.templates import (
    EXTRACTION_SYSTEM_PROMPT,
    build_conversation_prompt,
    build_extraction_prompt,
    first_missing_required,
)
from agentforms.schemas.agent_schema import Agent, AgentSchema
from agentforms.schemas.session_schema import (
    ExtractedField,
    ExtractionSource,
    Message,
    StreamChunk,
)

logger = logging.getLogger(__name__)


def _clamp_confidence(raw: Any) -> int:
    return max(0, min(100, int(round(float(raw)))))


def parse_extraction(content: str, schema: AgentSchema) -> dict[str, ExtractedField]:
    """Turn the model's JSON answer into ExtractedField candidates.

    Unknown field ids and entries without a usable value are dropped; an
    answer that is not a JSON object raises ExtractionFailure.
    """
    try:
        payload = json.loads(content)
    except (TypeError, ValueError) as exc:
        raise ExtractionFailure(f"Extraction answer is not JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ExtractionFailure("Extraction answer is not a JSON object")

    known = schema.field_ids
    results: dict[str, ExtractedField] = {}
    for field_id, entry in payload.items():
        if field_id not in known or not isinstance(entry, dict):
            continue
        value = entry.get("value")
        if value is None or str(value).strip() == "":
            continue
        try:
            confidence = _clamp_confidence(entry.get("confidence", 0))
        except (TypeError, ValueError, OverflowError):
            logger.debug("Dropping '%s': unreadable confidence %r", field_id, entry.get("confidence"))
            continue
        results[field_id] = ExtractedField(
            field_id=field_id,
            value=str(value).strip(),
            confidence=confidence,
            source=ExtractionSource.LLM,
        )
    return results


class LLMExtractorClient:
    """Primary extractor and reply streamer backed by a chat-completions API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        timeout: Optional[float] = None,
        max_tokens: Optional[int] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        cfg = settings.model
        self._api_key = cfg.llm_api_key if api_key is None else api_key
        self._base_url = (base_url or cfg.llm_base_url).rstrip("/")
        self._model = model or cfg.llm_model
        self._temperature = cfg.llm_temperature if temperature is None else temperature
        self._max_tokens = max_tokens or cfg.max_tokens
        self._timeout = timeout or settings.extraction.llm_timeout_sec
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=self._timeout)

    @property
    def enabled(self) -> bool:
        return bool(self._api_key)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _body(self, system: str, user: str, **extra: Any) -> dict[str, Any]:
        return {
            "model": self._model,
            "temperature": self._temperature,
            "max_tokens": self._max_tokens,
            "messages": [
                {"role": "system", "content": system.strip()},
                {"role": "user", "content": user},
            ],
            **extra,
        }

    async def extract_fields(
        self, messages: Sequence[Message], schema: AgentSchema
    ) -> dict[str, ExtractedField]:
        body = self._body(
            EXTRACTION_SYSTEM_PROMPT,
            build_extraction_prompt(messages, schema),
            response_format={"type": "json_object"},
        )
        try:
            response = await self._client.post(
                f"{self._base_url}/chat/completions",
                json=body,
                headers=self._headers(),
                timeout=self._timeout,
            )
            response.raise_for_status()
            data = response.json()
            content = data["choices"][0]["message"]["content"]
        except httpx.TimeoutException as exc:
            raise ExtractionFailure(f"LLM extraction timed out after {self._timeout}s") from exc
        except httpx.HTTPStatusError as exc:
            raise ExtractionFailure(
                f"LLM extraction returned HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise ExtractionFailure(f"LLM extraction request failed: {exc}") from exc
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise ExtractionFailure(f"Malformed LLM extraction response: {exc}") from exc

        return parse_extraction(content, schema)

    async def stream_reply(
        self,
        agent: Agent,
        messages: Sequence[Message],
        extracted: Mapping[str, str],
    ) -> AsyncIterator[StreamChunk]:
        prompt = build_conversation_prompt(
            agent, messages, extracted, first_missing_required(extracted, agent.form_schema)
        )
        body = self._body(prompt, "Write your next message to the visitor.", stream=True)
        content = ""
        try:
            async with self._client.stream(
                "POST",
                f"{self._base_url}/chat/completions",
                json=body,
                headers=self._headers(),
                timeout=self._timeout,
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise LLMTransportError(f"LLM stream returned HTTP {response.status_code}")
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:"):].strip()
                    if data == "[DONE]":
                        break
                    delta = json.loads(data)["choices"][0].get("delta", {}).get("content")
                    if delta:
                        content += delta
                        yield StreamChunk(content=content)
        except httpx.HTTPError as exc:
            raise LLMTransportError(f"LLM stream failed: {exc}") from exc
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise LLMTransportError(f"Malformed LLM stream event: {exc}") from exc

        yield StreamChunk(content=content, done=True)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
