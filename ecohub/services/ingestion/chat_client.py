"""Source client for OpenAI-compatible chat-completion search providers.

Both Perplexity (``https://api.perplexity.ai``) and OpenAI
(``https://api.openai.com/v1``) expose the same ``/chat/completions``
shape, so one client class serves both; each configured instance is a
separate source with its own id, key and model.

The model is asked for a JSON document of the form::

    {"results": [{"title": ..., "description": ..., "type": ...,
                  "url": ..., "confidence": ..., "metadata": {...}}]}

Providers do not always comply.  A JSON answer is passed on as
``RawBatch.records``; anything else is passed on verbatim as
``RawBatch.text`` and left to the normalizer's text parser.
"""

from __future__ import annotations

import json
import re
from typing import Any

import httpx
import structlog

from ecohub.models.enums import SourceErrorKind, SourceType
from ecohub.models.ingestion import IngestionQuery, RawBatch
from ecohub.services.ingestion.sources import DEFAULT_SOURCE_TIMEOUT, SourceClient

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

_SYSTEM_PROMPT = (
    "You are a research assistant that finds startup ecosystem information: "
    "startups, funding opportunities (grants, accelerators, competitions, "
    "investment programmes) and ecosystem events. Respond ONLY with a JSON "
    'object of the form {"results": [...]}. Each result has the keys '
    '"title", "description", "type" (one of "startup", "opportunity", '
    '"event", "insight"), "url", "source", "confidence" (0.0-1.0) and '
    '"metadata" with any of "sector", "location", "deadline", "amount", '
    '"stage", "date", "venue", "provider". Use ISO dates (YYYY-MM-DD). '
    "Do not invent organisations; omit fields you are unsure about."
)

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)

_MAX_TOKENS = 1200


def build_prompt(query: IngestionQuery) -> str:
    """Turn an ingestion query into the user prompt sent to the provider."""
    prompt = "Find recent startups, funding opportunities and events"
    if query.sector:
        prompt += f" in the {query.sector} sector"
    if query.geography:
        prompt += f" in {query.geography}"
    prompt += "."
    if query.keywords:
        prompt += f" Focus on: {', '.join(query.keywords)}."
    prompt += (
        " Include application deadlines, funding amounts, event dates and"
        " official links where available."
    )
    return prompt


def _parse_content(content: str) -> list[Any] | None:
    """Return structured records if *content* is a JSON answer, else ``None``."""
    text = content.strip()
    fenced = _FENCE_RE.match(text)
    if fenced:
        text = fenced.group(1)

    if not text or text[0] not in "[{":
        return None

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return None

    if isinstance(parsed, list):
        return parsed
    if isinstance(parsed, dict):
        results = parsed.get("results")
        if isinstance(results, list):
            return results
    return None


# ---------------------------------------------------------------------------
# ChatCompletionSourceClient
# ---------------------------------------------------------------------------


class ChatCompletionSourceClient(SourceClient):
    """Source backed by one chat-completion provider.

    Parameters
    ----------
    source_id:
        Identifier of this source (e.g. ``"perplexity"``).
    base_url:
        Provider API root; ``/chat/completions`` is appended.
    api_key:
        Bearer token.  An empty key makes every fetch fail as
        ``unavailable`` without touching the network.
    model:
        Provider model name.
    timeout:
        Per-fetch timeout in seconds.
    transport:
        Optional ``httpx`` transport (used by tests).
    """

    source_type = SourceType.SEARCH_RESULTS

    def __init__(
        self,
        source_id: str,
        *,
        base_url: str,
        api_key: str,
        model: str,
        timeout: float = DEFAULT_SOURCE_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(source_id, timeout=timeout)
        self._api_key = api_key
        self._model = model
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
                "User-Agent": "EcoHub-Ingestion/1.0",
            },
            transport=transport,
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    def _payload(self, query: IngestionQuery) -> dict[str, Any]:
        return {
            "model": self._model,
            "messages": [
                {"role": "system", "content": _SYSTEM_PROMPT},
                {"role": "user", "content": build_prompt(query)},
            ],
            "max_tokens": _MAX_TOKENS,
            "temperature": 0.2,
            "stream": False,
        }

    async def _fetch(self, query: IngestionQuery) -> RawBatch:
        if not self._api_key:
            raise self._error(SourceErrorKind.UNAVAILABLE, "API key not configured")

        response = await self._client.post(
            "/chat/completions",
            json=self._payload(query),
            headers={"Authorization": f"Bearer {self._api_key}"},
        )
        response.raise_for_status()

        try:
            data = response.json()
        except ValueError as exc:
            raise self._error(SourceErrorKind.INVALID_RESPONSE, "response body is not JSON") from exc

        choices = data.get("choices") if isinstance(data, dict) else None
        if not isinstance(choices, list) or not choices:
            raise self._error(SourceErrorKind.INVALID_RESPONSE, "response has no choices")
        if not isinstance(choices[0], dict):
            raise self._error(SourceErrorKind.INVALID_RESPONSE, "choice is not an object")

        message = choices[0].get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str):
            raise self._error(SourceErrorKind.INVALID_RESPONSE, "choice has no text content")

        records = _parse_content(content)
        if records is None:
            logger.debug("ingestion.chat_unstructured_answer", source=self.source_id, length=len(content))
            return RawBatch(source_id=self.source_id, source_type=self.source_type, text=content)

        return RawBatch(source_id=self.source_id, source_type=self.source_type, records=records)
