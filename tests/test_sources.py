"""Tests for the source clients: error mapping, chat answers, curated data."""

from __future__ import annotations

import asyncio
import json
import time

import httpx
import pytest

from ecohub.models.enums import SourceErrorKind, SourceType
from ecohub.models.ingestion import IngestionQuery, RawBatch
from ecohub.services.ingestion.chat_client import ChatCompletionSourceClient, _parse_content, build_prompt
from ecohub.services.ingestion.curated_client import CuratedSourceClient
from ecohub.services.ingestion.errors import SourceError
from ecohub.services.ingestion.sources import SourceClient, classify_exception


def _chat_body(content: str) -> dict:
    return {"id": "cmpl-1", "choices": [{"index": 0, "message": {"role": "assistant", "content": content}}]}


def _client(handler, *, api_key: str = "test-key", timeout: float = 5.0) -> ChatCompletionSourceClient:
    return ChatCompletionSourceClient(
        "perplexity",
        base_url="https://api.perplexity.ai",
        api_key=api_key,
        model="sonar",
        timeout=timeout,
        transport=httpx.MockTransport(handler),
    )


QUERY = IngestionQuery(sector="fintech", geography="Malaysia", keywords=["grants"])


# ---------------------------------------------------------------------------
# classify_exception
# ---------------------------------------------------------------------------


class TestClassifyException:
    def _status_error(self, status: int) -> httpx.HTTPStatusError:
        request = httpx.Request("POST", "https://example.com")
        response = httpx.Response(status, request=request)
        return httpx.HTTPStatusError("boom", request=request, response=response)

    def test_rate_limited(self):
        kind, _ = classify_exception(self._status_error(429))
        assert kind is SourceErrorKind.RATE_LIMITED

    def test_server_error_is_unavailable(self):
        kind, message = classify_exception(self._status_error(503))
        assert kind is SourceErrorKind.UNAVAILABLE
        assert message == "HTTP 503"

    def test_timeouts(self):
        assert classify_exception(asyncio.TimeoutError())[0] is SourceErrorKind.TIMEOUT
        assert classify_exception(httpx.ReadTimeout("slow"))[0] is SourceErrorKind.TIMEOUT

    def test_transport_error(self):
        kind, _ = classify_exception(httpx.ConnectError("refused"))
        assert kind is SourceErrorKind.UNAVAILABLE

    def test_shape_errors_are_invalid_response(self):
        assert classify_exception(KeyError("choices"))[0] is SourceErrorKind.INVALID_RESPONSE
        assert classify_exception(ValueError("bad"))[0] is SourceErrorKind.INVALID_RESPONSE

    def test_only_invalid_response_is_permanent(self):
        assert SourceErrorKind.TIMEOUT.transient
        assert SourceErrorKind.RATE_LIMITED.transient
        assert SourceErrorKind.UNAVAILABLE.transient
        assert not SourceErrorKind.INVALID_RESPONSE.transient


# ---------------------------------------------------------------------------
# SourceClient base contract
# ---------------------------------------------------------------------------


class _RaisingSource(SourceClient):
    def __init__(self, exc: BaseException) -> None:
        super().__init__("raising", timeout=1.0)
        self._exc = exc

    async def _fetch(self, query: IngestionQuery) -> RawBatch:
        raise self._exc


class TestSourceClientContract:
    async def test_unexpected_exception_is_returned_not_raised(self):
        outcome = await _RaisingSource(RuntimeError("kaput")).fetch(QUERY)
        assert isinstance(outcome, SourceError)
        assert outcome.kind is SourceErrorKind.UNAVAILABLE
        assert str(outcome) == "raising: unavailable: kaput"

    async def test_cancellation_propagates(self):
        with pytest.raises(asyncio.CancelledError):
            await _RaisingSource(asyncio.CancelledError()).fetch(QUERY)


# ---------------------------------------------------------------------------
# ChatCompletionSourceClient
# ---------------------------------------------------------------------------


class TestChatCompletionSourceClient:
    async def test_json_answer_becomes_records(self):
        seen: dict = {}
        results = [
            {"title": "Cradle CIP Spark", "description": "Grant for tech startups", "type": "opportunity"},
            {"title": "StoreHub", "description": "Cloud POS platform", "type": "startup"},
        ]

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers.get("Authorization")
            seen["payload"] = json.loads(request.content)
            seen["path"] = request.url.path
            return httpx.Response(200, json=_chat_body(json.dumps({"results": results})))

        client = _client(handler)
        outcome = await client.fetch(QUERY)
        await client.close()

        assert isinstance(outcome, RawBatch)
        assert outcome.source_id == "perplexity"
        assert outcome.source_type is SourceType.SEARCH_RESULTS
        assert outcome.records == results
        assert outcome.text is None
        assert seen["auth"] == "Bearer test-key"
        assert seen["path"] == "/chat/completions"
        assert seen["payload"]["model"] == "sonar"
        assert "fintech" in seen["payload"]["messages"][1]["content"]

    async def test_fenced_json_answer(self):
        content = '```json\n[{"title": "X", "description": "Y", "type": "event"}]\n```'

        client = _client(lambda request: httpx.Response(200, json=_chat_body(content)))
        outcome = await client.fetch(QUERY)

        assert isinstance(outcome, RawBatch)
        assert outcome.records == [{"title": "X", "description": "Y", "type": "event"}]

    async def test_text_answer_is_kept_verbatim(self):
        content = "1. **Cradle CIP Spark**\nEarly-stage grants for Malaysian tech startups."

        client = _client(lambda request: httpx.Response(200, json=_chat_body(content)))
        outcome = await client.fetch(QUERY)

        assert isinstance(outcome, RawBatch)
        assert outcome.records == []
        assert outcome.text == content

    async def test_http_429_is_rate_limited(self):
        client = _client(lambda request: httpx.Response(429, json={"error": "slow down"}))
        outcome = await client.fetch(QUERY)

        assert isinstance(outcome, SourceError)
        assert outcome.kind is SourceErrorKind.RATE_LIMITED
        assert str(outcome).startswith("perplexity: rate_limited:")

    async def test_http_500_is_unavailable(self):
        client = _client(lambda request: httpx.Response(500, text="internal error"))
        outcome = await client.fetch(QUERY)

        assert isinstance(outcome, SourceError)
        assert outcome.kind is SourceErrorKind.UNAVAILABLE
        assert outcome.message == "HTTP 500"

    async def test_slow_provider_times_out(self):
        async def handler(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(1.0)
            return httpx.Response(200, json=_chat_body("[]"))

        client = _client(handler, timeout=0.05)
        outcome = await client.fetch(QUERY)

        assert isinstance(outcome, SourceError)
        assert outcome.kind is SourceErrorKind.TIMEOUT

    async def test_non_json_body_is_invalid_response(self):
        client = _client(lambda request: httpx.Response(200, text="<html>oops</html>"))
        outcome = await client.fetch(QUERY)

        assert isinstance(outcome, SourceError)
        assert outcome.kind is SourceErrorKind.INVALID_RESPONSE

    async def test_missing_choices_is_invalid_response(self):
        client = _client(lambda request: httpx.Response(200, json={"id": "x"}))
        outcome = await client.fetch(QUERY)

        assert isinstance(outcome, SourceError)
        assert outcome.kind is SourceErrorKind.INVALID_RESPONSE

    @pytest.mark.parametrize("choices", [["oops"], [None], [{"message": "plain text"}]])
    async def test_malformed_choice_is_invalid_response(self, choices):
        client = _client(lambda request: httpx.Response(200, json={"choices": choices}))
        outcome = await client.fetch(QUERY)

        assert isinstance(outcome, SourceError)
        assert outcome.kind is SourceErrorKind.INVALID_RESPONSE

    async def test_missing_key_skips_network(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json=_chat_body("[]"))

        client = _client(handler, api_key="")
        outcome = await client.fetch(QUERY)

        assert isinstance(outcome, SourceError)
        assert outcome.kind is SourceErrorKind.UNAVAILABLE
        assert "API key" in outcome.message
        assert calls == []


class TestPromptAndParsing:
    def test_build_prompt_mentions_every_filter(self):
        prompt = build_prompt(QUERY)
        assert "fintech" in prompt
        assert "Malaysia" in prompt
        assert "grants" in prompt

    def test_build_prompt_without_filters(self):
        prompt = build_prompt(IngestionQuery())
        assert prompt.startswith("Find recent startups")

    def test_parse_content_rejects_prose(self):
        assert _parse_content("Here are some startups...") is None
        assert _parse_content('{"answer": "no results key"}') is None
        assert _parse_content("{broken json") is None


# ---------------------------------------------------------------------------
# CuratedSourceClient
# ---------------------------------------------------------------------------


class TestCuratedSourceClient:
    async def test_bundled_dataset_filtered_by_geography(self):
        outcome = await CuratedSourceClient().fetch(IngestionQuery(geography="Malaysia"))

        assert isinstance(outcome, RawBatch)
        assert outcome.source_type is SourceType.SECTIONED
        names = [o["title"] for o in outcome.records["opportunities"]]
        assert "Grab Ventures Velocity" not in names
        assert len(outcome.records["startups"]) == 3
        assert len(outcome.records["opportunities"]) == 4
        assert len(outcome.records["events"]) == 2

    async def test_sector_filter_is_case_insensitive(self):
        outcome = await CuratedSourceClient().fetch(IngestionQuery(sector="FINTECH"))

        assert isinstance(outcome, RawBatch)
        assert [s["name"] for s in outcome.records["startups"]] == ["StoreHub"]
        assert [e["name"] for e in outcome.records["events"]] == ["Fintech Malaysia Conference"]

    async def test_missing_file_is_unavailable(self, tmp_path):
        outcome = await CuratedSourceClient(path=tmp_path / "nope.json").fetch(IngestionQuery())

        assert isinstance(outcome, SourceError)
        assert outcome.kind is SourceErrorKind.UNAVAILABLE

    async def test_malformed_file_is_invalid_response(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{not json", encoding="utf-8")

        outcome = await CuratedSourceClient(path=path).fetch(IngestionQuery())

        assert isinstance(outcome, SourceError)
        assert outcome.kind is SourceErrorKind.INVALID_RESPONSE

    async def test_section_of_wrong_shape_is_invalid_response(self, tmp_path):
        path = tmp_path / "shape.json"
        path.write_text(json.dumps({"startups": {"name": "x"}}), encoding="utf-8")

        outcome = await CuratedSourceClient(path=path).fetch(IngestionQuery())

        assert isinstance(outcome, SourceError)
        assert outcome.kind is SourceErrorKind.INVALID_RESPONSE

    async def test_slow_read_does_not_block_the_timeout(self, monkeypatch):
        client = CuratedSourceClient(timeout=0.05)

        def slow_load():
            time.sleep(0.3)
            return {}

        monkeypatch.setattr(client, "_load", slow_load)
        started = time.monotonic()
        outcome = await client.fetch(IngestionQuery())

        assert isinstance(outcome, SourceError)
        assert outcome.kind is SourceErrorKind.TIMEOUT
        assert time.monotonic() - started < 0.25
