import asyncio
import json
import time

import httpx
import pytest

from gmn_agent.auth import APIKeyCredentials, BearerTokenCredentials
from gmn_agent.exceptions import AuthError, TransportError
from gmn_agent.llm import (
    Content,
    GenerateRequest,
    GenerationConfig,
    GenerationTransport,
    Part,
    ToolDefinition,
    parse_duration,
    parse_retry_delay,
)


def _rate_limit_body(delay: str) -> str:
    return json.dumps({
        "error": {
            "code": 429,
            "message": "Resource exhausted",
            "details": [
                {"@type": "type.googleapis.com/google.rpc.ErrorInfo", "reason": "RATE_LIMIT_EXCEEDED"},
                {"@type": "type.googleapis.com/google.rpc.RetryInfo", "retryDelay": delay},
            ],
        }
    })


def _chunk(parts: list[dict], usage: dict | None = None) -> dict:
    response: dict = {"candidates": [{"content": {"role": "model", "parts": parts}}]}
    if usage is not None:
        response["usageMetadata"] = usage
    return {"response": response, "traceId": "trace-1"}


def _sse(*records: dict) -> str:
    return "".join(f"data: {json.dumps(record)}\n\n" for record in records)


def _request() -> GenerateRequest:
    return GenerateRequest(
        model="gemini-test",
        contents=[Content(role="user", parts=[Part(text="hi")])],
    )


def _transport(handler, **kwargs) -> GenerationTransport:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GenerationTransport(base_url="https://example.test", http_client=client, **kwargs)


async def _collect(transport: GenerationTransport, request: GenerateRequest | None = None) -> list:
    stream = await transport.stream_generate(request or _request())
    return [event async for event in stream]


def test_parse_duration_accepts_go_style_strings():
    assert parse_duration("0.42s") == pytest.approx(0.42)
    assert parse_duration("500ms") == pytest.approx(0.5)
    assert parse_duration("1m30s") == pytest.approx(90.0)
    assert parse_duration("2h") == pytest.approx(7200.0)
    assert parse_duration("") is None
    assert parse_duration("soon") is None
    assert parse_duration("5x") is None


def test_parse_retry_delay_defaults_to_one_second():
    assert parse_retry_delay(_rate_limit_body("0.25s")) == pytest.approx(0.25)
    assert parse_retry_delay("[" + _rate_limit_body("3s") + "]") == pytest.approx(3.0)
    assert parse_retry_delay("not json") == 1.0
    assert parse_retry_delay(json.dumps({"error": {"details": []}})) == 1.0


def test_request_envelope_uses_camel_case_wire_shape():
    request = GenerateRequest(
        model="gemini-test",
        contents=[Content(role="user", parts=[Part(text="hi")])],
        system_instruction=Content(role="user", parts=[Part(text="be brief")]),
        tools=[ToolDefinition(name="read_file", description="Read", parameters={"type": "object"})],
        config=GenerationConfig(temperature=0.2, max_output_tokens=64),
        project="proj-1",
    )

    body = request.to_dict()

    assert body["model"] == "gemini-test"
    assert body["project"] == "proj-1"
    inner = body["request"]
    assert inner["contents"] == [{"role": "user", "parts": [{"text": "hi"}]}]
    assert inner["systemInstruction"]["parts"] == [{"text": "be brief"}]
    assert inner["generationConfig"] == {"temperature": 0.2, "maxOutputTokens": 64}
    assert inner["tools"][0]["functionDeclarations"][0]["name"] == "read_file"


@pytest.mark.asyncio
async def test_generate_waits_for_server_retry_delay_then_succeeds():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(time.monotonic())
        if len(calls) == 1:
            return httpx.Response(429, text=_rate_limit_body("0.5s"))
        return httpx.Response(200, json=_chunk([{"text": "hello"}]))

    transport = _transport(handler)
    response = await transport.generate(_request())

    assert response.text == "hello"
    assert len(calls) == 2
    assert calls[1] - calls[0] >= 0.45


@pytest.mark.asyncio
async def test_retries_stop_after_four_attempts():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(429, text=_rate_limit_body("0.01s"))

    transport = _transport(handler)
    with pytest.raises(TransportError, match="max retries exceeded") as exc_info:
        await transport.generate(_request())

    assert exc_info.value.status_code == 429
    assert len(calls) == 4


@pytest.mark.asyncio
async def test_other_error_status_is_terminal():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(500, text="internal")

    transport = _transport(handler)
    with pytest.raises(TransportError) as exc_info:
        await _collect(transport)

    assert exc_info.value.status_code == 500
    assert exc_info.value.body == "internal"
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_stream_decodes_sse_records_into_events():
    seen: dict = {}
    body = (
        ": keep-alive comment\n\n"
        + _sse(
            _chunk(
                [{"text": "planning", "thought": True, "thoughtSignature": "sig-thought"}],
                usage={"promptTokenCount": 3, "candidatesTokenCount": 1, "totalTokenCount": 4},
            ),
            _chunk([{"text": "Hello"}]),
        )
        + "data: {not json\n\n"
        + _sse(
            _chunk(
                [{"functionCall": {"name": "read_file", "args": {"file_path": "a.txt"}}, "thoughtSignature": "sig-call"}],
                usage={"promptTokenCount": 3, "candidatesTokenCount": 7, "totalTokenCount": 10},
            ),
            _chunk([], usage={"totalTokenCount": 0}),
        )
        + "data: [DONE]\n\n"
        + _sse(_chunk([{"text": "after done"}]))
    )

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["alt"] = request.url.params.get("alt")
        seen["accept"] = request.headers.get("accept")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})

    events = await _collect(_transport(handler))

    assert [event.type for event in events] == ["start", "thought", "content", "tool_call", "done"]
    assert events[0].model == "gemini-test"
    assert events[1].text == "planning"
    assert events[1].thought_signature == "sig-thought"
    assert events[2].text == "Hello"
    assert events[3].function_call.name == "read_file"
    assert events[3].function_call.args == {"file_path": "a.txt"}
    assert events[3].thought_signature == "sig-call"
    assert events[4].usage == {"prompt_tokens": 3, "completion_tokens": 7, "total_tokens": 10}

    assert seen["path"] == "/v1internal:streamGenerateContent"
    assert seen["alt"] == "sse"
    assert seen["accept"] == "text/event-stream"
    assert seen["body"]["model"] == "gemini-test"


class _BrokenStream(httpx.AsyncByteStream):
    async def __aiter__(self):
        yield ("data: " + json.dumps(_chunk([{"text": "partial"}])) + "\n\n").encode()
        raise httpx.ReadError("connection reset")


@pytest.mark.asyncio
async def test_mid_stream_failure_yields_error_then_done():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=_BrokenStream())

    events = await _collect(_transport(handler))

    assert [event.type for event in events] == ["start", "content", "error", "done"]
    assert "connection reset" in events[2].error
    assert events[3].usage is None


@pytest.mark.asyncio
async def test_credentials_are_sent_as_headers():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["key"] = request.headers.get("x-goog-api-key")
        return httpx.Response(200, text=_sse(_chunk([{"text": "ok"}])))

    events = await _collect(_transport(handler, credentials=APIKeyCredentials("secret")))

    assert seen["key"] == "secret"
    assert events[-1].type == "done"


@pytest.mark.asyncio
async def test_credential_failure_raises_before_any_request():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, text="")

    async def broken_token() -> str:
        raise RuntimeError("refresh token revoked")

    with pytest.raises(AuthError):
        await _collect(_transport(handler, credentials=APIKeyCredentials("")))
    with pytest.raises(AuthError, match="refresh token revoked"):
        await _collect(_transport(handler, credentials=BearerTokenCredentials(broken_token)))

    assert calls == []


@pytest.mark.asyncio
async def test_stream_retries_rate_limit_before_opening():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        if len(calls) == 1:
            return httpx.Response(429, text=_rate_limit_body("0.01s"))
        return httpx.Response(200, text=_sse(_chunk([{"text": "after retry"}])))

    events = await _collect(_transport(handler))

    assert [event.type for event in events] == ["start", "content", "done"]
    assert events[1].text == "after retry"
    assert calls == ["/v1internal:streamGenerateContent"] * 2


@pytest.mark.asyncio
async def test_backoff_wait_is_cancellable():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(429, text=_rate_limit_body("30s"))

    task = asyncio.create_task(_transport(handler).generate(_request()))
    for _ in range(100):
        if calls:
            break
        await asyncio.sleep(0.01)

    started = time.monotonic()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert time.monotonic() - started < 1.0
    assert len(calls) == 1
