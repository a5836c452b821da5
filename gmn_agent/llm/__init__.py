"""Gemini generation transport - direct HTTP calls to the Code Assist API."""

import asyncio
import json
import re
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import httpx

from gmn_agent.auth import CredentialProvider
from gmn_agent.exceptions import ProtocolError, RateLimitError, TransportError
from gmn_agent.logging import get_logger

log = get_logger(__name__)


DEFAULT_BASE_URL = "https://cloudcode-pa.googleapis.com"
DEFAULT_API_VERSION = "v1internal"
MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 1.0

_DURATION_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


@dataclass
class FunctionCall:
    """A tool call requested by the model."""

    name: str
    args: dict[str, Any] = field(default_factory=dict)


@dataclass
class FunctionResponse:
    """A tool result sent back to the model."""

    name: str
    response: dict[str, Any] = field(default_factory=dict)


@dataclass
class InlineData:
    """Inline binary payload (images, documents)."""

    mime_type: str
    data: str  # base64


@dataclass
class Part:
    """One semantic unit of a Content turn.

    Exactly one of text / function_call / function_response / inline_data is
    set. ``thought`` marks text as reasoning output, and ``thought_signature``
    is an opaque token that must be sent back verbatim on the next request.
    """

    text: str = ""
    thought: bool = False
    thought_signature: str = ""
    function_call: FunctionCall | None = None
    function_response: FunctionResponse | None = None
    inline_data: InlineData | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to the camelCase wire shape."""
        data: dict[str, Any] = {}
        if self.text:
            data["text"] = self.text
        if self.thought:
            data["thought"] = True
        if self.thought_signature:
            data["thoughtSignature"] = self.thought_signature
        if self.function_call is not None:
            data["functionCall"] = {
                "name": self.function_call.name,
                "args": self.function_call.args,
            }
        if self.function_response is not None:
            data["functionResponse"] = {
                "name": self.function_response.name,
                "response": self.function_response.response,
            }
        if self.inline_data is not None:
            data["inlineData"] = {
                "mimeType": self.inline_data.mime_type,
                "data": self.inline_data.data,
            }
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Part":
        """Create from the camelCase wire shape."""
        call = data.get("functionCall")
        resp = data.get("functionResponse")
        inline = data.get("inlineData")
        return cls(
            text=str(data.get("text") or ""),
            thought=bool(data.get("thought", False)),
            thought_signature=str(data.get("thoughtSignature") or ""),
            function_call=(
                FunctionCall(name=str(call.get("name", "")), args=dict(call.get("args") or {}))
                if isinstance(call, dict)
                else None
            ),
            function_response=(
                FunctionResponse(name=str(resp.get("name", "")), response=dict(resp.get("response") or {}))
                if isinstance(resp, dict)
                else None
            ),
            inline_data=(
                InlineData(mime_type=str(inline.get("mimeType", "")), data=str(inline.get("data", "")))
                if isinstance(inline, dict)
                else None
            ),
        )


@dataclass
class Content:
    """A single turn in the conversation."""

    role: str  # "user" or "model"
    parts: list[Part] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"parts": [part.to_dict() for part in self.parts]}
        if self.role:
            data["role"] = self.role
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Content":
        return cls(
            role=str(data.get("role") or ""),
            parts=[Part.from_dict(p) for p in data.get("parts") or [] if isinstance(p, dict)],
        )


@dataclass
class ToolDefinition:
    """Definition of a tool for the LLM."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }


@dataclass
class GenerationConfig:
    """Sampling parameters; unset fields are omitted from the request."""

    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    max_output_tokens: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.temperature is not None:
            data["temperature"] = self.temperature
        if self.top_p is not None:
            data["topP"] = self.top_p
        if self.top_k is not None:
            data["topK"] = self.top_k
        if self.max_output_tokens is not None:
            data["maxOutputTokens"] = self.max_output_tokens
        return data


@dataclass
class GenerateRequest:
    """Request envelope for generateContent / streamGenerateContent."""

    model: str
    contents: list[Content]
    system_instruction: Content | None = None
    tools: list[ToolDefinition] = field(default_factory=list)
    config: GenerationConfig = field(default_factory=GenerationConfig)
    project: str = ""
    user_prompt_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        inner: dict[str, Any] = {"contents": [c.to_dict() for c in self.contents]}
        if self.system_instruction is not None:
            inner["systemInstruction"] = self.system_instruction.to_dict()
        generation_config = self.config.to_dict()
        if generation_config:
            inner["generationConfig"] = generation_config
        if self.tools:
            inner["tools"] = [{"functionDeclarations": [t.to_dict() for t in self.tools]}]

        body: dict[str, Any] = {"model": self.model, "request": inner}
        if self.project:
            body["project"] = self.project
        if self.user_prompt_id:
            body["user_prompt_id"] = self.user_prompt_id
        return body


@dataclass
class Candidate:
    """A response candidate."""

    content: Content
    finish_reason: str = ""


@dataclass
class GenerateResponse:
    """Response from generateContent (also used per streamed record)."""

    candidates: list[Candidate] = field(default_factory=list)
    usage: dict[str, int] = field(default_factory=dict)
    trace_id: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GenerateResponse":
        inner = data.get("response") if isinstance(data.get("response"), dict) else data
        candidates = [
            Candidate(
                content=Content.from_dict(c.get("content") or {}),
                finish_reason=str(c.get("finishReason") or ""),
            )
            for c in inner.get("candidates") or []
            if isinstance(c, dict)
        ]
        return cls(
            candidates=candidates,
            usage=usage_from_metadata(inner.get("usageMetadata")),
            trace_id=str(data.get("traceId") or ""),
        )

    @property
    def text(self) -> str:
        """Concatenated non-thought text of the first candidate."""
        if not self.candidates:
            return ""
        return "".join(
            p.text for p in self.candidates[0].content.parts if p.text and not p.thought
        )


@dataclass
class StreamEvent:
    """A normalized event decoded from the generation stream."""

    type: str  # "start", "content", "thought", "tool_call", "error", "done"
    model: str = ""
    text: str = ""
    function_call: FunctionCall | None = None
    thought_signature: str = ""
    usage: dict[str, int] | None = None
    error: str = ""


def usage_from_metadata(metadata: Any) -> dict[str, int]:
    """Map ``usageMetadata`` to prompt/completion/total token counts."""
    if not isinstance(metadata, dict):
        return {}
    prompt = int(metadata.get("promptTokenCount") or 0)
    completion = int(metadata.get("candidatesTokenCount") or 0)
    total = int(metadata.get("totalTokenCount") or 0)
    return {
        "prompt_tokens": prompt,
        "completion_tokens": completion,
        "total_tokens": total,
    }


def parse_duration(value: str) -> float | None:
    """Parse a Go-style duration string (``"0.42s"``, ``"1m30s"``) into seconds."""
    text = str(value or "").strip()
    if not text:
        return None
    total = 0.0
    pos = 0
    for match in _DURATION_RE.finditer(text):
        if match.start() != pos:
            return None
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos == 0 or pos != len(text):
        return None
    return total


def parse_retry_delay(body: str | bytes) -> float:
    """Extract the server-suggested retry delay from a 429 response body.

    Body format: ``{"error": {"details": [{"@type": "...RetryInfo", "retryDelay": "0.42s"}]}}``.
    Falls back to one second when absent or unparseable.
    """
    try:
        payload = json.loads(body)
    except (TypeError, ValueError):
        return DEFAULT_RETRY_DELAY
    if isinstance(payload, list) and payload:
        payload = payload[0]
    error = payload.get("error") if isinstance(payload, dict) else None
    details = error.get("details") if isinstance(error, dict) else None
    for detail in details or []:
        if not isinstance(detail, dict):
            continue
        if str(detail.get("@type", "")).endswith("RetryInfo") and detail.get("retryDelay"):
            parsed = parse_duration(str(detail["retryDelay"]))
            if parsed is not None:
                return parsed
    return DEFAULT_RETRY_DELAY


def events_from_chunk(chunk: GenerateResponse) -> list[StreamEvent]:
    """Split one streamed record into content / thought / tool_call events."""
    events: list[StreamEvent] = []
    for candidate in chunk.candidates:
        for part in candidate.content.parts:
            if part.text:
                events.append(StreamEvent(
                    type="thought" if part.thought else "content",
                    text=part.text,
                    thought_signature=part.thought_signature if not part.function_call else "",
                ))
            if part.function_call is not None:
                events.append(StreamEvent(
                    type="tool_call",
                    function_call=part.function_call,
                    thought_signature=part.thought_signature,
                ))
    return events


class GenerationTransport:
    """Client for the Code Assist generation endpoints with 429 backoff."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        api_version: str = DEFAULT_API_VERSION,
        credentials: CredentialProvider | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 300.0,
        max_retries: int = MAX_RETRIES,
    ):
        """Initialize the transport.

        Args:
            base_url: API base URL
            api_version: Path segment before the ``:method`` suffix
            credentials: Optional provider of authorization headers
            http_client: Optional preconfigured client (not closed by ``close``)
            timeout: Read timeout in seconds
            max_retries: Retries after a 429 (attempts = retries + 1)
        """
        self.base_url = base_url.rstrip("/")
        self.api_version = api_version
        self.credentials = credentials
        self.max_retries = max_retries
        self._owns_client = http_client is None
        self.client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=30.0),
            follow_redirects=True,
        )

    def _endpoint(self, method: str) -> str:
        return f"{self.base_url}/{self.api_version}:{method}"

    async def _request_headers(self, stream: bool) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if stream:
            headers["Accept"] = "text/event-stream"
        if self.credentials is not None:
            headers.update(await self.credentials.get_headers())
        return headers

    async def _send_once(
        self,
        url: str,
        payload: dict[str, Any],
        headers: dict[str, str],
    ) -> httpx.Response:
        """Send one attempt; return the open response only on HTTP 200."""
        request = self.client.build_request("POST", url, json=payload, headers=headers)
        try:
            response = await self.client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise TransportError(f"Failed to send request: {e}") from e

        if response.status_code == 200:
            return response

        try:
            body = (await response.aread()).decode("utf-8", errors="replace")
        except httpx.HTTPError:
            body = ""
        finally:
            await response.aclose()

        if response.status_code == 429:
            raise RateLimitError(parse_retry_delay(body), body=body)
        raise TransportError(
            f"API error (status {response.status_code}): {body}",
            status_code=response.status_code,
            body=body,
        )

    async def _send_with_retry(self, url: str, payload: dict[str, Any], stream: bool) -> httpx.Response:
        headers = await self._request_headers(stream)
        attempt = 0
        while True:
            try:
                return await self._send_once(url, payload, headers)
            except RateLimitError as e:
                attempt += 1
                if attempt > self.max_retries:
                    log.warning("Generation API retries exhausted", attempts=attempt)
                    raise TransportError("max retries exceeded", status_code=429, body=e.body) from e
                log.info(
                    "Rate limited by generation API",
                    attempt=attempt,
                    retry_delay=e.retry_delay,
                )
                await asyncio.sleep(e.retry_delay)

    async def generate(self, request: GenerateRequest) -> GenerateResponse:
        """Send a non-streaming generate request."""
        response = await self._send_with_retry(
            self._endpoint("generateContent"), request.to_dict(), stream=False
        )
        try:
            raw = await response.aread()
        except httpx.HTTPError as e:
            raise TransportError(f"Failed to read response: {e}") from e
        finally:
            await response.aclose()

        try:
            data = json.loads(raw)
        except ValueError as e:
            raise ProtocolError(f"Failed to decode response: {e}") from e
        if not isinstance(data, dict):
            raise ProtocolError("Failed to decode response: expected a JSON object")
        return GenerateResponse.from_dict(data)

    async def stream_generate(self, request: GenerateRequest) -> AsyncIterator[StreamEvent]:
        """Open a streaming generate request.

        Connection failures and exhausted retries raise ``TransportError`` here.
        Once the stream is open, failures are reported as an ``error`` event
        and the iterator always ends with a ``done`` event.
        """
        response = await self._send_with_retry(
            self._endpoint("streamGenerateContent?alt=sse"), request.to_dict(), stream=True
        )
        return self._iter_events(response, request.model)

    async def _iter_events(self, response: httpx.Response, model: str) -> AsyncIterator[StreamEvent]:
        usage: dict[str, int] | None = None
        try:
            yield StreamEvent(type="start", model=model)
            failure = ""
            try:
                async for raw_line in response.aiter_lines():
                    line = raw_line.strip()
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:"):].strip()
                    if data == "[DONE]":
                        break
                    try:
                        payload = json.loads(data)
                    except ValueError:
                        log.debug("Skipping undecodable stream record", record=data[:200])
                        continue
                    if not isinstance(payload, dict):
                        continue

                    chunk = GenerateResponse.from_dict(payload)
                    if chunk.usage.get("total_tokens", 0) > 0:
                        usage = chunk.usage
                    for event in events_from_chunk(chunk):
                        yield event
            except httpx.HTTPError as e:
                failure = str(e) or type(e).__name__
                log.warning("Generation stream interrupted", error=failure)

            if failure:
                yield StreamEvent(type="error", error=failure)
            yield StreamEvent(type="done", usage=usage)
        finally:
            await response.aclose()

    async def close(self) -> None:
        """Close the HTTP client if this transport created it."""
        if self._owns_client:
            await self.client.aclose()
