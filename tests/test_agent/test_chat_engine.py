import asyncio
import base64
import copy
from pathlib import Path
from typing import Any

import pytest

from gmn_agent.chat import (
    ASK_USER_CANCELLED,
    PLAN_MODE_ACTIVATED_NOTICE,
    PLAN_MODE_DEACTIVATED_NOTICE,
    Attachment,
    ChatEngine,
    ChatSnapshot,
    EngineState,
    EventQueue,
)
from gmn_agent.config import Config
from gmn_agent.exceptions import ChatError, ConversationBusyError, TransportError
from gmn_agent.llm import FunctionCall, StreamEvent, ToolDefinition
from gmn_agent.tools.registry import PLAN_MODE_TOOLS, Tool, ToolRegistry, ToolResult
from gmn_agent.tools.router import ToolRouter

HANG = "HANG"
USAGE = {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5}


class ScriptedTransport:
    """Replays one scripted list of stream events per request.

    A turn may be an exception (raised when the stream is opened). Inside a
    turn, a callable is invoked between events and ``HANG`` blocks the
    stream until the turn is cancelled.
    """

    def __init__(self, turns: list[Any]):
        self.turns = list(turns)
        self.requests = []
        self.hanging = asyncio.Event()

    async def stream_generate(self, request):
        self.requests.append(copy.deepcopy(request))
        turn = self.turns.pop(0)
        if isinstance(turn, Exception):
            raise turn
        return self._events(turn)

    async def _events(self, turn):
        yield StreamEvent(type="start", model="test-model")
        for item in turn:
            if callable(item):
                item()
                continue
            if isinstance(item, str) and item == HANG:
                self.hanging.set()
                await asyncio.Event().wait()
            yield item
        yield StreamEvent(type="done", usage=dict(USAGE))


class RecordingTool(Tool):
    parameters = {"type": "object", "properties": {"text": {"type": "string"}}}

    def __init__(self, name: str, hook=None):
        self.name = name
        self.hook = hook
        self.calls: list[dict[str, Any]] = []

    async def execute(self, **kwargs: Any) -> ToolResult:
        self.calls.append(kwargs)
        if self.hook is not None:
            self.hook()
        return ToolResult(content=f"{self.name}:{kwargs.get('text', '')}")


def text(value: str) -> StreamEvent:
    return StreamEvent(type="content", text=value)


def call(name: str, args: dict[str, Any] | None = None, signature: str = "") -> StreamEvent:
    return StreamEvent(
        type="tool_call",
        function_call=FunctionCall(name=name, args=args or {}),
        thought_signature=signature,
    )


def make_engine(transport, work_dir: Path, *tools: Tool, mcp_manager=None) -> tuple[ChatEngine, EventQueue]:
    registry = ToolRegistry()
    for tool in tools:
        registry.register(tool)
    events = EventQueue()
    engine = ChatEngine(
        transport,
        ToolRouter(registry, mcp_manager),
        config=Config(),
        on_event=events,
        work_dir=work_dir,
    )
    return engine, events


async def wait_for_event(events: EventQueue, event_type: str):
    while True:
        event = await asyncio.wait_for(events.get(), timeout=5)
        if event.type == event_type:
            return event


def results_of(content) -> list[tuple[str, str]]:
    return [(p.function_response.name, p.function_response.response["result"]) for p in content.parts]


@pytest.mark.asyncio
async def test_text_turn_streams_and_records_history(tmp_path):
    transport = ScriptedTransport([[text("Hel"), text("lo")]])
    engine, events = make_engine(transport, tmp_path)

    await engine.send_message("hi")

    kinds = [event.type for event in events.drain()]
    assert kinds == ["messages", "start", "content", "content", "done", "messages"]
    history = engine.get_history()
    assert [c.role for c in history] == ["user", "model"]
    assert history[1].parts[0].text == "Hello"
    assert [m.role for m in engine.get_messages()] == ["user", "model"]
    assert engine.last_usage == USAGE
    assert engine.state is EngineState.IDLE
    assert transport.requests[0].system_instruction.parts[0].text


@pytest.mark.asyncio
async def test_tool_calls_get_one_response_each_in_order(tmp_path):
    echo = RecordingTool("echo")
    transport = ScriptedTransport([
        [call("echo", {"text": "a"}), call("missing"), call("echo", {"text": "b"})],
        [text("done")],
    ])
    engine, events = make_engine(transport, tmp_path, echo)

    await engine.send_message("go")

    followup = transport.requests[1].contents
    assert [c.role for c in followup] == ["user", "model", "user"]
    assert [p.function_call.name for p in followup[1].parts] == ["echo", "missing", "echo"]
    assert results_of(followup[2]) == [
        ("echo", "echo:a"),
        ("missing", "Error: Tool not found: missing"),
        ("echo", "echo:b"),
    ]
    assert [c["text"] for c in echo.calls] == ["a", "b"]
    assert echo.calls[0]["_work_dir"] == str(tmp_path)
    assert [m.role for m in engine.get_messages()] == [
        "user", "tool_call", "tool_result", "tool_call", "tool_result", "tool_call", "tool_result", "model",
    ]


@pytest.mark.asyncio
async def test_plan_mode_notices_only_on_change_and_with_history(tmp_path):
    transport = ScriptedTransport([[text("hi")]])
    engine, _ = make_engine(transport, tmp_path)

    engine.set_plan_mode(True)
    engine.set_plan_mode(False)
    assert engine.get_history() == []

    await engine.send_message("hello")
    engine.set_plan_mode(True)
    engine.set_plan_mode(True)
    engine.set_plan_mode(False)

    notices = [c.parts[0].text for c in engine.get_history()[2:]]
    assert notices == [PLAN_MODE_ACTIVATED_NOTICE, PLAN_MODE_DEACTIVATED_NOTICE]


@pytest.mark.asyncio
async def test_plan_mode_rejects_mutating_tools(tmp_path):
    writer = RecordingTool("write_file")
    reader = RecordingTool("read_file")
    transport = ScriptedTransport([
        [call("write_file", {"text": "x"})],
        [text("ok")],
    ])
    engine, _ = make_engine(transport, tmp_path, writer, reader)
    engine.set_plan_mode(True)

    await engine.send_message("change it")

    assert {tool.name for tool in transport.requests[0].tools} <= PLAN_MODE_TOOLS
    assert [tool.name for tool in transport.requests[0].tools] == ["read_file"]
    assert writer.calls == []
    [(name, result)] = results_of(transport.requests[1].contents[-1])
    assert name == "write_file"
    assert result.startswith('Error: tool "write_file" is not allowed in Plan Mode.')
    assert "PLAN MODE ACTIVE" in transport.requests[0].system_instruction.parts[0].text


@pytest.mark.asyncio
async def test_plan_mode_toggled_mid_turn_lands_after_function_responses(tmp_path):
    transport = ScriptedTransport([[call("toggle")], [text("ok")]])
    engine, _ = make_engine(transport, tmp_path)
    engine.router.registry.register(RecordingTool("toggle", hook=lambda: engine.set_plan_mode(True)))

    await engine.send_message("go")

    followup = transport.requests[1].contents
    assert [c.role for c in followup] == ["user", "model", "user", "user"]
    assert followup[2].parts[0].function_response.name == "toggle"
    assert followup[3].parts[0].text == PLAN_MODE_ACTIVATED_NOTICE
    assert [tool.name for tool in transport.requests[1].tools] == []


@pytest.mark.asyncio
async def test_ask_user_blocks_until_answered(tmp_path):
    questions = {
        "questions": [{
            "question": "Which one?",
            "header": "Pick",
            "type": "choice",
            "options": [{"label": "A", "description": "first"}, {"label": "B", "description": "second"}],
        }]
    }
    transport = ScriptedTransport([[call("ask_user", questions)], [text("thanks")]])
    engine, events = make_engine(transport, tmp_path)

    assert engine.submit_ask_user_response("too early") is False

    task = engine.send_message("help me choose")
    event = await wait_for_event(events, "ask_user")
    assert event.questions[0].header == "Pick"
    assert [o.label for o in event.questions[0].options] == ["A", "B"]
    assert engine.state is EngineState.TOOL_EXECUTION

    assert engine.submit_ask_user_response("A") is True
    assert engine.submit_ask_user_response("B") is False
    await task

    assert results_of(transport.requests[1].contents[-1]) == [("ask_user", "A")]


@pytest.mark.asyncio
async def test_stop_during_stream_cancels_without_done(tmp_path):
    transport = ScriptedTransport([[text("partial"), HANG]])
    engine, events = make_engine(transport, tmp_path)

    task = engine.send_message("long answer please")
    await asyncio.wait_for(transport.hanging.wait(), timeout=5)

    assert engine.stop_generation() is True
    with pytest.raises(asyncio.CancelledError):
        await task

    kinds = [event.type for event in events.drain()]
    assert "done" not in kinds
    assert kinds[-1] == "error"
    assert engine.state is EngineState.IDLE
    assert engine.is_busy is False
    assert engine.stop_generation() is False


@pytest.mark.asyncio
async def test_stop_during_ask_user_still_pairs_every_call(tmp_path):
    echo = RecordingTool("echo")
    transport = ScriptedTransport([[call("ask_user", {"question": "Sure?"}), call("echo", {"text": "x"})]])
    engine, events = make_engine(transport, tmp_path, echo)

    task = engine.send_message("do it")
    await wait_for_event(events, "ask_user")
    engine.stop_generation()
    with pytest.raises(asyncio.CancelledError):
        await task

    history = engine.get_history()
    assert results_of(history[-1]) == [
        ("ask_user", ASK_USER_CANCELLED),
        ("echo", "Error: Generation cancelled"),
    ]
    assert echo.calls == []
    assert len(transport.requests) == 1
    assert engine.submit_ask_user_response("late") is False


@pytest.mark.asyncio
async def test_second_send_while_busy_is_rejected(tmp_path):
    transport = ScriptedTransport([[HANG]])
    engine, _ = make_engine(transport, tmp_path)

    task = engine.send_message("first")
    await asyncio.wait_for(transport.hanging.wait(), timeout=5)

    with pytest.raises(ConversationBusyError):
        engine.send_message("second")
    with pytest.raises(ConversationBusyError):
        engine.clear_history()
    assert len(engine.get_history()) == 1

    engine.stop_generation()
    with pytest.raises(asyncio.CancelledError):
        await task


@pytest.mark.asyncio
async def test_stream_error_event_ends_the_turn(tmp_path):
    transport = ScriptedTransport([[text("half"), StreamEvent(type="error", error="connection reset")]])
    engine, events = make_engine(transport, tmp_path)

    await engine.send_message("hi")

    drained = events.drain()
    assert "done" not in [event.type for event in drained]
    assert drained[-1].type == "error"
    assert "connection reset" in drained[-1].text
    assert engine.state is EngineState.IDLE


@pytest.mark.asyncio
async def test_transport_failure_is_reported_as_error_event(tmp_path):
    transport = ScriptedTransport([TransportError("max retries exceeded", 429)])
    engine, events = make_engine(transport, tmp_path)

    await engine.send_message("hi")

    drained = events.drain()
    assert drained[-1].type == "error"
    assert drained[-1].text == "max retries exceeded"
    assert engine.is_busy is False


@pytest.mark.asyncio
async def test_attachments_are_sent_inline(tmp_path):
    image = tmp_path / "shot.png"
    image.write_bytes(b"\x89PNG fake")
    transport = ScriptedTransport([[text("nice")]])
    engine, _ = make_engine(transport, tmp_path)

    await engine.send_message("look", [Attachment(path=str(image))])

    part = transport.requests[0].contents[0].parts[1]
    assert part.inline_data.mime_type == "image/png"
    assert base64.b64decode(part.inline_data.data) == b"\x89PNG fake"
    assert engine.get_messages()[0].content == "look [1 file(s) attached]"


@pytest.mark.asyncio
async def test_unreadable_attachment_leaves_history_untouched(tmp_path):
    engine, _ = make_engine(ScriptedTransport([]), tmp_path)

    with pytest.raises(ChatError, match="failed to read file"):
        engine.send_message("look", [Attachment(path=str(tmp_path / "missing.png"))])

    assert engine.get_history() == []
    assert engine.is_busy is False


@pytest.mark.asyncio
async def test_thought_signatures_are_echoed_back(tmp_path):
    transport = ScriptedTransport([
        [StreamEvent(type="thought", text="hmm", thought_signature="sig-t"), call("echo", {"text": "a"}, "sig-c")],
        [text("ok")],
    ])
    engine, _ = make_engine(transport, tmp_path, RecordingTool("echo"))

    await engine.send_message("think")

    model_turn = transport.requests[1].to_dict()["contents"][1]
    assert model_turn["role"] == "model"
    assert model_turn["parts"][0] == {"text": "hmm", "thought": True, "thoughtSignature": "sig-t"}
    assert model_turn["parts"][1]["thoughtSignature"] == "sig-c"
    assert model_turn["parts"][1]["functionCall"]["name"] == "echo"


@pytest.mark.asyncio
async def test_snapshot_restores_into_a_new_engine(tmp_path):
    transport = ScriptedTransport([[text("first answer")]])
    engine, _ = make_engine(transport, tmp_path)
    engine.set_model("gemini-2.5-pro")
    await engine.send_message("question")

    data = engine.snapshot().to_dict()
    other, events = make_engine(ScriptedTransport([]), tmp_path / "other")
    other.restore(ChatSnapshot.from_dict(data))

    assert [c.to_dict() for c in other.get_history()] == [c.to_dict() for c in engine.get_history()]
    assert [m.content for m in other.get_messages()] == ["question", "first answer"]
    assert other.get_model() == "gemini-2.5-pro"
    assert other.get_work_dir() == str(tmp_path)
    assert events.drain()[-1].type == "messages"


@pytest.mark.asyncio
async def test_clear_history_resets_conversation(tmp_path):
    transport = ScriptedTransport([[text("hi")]])
    engine, _ = make_engine(transport, tmp_path)
    await engine.send_message("hello")
    engine.set_model("gemini-2.5-pro")
    engine.set_work_dir("/somewhere/else")

    engine.clear_history()

    assert engine.get_history() == []
    assert engine.get_messages() == []
    assert engine.get_model() == Config().model.default
    assert engine.get_work_dir() == str(tmp_path)
    assert engine.last_usage is None


class BrokenResultClient:
    connected = True

    def __init__(self):
        self.tools = [ToolDefinition(name="weird", description="", parameters={"type": "object"})]

    async def call_tool(self, name, arguments):
        raise TypeError("'int' object is not iterable")


class SingleServerManager:
    def __init__(self, client):
        self.client = client

    def clients(self):
        return [("srv", self.client)]

    def get_client(self, name):
        return self.client if name == "srv" else None

    async def drop_client(self, name, reason):
        pass


@pytest.mark.asyncio
async def test_unexpected_tool_failure_still_pairs_the_call(tmp_path):
    transport = ScriptedTransport([[call("srv__weird")], [text("recovered")]])
    engine, events = make_engine(transport, tmp_path, mcp_manager=SingleServerManager(BrokenResultClient()))

    await engine.send_message("try it")

    history = engine.get_history()
    assert [c.role for c in history] == ["user", "model", "user", "model"]
    assert results_of(history[2]) == [("srv__weird", "Error: 'int' object is not iterable")]
    assert "done" in [event.type for event in events.drain()]


@pytest.mark.asyncio
async def test_plan_mode_toggled_during_final_stream_is_kept(tmp_path):
    transport = ScriptedTransport([[text("a"), lambda: engine.set_plan_mode(True), text("b")]])
    engine, _ = make_engine(transport, tmp_path)

    await engine.send_message("hi")

    history = engine.snapshot().history
    assert [c.parts[0].text for c in history] == ["hi", "ab", PLAN_MODE_ACTIVATED_NOTICE]
    assert engine.get_plan_mode() is True


@pytest.mark.asyncio
async def test_stop_right_after_send_still_ends_with_error(tmp_path):
    transport = ScriptedTransport([[text("never streamed")]])
    engine, events = make_engine(transport, tmp_path)

    task = engine.send_message("hi")
    assert engine.stop_generation() is True
    with pytest.raises(asyncio.CancelledError):
        await task

    async def collect():
        return [(event.type, event.text) async for event in events]

    seen = await asyncio.wait_for(collect(), timeout=5)
    assert [kind for kind, _ in seen] == ["messages", "error"]
    assert seen[-1][1] == "Generation cancelled"
    assert transport.requests == []
    assert engine.state is EngineState.IDLE
    assert engine.is_busy is False
