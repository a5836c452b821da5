"""Conversation engine: the streaming agent loop over the generation transport."""

import asyncio
import base64
import contextlib
import copy
import functools
import json
import mimetypes
import threading
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator

from gmn_agent.config import Config, get_config
from gmn_agent.exceptions import (
    ChatError,
    ConversationBusyError,
    GmnAgentError,
    PlanModeViolation,
    TransportError,
)
from gmn_agent.instructions import InstructionLoader, build_system_prompt
from gmn_agent.llm import (
    Content,
    FunctionCall,
    FunctionResponse,
    GenerateRequest,
    GenerationConfig,
    GenerationTransport,
    InlineData,
    Part,
)
from gmn_agent.logging import get_logger
from gmn_agent.tools.registry import BuiltinTool, is_plan_mode_tool
from gmn_agent.tools.router import ToolRouter

log = get_logger(__name__)

ASK_USER_CANCELLED = "User cancelled the question."
GENERATION_CANCELLED = "Generation cancelled"
PLAN_MODE_ACTIVATED_NOTICE = (
    "[SYSTEM: Plan Mode has been ACTIVATED. From now on, only use read-only tools. "
    "Do NOT modify any files. Explain your plan instead of executing changes.]"
)
PLAN_MODE_DEACTIVATED_NOTICE = (
    "[SYSTEM: Plan Mode has been DEACTIVATED. All tools are now available. You may "
    "freely use write_file, replace, run_shell_command, and any other tools to make "
    "changes as requested.]"
)


class EngineState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    TOOL_EXECUTION = "tool_execution"


def _new_id() -> str:
    return f"msg-{uuid.uuid4().hex[:12]}"


@dataclass
class DisplayMessage:
    """A message as shown to the user, separate from the model-facing history."""

    role: str  # user, model, tool_call, tool_result
    content: str
    tool_name: str = ""
    tool_args: str = ""
    id: str = field(default_factory=_new_id)
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DisplayMessage":
        return cls(
            role=str(data.get("role", "")),
            content=str(data.get("content", "")),
            tool_name=str(data.get("tool_name", "")),
            tool_args=str(data.get("tool_args", "")),
            id=str(data.get("id") or _new_id()),
            timestamp=str(data.get("timestamp") or datetime.now().isoformat()),
        )


@dataclass
class Attachment:
    """A local file sent inline with a user message."""

    path: str
    mime_type: str = ""


@dataclass
class AskUserOption:
    label: str
    description: str = ""


@dataclass
class AskUserQuestion:
    question: str
    header: str = ""
    type: str = "text"  # choice, text, yesno
    options: list[AskUserOption] = field(default_factory=list)


@dataclass
class ChatEvent:
    """Progress notification delivered to the ``on_event`` callback."""

    type: str  # start, content, thought, tool_call, tool_result, ask_user, done, error, messages
    text: str = ""
    tool_name: str = ""
    tool_args: str = ""
    usage: dict[str, int] | None = None
    questions: list[AskUserQuestion] = field(default_factory=list)
    messages: list[DisplayMessage] = field(default_factory=list)


@dataclass
class ChatSnapshot:
    """Everything needed to resume a conversation later."""

    messages: list[DisplayMessage]
    history: list[Content]
    model: str = ""
    work_dir: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "messages": [m.to_dict() for m in self.messages],
            "history": [c.to_dict() for c in self.history],
            "model": self.model,
            "work_dir": self.work_dir,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChatSnapshot":
        return cls(
            messages=[DisplayMessage.from_dict(m) for m in data.get("messages") or []],
            history=[Content.from_dict(c) for c in data.get("history") or []],
            model=str(data.get("model") or ""),
            work_dir=str(data.get("work_dir") or ""),
        )


class EventQueue:
    """Collects engine events so a caller can ``async for`` over one turn.

    Pass the queue itself as ``on_event``. Iteration yields events until the
    turn's terminal ``done`` or ``error`` event.
    """

    TERMINAL = frozenset({"done", "error"})

    def __init__(self):
        self._queue: asyncio.Queue[ChatEvent] = asyncio.Queue()

    def __call__(self, event: ChatEvent) -> None:
        self._queue.put_nowait(event)

    async def get(self) -> ChatEvent:
        return await self._queue.get()

    def drain(self) -> list[ChatEvent]:
        """Return every queued event without waiting."""
        events: list[ChatEvent] = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events

    async def until_idle(self) -> AsyncIterator[ChatEvent]:
        while True:
            event = await self._queue.get()
            yield event
            if event.type in self.TERMINAL:
                return

    def __aiter__(self) -> AsyncIterator[ChatEvent]:
        return self.until_idle()


def parse_ask_user_questions(args: dict[str, Any]) -> list[AskUserQuestion]:
    """Parse ``ask_user`` arguments, accepting a bare ``question`` string."""
    raw = args.get("questions")
    if not isinstance(raw, list) or not raw:
        single = args.get("question")
        if isinstance(single, str) and single:
            raw = [{"question": single, "header": "Question", "type": "text"}]
        else:
            raise ChatError("questions array is required")

    questions: list[AskUserQuestion] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        options = [
            AskUserOption(label=str(o.get("label") or ""), description=str(o.get("description") or ""))
            for o in item.get("options") or []
            if isinstance(o, dict)
        ]
        questions.append(AskUserQuestion(
            question=str(item.get("question") or ""),
            header=str(item.get("header") or ""),
            type=str(item.get("type") or "text"),
            options=options,
        ))
    if not questions:
        raise ChatError("questions array is required")
    return questions


class ChatEngine:
    """Drives one conversation: history, the turn loop, and its two gates.

    State (history, display messages, model, work dir, plan mode) sits behind
    a ``threading.Lock`` that is never held across an ``await``; readers get
    copies. At most one turn task runs at a time.
    """

    def __init__(
        self,
        transport: GenerationTransport,
        router: ToolRouter,
        config: Config | None = None,
        on_event: Callable[[ChatEvent], None] | None = None,
        work_dir: Path | str | None = None,
        loader: InstructionLoader | None = None,
    ):
        self.transport = transport
        self.router = router
        self.config = config or get_config()
        self.on_event = on_event
        self.loader = loader or InstructionLoader()

        self._lock = threading.Lock()
        self._history: list[Content] = []
        self._messages: list[DisplayMessage] = []
        self._pending_notices: list[Content] = []
        self._model_override = ""
        self._default_work_dir = str(work_dir or "")
        self._work_dir = self._default_work_dir
        self._plan_mode = False
        self._state = EngineState.IDLE
        self._last_usage: dict[str, int] | None = None

        self._task: asyncio.Task | None = None
        self._cancel_requested = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._pending_answer: asyncio.Future | None = None

    # -- accessors ---------------------------------------------------------

    @property
    def state(self) -> EngineState:
        with self._lock:
            return self._state

    @property
    def last_usage(self) -> dict[str, int] | None:
        with self._lock:
            return dict(self._last_usage) if self._last_usage else None

    @property
    def is_busy(self) -> bool:
        with self._lock:
            return self._task_active()

    def _task_active(self) -> bool:
        return self._task is not None and not self._task.done()

    def get_model(self) -> str:
        with self._lock:
            return self._model_override or self.config.model.default

    def set_model(self, model: str) -> None:
        with self._lock:
            self._model_override = model

    def get_work_dir(self) -> str:
        with self._lock:
            return self._work_dir

    def set_work_dir(self, work_dir: Path | str) -> None:
        with self._lock:
            self._work_dir = str(work_dir)

    def get_plan_mode(self) -> bool:
        with self._lock:
            return self._plan_mode

    def get_messages(self) -> list[DisplayMessage]:
        with self._lock:
            return list(self._messages)

    def get_history(self) -> list[Content]:
        with self._lock:
            return list(self._history)

    def set_plan_mode(self, enabled: bool) -> None:
        """Toggle plan mode, telling the model about the change in history."""
        with self._lock:
            previous = self._plan_mode
            self._plan_mode = enabled
            if previous == enabled or not self._history:
                return
            text = PLAN_MODE_ACTIVATED_NOTICE if enabled else PLAN_MODE_DEACTIVATED_NOTICE
            notice = Content(role="user", parts=[Part(text=text)])
            # Mid-turn notices wait for the function responses to land first.
            if self._task_active():
                self._pending_notices.append(notice)
            else:
                self._history.append(notice)
        log.info("Plan mode changed", enabled=enabled)

    def snapshot(self) -> ChatSnapshot:
        with self._lock:
            return ChatSnapshot(
                messages=copy.deepcopy(self._messages),
                history=copy.deepcopy(self._history),
                model=self._model_override,
                work_dir=self._work_dir,
            )

    def restore(self, snapshot: ChatSnapshot) -> None:
        with self._lock:
            if self._task_active():
                raise ConversationBusyError()
            self._messages = copy.deepcopy(snapshot.messages)
            self._history = copy.deepcopy(snapshot.history)
            self._pending_notices = []
            self._model_override = snapshot.model
            self._work_dir = snapshot.work_dir or self._default_work_dir
            messages = list(self._messages)
        self._emit(ChatEvent(type="messages", messages=messages))

    def clear_history(self) -> None:
        """Reset history, display messages, model override and work dir."""
        with self._lock:
            if self._task_active():
                raise ConversationBusyError()
            self._history = []
            self._messages = []
            self._pending_notices = []
            self._model_override = ""
            self._work_dir = self._default_work_dir
            self._last_usage = None
        self._emit(ChatEvent(type="messages", messages=[]))

    # -- turn control ------------------------------------------------------

    def send_message(self, text: str, attachments: list[Attachment] | tuple = ()) -> asyncio.Task:
        """Append a user turn and start the agent loop in a new task.

        Raises:
            ConversationBusyError if a turn is already running
            ChatError if an attachment cannot be read
        """
        if self.is_busy:
            raise ConversationBusyError()

        parts: list[Part] = []
        if text:
            parts.append(Part(text=text))
        for attachment in attachments:
            parts.append(Part(inline_data=self._encode_attachment(attachment)))

        display = text
        if attachments:
            display += f" [{len(attachments)} file(s) attached]"

        loop = asyncio.get_running_loop()
        with self._lock:
            if self._task_active():
                raise ConversationBusyError()
            self._history.append(Content(role="user", parts=parts))
            self._messages.append(DisplayMessage(role="user", content=display))
            self._cancel_requested = False
            self._loop = loop
            started = asyncio.Event()
            self._task = loop.create_task(self._run_turn(started), name="gmn-agent-turn")
            self._task.add_done_callback(functools.partial(self._on_turn_done, started))
            messages = list(self._messages)

        self._emit(ChatEvent(type="messages", messages=messages))
        return self._task

    @staticmethod
    def _encode_attachment(attachment: Attachment) -> InlineData:
        path = Path(attachment.path).expanduser()
        try:
            data = path.read_bytes()
        except OSError as e:
            raise ChatError(f"failed to read file {attachment.path}: {e}") from e
        mime_type = attachment.mime_type or mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        return InlineData(mime_type=mime_type, data=base64.b64encode(data).decode("ascii"))

    def stop_generation(self) -> bool:
        """Cancel the running turn. Returns whether there was one."""
        with self._lock:
            task = self._task
            if task is None or task.done():
                return False
            self._cancel_requested = True
        log.info("Stopping generation")
        task.cancel()
        return True

    def submit_ask_user_response(self, answer: str) -> bool:
        """Answer the pending ``ask_user`` question; safe from any thread."""
        with self._lock:
            future = self._pending_answer
            loop = self._loop
            self._pending_answer = None
        if future is None or loop is None or future.done():
            return False
        loop.call_soon_threadsafe(_resolve_answer, future, answer)
        return True

    # -- the loop ----------------------------------------------------------

    def _emit(self, event: ChatEvent) -> None:
        if self.on_event is None:
            return
        try:
            self.on_event(event)
        except Exception as e:
            log.warning("Event callback failed", event_type=event.type, error=str(e))

    def _set_state(self, state: EngineState) -> None:
        with self._lock:
            self._state = state

    def _on_turn_done(self, started: asyncio.Event, task: asyncio.Task) -> None:
        # A task cancelled before its first step never reached _run_turn.
        if task.cancelled() and not started.is_set():
            log.info("Turn cancelled before start")
            self._emit(ChatEvent(type="error", text=GENERATION_CANCELLED))

    async def _run_turn(self, started: asyncio.Event) -> None:
        started.set()
        log.info("Turn started", model=self.get_model())
        try:
            await self._turn_loop()
        except asyncio.CancelledError:
            log.info("Turn cancelled")
            self._set_state(EngineState.IDLE)
            self._emit(ChatEvent(type="error", text=GENERATION_CANCELLED))
            raise
        except GmnAgentError as e:
            log.error("Turn failed", error=str(e))
            self._set_state(EngineState.IDLE)
            self._emit(ChatEvent(type="error", text=str(e)))
        except Exception as e:
            log.error("Turn crashed", error=str(e), exc_info=True)
            self._set_state(EngineState.IDLE)
            self._emit(ChatEvent(type="error", text=f"Internal error: {e}"))
        finally:
            with self._lock:
                self._state = EngineState.IDLE
                self._pending_answer = None
                # Notices toggled during the last model turn still belong in history.
                if self._pending_notices:
                    self._history.extend(self._pending_notices)
                    self._pending_notices = []

    def _build_request(self) -> GenerateRequest:
        with self._lock:
            if self._pending_notices:
                self._history.extend(self._pending_notices)
                self._pending_notices = []
            history = list(self._history)
            plan_mode = self._plan_mode
            work_dir = self._work_dir
            model = self._model_override or self.config.model.default

        system_prompt = build_system_prompt(work_dir or None, plan_mode=plan_mode, loader=self.loader)
        tools = self.router.plan_mode_definitions() if plan_mode else self.router.get_definitions()
        return GenerateRequest(
            model=model,
            contents=history,
            system_instruction=Content(role="user", parts=[Part(text=system_prompt)]),
            tools=tools,
            config=GenerationConfig(
                temperature=self.config.model.temperature,
                max_output_tokens=self.config.model.max_output_tokens,
            ),
            project=self.config.api.project,
            user_prompt_id=uuid.uuid4().hex,
        )

    async def _turn_loop(self) -> None:
        while True:
            if self._cancel_requested:
                raise asyncio.CancelledError()

            request = self._build_request()
            self._set_state(EngineState.STREAMING)

            text = ""
            text_signature = ""
            thought = ""
            thought_signature = ""
            calls: list[tuple[FunctionCall, str]] = []
            usage: dict[str, int] | None = None

            stream = await self.transport.stream_generate(request)
            async with contextlib.aclosing(stream):
                async for event in stream:
                    if event.type == "start":
                        self._emit(ChatEvent(type="start", text=event.model))
                    elif event.type == "content":
                        text += event.text
                        text_signature = event.thought_signature or text_signature
                        self._emit(ChatEvent(type="content", text=event.text))
                    elif event.type == "thought":
                        thought += event.text
                        thought_signature = event.thought_signature or thought_signature
                        self._emit(ChatEvent(type="thought", text=event.text))
                    elif event.type == "tool_call" and event.function_call is not None:
                        calls.append((event.function_call, event.thought_signature))
                        self._emit(ChatEvent(
                            type="tool_call",
                            tool_name=event.function_call.name,
                            tool_args=json.dumps(event.function_call.args),
                        ))
                    elif event.type == "error":
                        raise TransportError(event.error or "stream failed")
                    elif event.type == "done":
                        usage = event.usage

            model_parts: list[Part] = []
            if thought:
                model_parts.append(Part(text=thought, thought=True, thought_signature=thought_signature))
            if text:
                model_parts.append(Part(text=text, thought_signature=text_signature))
            for call, signature in calls:
                model_parts.append(Part(function_call=call, thought_signature=signature))

            with self._lock:
                if model_parts:
                    self._history.append(Content(role="model", parts=model_parts))
                if text:
                    self._messages.append(DisplayMessage(role="model", content=text))
                if usage:
                    self._last_usage = usage

            if not calls:
                self._set_state(EngineState.IDLE)
                log.info("Turn finished", usage=usage)
                self._emit(ChatEvent(type="done", usage=usage))
                self._emit(ChatEvent(type="messages", messages=self.get_messages()))
                return

            self._set_state(EngineState.TOOL_EXECUTION)
            responses = await self._execute_tool_calls([call for call, _ in calls])
            with self._lock:
                self._history.append(Content(role="user", parts=responses))
                messages = list(self._messages)
            self._emit(ChatEvent(type="messages", messages=messages))

    async def _execute_tool_calls(self, calls: list[FunctionCall]) -> list[Part]:
        """Run every call in order and return one function response per call."""
        responses: list[Part] = []
        for call in calls:
            args_json = json.dumps(call.args)
            with self._lock:
                self._messages.append(DisplayMessage(
                    role="tool_call",
                    content=call.name,
                    tool_name=call.name,
                    tool_args=args_json,
                ))

            if self._cancel_requested:
                result = f"Error: {GENERATION_CANCELLED}"
            else:
                try:
                    result = await self._run_tool(call)
                except asyncio.CancelledError:
                    # Keep the call/response pairing; the loop re-raises afterwards.
                    self._cancel_requested = True
                    result = f"Error: {GENERATION_CANCELLED}"

            self._emit(ChatEvent(type="tool_result", tool_name=call.name, text=result))
            with self._lock:
                self._messages.append(DisplayMessage(role="tool_result", content=result, tool_name=call.name))
            responses.append(Part(function_response=FunctionResponse(name=call.name, response={"result": result})))
        return responses

    async def _run_tool(self, call: FunctionCall) -> str:
        try:
            if self.get_plan_mode() and not is_plan_mode_tool(call.name):
                raise PlanModeViolation(call.name)
            if call.name == BuiltinTool.ASK_USER.value:
                return await self._ask_user(call.args)
            return await self.router.execute(call.name, call.args, work_dir=self.get_work_dir() or None)
        except GmnAgentError as e:
            log.warning("Tool call failed", tool=call.name, error=str(e))
            return f"Error: {e}"
        except Exception as e:
            log.error("Tool call crashed", tool=call.name, error=str(e), exc_info=True)
            return f"Error: {e}"

    async def _ask_user(self, args: dict[str, Any]) -> str:
        questions = parse_ask_user_questions(args)
        loop = asyncio.get_running_loop()
        future: asyncio.Future[str] = loop.create_future()
        with self._lock:
            self._pending_answer = future
            self._loop = loop

        self._emit(ChatEvent(type="ask_user", questions=questions))
        try:
            return await future
        except asyncio.CancelledError:
            self._cancel_requested = True
            return ASK_USER_CANCELLED
        finally:
            with self._lock:
                if self._pending_answer is future:
                    self._pending_answer = None


def _resolve_answer(future: asyncio.Future, answer: str) -> None:
    if not future.done():
        future.set_result(answer)
