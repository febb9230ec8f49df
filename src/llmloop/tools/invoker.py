"""Runs the tool calls a model asked for and turns them into messages.

A failing tool never aborts the loop: unknown names, bad arguments and
exceptions all become ``Tool`` messages the model can read and react to.
A sink that raises while receiving tool events is logged and ignored.
"""

import traceback
import uuid

from llmloop.core.events import (
    EventSink,
    StreamEvent,
    create_showing_tool_event,
    create_tool_call_event,
    create_tool_message_event,
)
from llmloop.core.exceptions import (
    E_TOOL_UNKNOWN,
    E_VALIDATION,
    ToolExecutionError,
    format_error_for_user,
)
from llmloop.core.logger import LlmLoopLogger
from llmloop.core.messages import ChatMessage, ChatMessages, Content, ShowingDataRole, ToolRole
from llmloop.tools.base import AiToolInfo

PendingCalls = dict[str, tuple[str, str]]


class ToolInvoker:
    def __init__(self, logger: LlmLoopLogger | None = None) -> None:
        self.logger = logger or LlmLoopLogger()

    async def run(
        self,
        pending: PendingCalls,
        tools: list[AiToolInfo],
        on_receive: EventSink,
        model_id: str,
    ) -> ChatMessages:
        """Invoke each pending call in order.

        Args:
            pending: call id -> (tool name, raw arguments)
            tools: Tools offered to the model this round
            on_receive: Caller's event sink
            model_id: Model name stamped on emitted events

        Returns:
            One ``Tool`` message per call, each followed by its ``ShowingData`` messages
        """
        by_name = {t.name: t for t in tools}
        out: list[ChatMessage] = []
        for call_id, (name, raw_args) in pending.items():
            call_id = call_id or uuid.uuid4().hex
            out.extend(await self._run_one(call_id, name, raw_args, by_name, on_receive, model_id))
        return ChatMessages(out)

    async def _notify(self, on_receive: EventSink, event: StreamEvent) -> None:
        # a broken sink must not stop the tools from running
        try:
            await on_receive(event)
        except Exception as e:
            self.logger.warn("Failed to deliver tool event", event_type=event.type, error=str(e))

    async def _run_one(
        self,
        call_id: str,
        name: str,
        raw_args: str,
        by_name: dict[str, AiToolInfo],
        on_receive: EventSink,
        model_id: str,
    ) -> list[ChatMessage]:
        role = ToolRole(id=call_id, name=name)
        tool = by_name.get(name)
        if tool is None:
            self.logger.warn(
                "Unknown tool requested", tool_name=name, call_id=call_id, error_code=E_TOOL_UNKNOWN
            )
            return [
                ChatMessage(
                    role,
                    f"error: tool '{name}' does not exist. Check that the tool name is spelled "
                    "correctly and is one of the available tools.",
                )
            ]

        await self._notify(
            on_receive, create_tool_call_event(call_id, name, tool.display_name, raw_args, model_id)
        )

        try:
            parsed = tool.parse(raw_args)
        except ValueError as e:
            self.logger.warn(
                "Tool arguments rejected", tool_name=name, error=str(e), error_code=E_VALIDATION
            )
            return [
                ChatMessage(
                    role,
                    f"error: the arguments passed to tool '{name}' are malformed. Fix them and "
                    f"call the tool again.\nDetails:\n{e}",
                )
            ]

        progress = Content()

        async def emit(msg: Content) -> None:
            nonlocal progress
            progress = progress + msg
            await self._notify(on_receive, create_tool_message_event(call_id, msg.to_text(), model_id))

        self.logger.debug("Executing tool", tool_name=name, call_id=call_id)
        timer = f"tool_{uuid.uuid4().hex}"
        self.logger.start_timer(timer)
        try:
            result = await tool.invoke(parsed, emit)
        except ToolExecutionError as e:
            self.logger.warn("Tool reported failure", tool_name=name, call_id=call_id, error=str(e))
            return [ChatMessage(role, f"error: {format_error_for_user(e)}", progress)]
        except Exception as e:
            self.logger.error("Tool execution failed", tool_name=name, call_id=call_id, error=str(e))
            return [ChatMessage(role, f"error: \n{traceback.format_exc()}", progress)]
        finally:
            self.logger.end_timer(timer, tool_name=name, call_id=call_id)

        self.logger.info(
            "Tool executed", tool_name=name, call_id=call_id, showing=len(result.showing_content)
        )
        messages = [ChatMessage(role, result.content, progress)]
        for text, kind in result.showing_content:
            messages.append(ChatMessage(ShowingDataRole(kind), text, progress))
            await self._notify(on_receive, create_showing_tool_event(text, kind, model_id))
        return messages
