"""Conversation operation coordinator.

The coordinator is the only writer of a conversation's visible messages. It
owns the single active :class:`OperationHandle`, applies stream events and
poll results to the in-flight assistant message in arrival order, and rolls
the turn back on failure or cancellation.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
import logging
import time
from typing import TYPE_CHECKING
from uuid import uuid4

from .cancellation import CancelToken
from .client import EventStream, Streamed
from .events import DataEvent, EndEvent, ErrorEvent, StartEvent, StreamEvent
from .exceptions import (
    BuildChatError,
    DecodeError,
    OperationCancelled,
    OperationInProgressError,
    ProtocolMismatchError,
    TaskFailedError,
)
from .message_store import MessageStore
from .models import (
    Attachment,
    Conversation,
    ConversationFile,
    Message,
    MessageTask,
    TaskStatus,
    new_client_id,
)
from .poller import TaskPoller
from .state import ConversationState, StateManager
from .task_manager import TaskManager

if TYPE_CHECKING:
    from .client import ChatApiClient

LOGGER = logging.getLogger(__name__)

DEFAULT_TITLE = "New conversation"

STATUS_CONNECTING = "Connecting..."
STATUS_UPLOADING = "Uploading {name}..."
STATUS_THINKING = "Thinking..."
POLL_STATUS_TEXT = {
    TaskStatus.PENDING: "Queued...",
    TaskStatus.PROCESSING: "Generating...",
}


@dataclass
class OperationHandle:
    """Identity of one outstanding send: its token and the message it writes to.

    ``message_id`` starts provisional and is remapped at most once to the id
    the backend assigns.
    """

    token: CancelToken = field(default_factory=CancelToken)
    message_id: str = field(default_factory=lambda: new_client_id("assistant-temp"))
    op_id: str = field(default_factory=lambda: uuid4().hex)
    superseded: bool = False

    @property
    def live(self) -> bool:
        return not self.superseded and not self.token.cancelled


class ConversationCoordinator:
    """Drive sends for one conversation and keep its message list consistent."""

    def __init__(
        self,
        client: ChatApiClient,
        *,
        conversation_id: str | None = None,
        poll_interval: float = 1.0,
        poll_max_attempts: int = 60,
        task_manager: TaskManager | None = None,
    ) -> None:
        self.client = client
        self.conversation_id = conversation_id
        self.title = ""
        self.created_at: float = 0
        self.error: str | None = None
        self.files: list[ConversationFile] = []
        self.store = MessageStore()
        self.state = StateManager()
        self.poller = TaskPoller(client, poll_interval, poll_max_attempts)
        self.task_manager = task_manager or TaskManager()
        self._active: OperationHandle | None = None
        self._on_change: list[Callable[[], None]] = []
        self._on_stream_error: list[Callable[[str], None]] = []

    # ------------------------------------------------------------------
    # Observation

    @property
    def messages(self) -> list[Message]:
        return self.store.snapshot()

    @property
    def active_handle(self) -> OperationHandle | None:
        return self._active

    @property
    def conversation(self) -> Conversation | None:
        if self.conversation_id is None:
            return None
        return Conversation(
            id=self.conversation_id,
            title=self.title,
            created_at=self.created_at,
            messages=self.messages,
            files=list(self.files),
        )

    def on_change(self, callback: Callable[[], None]) -> None:
        """Register a listener called after every applied mutation."""
        self._on_change.append(callback)

    def on_stream_error(self, callback: Callable[[str], None]) -> None:
        """Register a listener for recoverable (non-fatal) stream errors."""
        self._on_stream_error.append(callback)

    def _notify(self) -> None:
        for callback in self._on_change:
            callback()

    def dismiss_error(self) -> None:
        self.error = None
        self._notify()

    # ------------------------------------------------------------------
    # Conversation lifecycle

    async def create(self, title: str = DEFAULT_TITLE) -> str:
        created = await self.client.create_conversation(title)
        self.conversation_id = created.conversation_id
        self.title = created.title or title
        self.store.clear()
        self.files = []
        await self.state.transition_to(ConversationState.IDLE)
        LOGGER.info(
            "coordinator.conversation.created",
            extra={
                "event": "coordinator.conversation.created",
                "conversation_id": self.conversation_id,
            },
        )
        self._notify()
        return self.conversation_id

    async def load(self, conversation_id: str) -> None:
        detail = await self.client.get_conversation(conversation_id)
        self.conversation_id = detail.conversation_id
        self.title = detail.title
        self.created_at = detail.created_at
        self.store.replace_from_detail(detail)
        self.files = list(detail.files)
        await self.state.transition_to(ConversationState.IDLE)
        self._notify()

    async def reset(self, title: str = DEFAULT_TITLE) -> str:
        """Abandon the current conversation and start a new one."""
        await self.cancel()
        self._active = None
        if self.conversation_id is not None:
            await self.task_manager.cancel(self._send_task_name())
        self.store.clear()
        self.files = []
        self.error = None
        self.conversation_id = None
        return await self.create(title)

    # ------------------------------------------------------------------
    # Operations

    def _send_task_name(self) -> str:
        return f"send:{self.conversation_id}"

    def start_send(
        self,
        content: str,
        attachments: Sequence[Attachment] = (),
        *,
        think: bool = False,
    ) -> asyncio.Task[Message | None]:
        """Run :meth:`send` in the background and return its task."""
        return self.task_manager.spawn(
            self.send(content, attachments, think=think), name=self._send_task_name()
        )

    async def send(
        self,
        content: str,
        attachments: Sequence[Attachment] = (),
        *,
        think: bool = False,
    ) -> Message | None:
        """Send one user turn and return the finalized assistant message.

        Returns ``None`` when the turn was cancelled or there was nothing to
        send. Any other failure removes the in-progress assistant message,
        sets :attr:`error` and re-raises.
        """
        if self.conversation_id is None:
            raise BuildChatError("Conversation is not initialized.")
        text = content.strip()
        if not text and not attachments:
            return None
        for attachment in attachments:
            if attachment.remote_id is None and attachment.path is None:
                raise BuildChatError(
                    f"Attachment {attachment.name!r} has no local file to upload."
                )
        if not await self.state.can_send_message() or self._active is not None:
            raise OperationInProgressError(
                f"Conversation {self.conversation_id} already has an active operation."
            )

        handle = OperationHandle()
        self._active = handle
        conversation_id = self.conversation_id
        await self.state.transition_to(ConversationState.SENDING)

        self.error = None
        self.store.append(
            Message(
                id=new_client_id("user"),
                role="user",
                content=text,
                attachments=list(attachments),
            )
        )
        self.store.append(
            Message(
                id=handle.message_id,
                role="assistant",
                loading=True,
                status_text=STATUS_CONNECTING,
            )
        )
        self._notify()
        LOGGER.info(
            "coordinator.send.start",
            extra={
                "event": "coordinator.send.start",
                "conversation_id": conversation_id,
                "op_id": handle.op_id,
                "attachments": len(attachments),
            },
        )

        final_state = ConversationState.TERMINAL
        try:
            file_ids = await self._upload_attachments(handle, conversation_id, attachments)
            result = await self.client.send_message(
                conversation_id, text, file_ids, think=think, token=handle.token
            )
            if isinstance(result, Streamed):
                message = await self._consume_stream(handle, result.events)
            else:
                message = await self._consume_task(handle, result.task_id)
        except OperationCancelled:
            final_state = ConversationState.IDLE
            self._discard_turn(handle)
            LOGGER.info(
                "coordinator.send.cancelled",
                extra={"event": "coordinator.send.cancelled", "op_id": handle.op_id},
            )
            return None
        except asyncio.CancelledError:
            final_state = ConversationState.IDLE
            handle.token.cancel("task cancelled")
            self._discard_turn(handle)
            raise
        except BuildChatError as exc:
            self._discard_turn(handle)
            self._fail(handle, str(exc))
            raise
        except Exception as exc:
            self._discard_turn(handle)
            self._fail(handle, f"Unexpected error: {exc}")
            raise
        finally:
            if self._active is handle:
                self._active = None
                await self.state.transition_to(final_state)

        LOGGER.info(
            "coordinator.send.complete",
            extra={
                "event": "coordinator.send.complete",
                "op_id": handle.op_id,
                "message_id": message.id,
            },
        )
        return message

    async def cancel(self) -> bool:
        """Cancel the active operation and drop its assistant message at once."""
        handle = self._active
        if handle is None:
            return False
        await self.state.transition_to(ConversationState.CANCELLING)
        handle.superseded = True
        handle.token.cancel("cancelled by user")
        self._discard_turn(handle)
        return True

    # ------------------------------------------------------------------
    # Mutation plumbing

    def _is_live(self, handle: OperationHandle) -> bool:
        return handle is self._active and handle.live

    def _apply(self, handle: OperationHandle, mutate: Callable[[], object]) -> bool:
        """Run ``mutate`` only while ``handle`` is still the live operation."""
        if not self._is_live(handle):
            LOGGER.debug(
                "coordinator.stale_write.dropped",
                extra={"event": "coordinator.stale_write.dropped", "op_id": handle.op_id},
            )
            return False
        mutate()
        self._notify()
        return True

    def _discard_turn(self, handle: OperationHandle) -> None:
        if self.store.remove(handle.message_id):
            self._notify()

    def _fail(self, handle: OperationHandle, message: str) -> None:
        self.error = message
        LOGGER.warning(
            "coordinator.send.failed",
            extra={"event": "coordinator.send.failed", "op_id": handle.op_id, "error": message},
        )
        self._notify()

    def _report_stream_error(self, message: str) -> None:
        LOGGER.warning(
            "coordinator.stream.event_skipped",
            extra={"event": "coordinator.stream.event_skipped", "reason": message},
        )
        for callback in self._on_stream_error:
            callback(message)

    def _remap(self, handle: OperationHandle, message_id: str) -> None:
        if message_id != handle.message_id and self.store.remap_id(
            handle.message_id, message_id
        ):
            handle.message_id = message_id

    def _finalize(self, handle: OperationHandle) -> Message:
        self.store.update(handle.message_id, loading=False, status_text=None)
        message = self.store.get(handle.message_id)
        if message is None:
            raise DecodeError(f"Assistant message {handle.message_id} disappeared.")
        return message.copy()

    async def _upload_attachments(
        self,
        handle: OperationHandle,
        conversation_id: str,
        attachments: Sequence[Attachment],
    ) -> list[str]:
        """Upload pending attachments in order; all succeed or the send fails."""
        file_ids: list[str] = []
        pending: list[tuple[Attachment, ConversationFile]] = []
        for attachment in attachments:
            if attachment.remote_id is not None:
                file_ids.append(attachment.remote_id)
                continue
            self._apply(
                handle,
                lambda name=attachment.name: self.store.update(
                    handle.message_id, status_text=STATUS_UPLOADING.format(name=name)
                ),
            )
            result = await self.client.upload_file(
                conversation_id, attachment, token=handle.token
            )
            file_ids.append(result.file_id)
            pending.append(
                (
                    attachment,
                    ConversationFile(
                        id=result.file_id,
                        original_name=result.original_name or attachment.name,
                        file_size=result.file_size or attachment.size,
                        upload_time=time.time(),
                    ),
                )
            )

        for attachment, uploaded in pending:
            attachment.remote_id = uploaded.id
            self.files.append(uploaded)
        return file_ids

    async def apply_event(
        self, handle: OperationHandle, event: StreamEvent
    ) -> Message | None:
        """Apply one chat stream event; returns the final message on ``end``.

        Events for a handle that is no longer live are dropped without effect.
        """
        if not self._is_live(handle):
            LOGGER.debug(
                "coordinator.stale_write.dropped",
                extra={"event": "coordinator.stale_write.dropped", "op_id": handle.op_id},
            )
            return None

        await self.state.transition_if(ConversationState.SENDING, ConversationState.STREAMING)

        if isinstance(event, StartEvent):

            def start() -> None:
                self._remap(handle, event.message_id)
                self.store.update(handle.message_id, status_text=STATUS_THINKING)

            self._apply(handle, start)
            return None

        if isinstance(event, DataEvent):
            if event.thinking:
                self._apply(
                    handle, lambda: self.store.append_thinking(handle.message_id, event.content)
                )
            else:
                self._apply(
                    handle, lambda: self.store.append_content(handle.message_id, event.content)
                )
            return None

        if isinstance(event, EndEvent):
            self._remap(handle, event.message_id)
            message = self._finalize(handle)
            self._notify()
            return message

        if isinstance(event, ErrorEvent):
            if event.recoverable:
                self._report_stream_error(event.message)
                return None
            raise TaskFailedError(event.message)

        self._report_stream_error(f"Unexpected {type(event).__name__} in chat stream")
        return None

    async def _consume_stream(
        self, handle: OperationHandle, events: EventStream
    ) -> Message:
        async def consume() -> Message:
            async for event in events:
                message = await self.apply_event(handle, event)
                if not self._is_live(handle):
                    raise OperationCancelled(handle.token.reason or "superseded")
                if message is not None:
                    return message
            raise ProtocolMismatchError("end event", "end of stream")

        try:
            return await handle.token.guard(consume())
        finally:
            await events.aclose()

    async def _consume_task(self, handle: OperationHandle, task_id: str) -> Message:
        await self.state.transition_to(ConversationState.STREAMING)

        def progress(task: MessageTask) -> None:
            status_text = POLL_STATUS_TEXT.get(task.status)
            if status_text is not None:
                self._apply(
                    handle,
                    lambda: self.store.update(handle.message_id, status_text=status_text),
                )

        task = await self.poller.poll_message_task(
            task_id, on_progress=progress, token=handle.token
        )
        result = task.result_message
        if result is None:
            raise DecodeError(f"Task {task_id} succeeded without a result message.")
        if not self._is_live(handle):
            raise OperationCancelled(handle.token.reason or "superseded")

        def complete() -> None:
            self.store.update(
                handle.message_id,
                content=result.content,
                thinking=result.thinking or "",
            )
            self._remap(handle, result.id)

        self._apply(handle, complete)
        return self._finalize(handle)
