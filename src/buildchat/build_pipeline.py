"""Gated write -> build -> run -> export pipeline for generated entity XML.

Each stage is tracked per assistant message and only offered once its
predecessor succeeded. A running dev server owns a cancellation token of its
own, so stopping it never touches the chat operation of the conversation.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from enum import Enum
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .cancellation import CancelToken, guarded
from .client import EventStream
from .events import BuildEvent, CompleteEvent, ErrorEvent, LogEvent
from .exceptions import (
    OperationCancelled,
    ProtocolMismatchError,
    StageUnavailableError,
    TaskFailedError,
)
from .models import BuildTask, EntityWriteResult, ExportResult
from .poller import TaskPoller
from .task_manager import TaskManager

if TYPE_CHECKING:
    from .client import ChatApiClient

LOGGER = logging.getLogger(__name__)


class BuildStage(str, Enum):
    WRITE = "write"
    BUILD = "build"
    RUN = "run"
    EXPORT = "export"


@dataclass
class BuildOutcome:
    """Result of one streamed build command, with its log lines in order."""

    success: bool
    message: str = ""
    lines: list[str] = field(default_factory=list)


async def collect_build_output(
    stream: AsyncIterator[BuildEvent],
    *,
    on_log: Callable[[str], None] | None = None,
    lines: list[str] | None = None,
) -> BuildOutcome:
    """Consume a build event stream up to its ``complete`` event.

    Log lines are appended to ``lines`` and passed to ``on_log`` as they
    arrive. A fatal ``error`` event raises :class:`TaskFailedError`, and a
    stream that ends without ``complete`` raises :class:`ProtocolMismatchError`.
    """
    collected = lines if lines is not None else []
    async for event in stream:
        if isinstance(event, LogEvent):
            collected.append(event.line)
            if on_log is not None:
                on_log(event.line)
        elif isinstance(event, CompleteEvent):
            return BuildOutcome(
                success=event.success, message=event.message, lines=list(collected)
            )
        elif isinstance(event, ErrorEvent):
            if not event.recoverable:
                raise TaskFailedError(event.message)
            LOGGER.warning(
                "build.stream.event_skipped",
                extra={"event": "build.stream.event_skipped", "reason": event.message},
            )
    raise ProtocolMismatchError("complete event", "end of stream")


class BuildPipeline:
    """Track and drive the build stages of every message in a conversation."""

    def __init__(
        self,
        client: ChatApiClient,
        *,
        task_manager: TaskManager | None = None,
        poll_interval: float = 1.0,
        poll_max_attempts: int = 60,
    ) -> None:
        self.client = client
        self.task_manager = task_manager or TaskManager()
        self.poller = TaskPoller(client, poll_interval, poll_max_attempts)
        self.written: set[str] = set()
        self.built: set[str] = set()
        self.running: set[str] = set()
        self._dev_tokens: dict[str, CancelToken] = {}
        self._dev_logs: dict[str, list[str]] = {}

    def available_stages(self, message_id: str) -> list[BuildStage]:
        stages = [BuildStage.WRITE]
        if message_id in self.written:
            stages.append(BuildStage.BUILD)
        if message_id in self.built and message_id not in self.running:
            stages.append(BuildStage.RUN)
        if message_id in self.running:
            stages.append(BuildStage.EXPORT)
        return stages

    def dev_server_log(self, message_id: str) -> list[str]:
        return list(self._dev_logs.get(message_id, []))

    def _require(self, message_id: str, stage: BuildStage) -> None:
        if stage not in self.available_stages(message_id):
            raise StageUnavailableError(
                f"Stage {stage.value!r} is not available for message {message_id}."
            )

    @staticmethod
    def _dev_task_name(message_id: str) -> str:
        return f"dev_server:{message_id}"

    def _log_stage(self, stage: BuildStage, message_id: str, outcome: str) -> None:
        LOGGER.info(
            f"build.stage.{outcome}",
            extra={
                "event": f"build.stage.{outcome}",
                "stage": stage.value,
                "message_id": message_id,
            },
        )

    async def write(
        self, message_id: str, xml_content: str, *, token: CancelToken | None = None
    ) -> EntityWriteResult:
        """Write the entity definitions carried by a message."""
        self._require(message_id, BuildStage.WRITE)
        result = await self.client.write_orm_entity(xml_content, token=token)
        if not result.success:
            self._log_stage(BuildStage.WRITE, message_id, "failed")
            raise TaskFailedError(result.message or "Entity write failed.")
        self.written.add(message_id)
        # A rewrite invalidates earlier builds of this message.
        self.built.discard(message_id)
        self._log_stage(BuildStage.WRITE, message_id, "succeeded")
        return result

    async def submit_xml(
        self,
        message_id: str,
        xml_content: str,
        *,
        on_progress: Callable[[BuildTask], None] | None = None,
        token: CancelToken | None = None,
    ) -> BuildTask:
        """Upload XML as a backend build task and poll it to completion."""
        self._require(message_id, BuildStage.WRITE)
        task_id = await self.client.submit_build_task(xml_content, token=token)
        task = await self.poller.poll_build_task(
            task_id, on_progress=on_progress, token=token
        )
        self.written.add(message_id)
        self.built.add(message_id)
        self._log_stage(BuildStage.BUILD, message_id, "succeeded")
        return task

    async def build(
        self,
        message_id: str,
        command: str,
        *,
        cwd: str | None = None,
        on_log: Callable[[str], None] | None = None,
        token: CancelToken | None = None,
    ) -> BuildOutcome:
        """Run a build command and stream its output."""
        self._require(message_id, BuildStage.BUILD)
        outcome = await self._run_stream(command, cwd=cwd, on_log=on_log, token=token)
        if outcome.success:
            self.built.add(message_id)
            self._log_stage(BuildStage.BUILD, message_id, "succeeded")
        else:
            self._log_stage(BuildStage.BUILD, message_id, "failed")
        return outcome

    async def run(
        self,
        message_id: str,
        command: str,
        *,
        cwd: str | None = None,
        on_log: Callable[[str], None] | None = None,
    ) -> asyncio.Task[BuildOutcome]:
        """Start the dev server in the background; stop it with :meth:`stop`."""
        self._require(message_id, BuildStage.RUN)
        name = self._dev_task_name(message_id)
        if self.task_manager.is_running(name):
            raise StageUnavailableError(
                f"Dev server for message {message_id} is still shutting down."
            )
        token = CancelToken()
        task = self.task_manager.spawn(
            self._serve(message_id, command, cwd, on_log, token), name=name
        )
        self._dev_tokens[message_id] = token
        self._dev_logs[message_id] = []
        self.running.add(message_id)
        self._log_stage(BuildStage.RUN, message_id, "started")
        return task

    async def _serve(
        self,
        message_id: str,
        command: str,
        cwd: str | None,
        on_log: Callable[[str], None] | None,
        token: CancelToken,
    ) -> BuildOutcome:
        lines = self._dev_logs[message_id]
        try:
            return await self._run_stream(
                command, cwd=cwd, on_log=on_log, token=token, lines=lines
            )
        except OperationCancelled:
            return BuildOutcome(success=False, message="Dev server stopped.", lines=list(lines))
        finally:
            self.running.discard(message_id)
            if self._dev_tokens.get(message_id) is token:
                del self._dev_tokens[message_id]
            self._log_stage(BuildStage.RUN, message_id, "exited")

    async def stop(self, message_id: str) -> bool:
        """Stop the dev server of ``message_id``; returns whether one was running."""
        token = self._dev_tokens.get(message_id)
        if token is None:
            return False
        token.cancel("dev server stopped")
        task = self.task_manager.get(self._dev_task_name(message_id))
        try:
            await self.client.stop_build()
        finally:
            self.running.discard(message_id)
            if task is not None:
                await asyncio.gather(task, return_exceptions=True)
        return True

    async def export(
        self,
        message_id: str,
        payload: dict[str, Any],
        *,
        destination: str | Path | None = None,
        token: CancelToken | None = None,
    ) -> ExportResult:
        """Export the running project's data; binary results can be saved to disk."""
        self._require(message_id, BuildStage.EXPORT)
        result = await self.client.export_excel(payload, token=token)
        if destination is not None and result.content is not None:
            target = Path(destination).expanduser()
            if target.is_dir():
                target = target / result.filename
            target.write_bytes(result.content)
            LOGGER.info(
                "build.export.saved",
                extra={"event": "build.export.saved", "path": str(target)},
            )
        self._log_stage(BuildStage.EXPORT, message_id, "succeeded")
        return result

    async def shutdown(self) -> None:
        """Stop every dev server started by this pipeline."""
        for token in list(self._dev_tokens.values()):
            token.cancel("pipeline shutdown")
        await self.task_manager.cancel_all()

    async def _run_stream(
        self,
        command: str,
        *,
        cwd: str | None = None,
        on_log: Callable[[str], None] | None = None,
        token: CancelToken | None = None,
        lines: list[str] | None = None,
    ) -> BuildOutcome:
        stream: EventStream = await self.client.stream_build(command, cwd=cwd, token=token)
        try:
            return await guarded(
                token, collect_build_output(stream, on_log=on_log, lines=lines)
            )
        finally:
            await stream.aclose()
