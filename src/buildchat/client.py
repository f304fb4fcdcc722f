"""Async HTTP client for the chat and build backend."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Callable, Sequence
from dataclasses import dataclass
import logging
import re
from typing import Any, Literal, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from .cancellation import CancelToken, guarded
from .events import StreamEvent
from .exceptions import (
    BuildChatError,
    DecodeError,
    OperationCancelled,
    ProtocolMismatchError,
    TransportError,
)
from .models import (
    Attachment,
    BuildExecuteResult,
    BuildTask,
    ConversationDetail,
    ConversationSummary,
    CreateConversationResponse,
    EntityWriteResult,
    ExportResult,
    FileUploadResponse,
    MessageTask,
    TaskSubmitResponse,
    XmlMergeResult,
)
from .sse import RawEvent, decode_stream, to_build_event, to_chat_event

LOGGER = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)
TransportMode = Literal["auto", "stream", "poll"]

JSON_TYPE = "application/json"
EVENT_STREAM_TYPE = "text/event-stream"
SPREADSHEET_TYPES = frozenset(
    {
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "application/vnd.ms-excel",
        "application/octet-stream",
    }
)
_FILENAME_PATTERN = re.compile(r'filename\*?=(?:UTF-8\'\')?"?([^";]+)"?', re.IGNORECASE)


def _content_type(response: httpx.Response) -> str:
    raw = response.headers.get("content-type", "")
    return raw.split(";", 1)[0].strip().lower()


def _map_exception(exc: Exception) -> BuildChatError:
    """Translate httpx failures into the domain taxonomy."""
    if isinstance(exc, BuildChatError):
        return exc
    if isinstance(exc, httpx.TimeoutException):
        return TransportError(None, f"Request timed out: {exc}")
    if isinstance(exc, (httpx.ConnectError, httpx.NetworkError)):
        return TransportError(None, f"Unable to reach backend: {exc}")
    if isinstance(exc, httpx.RemoteProtocolError):
        return TransportError(None, f"Connection closed unexpectedly: {exc}")
    return TransportError(None, str(exc) or exc.__class__.__name__)


class EventStream:
    """An open ``text/event-stream`` response exposed as typed events.

    Iterate it once. The underlying response is closed when iteration ends,
    fails, or is cancelled, and :meth:`aclose` may be called at any time.
    """

    def __init__(
        self,
        response: httpx.Response,
        convert: Callable[[RawEvent], StreamEvent],
    ) -> None:
        self._response = response
        self._convert = convert
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> AsyncGenerator[StreamEvent, None]:
        return self._iterate()

    async def _iterate(self) -> AsyncGenerator[StreamEvent, None]:
        try:
            async for event in decode_stream(self._response.aiter_bytes(), self._convert):
                yield event
        except httpx.HTTPError as exc:
            raise _map_exception(exc) from exc
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._response.aclose()

    async def __aenter__(self) -> EventStream:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


@dataclass(frozen=True)
class Polled:
    """The backend queued the message as a task to poll."""

    task_id: str


@dataclass(frozen=True)
class Streamed:
    """The backend answered with a live event stream."""

    events: EventStream


SendResult = Polled | Streamed


class ChatApiClient:
    """Typed calls against one backend base URL.

    Every call accepts an optional :class:`CancelToken`; firing it aborts the
    underlying connection and raises :class:`OperationCancelled`.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 120.0,
        transport_mode: TransportMode = "auto",
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.transport_mode: TransportMode = transport_mode
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(
            base_url=self.base_url, timeout=httpx.Timeout(timeout)
        )

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> ChatApiClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    # ------------------------------------------------------------------
    # Low-level helpers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        token: CancelToken | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        LOGGER.debug(
            "client.request",
            extra={"event": "client.request", "method": method, "path": path},
        )
        try:
            response = await guarded(
                token, self._http.request(method, self._url(path), **kwargs)
            )
        except OperationCancelled:
            LOGGER.info(
                "client.request.cancelled",
                extra={"event": "client.request.cancelled", "method": method, "path": path},
            )
            raise
        except httpx.HTTPError as exc:
            mapped = _map_exception(exc)
            LOGGER.warning(
                "client.request.failed",
                extra={
                    "event": "client.request.failed",
                    "method": method,
                    "path": path,
                    "error": str(mapped),
                },
            )
            raise mapped from exc
        self._raise_for_status(response, method, path)
        return response

    async def _open_stream(
        self,
        method: str,
        path: str,
        *,
        token: CancelToken | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request and return the response with its body still unread."""
        request = self._http.build_request(method, self._url(path), **kwargs)
        try:
            response = await guarded(token, self._http.send(request, stream=True))
        except httpx.HTTPError as exc:
            raise _map_exception(exc) from exc

        if response.is_success:
            return response
        try:
            await guarded(token, response.aread())
        except httpx.HTTPError as exc:
            raise _map_exception(exc) from exc
        finally:
            await response.aclose()
        self._raise_for_status(response, method, path)
        return response

    @staticmethod
    def _error_detail(response: httpx.Response) -> str | None:
        if _content_type(response) == JSON_TYPE:
            try:
                payload = response.json()
            except ValueError:
                payload = None
            if isinstance(payload, dict):
                for key in ("detail", "message", "error"):
                    value = payload.get(key)
                    if isinstance(value, str) and value.strip():
                        return value.strip()
                    if value:
                        return str(value)
        return response.reason_phrase or None

    def _raise_for_status(self, response: httpx.Response, method: str, path: str) -> None:
        if response.is_success:
            return
        error = TransportError(response.status_code, self._error_detail(response))
        LOGGER.warning(
            "client.request.failed",
            extra={
                "event": "client.request.failed",
                "method": method,
                "path": path,
                "status": response.status_code,
                "error": str(error),
            },
        )
        raise error

    @staticmethod
    def _expect(response: httpx.Response, expected: str) -> None:
        actual = _content_type(response)
        if actual != expected:
            raise ProtocolMismatchError(expected, actual or None)

    def _json(self, response: httpx.Response) -> Any:
        self._expect(response, JSON_TYPE)
        try:
            return response.json()
        except ValueError as exc:
            raise DecodeError(f"Malformed JSON from {response.url}: {exc}") from exc

    def _parse(self, response: httpx.Response, model: type[ModelT]) -> ModelT:
        payload = self._json(response)
        try:
            return model.model_validate(payload)
        except ValidationError as exc:
            raise DecodeError(
                f"Unexpected {model.__name__} payload from {response.url}: {exc}"
            ) from exc

    def _parse_list(self, response: httpx.Response, model: type[ModelT]) -> list[ModelT]:
        payload = self._json(response)
        if not isinstance(payload, list):
            raise DecodeError(f"Expected a list from {response.url}.")
        try:
            return [model.model_validate(item) for item in payload]
        except ValidationError as exc:
            raise DecodeError(
                f"Unexpected {model.__name__} payload from {response.url}: {exc}"
            ) from exc

    # ------------------------------------------------------------------
    # Conversations

    async def create_conversation(
        self, title: str | None = None, *, token: CancelToken | None = None
    ) -> CreateConversationResponse:
        response = await self._request(
            "POST", "/conversations/", json={"title": title}, token=token
        )
        return self._parse(response, CreateConversationResponse)

    async def list_conversations(
        self, *, token: CancelToken | None = None
    ) -> list[ConversationSummary]:
        response = await self._request("GET", "/conversations/", token=token)
        return self._parse_list(response, ConversationSummary)

    async def get_conversation(
        self, conversation_id: str, *, token: CancelToken | None = None
    ) -> ConversationDetail:
        response = await self._request(
            "GET", f"/conversations/{conversation_id}", token=token
        )
        return self._parse(response, ConversationDetail)

    async def delete_conversation(
        self, conversation_id: str, *, token: CancelToken | None = None
    ) -> None:
        await self._request("DELETE", f"/conversations/{conversation_id}", token=token)

    async def upload_file(
        self,
        conversation_id: str,
        attachment: Attachment,
        *,
        token: CancelToken | None = None,
    ) -> FileUploadResponse:
        if attachment.path is None:
            raise DecodeError(f"Attachment {attachment.name!r} has no local file to upload.")
        try:
            content = await guarded(token, asyncio.to_thread(attachment.path.read_bytes))
        except OSError as exc:
            raise TransportError(None, f"Unable to read {attachment.path}: {exc}") from exc
        response = await self._request(
            "POST",
            f"/conversations/{conversation_id}/upload",
            files={"files": (attachment.name, content, attachment.mime_type)},
            token=token,
        )
        return self._parse(response, FileUploadResponse)

    # ------------------------------------------------------------------
    # Messages

    async def send_message(
        self,
        conversation_id: str,
        message: str,
        file_ids: Sequence[str] | None = None,
        *,
        think: bool = False,
        token: CancelToken | None = None,
    ) -> SendResult:
        """Submit a user message; the response shape decides poll vs stream."""
        mode = self.transport_mode
        accept = {
            "stream": EVENT_STREAM_TYPE,
            "poll": JSON_TYPE,
        }.get(mode, f"{EVENT_STREAM_TYPE}, {JSON_TYPE}")
        body = {
            "message": message,
            "file_ids": list(file_ids) if file_ids else None,
            "enable_thinking": think,
        }
        response = await self._open_stream(
            "POST",
            f"/conversations/{conversation_id}/messages",
            json=body,
            headers={"Accept": accept},
            token=token,
        )

        actual = _content_type(response)
        if actual == EVENT_STREAM_TYPE and mode in {"auto", "stream"}:
            LOGGER.info(
                "client.message.streamed",
                extra={"event": "client.message.streamed", "conversation_id": conversation_id},
            )
            return Streamed(EventStream(response, to_chat_event))

        try:
            if actual != JSON_TYPE or mode == "stream":
                raise ProtocolMismatchError(
                    EVENT_STREAM_TYPE if mode == "stream" else accept, actual or None
                )
            await guarded(token, response.aread())
        except httpx.HTTPError as exc:
            raise _map_exception(exc) from exc
        finally:
            await response.aclose()

        submitted = self._parse(response, TaskSubmitResponse)
        LOGGER.info(
            "client.message.queued",
            extra={
                "event": "client.message.queued",
                "conversation_id": conversation_id,
                "task_id": submitted.task_id,
            },
        )
        return Polled(submitted.task_id)

    async def get_message_task(
        self, task_id: str, *, token: CancelToken | None = None
    ) -> MessageTask:
        response = await self._request("GET", f"/conversations/tasks/{task_id}", token=token)
        return self._parse(response, MessageTask)

    # ------------------------------------------------------------------
    # Build tasks and structured config

    async def submit_build_task(
        self, xml_content: str, *, token: CancelToken | None = None
    ) -> str:
        response = await self._request(
            "POST",
            "/upload",
            files={"file": ("orm.xml", xml_content.encode("utf-8"), "application/xml")},
            token=token,
        )
        return self._parse(response, TaskSubmitResponse).task_id

    async def get_build_task(
        self, task_id: str, *, token: CancelToken | None = None
    ) -> BuildTask:
        response = await self._request("GET", f"/tasks/{task_id}", token=token)
        return self._parse(response, BuildTask)

    async def write_orm_entity(
        self,
        xml_content: str,
        *,
        source: str = "chat",
        token: CancelToken | None = None,
    ) -> EntityWriteResult:
        response = await self._request(
            "POST",
            "/orm/entity",
            json={"xml_content": xml_content, "source": source},
            token=token,
        )
        return self._parse(response, EntityWriteResult)

    async def merge_xml(
        self,
        xml_content: str,
        *,
        target: str | None = None,
        token: CancelToken | None = None,
    ) -> XmlMergeResult:
        response = await self._request(
            "POST",
            "/xml/merge",
            json={"xml_content": xml_content, "target": target},
            token=token,
        )
        return self._parse(response, XmlMergeResult)

    async def list_xml_types(self, *, token: CancelToken | None = None) -> list[str]:
        response = await self._request("GET", "/xml/types", token=token)
        payload = self._json(response)
        if isinstance(payload, dict):
            payload = payload.get("types")
        if not isinstance(payload, list):
            raise DecodeError(f"Expected a list of XML types from {response.url}.")
        return [str(item) for item in payload]

    async def execute_build(
        self,
        command: str,
        *,
        cwd: str | None = None,
        token: CancelToken | None = None,
    ) -> BuildExecuteResult:
        response = await self._request(
            "POST", "/build/execute", json={"command": command, "cwd": cwd}, token=token
        )
        return self._parse(response, BuildExecuteResult)

    async def stream_build(
        self,
        command: str,
        *,
        cwd: str | None = None,
        token: CancelToken | None = None,
    ) -> EventStream:
        """Start a build command and return its ``log``/``complete`` event stream."""
        response = await self._open_stream(
            "POST",
            "/build/execute/stream",
            json={"command": command, "cwd": cwd},
            headers={"Accept": EVENT_STREAM_TYPE},
            token=token,
        )
        actual = _content_type(response)
        if actual != EVENT_STREAM_TYPE:
            await response.aclose()
            raise ProtocolMismatchError(EVENT_STREAM_TYPE, actual or None)
        return EventStream(response, to_build_event)

    async def stop_build(
        self, process_id: str | None = None, *, token: CancelToken | None = None
    ) -> dict[str, Any]:
        response = await self._request(
            "POST", "/build/stop", json={"process_id": process_id}, token=token
        )
        payload = self._json(response)
        return payload if isinstance(payload, dict) else {"result": payload}

    async def export_excel(
        self, payload: dict[str, Any], *, token: CancelToken | None = None
    ) -> ExportResult:
        """Export to a spreadsheet; JSON responses are returned as ``data``."""
        response = await self._request(
            "POST", "/build/export/excel", json=payload, token=token
        )
        actual = _content_type(response)
        if actual == JSON_TYPE:
            data = self._json(response)
            return ExportResult(
                filename="export.json",
                data=data if isinstance(data, dict) else {"result": data},
            )
        if actual in SPREADSHEET_TYPES:
            disposition = response.headers.get("content-disposition", "")
            match = _FILENAME_PATTERN.search(disposition)
            return ExportResult(
                filename=match.group(1) if match else "export.xlsx",
                content=response.content,
            )
        raise ProtocolMismatchError("spreadsheet or JSON", actual or None)
