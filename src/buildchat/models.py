"""Wire payload models and client-side conversation state containers."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
import mimetypes
from pathlib import Path
import time
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["user", "assistant", "system"]


def now_ms() -> int:
    """Return the current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def new_client_id(prefix: str) -> str:
    return f"{prefix}-{uuid4().hex[:12]}"


class TaskStatus(str, Enum):
    """Backend task lifecycle; ``success`` and ``failed`` are terminal."""

    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {TaskStatus.SUCCESS, TaskStatus.FAILED}


class WireModel(BaseModel):
    """Base for backend payloads; unknown fields are ignored."""

    model_config = ConfigDict(extra="ignore")


class CreateConversationResponse(WireModel):
    conversation_id: str
    title: str = ""


class ConversationSummary(WireModel):
    id: str
    title: str = ""
    created_at: float = 0
    message_count: int = 0


class ConversationMessage(WireModel):
    role: Role
    content: str = ""
    timestamp: float = 0


class ConversationFile(WireModel):
    id: str
    original_name: str = ""
    file_size: int = 0
    upload_time: float = 0


class ConversationDetail(WireModel):
    conversation_id: str
    title: str = ""
    created_at: float = 0
    messages: list[ConversationMessage] = Field(default_factory=list)
    files: list[ConversationFile] = Field(default_factory=list)


class FileUploadResponse(WireModel):
    file_id: str
    original_name: str = ""
    file_size: int = 0


class TaskSubmitResponse(WireModel):
    task_id: str


class TaskResultMessage(WireModel):
    id: str
    role: Role = "assistant"
    content: str = ""
    thinking: str | None = None
    created_at: str | None = None


class MessageTask(WireModel):
    """Snapshot of a chat message task as reported by the backend."""

    task_id: str
    status: TaskStatus
    result_message: TaskResultMessage | None = None
    error_message: str | None = None
    created_at: str | None = None
    completed_at: str | None = None

    @property
    def error_text(self) -> str | None:
        return self.error_message


class BuildTask(WireModel):
    """Snapshot of a build task as reported by the backend."""

    task_id: str
    status: TaskStatus
    result: Any = None
    error: str | None = None

    @property
    def error_text(self) -> str | None:
        return self.error


class EntityWriteResult(WireModel):
    success: bool = True
    message: str = ""
    path: str | None = None
    entities: list[str] = Field(default_factory=list)


class XmlMergeResult(WireModel):
    success: bool = True
    message: str = ""
    merged_xml: str | None = None


class BuildExecuteResult(WireModel):
    success: bool
    message: str = ""
    output: str = ""
    return_code: int | None = None


@dataclass(frozen=True)
class ExportResult:
    """Spreadsheet export outcome; ``content`` is set for binary responses."""

    filename: str
    content: bytes | None = None
    data: dict[str, Any] | None = None

    @property
    def is_binary(self) -> bool:
        return self.content is not None


@dataclass
class Attachment:
    """A file the user selected; ``remote_id`` is set once it is uploaded."""

    id: str
    name: str
    size: int
    mime_type: str
    path: Path | None = None
    remote_id: str | None = None

    @classmethod
    def from_path(cls, path: str | Path) -> Attachment:
        resolved = Path(path).expanduser()
        mime_type, _ = mimetypes.guess_type(resolved.name)
        return cls(
            id=new_client_id("file"),
            name=resolved.name,
            size=resolved.stat().st_size,
            mime_type=mime_type or "application/octet-stream",
            path=resolved,
        )

    @property
    def uploaded(self) -> bool:
        return self.remote_id is not None


@dataclass
class Message:
    """One conversation turn as seen by the UI.

    ``loading`` and ``status_text`` only carry meaning while the content is
    still incomplete.
    """

    id: str
    role: Role
    content: str = ""
    thinking: str = ""
    attachments: list[Attachment] = field(default_factory=list)
    loading: bool = False
    status_text: str | None = None
    timestamp: int = field(default_factory=now_ms)

    def copy(self) -> Message:
        return replace(self, attachments=list(self.attachments))


@dataclass
class Conversation:
    id: str
    title: str = ""
    created_at: float = 0
    messages: list[Message] = field(default_factory=list)
    files: list[ConversationFile] = field(default_factory=list)
