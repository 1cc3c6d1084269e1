"""
b402 Payment API Core Data Models
A2A-compatible message and task types shared by the server and client
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class TaskState(str, Enum):
    """A2A task lifecycle states"""
    SUBMITTED = "submitted"
    WORKING = "working"
    INPUT_REQUIRED = "input-required"
    COMPLETED = "completed"
    CANCELED = "canceled"
    FAILED = "failed"
    REJECTED = "rejected"
    AUTH_REQUIRED = "auth-required"
    UNKNOWN = "unknown"


class A2AModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class Part(A2AModel):
    """Single content part of a message (text or structured data)"""
    kind: str = "text"
    text: Optional[str] = None
    data: Optional[Dict[str, Any]] = None


class Message(A2AModel):
    message_id: str = Field(default_factory=lambda: f"msg-{uuid.uuid4()}", alias="messageId")
    role: Literal["user", "agent"] = "user"
    parts: List[Part] = Field(default_factory=list)
    task_id: Optional[str] = Field(default=None, alias="taskId")
    context_id: Optional[str] = Field(default=None, alias="contextId")
    kind: Literal["message"] = "message"


class TaskStatus(A2AModel):
    state: TaskState
    message: Optional[Message] = None
    timestamp: str = Field(default_factory=_now_iso)


class Task(A2AModel):
    id: str = Field(default_factory=lambda: f"task-{uuid.uuid4()}")
    context_id: str = Field(default_factory=lambda: f"context-{uuid.uuid4()}", alias="contextId")
    status: TaskStatus
    metadata: Dict[str, Any] = Field(default_factory=dict)
    kind: Literal["task"] = "task"


class RequestContext(A2AModel):
    """What the example service needs to process one request"""
    task_id: str = Field(alias="taskId")
    context_id: str = Field(alias="contextId")
    current_task: Task = Field(alias="currentTask")
    message: Message


class ProcessRequest(A2AModel):
    """Body of POST /process"""
    message: Optional[Message] = None
    task_id: Optional[str] = Field(default=None, alias="taskId")
    context_id: Optional[str] = Field(default=None, alias="contextId")
    metadata: Optional[Dict[str, Any]] = None


def message_text(message: Optional[Message]) -> str:
    """Join the text parts of a message"""
    if message is None:
        return ""
    return " ".join(part.text for part in message.parts if part.kind == "text" and part.text)


def agent_text_message(text: str, task_id: Optional[str] = None, context_id: Optional[str] = None) -> Message:
    return Message(
        role="agent",
        parts=[Part(kind="text", text=text)],
        task_id=task_id,
        context_id=context_id,
    )
