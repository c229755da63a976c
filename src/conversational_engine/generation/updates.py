"""
The 'MessageUpdate' event vocabulary.

Every event a turn produces is one of the pydantic models below. They form a
closed tagged union discriminated on 'type' (and on 'subtype' for reasoning and
tool events), so a wire record can be parsed back with 'parse_update' and every
consumer can match exhaustively with 'typing.assert_never' as the fallback.

The field names are the wire names; 'model_dump(exclude_none=True)' yields the
exact JSON record sent to clients.
"""

from enum import StrEnum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter


class MessageUpdateType(StrEnum):
    STATUS = "status"
    TITLE = "title"
    TOOL = "tool"
    STREAM = "stream"
    FILE = "file"
    FINAL_ANSWER = "finalAnswer"
    REASONING = "reasoning"


class MessageUpdateStatus(StrEnum):
    STARTED = "started"
    ERROR = "error"
    FINISHED = "finished"
    KEEP_ALIVE = "keepAlive"


class StatusUpdate(BaseModel):
    type: Literal["status"] = "status"
    status: MessageUpdateStatus
    message: str | None = None


class TitleUpdate(BaseModel):
    type: Literal["title"] = "title"
    title: str


class StreamUpdate(BaseModel):
    type: Literal["stream"] = "stream"
    token: str


class ReasoningStreamUpdate(BaseModel):
    type: Literal["reasoning"] = "reasoning"
    subtype: Literal["stream"] = "stream"
    token: str


class ReasoningStatusUpdate(BaseModel):
    type: Literal["reasoning"] = "reasoning"
    subtype: Literal["status"] = "status"
    status: str


ReasoningUpdate = Annotated[
    Union[ReasoningStreamUpdate, ReasoningStatusUpdate],
    Field(discriminator="subtype"),
]


class ToolCallData(BaseModel):
    """A tool call as shown to clients. Only flat primitive parameters are kept."""

    name: str
    parameters: dict[str, str | int | float | bool] = Field(default_factory=dict)


class ToolOutput(BaseModel):
    content: str


class ToolResult(BaseModel):
    status: Literal["success", "error"] = "success"
    outputs: list[ToolOutput] = Field(default_factory=list)


class ToolCallUpdate(BaseModel):
    type: Literal["tool"] = "tool"
    subtype: Literal["call"] = "call"
    uuid: str
    call: ToolCallData


class ToolEtaUpdate(BaseModel):
    type: Literal["tool"] = "tool"
    subtype: Literal["eta"] = "eta"
    uuid: str
    eta: int


class ToolResultUpdate(BaseModel):
    type: Literal["tool"] = "tool"
    subtype: Literal["result"] = "result"
    uuid: str
    result: ToolResult


class ToolErrorUpdate(BaseModel):
    type: Literal["tool"] = "tool"
    subtype: Literal["error"] = "error"
    uuid: str
    message: str


ToolUpdate = Annotated[
    Union[ToolCallUpdate, ToolEtaUpdate, ToolResultUpdate, ToolErrorUpdate],
    Field(discriminator="subtype"),
]


class FileUpdate(BaseModel):
    type: Literal["file"] = "file"
    name: str
    hash: str
    mime: str


class FinalAnswerUpdate(BaseModel):
    type: Literal["finalAnswer"] = "finalAnswer"
    text: str
    interrupted: bool = False


MessageUpdate = Annotated[
    Union[
        StatusUpdate,
        TitleUpdate,
        StreamUpdate,
        ReasoningUpdate,
        ToolUpdate,
        FileUpdate,
        FinalAnswerUpdate,
    ],
    Field(discriminator="type"),
]

_MESSAGE_UPDATE_ADAPTER: TypeAdapter[MessageUpdate] = TypeAdapter(MessageUpdate)


def parse_update(raw: str | bytes | dict) -> MessageUpdate:
    """Parse one wire record (JSON text or decoded dict) back into its event model."""
    if isinstance(raw, dict):
        return _MESSAGE_UPDATE_ADAPTER.validate_python(raw)
    return _MESSAGE_UPDATE_ADAPTER.validate_json(raw)


def is_keep_alive(update: MessageUpdate) -> bool:
    return isinstance(update, StatusUpdate) and update.status == MessageUpdateStatus.KEEP_ALIVE


def is_terminal(update: MessageUpdate) -> bool:
    """FinalAnswer, or a finished / error status, ends a turn."""
    if isinstance(update, FinalAnswerUpdate):
        return True
    return isinstance(update, StatusUpdate) and update.status in (
        MessageUpdateStatus.FINISHED,
        MessageUpdateStatus.ERROR,
    )
