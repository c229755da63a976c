"""
Message data model.

Messages form a tree within a conversation. Instead of a single 'parent_id'
each message stores its full ancestor chain ('ancestors', root first) plus the
ids of its 'children'. This makes building the model context for any message a
lookup instead of a walk, and lets several branches (retries, edits) hang off
the same parent. 'MessageTree' is the only code that mutates these links.

'updates' is the persisted event log of the message: every non-streaming event
the turn produced (status, title, tool, file and final-answer events).
"""

from typing import Literal

from pydantic import BaseModel, Field

from conversational_engine.generation.updates import MessageUpdate
from conversational_engine.llms.base import Roles


class MessageFile(BaseModel):
    """
    A file reference attached to a message.

    'hash' files point at a blob in the external file store by its sha256;
    'base64' files carry their content inline and are expected to be uploaded
    (and turned into 'hash' references) before a turn starts.
    """

    type: Literal["hash", "base64"] = "hash"
    name: str
    value: str
    mime: str


class Message(BaseModel):
    """A single message within a conversation tree."""

    id: str
    role: Roles
    content: str = ""
    reasoning: str | None = None
    ancestors: list[str] = Field(default_factory=list)
    children: list[str] = Field(default_factory=list)
    files: list[MessageFile] = Field(default_factory=list)
    interrupted: bool = False
    updates: list[MessageUpdate] = Field(default_factory=list)
    create_timestamp: int
    update_timestamp: int


class MessageDraft(BaseModel):
    """The caller-supplied part of a new message; identity and links are assigned by the tree."""

    role: Roles
    content: str = ""
    files: list[MessageFile] = Field(default_factory=list)
