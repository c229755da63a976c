"""
Branching message tree of a conversation.

'MessageTree' wraps a 'Conversation' and is the only place where the
'ancestors' / 'children' links of its messages are written. The tree has
exactly one root: a system message with no ancestors, holding the preprompt.
Every other message's ancestors are its parent's ancestors plus the parent id.

Branching follows the chat flows built on top of it:

    new message      -> append_child(parent, user) then append_child(user, assistant)
    retry (assistant) -> append_sibling(assistant, assistant)
    edit (user)      -> append_sibling(user, user) then append_child(new user, assistant)
    continue         -> ensure_can_continue(assistant); the leaf is written in place

Deleting a message removes the whole subtree below it, so no message can
become unreachable from the root.
"""

from loguru import logger

from conversational_engine.conversation_database.data_models.conversation import Conversation
from conversational_engine.conversation_database.data_models.message import Message, MessageDraft
from conversational_engine.exceptions import InvalidOperationError, ReferenceNotFoundError
from conversational_engine.llms.base import Roles
from conversational_engine.utils.database import generate_uid
from conversational_engine.utils.time import get_current_timestamp


class MessageTree:
    def __init__(self, conversation: Conversation) -> None:
        self.conversation = conversation
        self._index = {message.id: message for message in conversation.messages}

    @property
    def root(self) -> Message:
        if self.conversation.root_message_id is None:
            raise ReferenceNotFoundError(f"Conversation {self.conversation.id} has no root message")
        return self.get(self.conversation.root_message_id)

    def get(self, message_id: str) -> Message:
        message = self._index.get(message_id)
        if message is None:
            raise ReferenceNotFoundError(f"Message with id {message_id} not found")
        return message

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._index

    def create_root(self, preprompt: str | None = None) -> str:
        """Create the system root. Only valid on an empty conversation."""
        if self.conversation.messages:
            raise InvalidOperationError(f"Conversation {self.conversation.id} already has a root message")
        root = self._new_message(MessageDraft(role=Roles.SYSTEM, content=preprompt or ""), ancestors=[])
        self.conversation.root_message_id = root.id
        return root.id

    def append_child(self, parent_id: str | None, draft: MessageDraft) -> str:
        """Attach a new message below 'parent_id' and return its id.

        When 'parent_id' is None the message is attached to the end of the main
        line (following the most recent child from the root).
        """
        parent = self.get(parent_id) if parent_id is not None else self.last_leaf()
        child = self._new_message(draft, ancestors=[*parent.ancestors, parent.id])
        parent.children.append(child.id)
        return child.id

    def append_sibling(self, anchor_id: str, draft: MessageDraft) -> str:
        """Create a new branch next to 'anchor_id', sharing its parent. The anchor is kept."""
        anchor = self.get(anchor_id)
        if not anchor.ancestors:
            raise InvalidOperationError("The root message cannot have siblings")
        return self.append_child(anchor.ancestors[-1], draft)

    def subtree(self, leaf_id: str) -> list[Message]:
        """Messages from the root down to 'leaf_id', in order."""
        leaf = self.get(leaf_id)
        return [self.get(ancestor_id) for ancestor_id in leaf.ancestors] + [leaf]

    def last_leaf(self) -> Message:
        message = self.root
        while message.children:
            message = self.get(message.children[-1])
        return message

    def ensure_can_continue(self, message_id: str) -> Message:
        """Return the message if generation may continue it (it must be a leaf)."""
        message = self.get(message_id)
        if message.children:
            raise InvalidOperationError("Can only continue the last message")
        return message

    def delete_message(self, message_id: str) -> list[str]:
        """Delete 'message_id' and all of its descendants. Returns the removed ids."""
        message = self.get(message_id)
        if not message.ancestors:
            raise InvalidOperationError("The root message cannot be deleted")

        removed = [
            candidate.id
            for candidate in self.conversation.messages
            if candidate.id == message_id or message_id in candidate.ancestors
        ]
        removed_set = set(removed)
        parent = self._index.get(message.ancestors[-1])
        if parent is not None:
            parent.children = [child for child in parent.children if child != message_id]

        self.conversation.messages = [m for m in self.conversation.messages if m.id not in removed_set]
        for removed_id in removed:
            del self._index[removed_id]
        logger.debug(f"Deleted {len(removed)} message(s) from conversation {self.conversation.id}")
        return removed

    def _new_message(self, draft: MessageDraft, ancestors: list[str]) -> Message:
        now = get_current_timestamp()
        message = Message(
            id=generate_uid(),
            role=draft.role,
            content=draft.content,
            files=list(draft.files),
            ancestors=ancestors,
            create_timestamp=now,
            update_timestamp=now,
        )
        self.conversation.messages.append(message)
        self._index[message.id] = message
        return message
