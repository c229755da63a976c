"""
Error taxonomy for the conversational engine.

'ReferenceNotFoundError' and 'InvalidOperationError' are raised by the message
tree and the controller before a turn starts, so the caller (typically the HTTP
layer) can map them to 404 / 400 responses. The remaining errors are raised deep
inside a turn and are always caught by 'GenerationOrchestrator' or
'ToolCallRouter', which convert them into a visible 'Status{error}' event or a
synthetic final answer. None of them escape a running turn.
"""


class ConversationalEngineError(Exception):
    """Base class for every error raised by this package."""


class ReferenceNotFoundError(ConversationalEngineError):
    """A conversation or message id does not exist."""


class InvalidOperationError(ConversationalEngineError):
    """The requested tree operation is not allowed in the current state."""


class ProviderError(ConversationalEngineError):
    """The model provider failed while generating or streaming."""


class ToolInvocationError(ConversationalEngineError):
    """An external tool server failed to execute a tool."""


class ToolMappingError(ConversationalEngineError):
    """A model-issued function name (or inline command) maps to no known tool."""


class ArgumentParseError(ConversationalEngineError):
    """Tool arguments are not a valid JSON object."""


class NoOutputError(ConversationalEngineError):
    """A turn finished without producing any content."""

    default_message = "No output was generated. Something went wrong."

    def __init__(self, message: str = default_message) -> None:
        super().__init__(message)
