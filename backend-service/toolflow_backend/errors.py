from __future__ import annotations


class ToolflowError(Exception):
    """Base class for errors raised inside the tool execution service."""


class FlowConflictError(ToolflowError):
    """The conversation flow changed between read and compare-and-swap."""

    def __init__(self, message_id: str, expected_version: int):
        super().__init__(f"conversation_flow of {message_id} moved past version {expected_version}")
        self.message_id = message_id
        self.expected_version = expected_version


class ToolExecutionError(ToolflowError):
    pass


class UnknownToolError(ToolExecutionError):
    def __init__(self, name: str):
        super().__init__(f"Unknown tool: {name}")
        self.name = name


class MessageNotFoundError(ToolflowError, LookupError):
    def __init__(self, message_id: str):
        super().__init__(f"Message not found: {message_id}")
        self.message_id = message_id


class GenerationHaltedError(ToolflowError):
    """A new batch was refused because the message's latest execution is paused or rejected."""

    def __init__(self, message_id: str, execution_id: str, state: str):
        super().__init__(f"Execution {execution_id} of message {message_id} is {state}")
        self.message_id = message_id
        self.execution_id = execution_id
        self.state = state
