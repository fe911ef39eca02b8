"""Transcript messages exchanged between a node and its model."""

from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field


class Role(StrEnum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ToolCallPart(BaseModel):
    """A tool call requested by the model."""

    type: Literal["tool-call"] = "tool-call"
    tool_call_id: str
    tool_name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultPart(BaseModel):
    """The result of a tool call, keyed back to the call by id."""

    type: Literal["tool-result"] = "tool-result"
    tool_call_id: str
    tool_name: str
    output: Any = None
    is_error: bool = False


Part = Annotated[TextPart | ToolCallPart | ToolResultPart, Field(discriminator="type")]


class Message(BaseModel):
    """One transcript entry. Content is plain text or a list of parts."""

    role: Role
    content: str | list[Part]

    def parts(self) -> list[TextPart | ToolCallPart | ToolResultPart]:
        if isinstance(self.content, str):
            return [TextPart(text=self.content)]
        return list(self.content)

    @classmethod
    def system(cls, text: str) -> "Message":
        return cls(role=Role.SYSTEM, content=text)

    @classmethod
    def user(cls, parts: list[str]) -> "Message":
        return cls(role=Role.USER, content=[TextPart(text=p) for p in parts])

    @classmethod
    def tool(cls, results: list[ToolResultPart]) -> "Message":
        return cls(role=Role.TOOL, content=list(results))


def tool_calls_of(messages: list[Message]) -> list[ToolCallPart]:
    """All tool-call parts across assistant messages, in order."""
    return [
        part
        for message in messages
        if message.role == Role.ASSISTANT
        for part in message.parts()
        if isinstance(part, ToolCallPart)
    ]


def tool_results_of(messages: list[Message]) -> list[ToolResultPart]:
    """All tool-result parts across tool messages, in order."""
    return [
        part
        for message in messages
        if message.role == Role.TOOL
        for part in message.parts()
        if isinstance(part, ToolResultPart)
    ]


def text_of(message: Message) -> list[str]:
    return [part.text for part in message.parts() if isinstance(part, TextPart)]
