"""Conversation thread types.

A thread is an ordered, append-only sequence of turns. Turns and threads are
immutable; appending returns a new thread that shares every existing turn.
"""

from enum import StrEnum
from typing import Annotated, Any, Literal, Self

from pydantic import BaseModel, ConfigDict, Field


class Role(StrEnum):
    """Conversation roles."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class TextBlock(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["text"] = "text"
    text: str


class ThinkingBlock(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["thinking"] = "thinking"
    thinking: str


class ToolCallBlock(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["tool_call"] = "tool_call"
    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["tool_result"] = "tool_result"
    id: str
    name: str
    output: Any = None
    is_error: bool = False


ContentBlock = Annotated[
    TextBlock | ThinkingBlock | ToolCallBlock | ToolResultBlock,
    Field(discriminator="type"),
]


class Turn(BaseModel):
    """A single conversation turn.

    Attributes:
        role: Who produced the turn
        content: Plain text, or an ordered tuple of typed content blocks
    """

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str | tuple[ContentBlock, ...]

    @property
    def text(self) -> str:
        """Concatenated text content, ignoring thinking and tool blocks."""
        if isinstance(self.content, str):
            return self.content
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    @property
    def tool_calls(self) -> list[ToolCallBlock]:
        if isinstance(self.content, str):
            return []
        return [b for b in self.content if isinstance(b, ToolCallBlock)]


class Thread(BaseModel):
    """Append-only conversation history.

    The system prompt is not stored here; it is supplied per call so that
    checkpoint payloads stay small and always reflect the live config.
    """

    model_config = ConfigDict(frozen=True)

    turns: tuple[Turn, ...] = ()

    def __len__(self) -> int:
        return len(self.turns)

    def append(self, turn: Turn) -> Self:
        return self.model_copy(update={"turns": self.turns + (turn,)})

    def append_user(self, text: str) -> Self:
        return self.append(Turn(role=Role.USER, content=text))

    def append_assistant(
        self,
        text: str,
        thinking: str | None = None,
        tool_calls: list[ToolCallBlock] | None = None,
    ) -> Self:
        """Append an assistant turn.

        A turn with neither thinking nor tool calls is stored as plain text;
        otherwise content is [thinking?, text, tool_call...].
        """
        if not thinking and not tool_calls:
            return self.append(Turn(role=Role.ASSISTANT, content=text))

        blocks: list[ContentBlock] = []
        if thinking:
            blocks.append(ThinkingBlock(thinking=thinking))
        blocks.append(TextBlock(text=text))
        blocks.extend(tool_calls or [])
        return self.append(Turn(role=Role.ASSISTANT, content=tuple(blocks)))

    def append_tool_result(self, call_id: str, name: str, output: Any, is_error: bool = False) -> Self:
        block = ToolResultBlock(id=call_id, name=name, output=output, is_error=is_error)
        return self.append(Turn(role=Role.TOOL, content=(block,)))

    def last(self) -> Turn | None:
        return self.turns[-1] if self.turns else None

    def latest_user_text(self) -> str:
        """Text of the most recent user turn, or an empty string."""
        for turn in reversed(self.turns):
            if turn.role == Role.USER:
                return turn.text
        return ""

    def to_messages(self, system_prompt: str | None = None) -> tuple[Turn, ...]:
        """Full message list for a model call, system prompt first when set."""
        if system_prompt:
            return (Turn(role=Role.SYSTEM, content=system_prompt),) + self.turns
        return self.turns
