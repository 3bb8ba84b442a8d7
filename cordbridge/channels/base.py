"""Chat transport interface used by the orchestrator and approval mediator."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


@dataclass
class SentMessage:
    """Handle to a message the bridge posted and may edit later."""
    channel_id: str
    message_id: str
    native: Any = None  # Transport object (e.g. discord.Message)


class PromptKind(str, Enum):
    APPROVAL = "approval"  # approve / deny buttons
    QUESTION = "question"  # one button per option, or a select menu


@dataclass
class PromptChoice:
    label: str
    description: str = ""


@dataclass
class InteractivePrompt:
    """An embed with choices, rendered by the transport."""
    title: str
    description: str
    color: int
    kind: PromptKind = PromptKind.QUESTION
    choices: list[PromptChoice] = field(default_factory=list)
    multi_select: bool = False


@dataclass
class PromptOutcome:
    """Result of :meth:`ChatTransport.ask`.

    ``selected`` holds the chosen choice indexes, or ``None`` when the wait
    budget ran out.
    """
    selected: list[int] | None
    message: SentMessage | None = None

    @property
    def timed_out(self) -> bool:
        return self.selected is None


@dataclass
class InboundMessage:
    """A user message addressed to a linked channel."""
    channel_id: str
    author_id: str
    content: str
    attachments: list[str] = field(default_factory=list)  # Local paths, already downloaded
    message: SentMessage | None = None  # The inbound message itself, for reactions


@dataclass
class CommandIntent:
    """A parsed slash command."""
    channel_id: str
    name: str
    args: dict[str, str] = field(default_factory=dict)


class ChatTransport(ABC):
    """
    Abstract chat transport.

    Implementations raise on failure; callers decide whether a failure is
    fatal (the approval mediator fails closed) or best-effort (status edits).
    """

    name: str = "base"

    @abstractmethod
    async def send(self, channel_id: str, content: str) -> SentMessage:
        """Post a new message."""

    @abstractmethod
    async def edit(self, message: SentMessage, content: str) -> None:
        """Replace the content of a message the bridge posted."""

    @abstractmethod
    async def trigger_typing(self, channel_id: str) -> None:
        """Show the typing indicator once (it expires on its own)."""

    @abstractmethod
    async def add_reaction(self, message: SentMessage, emoji: str) -> None:
        pass

    @abstractmethod
    async def ask(self, channel_id: str, prompt: InteractivePrompt, timeout: float) -> PromptOutcome:
        """Post an interactive prompt and wait up to ``timeout`` seconds for a choice."""

    @abstractmethod
    async def update_prompt(self, message: SentMessage, prompt: InteractivePrompt) -> None:
        """Re-render a resolved prompt without its controls."""
