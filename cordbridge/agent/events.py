"""Event types emitted by an agent invocation."""

from dataclasses import dataclass, field

NO_RESPONSE = "(No response)"


@dataclass
class QueryResult:
    """Final outcome of one invocation."""
    text: str = NO_RESPONSE
    session_id: str = ""
    cost_usd: float = 0.0
    duration_ms: int = 0
    num_turns: int = 0
    is_error: bool = False
    errors: list[str] = field(default_factory=list)
    context_used: int = 0
    context_window: int = 0
    interrupted: bool = False

    @property
    def error_text(self) -> str:
        return "\n".join(self.errors)


@dataclass(frozen=True)
class UsageSummary:
    """Cost and usage of the latest query in a channel."""
    cost_usd: float
    duration_ms: int
    num_turns: int
    context_used: int = 0
    context_window: int = 0

    @classmethod
    def from_result(cls, result: QueryResult) -> "UsageSummary":
        return cls(
            cost_usd=result.cost_usd,
            duration_ms=result.duration_ms,
            num_turns=result.num_turns,
            context_used=result.context_used,
            context_window=result.context_window,
        )


@dataclass(frozen=True)
class SessionStarted:
    session_id: str


@dataclass(frozen=True)
class TextDelta:
    """Incremental assistant text; ``text`` is everything streamed so far."""
    delta: str
    text: str


@dataclass(frozen=True)
class ToolActivity:
    text: str


@dataclass(frozen=True)
class Completed:
    result: QueryResult


AgentEvent = SessionStarted | TextDelta | ToolActivity | Completed
