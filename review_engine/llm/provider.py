from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Protocol

if TYPE_CHECKING:
    from ..pipeline.concurrency import AbortSignal

AgentReporter = Callable[[str, "AgentStatus", Exception | None], None]


class AgentStatus(str, Enum):
    """Status used when reporting the outcome of an agent call."""

    SUCCESS = "success"
    QUOTA = "quota"
    FAILURE = "failure"


class AgentError(Exception):
    """Generic failure raised by an agent backend."""


class AgentQuotaError(AgentError):
    """Raised when a backend reports quota or rate-limit exhaustion."""


class AgentConfigurationError(AgentError):
    """Raised when a backend cannot be configured or authenticated."""


class APICallError(AgentError):
    """Upstream API failure with whatever the response body carried."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        response_body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class AgentParseError(AgentError):
    """Raised when a response cannot be parsed as the requested schema.

    Carries the raw response text and the prompt to aid debugging.
    """

    def __init__(
        self,
        message: str,
        *,
        response_text: str | None = None,
        prompt: str | None = None,
    ) -> None:
        super().__init__(message)
        self.response_text = response_text
        self.prompt = prompt

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.response_text is not None:
            text = self.response_text
            if len(text) > 2000:
                text = text[:2000] + "... [truncated]"
            parts.append(f"\n--- LLM Response ---\n{text}")
        if self.prompt:
            prompt_text = self.prompt
            if len(prompt_text) > 2000:
                prompt_text = prompt_text[:2000] + "... [truncated]"
            parts.append(f"\n--- Input Prompt ---\n{prompt_text}")
        return "".join(parts)


class NoObjectGeneratedError(AgentParseError):
    """The response carried no structured object at all."""


@dataclass(frozen=True)
class TextPart:
    text: str


@dataclass(frozen=True)
class ImagePart:
    """Base64-encoded image content."""

    data: str
    mime_type: str = "image/png"


MessagePart = TextPart | ImagePart


@dataclass
class Message:
    """An ordered multi-part user message."""

    parts: list[MessagePart] = field(default_factory=list)
    role: str = "user"

    @classmethod
    def from_text(cls, text: str) -> "Message":
        return cls(parts=[TextPart(text)])

    def add_text(self, text: str) -> "Message":
        self.parts.append(TextPart(text))
        return self

    def add_image(self, data: str, mime_type: str = "image/png") -> "Message":
        self.parts.append(ImagePart(data, mime_type))
        return self

    def extended(self, *parts: MessagePart) -> "Message":
        """Return a copy with ``parts`` appended."""
        return Message(parts=[*self.parts, *parts], role=self.role)

    @property
    def text(self) -> str:
        return "\n".join(p.text for p in self.parts if isinstance(p, TextPart))

    @property
    def image_count(self) -> int:
        return sum(1 for p in self.parts if isinstance(p, ImagePart))


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "promptTokens": self.prompt_tokens,
            "completionTokens": self.completion_tokens,
        }


@dataclass
class AgentResult:
    """Result of one model call.

    ``object`` is the validated structured output, or ``None`` when no schema
    was requested. ``finish_reason`` uses the normalised vocabulary
    ``stop``, ``length``, ``content-filter``, ``error`` and ``other``.
    """

    object: Any
    finish_reason: str
    text: str = ""
    usage: Usage = field(default_factory=Usage)


class StreamEventType(str, Enum):
    TEXT_DELTA = "text-delta"
    TOOL_CALL = "tool-call"
    TOOL_RESULT = "tool-result"
    STEP_FINISH = "step-finish"
    FINISH = "finish"


@dataclass
class StreamEvent:
    type: StreamEventType
    text: str = ""
    payload: dict[str, Any] | None = None
    finish_reason: str | None = None
    usage: Usage | None = None


class Agent(Protocol):
    """Shared contract for named agents."""

    name: str

    async def generate(
        self,
        message: Message,
        *,
        output: Any = None,
        context: Any = None,
        abort_signal: "AbortSignal | None" = None,
    ) -> AgentResult:
        """Run one model call and validate the result against ``output``."""
        ...

    def stream(
        self,
        message: Message,
        *,
        context: Any = None,
        abort_signal: "AbortSignal | None" = None,
    ) -> AsyncIterator[StreamEvent]:
        """Yield incremental events for a free-text answer."""
        ...


class AgentFactory(Protocol):
    def __call__(
        self,
        *,
        name: str,
        system_template: str,
        model: str | None,
        dotenv_path: Any,
    ) -> Agent: ...
