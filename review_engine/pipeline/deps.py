from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from ..config import EngineConfig
from ..llm.adapter import call_agent
from ..llm.provider import AgentResult, Message
from ..llm.registry import AgentRegistry
from ..storage.repository import ReviewRepository
from .concurrency import AbortSignal


@dataclass
class PipelineDeps:
    """Collaborators injected into every pipeline step for one run."""

    agents: AgentRegistry
    repository: ReviewRepository
    config: EngineConfig = field(default_factory=EngineConfig)
    abort_signal: AbortSignal | None = None

    async def call(
        self,
        agent_id: str,
        message: Message,
        *,
        output: Any = None,
        context: Any = None,
    ) -> AgentResult:
        return await call_agent(
            self.agents,
            agent_id,
            message,
            output=output,
            context=context,
            abort_signal=self.abort_signal,
        )
