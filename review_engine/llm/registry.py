from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, AsyncIterator, Mapping, Sequence

from dotenv import load_dotenv

from ..errors import ErrorCode, internal_error
from ..prompt.render_prompt import AGENT_TEMPLATES
from .gemini_agent import GeminiAgent
from .mistral_agent import MistralAgent
from .provider import (
    Agent,
    AgentError,
    AgentFactory,
    AgentQuotaError,
    AgentReporter,
    AgentResult,
    AgentStatus,
    Message,
    StreamEvent,
)

logger = logging.getLogger(__name__)


def _gemini_factory(
    *,
    name: str,
    system_template: str,
    model: str | None,
    dotenv_path: str | Path | None,
) -> Agent:
    return GeminiAgent(
        name, system_template=system_template, model=model, dotenv_path=dotenv_path
    )


def _mistral_factory(
    *,
    name: str,
    system_template: str,
    model: str | None,
    dotenv_path: str | Path | None,
) -> Agent:
    # The configured model name targets the primary backend only.
    return MistralAgent(name, system_template=system_template, dotenv_path=dotenv_path)


_PROVIDER_FACTORIES: dict[str, AgentFactory] = {
    "gemini": _gemini_factory,
    "mistral": _mistral_factory,
}


def _split_names(value: str | None) -> list[str]:
    if not value:
        return []
    return [chunk.strip().lower() for chunk in value.split(",") if chunk.strip()]


class AgentChain:
    """One agent id served by a priority-ordered list of backends.

    A backend that reports quota exhaustion hands the call to the next one;
    any other failure propagates.
    """

    def __init__(
        self,
        name: str,
        backends: Sequence[Agent],
        *,
        reporter: AgentReporter | None = None,
    ) -> None:
        if not backends:
            raise ValueError(f"Agent '{name}' needs at least one backend")
        self.name = name
        self._backends = list(backends)
        self._reporter = reporter

    def backend_order(self) -> list[str]:
        return [type(backend).__name__ for backend in self._backends]

    async def generate(
        self,
        message: Message,
        *,
        output: Any = None,
        context: Any = None,
        abort_signal: Any = None,
    ) -> AgentResult:
        last_error: AgentQuotaError | None = None
        for backend in self._backends:
            label = type(backend).__name__
            try:
                result = await backend.generate(
                    message, output=output, context=context, abort_signal=abort_signal
                )
            except AgentQuotaError as exc:
                last_error = exc
                logger.warning("%s quota exhausted for %s; trying next backend", label, self.name)
                self._report(label, AgentStatus.QUOTA, exc)
                continue
            except AgentError as exc:
                self._report(label, AgentStatus.FAILURE, exc)
                raise
            self._report(label, AgentStatus.SUCCESS)
            return result
        raise AgentQuotaError("All providers exceeded quota") from last_error

    async def stream(
        self,
        message: Message,
        *,
        context: Any = None,
        abort_signal: Any = None,
    ) -> AsyncIterator[StreamEvent]:
        last_error: AgentQuotaError | None = None
        for backend in self._backends:
            label = type(backend).__name__
            started = False
            try:
                async for event in backend.stream(
                    message, context=context, abort_signal=abort_signal
                ):
                    started = True
                    yield event
            except AgentQuotaError as exc:
                self._report(label, AgentStatus.QUOTA, exc)
                if started:
                    raise
                last_error = exc
                continue
            except AgentError as exc:
                self._report(label, AgentStatus.FAILURE, exc)
                raise
            self._report(label, AgentStatus.SUCCESS)
            return
        raise AgentQuotaError("All providers exceeded quota") from last_error

    def _report(
        self,
        backend: str,
        status: AgentStatus,
        error: Exception | None = None,
    ) -> None:
        if self._reporter is None:
            return
        self._reporter(f"{self.name}:{backend}", status, error)


class AgentRegistry:
    """Resolves agents by string id at call time."""

    def __init__(self, agents: Mapping[str, Agent] | None = None) -> None:
        self._agents: dict[str, Agent] = dict(agents or {})

    def register(self, agent_id: str, agent: Agent) -> None:
        self._agents[agent_id] = agent

    def get(self, agent_id: str) -> Agent:
        try:
            return self._agents[agent_id]
        except KeyError:
            raise internal_error(ErrorCode.AGENT_NOT_FOUND, agent_id=agent_id) from None

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._agents

    def ids(self) -> list[str]:
        return sorted(self._agents)


def create_agent_registry(
    *,
    model: str | None = None,
    dotenv_path: str | Path | None = None,
    primary: str | None = None,
    fallbacks: Sequence[str] | None = None,
    reporter: AgentReporter | None = None,
) -> AgentRegistry:
    """Build every named agent with backends ordered by priority hints.

    ``LLM_PRIMARY`` and ``LLM_FALLBACK`` (comma separated) are read from the
    environment when no explicit order is passed.
    """
    if dotenv_path is not None:
        load_dotenv(dotenv_path=str(dotenv_path), override=True)

    candidates: list[str] = []
    candidates.extend(_split_names(primary or os.environ.get("LLM_PRIMARY")))
    if fallbacks:
        candidates.extend(name.lower() for name in fallbacks)
    else:
        candidates.extend(_split_names(os.environ.get("LLM_FALLBACK")))
    if not candidates:
        candidates = ["gemini"]

    order: list[str] = []
    for name in candidates:
        if name in order:
            continue
        if name not in _PROVIDER_FACTORIES:
            raise ValueError(f"Unknown LLM provider '{name}'")
        order.append(name)

    registry = AgentRegistry()
    for agent_id, template in AGENT_TEMPLATES.items():
        backends = [
            _PROVIDER_FACTORIES[name](
                name=agent_id,
                system_template=template,
                model=model,
                dotenv_path=dotenv_path,
            )
            for name in order
        ]
        registry.register(agent_id, AgentChain(agent_id, backends, reporter=reporter))
    logger.debug("Registered %d agents with backends %s", len(AGENT_TEMPLATES), order)
    return registry
