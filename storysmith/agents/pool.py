"""
Pool of named, ephemeral agents.

Agents are created per run and per purpose from a registry of factories
keyed by agent name, handed out as ``AgentHandle`` objects and destroyed by
the caller when the run is done with them. A semaphore caps how many agents
are alive at once; ``create_agent`` waits for a free slot rather than
failing.

One pool belongs to one project. Handles are never shared between runs.

Example:
    >>> pool = AgentPool(build_agent_factories(settings), max_concurrent_agents=3)
    >>> handle = await pool.create_agent("implementer", {"story_id": "1-2"})
    >>> try:
    ...     code = await handle.agent.implement_story(context)
    ... finally:
    ...     await pool.destroy_agent(handle)
"""

import asyncio
import inspect
import re
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog

from storysmith.agents.implementer import ImplementerAgent
from storysmith.agents.reviewer import ReviewerAgent
from storysmith.config.settings import AgentAssignment, StorySmithSettings
from storysmith.exceptions import AgentPoolError
from storysmith.providers.base import LLMClient
from storysmith.providers.llm import OpenAICompatibleClient

log = structlog.get_logger(__name__)

AGENT_NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")

# Builds a live agent for a name and the creation context. May be async.
AgentFactory = Callable[[str, dict[str, Any]], Any]


@dataclass
class AgentHandle:
    """A live agent checked out of the pool."""

    id: str
    name: str
    agent: Any
    context: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class AgentPool:
    """Creates and tracks agents by configured name.

    Attributes:
        max_concurrent_agents: Upper bound on live handles.
    """

    def __init__(self, factories: dict[str, AgentFactory], max_concurrent_agents: int = 3):
        if max_concurrent_agents < 1:
            raise ValueError("max_concurrent_agents must be at least 1")
        self._factories = dict(factories)
        self.max_concurrent_agents = max_concurrent_agents
        self._slots = asyncio.Semaphore(max_concurrent_agents)
        self._active: dict[str, AgentHandle] = {}
        self._total_created = 0
        self._total_destroyed = 0
        self._closed = False

    @property
    def configured_agents(self) -> list[str]:
        return sorted(self._factories)

    @property
    def active_agents(self) -> list[AgentHandle]:
        return list(self._active.values())

    @property
    def stats(self) -> dict[str, int]:
        return {
            "total_created": self._total_created,
            "total_destroyed": self._total_destroyed,
            "active": len(self._active),
            "max_concurrent": self.max_concurrent_agents,
        }

    async def create_agent(self, name: str, context: dict[str, Any] | None = None) -> AgentHandle:
        """Create an agent by configured name.

        Waits for a free slot when the pool is at capacity.

        Raises:
            AgentPoolError: ``INVALID_AGENT_NAME`` for malformed names,
                ``AGENT_NOT_CONFIGURED`` for names without a factory,
                ``POOL_SHUTDOWN`` after ``shutdown``.
        """
        if not AGENT_NAME_RE.match(name or ""):
            raise AgentPoolError(f"Invalid agent name: {name!r}", code="INVALID_AGENT_NAME", agent_name=name)
        factory = self._factories.get(name)
        if factory is None:
            raise AgentPoolError(
                f"Agent {name!r} is not configured. Available: {', '.join(self.configured_agents) or 'none'}",
                code="AGENT_NOT_CONFIGURED",
                agent_name=name,
            )
        if self._closed:
            raise AgentPoolError("Agent pool has been shut down", code="POOL_SHUTDOWN", agent_name=name)

        context = dict(context or {})
        await self._slots.acquire()
        try:
            agent = factory(name, context)
            if inspect.isawaitable(agent):
                agent = await agent
        except BaseException:
            self._slots.release()
            raise

        handle = AgentHandle(id=f"{name}-{uuid.uuid4().hex[:12]}", name=name, agent=agent, context=context)
        self._active[handle.id] = handle
        self._total_created += 1
        log.info("agent_created", agent_id=handle.id, agent_name=name, active=len(self._active))
        return handle

    async def destroy_agent(self, handle: AgentHandle | str) -> None:
        """Release an agent and its slot.

        Raises:
            AgentPoolError: ``AGENT_NOT_FOUND`` if the handle is not live
                (never created here, or already destroyed).
        """
        agent_id = handle if isinstance(handle, str) else handle.id
        live = self._active.pop(agent_id, None)
        if live is None:
            raise AgentPoolError(f"Agent not found: {agent_id}", code="AGENT_NOT_FOUND", agent_id=agent_id)

        self._slots.release()
        self._total_destroyed += 1
        close = getattr(live.agent, "close", None)
        if close is not None:
            try:
                result = close()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                log.warning("agent_close_failed", agent_id=agent_id, error=str(e))
        log.info("agent_destroyed", agent_id=agent_id, agent_name=live.name, active=len(self._active))

    async def shutdown(self) -> None:
        """Destroy every live agent and refuse further creation."""
        self._closed = True
        for agent_id in list(self._active):
            await self.destroy_agent(agent_id)


def build_agent_factories(
    settings: StorySmithSettings,
    llm_factory: Callable[[AgentAssignment], LLMClient] = OpenAICompatibleClient.from_assignment,
) -> dict[str, AgentFactory]:
    """Map every configured agent name to a factory.

    The name configured as the reviewer role builds a ``ReviewerAgent``;
    every other name builds an ``ImplementerAgent``.
    """
    factories: dict[str, AgentFactory] = {}
    for name, assignment in settings.agents.assignments.items():
        agent_cls = ReviewerAgent if name == settings.agents.reviewer else ImplementerAgent

        def factory(
            agent_name: str,
            context: dict[str, Any],
            _cls: type = agent_cls,
            _assignment: AgentAssignment = assignment,
        ) -> Any:
            return _cls(agent_name, llm_factory(_assignment))

        factories[name] = factory
    return factories
