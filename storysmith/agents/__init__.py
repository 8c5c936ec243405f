"""Agents and the pool that hands them out."""

from storysmith.agents.implementer import ImplementerAgent
from storysmith.agents.parsing import Malformed, Parsed, ParseResult, parse_model_output
from storysmith.agents.pool import AgentHandle, AgentPool, build_agent_factories
from storysmith.agents.reviewer import ReviewerAgent

__all__ = [
    "AgentHandle",
    "AgentPool",
    "ImplementerAgent",
    "Malformed",
    "ParseResult",
    "Parsed",
    "ReviewerAgent",
    "build_agent_factories",
    "parse_model_output",
]
