"""Agent sessions, the resilient runner and the session registry."""

from relay_agent.agent.models import ModelRef, resolve_model
from relay_agent.agent.registry import SessionRegistry, StalenessPolicy
from relay_agent.agent.runner import ResilientRunner, RunResult
from relay_agent.agent.session import AgentSession, SessionHandle

__all__ = [
    "AgentSession",
    "ModelRef",
    "ResilientRunner",
    "RunResult",
    "SessionHandle",
    "SessionRegistry",
    "StalenessPolicy",
    "resolve_model",
]
