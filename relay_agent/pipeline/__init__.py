"""Message dispatch pipeline."""

from relay_agent.pipeline.context import InboundEvent, MessageContext, PipelineResult
from relay_agent.pipeline.dispatcher import Dispatcher
from relay_agent.pipeline.hooks import HookRegistry

__all__ = ["Dispatcher", "HookRegistry", "InboundEvent", "MessageContext", "PipelineResult"]
