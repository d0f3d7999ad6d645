"""resumable-agent - A resumable, cancellable ReAct reasoning core with signed checkpoint tokens."""

from .platform.agent import ReasoningAgent, RunConfig
from .platform.settings import Settings

__all__ = ["ReasoningAgent", "RunConfig", "Settings"]
