from spechub.agents.base import (
    AccessMode,
    AgentDispatchError,
    AgentDispatcher,
    AgentEngine,
    AgentRequest,
    AgentTimeoutError,
    extract_thread_id,
)
from spechub.agents.cli import CliAgentDispatcher, with_external_spec_hint
from spechub.agents.events import EventBus
from spechub.agents.responses import ResponsesAgentDispatcher

__all__ = [
    "AccessMode",
    "AgentDispatchError",
    "AgentDispatcher",
    "AgentEngine",
    "AgentRequest",
    "AgentTimeoutError",
    "CliAgentDispatcher",
    "EventBus",
    "ResponsesAgentDispatcher",
    "extract_thread_id",
    "with_external_spec_hint",
]
