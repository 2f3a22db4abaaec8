"""agent-engine - turn coordination and tool execution for a model-agnostic coding agent."""

from importlib.metadata import version

__version__ = version("agent-engine")

from agent_engine.config import EngineConfig, load_config, ConfigError
from agent_engine.core.coordinator import RetryPolicy, TurnCoordinator
from agent_engine.core.events import Event, EventBus, EventKind
from agent_engine.core.executor import ExecutionContext, ToolExecutionEngine
from agent_engine.core.models import Message, Session, ToolCall, TurnOutcome
from agent_engine.core.permissions import PermissionDecision, PermissionGate
from agent_engine.core.registry import ToolDescriptor, ToolRegistry
from agent_engine.core.tool_result import ToolResult
from agent_engine.state.store import InMemorySessionStore, JsonlSessionStore
